"""
Kubernetes-backed resource store.

Maps ``ResourceIdentity`` kinds onto the typed API groups of the official
kubernetes client. Objects go in and come out as plain manifest dicts;
updates carry the fetched ``resourceVersion`` so the API server rejects
stale writes.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, Optional

import structlog

from vgarden.core.errors import StoreError
from vgarden.reconcile.store import ResourceIdentity

logger = structlog.get_logger()

TRANSIENT_STATUS_CODES = frozenset({409, 429, 500, 502, 503, 504})

# Lazy import kubernetes to allow optional installation
_kubernetes_available: bool | None = None


def _check_kubernetes_available() -> bool:
    """Check if kubernetes package is installed."""
    global _kubernetes_available
    if _kubernetes_available is None:
        try:
            import kubernetes  # noqa: F401

            _kubernetes_available = True
        except ImportError:
            _kubernetes_available = False
    return _kubernetes_available


@dataclass(frozen=True)
class KindApi:
    """Where the typed client keeps the operations of one kind."""

    api: str
    resource: str
    namespaced: bool = True

    def method(self, verb: str) -> str:
        scope = "namespaced_" if self.namespaced else ""
        return f"{verb}_{scope}{self.resource}"


KIND_APIS: Dict[str, KindApi] = {
    "Namespace": KindApi("CoreV1Api", "namespace", namespaced=False),
    "Secret": KindApi("CoreV1Api", "secret"),
    "ConfigMap": KindApi("CoreV1Api", "config_map"),
    "Service": KindApi("CoreV1Api", "service"),
    "PersistentVolumeClaim": KindApi("CoreV1Api", "persistent_volume_claim"),
    "Deployment": KindApi("AppsV1Api", "deployment"),
    "StatefulSet": KindApi("AppsV1Api", "stateful_set"),
    "StorageClass": KindApi("StorageV1Api", "storage_class", namespaced=False),
}


@dataclass
class KubernetesResourceStore:
    """
    Resource store talking to a hosting cluster.

    Configuration:
        kubeconfig: Path to kubeconfig file (optional)
        context: Kubeconfig context to use (optional)

    Environment variables:
        KUBECONFIG: Standard kubeconfig path
        VGARDEN_KUBE_CONTEXT: Kubeconfig context
    """

    kubeconfig: str | None = field(default_factory=lambda: os.environ.get("KUBECONFIG"))
    context: str | None = field(default_factory=lambda: os.environ.get("VGARDEN_KUBE_CONTEXT"))

    # Internal state
    _api_client: Any = field(default=None, repr=False, compare=False)
    _apis: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    _initialized: bool = field(default=False, repr=False, compare=False)

    def _ensure_initialized(self) -> None:
        """Initialize Kubernetes client if not already done."""
        if self._initialized:
            return

        if not _check_kubernetes_available():
            raise StoreError(
                "kubernetes package not installed. Install with: pip install vgarden[kubernetes]"
            )

        from kubernetes import client, config

        # Try in-cluster config first, then kubeconfig
        try:
            config.load_incluster_config()
        except config.ConfigException:
            try:
                config.load_kube_config(config_file=self.kubeconfig, context=self.context)
            except config.ConfigException as e:
                raise StoreError(f"Failed to load Kubernetes config: {e}") from e

        self._api_client = client.ApiClient()
        self._initialized = True

    def _kind(self, identity: ResourceIdentity) -> KindApi:
        try:
            return KIND_APIS[identity.kind]
        except KeyError:
            raise StoreError(f"Unsupported resource kind {identity.kind!r}") from None

    def _api(self, kind: KindApi) -> Any:
        self._ensure_initialized()
        if kind.api not in self._apis:
            from kubernetes import client

            self._apis[kind.api] = getattr(client, kind.api)(self._api_client)
        return self._apis[kind.api]

    async def _run_sync(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run synchronous kubernetes API call in executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    async def _call(
        self,
        verb: str,
        identity: ResourceIdentity,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        from kubernetes.client.rest import ApiException

        kind = self._kind(identity)
        method = getattr(self._api(kind), kind.method(verb))
        kwargs: Dict[str, Any] = {}
        if verb != "create":
            kwargs["name"] = identity.name
        if kind.namespaced:
            kwargs["namespace"] = identity.namespace
        if body is not None:
            kwargs["body"] = body
        try:
            return await self._run_sync(method, **kwargs)
        except ApiException as e:
            if e.status == 404 and verb in ("read", "delete"):
                return None
            logger.warning(
                "kubernetes_call_failed", verb=verb, resource=str(identity), status=e.status
            )
            raise StoreError(
                f"{verb} {identity} failed: {e.reason}",
                transient=e.status in TRANSIENT_STATUS_CODES,
                details={"status": e.status},
            ) from e

    def _to_dict(self, obj: Any) -> Optional[Dict[str, Any]]:
        if obj is None:
            return None
        return self._api_client.sanitize_for_serialization(obj)

    async def get(self, identity: ResourceIdentity) -> Optional[Dict[str, Any]]:
        return self._to_dict(await self._call("read", identity))

    async def create(self, identity: ResourceIdentity, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._to_dict(await self._call("create", identity, obj)) or obj

    async def update(self, identity: ResourceIdentity, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._to_dict(await self._call("replace", identity, obj)) or obj

    async def delete(self, identity: ResourceIdentity) -> None:
        await self._call("delete", identity)
