"""Resource identities and the resource store contract."""

from __future__ import annotations

import copy
import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from vgarden.core.errors import StoreError

# apiVersion for the kinds the virtual garden manages
API_VERSIONS: Dict[str, str] = {
    "Namespace": "v1",
    "Secret": "v1",
    "ConfigMap": "v1",
    "Service": "v1",
    "PersistentVolumeClaim": "v1",
    "Deployment": "apps/v1",
    "StatefulSet": "apps/v1",
    "StorageClass": "storage.k8s.io/v1",
}


@dataclass(frozen=True)
class ResourceIdentity:
    """Stable handle of an object in the resource store."""

    kind: str
    name: str
    namespace: Optional[str] = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    def empty_object(self) -> Dict[str, Any]:
        """Skeleton object carrying only this identity."""
        metadata: Dict[str, Any] = {"name": self.name}
        if self.namespace:
            metadata["namespace"] = self.namespace
        return {
            "apiVersion": API_VERSIONS.get(self.kind, "v1"),
            "kind": self.kind,
            "metadata": metadata,
        }


@runtime_checkable
class ResourceStore(Protocol):
    """Minimal capability the engine needs from an external object store."""

    async def get(self, identity: ResourceIdentity) -> Optional[Dict[str, Any]]:
        """Return the object, or None when it does not exist."""
        ...

    async def create(self, identity: ResourceIdentity, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update(self, identity: ResourceIdentity, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def delete(self, identity: ResourceIdentity) -> None:
        """Delete the object; an absent object is not an error."""
        ...


class MemoryResourceStore:
    """In-process resource store for local runs and tests."""

    def __init__(self) -> None:
        self._objects: Dict[ResourceIdentity, Dict[str, Any]] = {}
        self._versions = itertools.count(1)

    async def get(self, identity: ResourceIdentity) -> Optional[Dict[str, Any]]:
        obj = self._objects.get(identity)
        return copy.deepcopy(obj) if obj is not None else None

    async def create(self, identity: ResourceIdentity, obj: Dict[str, Any]) -> Dict[str, Any]:
        if identity in self._objects:
            raise StoreError(f"{identity} already exists", details={"identity": str(identity)})
        return self._put(identity, obj)

    async def update(self, identity: ResourceIdentity, obj: Dict[str, Any]) -> Dict[str, Any]:
        current = self._objects.get(identity)
        if current is None:
            raise StoreError(f"{identity} not found", details={"identity": str(identity)})
        expected = obj.get("metadata", {}).get("resourceVersion")
        actual = current["metadata"]["resourceVersion"]
        if expected is not None and expected != actual:
            raise StoreError(
                f"{identity} was modified concurrently",
                transient=True,
                details={"identity": str(identity)},
            )
        return self._put(identity, obj)

    async def delete(self, identity: ResourceIdentity) -> None:
        self._objects.pop(identity, None)

    def _put(self, identity: ResourceIdentity, obj: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(obj)
        stored.setdefault("metadata", {})["resourceVersion"] = str(next(self._versions))
        self._objects[identity] = stored
        return copy.deepcopy(stored)

    def objects(self) -> List[ResourceIdentity]:
        return list(self._objects)

    def __contains__(self, identity: object) -> bool:
        return identity in self._objects

    def __len__(self) -> int:
        return len(self._objects)
