"""
Idempotent fetch-mutate-upsert of objects in a resource store.

``create_or_update`` fetches the current object first, so a mutation can
read values that are already present and carry them forward. Secret
material goes through ``generate_once``: it is generated only when the
object does not hold a value yet, which keeps issued credentials and
encryption keys stable across reconciliations.
"""

from __future__ import annotations

import base64
import copy
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

import structlog

from vgarden.reconcile.store import ResourceIdentity, ResourceStore

logger = structlog.get_logger()

MutateFn = Callable[[Dict[str, Any]], None]


class OperationResult(str, Enum):
    """What ``create_or_update`` did to the stored object."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


async def create_or_update(
    store: ResourceStore,
    identity: ResourceIdentity,
    mutate: MutateFn,
) -> OperationResult:
    """Ensure the object for ``identity`` exists in the state ``mutate`` produces.

    ``mutate`` edits the object in place. On the update branch it sees the
    stored object, including previously generated values.
    """
    current = await store.get(identity)

    if current is None:
        obj = identity.empty_object()
        _mutate(identity, obj, mutate)
        await store.create(identity, obj)
        return OperationResult.CREATED

    desired = copy.deepcopy(current)
    _mutate(identity, desired, mutate)
    if desired == current:
        return OperationResult.UNCHANGED

    await store.update(identity, desired)
    return OperationResult.UPDATED


def _mutate(identity: ResourceIdentity, obj: Dict[str, Any], mutate: MutateFn) -> None:
    mutate(obj)
    metadata = obj.get("metadata") or {}
    if metadata.get("name") != identity.name or metadata.get("namespace") != identity.namespace:
        raise ValueError(f"mutate function must not change the name or namespace of {identity}")


class ResourceReconciler:
    """Reconciles objects of a single store on behalf of task bodies."""

    def __init__(self, store: ResourceStore, logger: Optional[Any] = None) -> None:
        self._store = store
        self._log = logger or structlog.get_logger()

    @property
    def store(self) -> ResourceStore:
        return self._store

    async def get(self, identity: ResourceIdentity) -> Optional[Dict[str, Any]]:
        return await self._store.get(identity)

    async def reconcile(self, identity: ResourceIdentity, mutate: MutateFn) -> OperationResult:
        result = await create_or_update(self._store, identity, mutate)
        self._log.info("resource_reconciled", resource=str(identity), result=result.value)
        return result

    async def delete(self, identity: ResourceIdentity) -> None:
        await self._store.delete(identity)
        self._log.info("resource_deleted", resource=str(identity))

    async def delete_all(self, identities: Iterable[ResourceIdentity]) -> None:
        for identity in identities:
            await self.delete(identity)


def get_secret_value(obj: Dict[str, Any], key: str) -> Optional[bytes]:
    """Decoded value of ``data[key]`` of a Secret-shaped object."""
    encoded = (obj.get("data") or {}).get(key)
    if not encoded:
        return None
    return base64.b64decode(encoded)


def set_secret_value(obj: Dict[str, Any], key: str, value: bytes) -> None:
    data = obj.get("data")
    if data is None:
        data = obj["data"] = {}
    data[key] = base64.b64encode(value).decode("ascii")


def generate_once(obj: Dict[str, Any], key: str, generate: Callable[[], bytes]) -> bytes:
    """Return the stored value for ``key``, generating it only if absent."""
    existing = get_secret_value(obj, key)
    if existing is not None:
        return existing
    value = generate()
    set_secret_value(obj, key, value)
    return value
