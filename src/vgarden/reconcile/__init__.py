"""Reconcile package: idempotent, checksum-aware mutations of store objects."""

from vgarden.reconcile.checksums import (
    ChecksumRegistry,
    fingerprint,
    fingerprint_data,
    secret_checksum_key,
    stamp_annotations,
)
from vgarden.reconcile.generate import SecretGenerator
from vgarden.reconcile.reconciler import (
    OperationResult,
    ResourceReconciler,
    create_or_update,
    generate_once,
    get_secret_value,
    set_secret_value,
)
from vgarden.reconcile.store import MemoryResourceStore, ResourceIdentity, ResourceStore

__all__ = [
    "ChecksumRegistry",
    "MemoryResourceStore",
    "OperationResult",
    "ResourceIdentity",
    "ResourceReconciler",
    "ResourceStore",
    "SecretGenerator",
    "create_or_update",
    "fingerprint",
    "fingerprint_data",
    "generate_once",
    "get_secret_value",
    "secret_checksum_key",
    "set_secret_value",
    "stamp_annotations",
]
