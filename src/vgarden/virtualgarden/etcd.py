"""Main and events etcd of the virtual garden, with storage and backup."""

from __future__ import annotations

from typing import TYPE_CHECKING, List

from vgarden.core.errors import ConfigurationError
from vgarden.flow import TaskContext
from vgarden.reconcile.reconciler import set_secret_value
from vgarden.reconcile.store import ResourceIdentity
from vgarden.virtualgarden.manifests import (
    ETCD_CLIENT_PORT,
    ETCD_ROLES,
    apply_etcd_statefulset,
    apply_service,
    apply_storage_class,
    merge_labels,
)

if TYPE_CHECKING:
    from vgarden.virtualgarden.operation import Operation

BACKUP_BUCKET_NAME_KEY = "bucketName"


def storage_class_name(op: "Operation") -> str:
    etcd_imports = op.imports.virtual_garden.etcd
    if etcd_imports is not None and etcd_imports.storage_class_name:
        return etcd_imports.storage_class_name
    return op.config.storage_class_name


def _storage_class_identity(op: "Operation") -> ResourceIdentity:
    return ResourceIdentity(kind="StorageClass", name=op.config.storage_class_name)


def _bucket_name(op: "Operation") -> str:
    etcd_imports = op.imports.virtual_garden.etcd
    if etcd_imports is None or etcd_imports.backup is None:
        raise ConfigurationError("No etcd backup configured in imports")
    return etcd_imports.backup.bucket_name


async def deploy_storage_class(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    provisioner, parameters = op.infrastructure_provider.compute_storage_class_configuration()
    await op.reconciler.reconcile(
        _storage_class_identity(op),
        lambda obj: apply_storage_class(obj, op.config, provisioner, parameters),
    )


async def delete_storage_class(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    await op.reconciler.delete(_storage_class_identity(op))


async def deploy_backup_bucket(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    bucket = _bucket_name(op)
    if op.backup_provider is not None:
        await op.backup_provider.create_bucket(bucket)
        ctx.raise_if_cancelled()

    def mutate(obj: dict) -> None:
        merge_labels(obj, op.config.labels("etcd"))
        obj["type"] = "Opaque"
        set_secret_value(obj, BACKUP_BUCKET_NAME_KEY, bucket.encode("utf-8"))

    await op.reconciler.reconcile(op.identity("Secret", op.config.etcd_backup_secret), mutate)


async def delete_backup_bucket(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    if op.backup_provider is not None:
        await op.backup_provider.delete_bucket(_bucket_name(op))
    await op.reconciler.delete(op.identity("Secret", op.config.etcd_backup_secret))


async def deploy_etcd(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    storage_class = storage_class_name(op)
    priority_class = op.imports.virtual_garden.priority_class_name

    for role in ETCD_ROLES:
        ctx.raise_if_cancelled()
        name = op.config.etcd_name(role)
        await op.reconciler.reconcile(
            op.identity("Service", name),
            lambda obj, name=name: apply_service(obj, op.config, name, ETCD_CLIENT_PORT),
        )
        await op.reconciler.reconcile(
            op.identity("StatefulSet", name),
            lambda obj, role=role: apply_etcd_statefulset(
                obj, op.config, role, storage_class, priority_class
            ),
        )


def etcd_identities(op: "Operation") -> List[ResourceIdentity]:
    """Everything deploy_etcd creates, including the volume claims of the pods."""
    identities = []
    for role in ETCD_ROLES:
        name = op.config.etcd_name(role)
        identities.append(op.identity("StatefulSet", name))
        identities.append(op.identity("Service", name))
        identities.append(op.identity("PersistentVolumeClaim", f"data-{name}-0"))
    return identities


async def delete_etcd(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    await op.reconciler.delete_all(etcd_identities(op))
