"""Namespace of the virtual garden in the hosting cluster."""

from __future__ import annotations

from typing import TYPE_CHECKING

from vgarden.flow import TaskContext
from vgarden.reconcile.store import ResourceIdentity
from vgarden.virtualgarden.manifests import apply_namespace

if TYPE_CHECKING:
    from vgarden.virtualgarden.operation import Operation


def _namespace_identity(op: "Operation") -> ResourceIdentity:
    return ResourceIdentity(kind="Namespace", name=op.namespace)


async def deploy_namespace(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    await op.reconciler.reconcile(
        _namespace_identity(op), lambda obj: apply_namespace(obj, op.config)
    )


async def delete_namespace(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    await op.reconciler.delete(_namespace_identity(op))
