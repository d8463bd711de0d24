"""
Virtual garden reconcile and delete operations.

Both operations are expressed as task graphs. Task bodies receive the
``Operation`` as ``ctx.context``; the checksum registry is recreated for
every run.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from vgarden.config.imports import Imports
from vgarden.flow import Graph, ProgressReporter, RunOptions, RunResult
from vgarden.logging import bind_context
from vgarden.reconcile.checksums import ChecksumRegistry
from vgarden.reconcile.generate import SecretGenerator
from vgarden.reconcile.reconciler import ResourceReconciler
from vgarden.reconcile.store import ResourceIdentity, ResourceStore
from vgarden.virtualgarden import apiserver, certificates, etcd, namespace, secrets
from vgarden.virtualgarden.manifests import ManifestConfig
from vgarden.virtualgarden.providers import (
    BackupProvider,
    InfrastructureProvider,
    new_infrastructure_provider,
)

RECONCILE_GRAPH_NAME = "Virtual Garden Reconciliation"
DELETE_GRAPH_NAME = "Virtual Garden Deletion"


@dataclass
class Operation:
    """Deploys or deletes one virtual garden in a hosting cluster namespace."""

    store: ResourceStore
    namespace: str
    imports: Imports = field(default_factory=Imports)
    handle_namespace: bool = False
    generator: SecretGenerator = field(default_factory=SecretGenerator)
    progress_reporter: Optional[ProgressReporter] = None
    backup_provider: Optional[BackupProvider] = None
    infrastructure_provider: Optional[InfrastructureProvider] = None
    config: ManifestConfig = field(default_factory=ManifestConfig)
    max_concurrency: Optional[int] = None
    log: Any = None
    checksums: ChecksumRegistry = field(default_factory=ChecksumRegistry)

    def __post_init__(self) -> None:
        if self.log is None:
            self.log = bind_context(namespace=self.namespace)
        else:
            self.log = self.log.bind(namespace=self.namespace)
        self.reconciler = ResourceReconciler(self.store, logger=self.log)
        if self.infrastructure_provider is None:
            self.infrastructure_provider = new_infrastructure_provider(
                self.imports.hosting_cluster.infrastructure_provider
            )

    def identity(self, kind: str, name: str) -> ResourceIdentity:
        """Identity of an object in the virtual garden namespace."""
        return ResourceIdentity(kind=kind, name=name, namespace=self.namespace)

    @property
    def has_backup(self) -> bool:
        return self.imports.virtual_garden.has_backup

    @property
    def deletes_namespace(self) -> bool:
        return self.handle_namespace or self.imports.virtual_garden.delete_namespace

    @property
    def has_storage_class_override(self) -> bool:
        etcd_imports = self.imports.virtual_garden.etcd
        return etcd_imports is not None and bool(etcd_imports.storage_class_name)

    def build_reconcile_graph(self) -> Graph:
        graph = Graph(RECONCILE_GRAPH_NAME)

        deploy_namespace = graph.add_task(
            "deploy-namespace",
            namespace.deploy_namespace,
            skip_if=lambda: not self.handle_namespace,
        )
        deploy_storage_class = graph.add_task(
            "deploy-storage-class",
            etcd.deploy_storage_class,
            dependencies=[deploy_namespace],
            skip_if=lambda: self.has_storage_class_override,
        )
        deploy_backup_bucket = graph.add_task(
            "deploy-backup-bucket",
            etcd.deploy_backup_bucket,
            dependencies=[deploy_namespace],
            skip_if=lambda: not self.has_backup,
        )
        deploy_service = graph.add_task(
            "deploy-kube-apiserver-service",
            apiserver.deploy_kube_apiserver_service,
            dependencies=[deploy_namespace],
        )
        deploy_secrets = graph.add_task(
            "deploy-kube-apiserver-secrets",
            secrets.deploy_kube_apiserver_secrets,
            dependencies=[deploy_namespace],
        )
        deploy_certificates = graph.add_task(
            "deploy-kube-apiserver-certificates",
            certificates.deploy_kube_apiserver_certificates,
            dependencies=[deploy_service],
        )
        deploy_etcd = graph.add_task(
            "deploy-etcd",
            etcd.deploy_etcd,
            dependencies=[deploy_storage_class, deploy_backup_bucket],
        )
        graph.add_task(
            "deploy-kube-apiserver",
            apiserver.deploy_kube_apiserver,
            dependencies=[deploy_etcd, deploy_service, deploy_secrets, deploy_certificates],
        )
        return graph

    def build_delete_graph(self) -> Graph:
        graph = Graph(DELETE_GRAPH_NAME)

        delete_kube_apiserver = graph.add_task(
            "delete-kube-apiserver", apiserver.delete_kube_apiserver
        )
        delete_service = graph.add_task(
            "delete-kube-apiserver-service", apiserver.delete_kube_apiserver_service
        )
        delete_secrets = graph.add_task(
            "delete-kube-apiserver-secrets",
            secrets.delete_kube_apiserver_secrets,
            dependencies=[delete_kube_apiserver],
        )
        delete_certificates = graph.add_task(
            "delete-kube-apiserver-certificates",
            certificates.delete_kube_apiserver_certificates,
            dependencies=[delete_kube_apiserver],
        )
        delete_etcd = graph.add_task(
            "delete-etcd",
            etcd.delete_etcd,
            dependencies=[delete_kube_apiserver],
        )
        delete_backup_bucket = graph.add_task(
            "delete-backup-bucket",
            etcd.delete_backup_bucket,
            dependencies=[delete_etcd],
            skip_if=lambda: not self.has_backup,
        )
        delete_storage_class = graph.add_task(
            "delete-storage-class",
            etcd.delete_storage_class,
            dependencies=[delete_etcd],
            skip_if=lambda: self.has_storage_class_override,
        )
        graph.add_task(
            "delete-namespace",
            namespace.delete_namespace,
            dependencies=[
                delete_kube_apiserver,
                delete_service,
                delete_secrets,
                delete_certificates,
                delete_etcd,
                delete_backup_bucket,
                delete_storage_class,
            ],
            skip_if=lambda: not self.deletes_namespace,
        )
        return graph

    async def reconcile(self, cancel_event: Optional[asyncio.Event] = None) -> RunResult:
        """Deploy or update all virtual garden components."""
        self.checksums = ChecksumRegistry()
        return await self._run(self.build_reconcile_graph(), cancel_event)

    async def delete(self, cancel_event: Optional[asyncio.Event] = None) -> RunResult:
        """Delete all virtual garden components."""
        return await self._run(self.build_delete_graph(), cancel_event)

    async def _run(self, graph: Graph, cancel_event: Optional[asyncio.Event]) -> RunResult:
        plan = graph.compile()
        return await plan.run(
            RunOptions(
                cancel_event=cancel_event,
                logger=self.log,
                progress_reporter=self.progress_reporter,
                max_concurrency=self.max_concurrency,
                context=self,
            )
        )
