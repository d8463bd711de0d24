"""Virtual garden components and the operations deploying them."""

from vgarden.virtualgarden.manifests import ManifestConfig
from vgarden.virtualgarden.operation import DELETE_GRAPH_NAME, RECONCILE_GRAPH_NAME, Operation
from vgarden.virtualgarden.providers import (
    BackupProvider,
    InfrastructureProvider,
    new_infrastructure_provider,
)

__all__ = [
    "BackupProvider",
    "DELETE_GRAPH_NAME",
    "InfrastructureProvider",
    "ManifestConfig",
    "Operation",
    "RECONCILE_GRAPH_NAME",
    "new_infrastructure_provider",
]
