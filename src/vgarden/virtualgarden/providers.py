"""Cloud-provider specific collaborators."""

from __future__ import annotations

from typing import Dict, Protocol, Tuple

from vgarden.core.errors import ConfigurationError


class InfrastructureProvider(Protocol):
    name: str

    def compute_storage_class_configuration(self) -> Tuple[str, Dict[str, str]]:
        """Return the provisioner and parameters of the etcd storage class."""
        ...


class BackupProvider(Protocol):
    """Manages the object storage bucket holding etcd backups."""

    async def create_bucket(self, name: str) -> None:
        ...

    async def delete_bucket(self, name: str) -> None:
        ...


class AWSInfrastructureProvider:
    name = "aws"

    def compute_storage_class_configuration(self) -> Tuple[str, Dict[str, str]]:
        return "kubernetes.io/aws-ebs", {"type": "gp2", "encrypted": "true"}


class GCPInfrastructureProvider:
    name = "gcp"

    def compute_storage_class_configuration(self) -> Tuple[str, Dict[str, str]]:
        return "kubernetes.io/gce-pd", {"type": "pd-ssd"}


class AlicloudInfrastructureProvider:
    name = "alicloud"

    def compute_storage_class_configuration(self) -> Tuple[str, Dict[str, str]]:
        return "diskplugin.csi.alibabacloud.com", {"type": "cloud_ssd", "encrypted": "true"}


_INFRASTRUCTURE_PROVIDERS = {
    provider.name: provider
    for provider in (
        AWSInfrastructureProvider,
        GCPInfrastructureProvider,
        AlicloudInfrastructureProvider,
    )
}


def new_infrastructure_provider(name: str) -> InfrastructureProvider:
    try:
        return _INFRASTRUCTURE_PROVIDERS[name.lower()]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown infrastructure provider {name!r}",
            {"supported": sorted(_INFRASTRUCTURE_PROVIDERS)},
        ) from None
