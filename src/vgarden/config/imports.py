"""
Virtual garden imports.

The imports file is the YAML document handed over by the deployer. Keys are
camelCase; the models accept snake_case field names as well.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from vgarden.core.errors import ConfigurationError

logger = structlog.get_logger()


class _ImportsModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HostingCluster(_ImportsModel):
    namespace: Optional[str] = None
    infrastructure_provider: str = Field("gcp", alias="infrastructureProvider")


class ETCDBackup(_ImportsModel):
    bucket_name: str = Field(..., alias="bucketName")


class ETCD(_ImportsModel):
    storage_class_name: Optional[str] = Field(None, alias="storageClassName")
    backup: Optional[ETCDBackup] = None


class GardenerControlplane(_ImportsModel):
    validating_webhook_enabled: bool = Field(False, alias="validatingWebhookEnabled")
    mutating_webhook_enabled: bool = Field(False, alias="mutatingWebhookEnabled")


class AuditWebhookConfig(_ImportsModel):
    config: str = ""


class KubeAPIServer(_ImportsModel):
    replicas: int = 1
    dns_access_domain: Optional[str] = Field(None, alias="dnsAccessDomain")
    gardener_controlplane: GardenerControlplane = Field(
        default_factory=GardenerControlplane, alias="gardenerControlplane"
    )
    audit_webhook_config: AuditWebhookConfig = Field(
        default_factory=AuditWebhookConfig, alias="auditWebhookConfig"
    )
    event_ttl: Optional[str] = Field(None, alias="eventTTL")
    oidc_issuer_url: Optional[str] = Field(None, alias="oidcIssuerURL")


class VirtualGarden(_ImportsModel):
    etcd: Optional[ETCD] = None
    kube_api_server: KubeAPIServer = Field(default_factory=KubeAPIServer, alias="kubeAPIServer")
    delete_namespace: bool = Field(False, alias="deleteNamespace")
    priority_class_name: Optional[str] = Field(None, alias="priorityClassName")

    @property
    def has_backup(self) -> bool:
        return self.etcd is not None and self.etcd.backup is not None


class Imports(_ImportsModel):
    hosting_cluster: HostingCluster = Field(default_factory=HostingCluster, alias="hostingCluster")
    virtual_garden: VirtualGarden = Field(default_factory=VirtualGarden, alias="virtualGarden")


def load_imports(path: str | Path) -> Imports:
    """Load and validate the imports file at ``path``."""
    imports_path = Path(path)
    if not imports_path.exists():
        raise ConfigurationError(
            f"Imports file not found: {imports_path}", {"path": str(imports_path)}
        )

    try:
        with open(imports_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in imports file: {e}", {"path": str(imports_path)}) from e

    if not isinstance(data, dict):
        raise ConfigurationError("Imports file must contain a mapping", {"path": str(imports_path)})

    try:
        imports = Imports.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid imports: {e}", {"path": str(imports_path)}) from e

    logger.debug("loaded_imports", path=str(imports_path))
    return imports
