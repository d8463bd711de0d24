"""
Manifest construction for virtual garden components.

Every ``apply_*`` function is a mutation for ``create_or_update``: it writes
the desired fields into an object in place and leaves anything else (status,
server-defaulted spec fields, generated secret data) untouched, so a second
pass over an unchanged object is a no-op.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from vgarden.reconcile.checksums import CHECKSUM_PREFIX


@dataclass(frozen=True)
class ManifestConfig:
    """Names, labels and images used by the manifest layer."""

    prefix: str = "virtual-garden"
    label_app_key: str = "app"
    label_component_key: str = "component"

    kube_apiserver_image: str = "k8s.gcr.io/kube-apiserver:v1.20.6"
    etcd_image: str = "quay.io/coreos/etcd:v3.4.13"
    etcd_storage_size: str = "10Gi"

    @property
    def kube_apiserver_name(self) -> str:
        return f"{self.prefix}-kube-apiserver"

    @property
    def admission_kubeconfig_secret(self) -> str:
        return f"{self.prefix}-kube-apiserver-admission-kubeconfig"

    @property
    def audit_webhook_config_secret(self) -> str:
        return "kube-apiserver-audit-webhook-config"

    @property
    def basic_auth_secret(self) -> str:
        return f"{self.prefix}-kube-apiserver-basic-auth"

    @property
    def encryption_config_secret(self) -> str:
        return f"{self.prefix}-kube-apiserver-encryption-config"

    @property
    def static_token_secret(self) -> str:
        return f"{self.prefix}-kube-apiserver-static-token"

    @property
    def service_account_key_secret(self) -> str:
        return f"{self.prefix}-kube-apiserver-service-account-key"

    @property
    def kube_apiserver_secrets(self) -> List[str]:
        return [
            self.admission_kubeconfig_secret,
            self.audit_webhook_config_secret,
            self.basic_auth_secret,
            self.encryption_config_secret,
            self.static_token_secret,
            self.service_account_key_secret,
        ]

    @property
    def kube_apiserver_ca_secret(self) -> str:
        return f"{self.prefix}-kube-apiserver-ca"

    @property
    def kube_apiserver_server_secret(self) -> str:
        return f"{self.prefix}-kube-apiserver-server"

    @property
    def kube_aggregator_ca_secret(self) -> str:
        return f"{self.prefix}-kube-aggregator-ca"

    @property
    def kube_aggregator_client_secret(self) -> str:
        return f"{self.prefix}-kube-aggregator-client"

    @property
    def certificate_secrets(self) -> List[str]:
        return [
            self.kube_apiserver_ca_secret,
            self.kube_apiserver_server_secret,
            self.kube_aggregator_ca_secret,
            self.kube_aggregator_client_secret,
        ]

    def etcd_name(self, role: str) -> str:
        return f"{self.prefix}-etcd-{role}"

    @property
    def etcd_backup_secret(self) -> str:
        return f"{self.prefix}-etcd-backup"

    @property
    def storage_class_name(self) -> str:
        return f"{self.prefix}-etcd"

    def labels(self, component: str) -> Dict[str, str]:
        return {self.label_app_key: self.prefix, self.label_component_key: component}


ETCD_ROLES = ("main", "events")
ETCD_CLIENT_PORT = 2379


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.setdefault("metadata", {})


def merge_labels(obj: Dict[str, Any], labels: Mapping[str, str]) -> None:
    _metadata(obj).setdefault("labels", {}).update(labels)


def merge_desired(target: Dict[str, Any], desired: Mapping[str, Any]) -> None:
    """Write ``desired`` into ``target`` recursively.

    Keys only present in ``target`` survive. Lists of mappings with the same
    length are merged element by element; any other list is replaced.
    """
    for key, value in desired.items():
        current = target.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merge_desired(current, value)
        elif (
            isinstance(value, list)
            and isinstance(current, list)
            and len(value) == len(current)
            and all(isinstance(v, Mapping) and isinstance(c, dict) for v, c in zip(value, current))
        ):
            for item, existing in zip(value, current):
                merge_desired(existing, item)
        else:
            target[key] = copy.deepcopy(value)


def _set_optional(target: Dict[str, Any], key: str, value: Any) -> None:
    if value:
        target[key] = value
    else:
        target.pop(key, None)


def apply_namespace(obj: Dict[str, Any], config: ManifestConfig) -> None:
    merge_labels(obj, config.labels("namespace"))


def apply_storage_class(
    obj: Dict[str, Any],
    config: ManifestConfig,
    provisioner: str,
    parameters: Mapping[str, str],
) -> None:
    merge_labels(obj, config.labels("etcd"))
    obj["provisioner"] = provisioner
    obj["parameters"] = dict(parameters)
    obj["allowVolumeExpansion"] = True
    obj["reclaimPolicy"] = "Delete"
    obj["volumeBindingMode"] = "WaitForFirstConsumer"


def apply_service(
    obj: Dict[str, Any],
    config: ManifestConfig,
    component: str,
    port: int,
    service_type: str = "ClusterIP",
    target_port: Optional[int] = None,
) -> None:
    labels = config.labels(component)
    merge_labels(obj, labels)
    spec = obj.setdefault("spec", {})
    spec["selector"] = dict(labels)
    merge_desired(
        spec,
        {
            "type": service_type,
            "ports": [
                {
                    "name": component,
                    "port": port,
                    "protocol": "TCP",
                    "targetPort": target_port or port,
                }
            ],
        },
    )


def apply_etcd_statefulset(
    obj: Dict[str, Any],
    config: ManifestConfig,
    role: str,
    storage_class_name: str,
    priority_class_name: Optional[str] = None,
) -> None:
    name = config.etcd_name(role)
    labels = config.labels(name)
    merge_labels(obj, labels)
    spec = obj.setdefault("spec", {})
    merge_desired(
        spec,
        {
            "replicas": 1,
            "serviceName": name,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {
                    "containers": [
                        {
                            "name": "etcd",
                            "image": config.etcd_image,
                            "command": [
                                "etcd",
                                f"--name={name}",
                                "--data-dir=/var/etcd/data",
                                f"--listen-client-urls=http://0.0.0.0:{ETCD_CLIENT_PORT}",
                                f"--advertise-client-urls=http://{name}:{ETCD_CLIENT_PORT}",
                            ],
                            "ports": [{"name": "client", "containerPort": ETCD_CLIENT_PORT}],
                            "volumeMounts": [{"name": "data", "mountPath": "/var/etcd/data"}],
                        }
                    ],
                },
            },
            "volumeClaimTemplates": [
                {
                    "metadata": {"name": "data"},
                    "spec": {
                        "accessModes": ["ReadWriteOnce"],
                        "storageClassName": storage_class_name,
                        "resources": {"requests": {"storage": config.etcd_storage_size}},
                    },
                }
            ],
        },
    )
    _set_optional(spec["template"]["spec"], "priorityClassName", priority_class_name)


def apply_kube_apiserver_deployment(
    obj: Dict[str, Any],
    config: ManifestConfig,
    replicas: int,
    command: List[str],
    secret_volumes: Mapping[str, str],
    annotations: Mapping[str, str],
    priority_class_name: Optional[str] = None,
) -> None:
    """Desired kube-apiserver deployment.

    ``secret_volumes`` maps secret names to mount paths. ``annotations`` are
    set on the pod template, so a change in any of them rolls the pods.
    Checksum annotations that are no longer wanted are removed.
    """
    name = config.kube_apiserver_name
    labels = config.labels("kube-apiserver")
    merge_labels(obj, labels)

    volumes = []
    mounts = []
    for index, (secret_name, mount_path) in enumerate(sorted(secret_volumes.items())):
        volume_name = f"secret-{index}"
        volumes.append({"name": volume_name, "secret": {"secretName": secret_name}})
        mounts.append({"name": volume_name, "mountPath": mount_path, "readOnly": True})

    spec = obj.setdefault("spec", {})
    merge_desired(
        spec,
        {
            "replicas": replicas,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels), "annotations": dict(annotations)},
                "spec": {
                    "containers": [
                        {
                            "name": name,
                            "image": config.kube_apiserver_image,
                            "command": list(command),
                            "ports": [{"name": "https", "containerPort": 443}],
                            "volumeMounts": mounts,
                        }
                    ],
                    "volumes": volumes,
                },
            },
        },
    )

    template = spec["template"]
    stamped = template["metadata"]["annotations"]
    for key in [k for k in stamped if k.startswith(CHECKSUM_PREFIX) and k not in annotations]:
        del stamped[key]
    _set_optional(template["spec"], "priorityClassName", priority_class_name)
