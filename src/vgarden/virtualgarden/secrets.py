"""
Secrets consumed by the virtual garden kube-apiserver.

The basic auth password, the static admin token, the service account signing
key and the encryption key are generated once and then carried forward on every reconciliation. Regenerating them would lock out
existing clients and make already encrypted data unreadable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Dict, List

import yaml

from vgarden.flow import TaskContext
from vgarden.reconcile.checksums import secret_checksum_key
from vgarden.reconcile.reconciler import generate_once, set_secret_value
from vgarden.virtualgarden.manifests import merge_labels

if TYPE_CHECKING:
    from vgarden.virtualgarden.operation import Operation

ADMISSION_VALIDATING_KEY = "validating-webhook"
ADMISSION_MUTATING_KEY = "mutating-webhook"
AUDIT_WEBHOOK_CONFIG_KEY = "audit-webhook-config.yaml"
BASIC_AUTH_KEY = "basic_auth.csv"
ENCRYPTION_CONFIG_KEY = "encryption-config.yaml"
STATIC_TOKEN_KEY = "static_tokens.csv"
SERVICE_ACCOUNT_KEY = "service_account.key"

BASIC_AUTH_PASSWORD_LENGTH = 32
ENCRYPTION_KEY_LENGTH = 32
STATIC_TOKEN_LENGTH = 32

VALIDATING_WEBHOOK_KUBECONFIG = b"""apiVersion: v1
kind: Config
users:
- name: '*'
  user:
    tokenFile: /var/run/secrets/admission-tokens/validating-webhook-token
"""

MUTATING_WEBHOOK_KUBECONFIG = b"""apiVersion: v1
kind: Config
users:
- name: '*'
  user:
    tokenFile: /var/run/secrets/admission-tokens/mutating-webhook-token
"""


def encryption_configuration(secret: str) -> bytes:
    """EncryptionConfiguration encrypting secrets with the given AES-CBC key."""
    config = {
        "apiVersion": "apiserver.config.k8s.io/v1",
        "kind": "EncryptionConfiguration",
        "resources": [
            {
                "resources": ["secrets"],
                "providers": [
                    {"aescbc": {"keys": [{"name": "key", "secret": secret}]}},
                    {"identity": {}},
                ],
            }
        ],
    }
    return yaml.safe_dump(config, sort_keys=False).encode("utf-8")


def deployed_secret_names(op: "Operation") -> List[str]:
    """Secrets the current imports ask for, in deployment order."""
    kube_apiserver = op.imports.virtual_garden.kube_api_server
    controlplane = kube_apiserver.gardener_controlplane
    names = []
    if controlplane.validating_webhook_enabled or controlplane.mutating_webhook_enabled:
        names.append(op.config.admission_kubeconfig_secret)
    if kube_apiserver.audit_webhook_config.config:
        names.append(op.config.audit_webhook_config_secret)
    names.append(op.config.basic_auth_secret)
    names.append(op.config.encryption_config_secret)
    names.append(op.config.static_token_secret)
    names.append(op.config.service_account_key_secret)
    return names


async def reconcile_secret(
    op: "Operation",
    name: str,
    fill: Callable[[Dict[str, Any]], None],
) -> None:
    """Reconcile an Opaque kube-apiserver secret and record its checksum."""
    final: List[Dict[str, Any]] = []

    def mutate(obj: Dict[str, Any]) -> None:
        merge_labels(obj, op.config.labels("kube-apiserver"))
        obj["type"] = "Opaque"
        fill(obj)
        final.append(obj)

    await op.reconciler.reconcile(op.identity("Secret", name), mutate)
    op.checksums.record_object(secret_checksum_key(name), final[-1])


def _fill_admission_kubeconfig(obj: Dict[str, Any]) -> None:
    set_secret_value(obj, ADMISSION_VALIDATING_KEY, VALIDATING_WEBHOOK_KUBECONFIG)
    set_secret_value(obj, ADMISSION_MUTATING_KEY, MUTATING_WEBHOOK_KUBECONFIG)


def _basic_auth_filler(op: "Operation") -> Callable[[Dict[str, Any]], None]:
    def generate() -> bytes:
        password = op.generator.random_string(BASIC_AUTH_PASSWORD_LENGTH)
        return f"{password},admin,admin,system:masters".encode("utf-8")

    return lambda obj: generate_once(obj, BASIC_AUTH_KEY, generate)


def _static_token_filler(op: "Operation") -> Callable[[Dict[str, Any]], None]:
    def generate() -> bytes:
        token = op.generator.random_string(STATIC_TOKEN_LENGTH)
        return f"{token},admin,admin,system:masters".encode("utf-8")

    return lambda obj: generate_once(obj, STATIC_TOKEN_KEY, generate)


def _service_account_key_filler(op: "Operation") -> Callable[[Dict[str, Any]], None]:
    return lambda obj: generate_once(
        obj, SERVICE_ACCOUNT_KEY, op.generator.rsa_private_key_pem
    )


def _encryption_config_filler(op: "Operation") -> Callable[[Dict[str, Any]], None]:
    def generate() -> bytes:
        return encryption_configuration(op.generator.random_base64(ENCRYPTION_KEY_LENGTH))

    return lambda obj: generate_once(obj, ENCRYPTION_CONFIG_KEY, generate)


async def deploy_kube_apiserver_secrets(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    audit_config = op.imports.virtual_garden.kube_api_server.audit_webhook_config.config

    fillers = {
        op.config.admission_kubeconfig_secret: _fill_admission_kubeconfig,
        op.config.audit_webhook_config_secret: lambda obj: set_secret_value(
            obj, AUDIT_WEBHOOK_CONFIG_KEY, audit_config.encode("utf-8")
        ),
        op.config.basic_auth_secret: _basic_auth_filler(op),
        op.config.encryption_config_secret: _encryption_config_filler(op),
        op.config.static_token_secret: _static_token_filler(op),
        op.config.service_account_key_secret: _service_account_key_filler(op),
    }
    for name in deployed_secret_names(op):
        ctx.raise_if_cancelled()
        await reconcile_secret(op, name, fillers[name])


async def delete_kube_apiserver_secrets(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    await op.reconciler.delete_all(
        op.identity("Secret", name) for name in op.config.kube_apiserver_secrets
    )
