"""Service and deployment of the virtual garden kube-apiserver."""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List

from vgarden.flow import TaskContext
from vgarden.reconcile.checksums import secret_checksum_key
from vgarden.virtualgarden.certificates import (
    CA_CERT_KEY,
    KUBE_AGGREGATOR_CLIENT_NAME,
    TLS_CERT_KEY,
    TLS_KEY_KEY,
)
from vgarden.virtualgarden.manifests import (
    ETCD_CLIENT_PORT,
    apply_kube_apiserver_deployment,
    apply_service,
)
from vgarden.virtualgarden.secrets import (
    AUDIT_WEBHOOK_CONFIG_KEY,
    BASIC_AUTH_KEY,
    ENCRYPTION_CONFIG_KEY,
    SERVICE_ACCOUNT_KEY,
    STATIC_TOKEN_KEY,
    deployed_secret_names,
)

if TYPE_CHECKING:
    from vgarden.virtualgarden.operation import Operation

KUBE_APISERVER_PORT = 443
SERVICE_ACCOUNT_ISSUER = "https://kubernetes.default.svc.cluster.local"


def secret_mount_paths(op: "Operation") -> Dict[str, str]:
    config = op.config
    mount_paths = {
        config.admission_kubeconfig_secret: "/var/run/secrets/admission-kubeconfig",
        config.audit_webhook_config_secret: "/etc/kube-apiserver/auditwebhook",
        config.basic_auth_secret: "/srv/kubernetes/auth",
        config.encryption_config_secret: "/etc/kubernetes/etcd-encryption-secret",
        config.static_token_secret: "/srv/kubernetes/token",
        config.service_account_key_secret: "/srv/kubernetes/service-account-key",
        config.kube_apiserver_ca_secret: "/srv/kubernetes/ca",
        config.kube_apiserver_server_secret: "/srv/kubernetes/apiserver",
        config.kube_aggregator_ca_secret: "/srv/kubernetes/ca-front-proxy",
        config.kube_aggregator_client_secret: "/srv/kubernetes/aggregator",
    }
    names = deployed_secret_names(op) + config.certificate_secrets
    return {name: mount_paths[name] for name in names}


def kube_apiserver_command(op: "Operation", mount_paths: Dict[str, str]) -> List[str]:
    kube_apiserver = op.imports.virtual_garden.kube_api_server
    config = op.config
    server = mount_paths[config.kube_apiserver_server_secret]
    aggregator = mount_paths[config.kube_aggregator_client_secret]
    service_account_key = (
        f"{mount_paths[config.service_account_key_secret]}/{SERVICE_ACCOUNT_KEY}"
    )
    command = [
        "/usr/local/bin/kube-apiserver",
        f"--etcd-servers=http://{config.etcd_name('main')}:{ETCD_CLIENT_PORT}",
        f"--etcd-servers-overrides=/events#http://{config.etcd_name('events')}:{ETCD_CLIENT_PORT}",
        f"--secure-port={KUBE_APISERVER_PORT}",
        f"--basic-auth-file={mount_paths[config.basic_auth_secret]}/{BASIC_AUTH_KEY}",
        "--encryption-provider-config="
        f"{mount_paths[config.encryption_config_secret]}/{ENCRYPTION_CONFIG_KEY}",
        f"--token-auth-file={mount_paths[config.static_token_secret]}/{STATIC_TOKEN_KEY}",
        f"--client-ca-file={mount_paths[config.kube_apiserver_ca_secret]}/{CA_CERT_KEY}",
        f"--tls-cert-file={server}/{TLS_CERT_KEY}",
        f"--tls-private-key-file={server}/{TLS_KEY_KEY}",
        "--requestheader-client-ca-file="
        f"{mount_paths[config.kube_aggregator_ca_secret]}/{CA_CERT_KEY}",
        f"--requestheader-allowed-names={KUBE_AGGREGATOR_CLIENT_NAME}",
        f"--proxy-client-cert-file={aggregator}/{TLS_CERT_KEY}",
        f"--proxy-client-key-file={aggregator}/{TLS_KEY_KEY}",
        f"--service-account-key-file={service_account_key}",
        f"--service-account-signing-key-file={service_account_key}",
        f"--service-account-issuer={SERVICE_ACCOUNT_ISSUER}",
    ]
    audit_path = mount_paths.get(op.config.audit_webhook_config_secret)
    if audit_path:
        command.append(f"--audit-webhook-config-file={audit_path}/{AUDIT_WEBHOOK_CONFIG_KEY}")
    if kube_apiserver.event_ttl:
        command.append(f"--event-ttl={kube_apiserver.event_ttl}")
    if kube_apiserver.oidc_issuer_url:
        command.append(f"--oidc-issuer-url={kube_apiserver.oidc_issuer_url}")
    return command


def pod_annotations(op: "Operation") -> Dict[str, str]:
    """Checksums of every kube-apiserver secret deployed during this run."""
    return op.checksums.stamp_annotations(
        secret_checksum_key(name)
        for name in op.config.kube_apiserver_secrets + op.config.certificate_secrets
    )


async def deploy_kube_apiserver_service(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    await op.reconciler.reconcile(
        op.identity("Service", op.config.kube_apiserver_name),
        lambda obj: apply_service(
            obj, op.config, "kube-apiserver", KUBE_APISERVER_PORT, service_type="LoadBalancer"
        ),
    )


async def deploy_kube_apiserver(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    kube_apiserver = op.imports.virtual_garden.kube_api_server
    mount_paths = secret_mount_paths(op)
    command = kube_apiserver_command(op, mount_paths)
    annotations = pod_annotations(op)

    await op.reconciler.reconcile(
        op.identity("Deployment", op.config.kube_apiserver_name),
        lambda obj: apply_kube_apiserver_deployment(
            obj,
            op.config,
            replicas=kube_apiserver.replicas,
            command=command,
            secret_volumes=mount_paths,
            annotations=annotations,
            priority_class_name=op.imports.virtual_garden.priority_class_name,
        ),
    )


async def delete_kube_apiserver(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    await op.reconciler.delete(op.identity("Deployment", op.config.kube_apiserver_name))


async def delete_kube_apiserver_service(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    await op.reconciler.delete(op.identity("Service", op.config.kube_apiserver_name))
