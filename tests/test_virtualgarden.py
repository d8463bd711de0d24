"""Tests for the virtual garden reconcile and delete operations."""

import asyncio
import copy

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from structlog.testing import capture_logs
from vgarden.config.imports import Imports
from vgarden.core.errors import ConfigurationError, StoreError, TaskFailedError
from vgarden.flow import ImmediateProgressReporter, TaskStatus
from vgarden.reconcile import (
    MemoryResourceStore,
    ResourceIdentity,
    get_secret_value,
    secret_checksum_key,
)
from vgarden.virtualgarden import (
    DELETE_GRAPH_NAME,
    RECONCILE_GRAPH_NAME,
    ManifestConfig,
    new_infrastructure_provider,
)
from vgarden.virtualgarden.apiserver import kube_apiserver_command, secret_mount_paths
from vgarden.virtualgarden.certificates import (
    CA_CERT_KEY,
    TLS_CERT_KEY,
    CertificateRequest,
    certificate_satisfies,
    generate_ca,
    sign_certificate,
)
from vgarden.virtualgarden.manifests import merge_desired
from vgarden.virtualgarden.secrets import BASIC_AUTH_KEY, STATIC_TOKEN_KEY

CONFIG = ManifestConfig()


def secret(name):
    return ResourceIdentity("Secret", name, "garden")


DEPLOYMENT = ResourceIdentity("Deployment", CONFIG.kube_apiserver_name, "garden")
STORAGE_CLASS = ResourceIdentity("StorageClass", CONFIG.storage_class_name)
NAMESPACE = ResourceIdentity("Namespace", "garden")
ALL_SECRETS = CONFIG.kube_apiserver_secrets + CONFIG.certificate_secrets


def imports_with(imports_data, mutate):
    data = copy.deepcopy(imports_data)
    mutate(data)
    return Imports.model_validate(data)


async def pod_annotations(store):
    deployment = await store.get(DEPLOYMENT)
    return deployment["spec"]["template"]["metadata"]["annotations"]


class TestGraphs:
    """Tests for the shape of the reconcile and delete graphs."""

    def test_reconcile_levels(self, operation_factory):
        plan = operation_factory().build_reconcile_graph().compile()

        assert plan.name == RECONCILE_GRAPH_NAME
        assert plan.levels == (
            ("deploy-namespace",),
            (
                "deploy-storage-class",
                "deploy-backup-bucket",
                "deploy-kube-apiserver-service",
                "deploy-kube-apiserver-secrets",
            ),
            ("deploy-kube-apiserver-certificates", "deploy-etcd"),
            ("deploy-kube-apiserver",),
        )

    def test_delete_levels(self, operation_factory):
        plan = operation_factory().build_delete_graph().compile()

        assert plan.name == DELETE_GRAPH_NAME
        assert plan.levels == (
            ("delete-kube-apiserver", "delete-kube-apiserver-service"),
            (
                "delete-kube-apiserver-secrets",
                "delete-kube-apiserver-certificates",
                "delete-etcd",
            ),
            ("delete-backup-bucket", "delete-storage-class"),
            ("delete-namespace",),
        )


class TestReconcile:
    """Tests for Operation.reconcile()."""

    @pytest.mark.asyncio
    async def test_full_reconcile(self, operation_factory, store, backup_provider):
        progress = []
        op = operation_factory(progress_reporter=ImmediateProgressReporter(progress.append))

        result = await op.reconcile()

        assert result.success
        assert result.skipped == []
        assert NAMESPACE in store
        assert STORAGE_CLASS in store
        assert DEPLOYMENT in store
        for name in ALL_SECRETS:
            assert secret(name) in store
        for role in ("main", "events"):
            assert ResourceIdentity("StatefulSet", CONFIG.etcd_name(role), "garden") in store
            assert ResourceIdentity("Service", CONFIG.etcd_name(role), "garden") in store
        assert secret(CONFIG.etcd_backup_secret) in store
        assert backup_provider.buckets == {"vg-backup"}
        assert [s.completed for s in progress] == list(range(1, 9))

    @pytest.mark.asyncio
    async def test_storage_class_uses_provider_configuration(self, operation_factory, store):
        await operation_factory().reconcile()

        storage_class = await store.get(STORAGE_CLASS)
        assert storage_class["provisioner"] == "kubernetes.io/aws-ebs"
        assert storage_class["parameters"] == {"type": "gp2", "encrypted": "true"}

    @pytest.mark.asyncio
    async def test_deployment_spec(self, operation_factory, store):
        await operation_factory().reconcile()

        deployment = await store.get(DEPLOYMENT)
        pod_spec = deployment["spec"]["template"]["spec"]
        command = pod_spec["containers"][0]["command"]

        assert deployment["spec"]["replicas"] == 2
        assert pod_spec["priorityClassName"] == "garden-critical"
        assert "--event-ttl=24h" in command
        assert any(flag.startswith("--audit-webhook-config-file=") for flag in command)
        assert len(pod_spec["volumes"]) == len(ALL_SECRETS)
        assert "--token-auth-file=/srv/kubernetes/token/static_tokens.csv" in command
        assert "--tls-cert-file=/srv/kubernetes/apiserver/tls.crt" in command
        assert "--service-account-key-file=/srv/kubernetes/service-account-key/service_account.key" in command

    @pytest.mark.asyncio
    async def test_secret_material_is_stable(self, operation_factory, store, generator):
        op = operation_factory()
        await op.reconcile()
        material = {name: (await store.get(secret(name)))["data"] for name in ALL_SECRETS}
        calls = generator.calls
        annotations = await pod_annotations(store)
        version = (await store.get(DEPLOYMENT))["metadata"]["resourceVersion"]

        result = await op.reconcile()

        assert result.success
        # basic auth, encryption key, static token, service account key
        assert calls == 4
        assert generator.calls == calls
        for name in ALL_SECRETS:
            assert (await store.get(secret(name)))["data"] == material[name], name
        assert await pod_annotations(store) == annotations
        assert (await store.get(DEPLOYMENT))["metadata"]["resourceVersion"] == version

    @pytest.mark.asyncio
    async def test_basic_auth_format(self, operation_factory, store):
        await operation_factory().reconcile()

        value = get_secret_value(await store.get(secret(CONFIG.basic_auth_secret)), BASIC_AUTH_KEY)
        password, user, uid, group = value.decode().split(",")

        assert len(password) == 32
        assert (user, uid, group) == ("admin", "admin", "system:masters")

    @pytest.mark.asyncio
    async def test_static_token_format(self, operation_factory, store):
        await operation_factory().reconcile()

        value = get_secret_value(await store.get(secret(CONFIG.static_token_secret)), STATIC_TOKEN_KEY)
        token, user, uid, group = value.decode().split(",")

        assert len(token) == 32
        assert (user, uid, group) == ("admin", "admin", "system:masters")

    @pytest.mark.asyncio
    async def test_checksum_annotations(self, operation_factory, store):
        op = operation_factory()
        await op.reconcile()

        annotations = await pod_annotations(store)

        assert set(annotations) == {secret_checksum_key(name) for name in ALL_SECRETS}
        assert annotations == op.checksums.stamp_annotations(annotations)

    @pytest.mark.asyncio
    async def test_changed_audit_config_rolls_pods(
        self, operation_factory, store, imports_data
    ):
        await operation_factory().reconcile()
        before = await pod_annotations(store)

        def change(data):
            data["virtualGarden"]["kubeAPIServer"]["auditWebhookConfig"]["config"] = "changed"

        await operation_factory(imports=imports_with(imports_data, change)).reconcile()
        after = await pod_annotations(store)

        audit_key = secret_checksum_key(CONFIG.audit_webhook_config_secret)
        basic_auth_key = secret_checksum_key(CONFIG.basic_auth_secret)
        assert after[audit_key] != before[audit_key]
        assert after[basic_auth_key] == before[basic_auth_key]

    @pytest.mark.asyncio
    async def test_optional_secrets_not_deployed(self, operation_factory, store, imports_data):
        def disable(data):
            api_server = data["virtualGarden"]["kubeAPIServer"]
            api_server["gardenerControlplane"]["validatingWebhookEnabled"] = False
            api_server["auditWebhookConfig"]["config"] = ""

        op = operation_factory(imports=imports_with(imports_data, disable))
        await op.reconcile()

        assert secret(CONFIG.admission_kubeconfig_secret) not in store
        assert secret(CONFIG.audit_webhook_config_secret) not in store
        optional = {CONFIG.admission_kubeconfig_secret, CONFIG.audit_webhook_config_secret}
        assert set(await pod_annotations(store)) == {
            secret_checksum_key(name) for name in ALL_SECRETS if name not in optional
        }
        command = kube_apiserver_command(op, secret_mount_paths(op))
        assert not any(flag.startswith("--audit-webhook-config-file=") for flag in command)

    @pytest.mark.asyncio
    async def test_skips_without_backup_and_with_storage_class_override(
        self, operation_factory, store, imports_data, backup_provider
    ):
        def override(data):
            data["virtualGarden"]["etcd"] = {"storageClassName": "premium"}

        result = await operation_factory(imports=imports_with(imports_data, override)).reconcile()

        assert result.success
        assert sorted(result.skipped) == ["deploy-backup-bucket", "deploy-storage-class"]
        assert STORAGE_CLASS not in store
        assert backup_provider.buckets == set()
        statefulset = await store.get(
            ResourceIdentity("StatefulSet", CONFIG.etcd_name("main"), "garden")
        )
        claim = statefulset["spec"]["volumeClaimTemplates"][0]
        assert claim["spec"]["storageClassName"] == "premium"

    @pytest.mark.asyncio
    async def test_namespace_not_handled(self, operation_factory, store):
        result = await operation_factory(handle_namespace=False).reconcile()

        assert result.success
        assert result.status_of("deploy-namespace") is TaskStatus.SKIPPED
        assert NAMESPACE not in store

    @pytest.mark.asyncio
    async def test_store_failure_stops_later_levels(self, operation_factory):
        class FailingStore(MemoryResourceStore):
            async def create(self, identity, obj):
                if identity.kind == "StatefulSet":
                    raise StoreError("quota exceeded")
                return await super().create(identity, obj)

        failing = FailingStore()
        result = await operation_factory(store=failing).reconcile()

        assert result.status_of("deploy-kube-apiserver-secrets") is TaskStatus.SUCCEEDED
        assert result.status_of("deploy-etcd") is TaskStatus.FAILED
        assert result.status_of("deploy-kube-apiserver") is TaskStatus.NOT_RUN
        assert DEPLOYMENT not in failing
        with pytest.raises(TaskFailedError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.task == "deploy-etcd"

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, operation_factory, store):
        event = asyncio.Event()
        event.set()

        result = await operation_factory().reconcile(event)

        assert result.cancelled
        assert len(store) == 0


class TestDelete:
    """Tests for Operation.delete()."""

    @pytest.mark.asyncio
    async def test_delete_after_reconcile(self, operation_factory, store, backup_provider):
        op = operation_factory()
        await op.reconcile()

        result = await op.delete()

        assert result.success
        assert len(store) == 0
        assert backup_provider.deleted == ["vg-backup"]

    @pytest.mark.asyncio
    async def test_delete_keeps_namespace_when_not_handled(
        self, operation_factory, store, imports_data
    ):
        await operation_factory().reconcile()

        def keep(data):
            data["virtualGarden"]["deleteNamespace"] = False

        op = operation_factory(handle_namespace=False, imports=imports_with(imports_data, keep))
        result = await op.delete()

        assert result.status_of("delete-namespace") is TaskStatus.SKIPPED
        assert store.objects() == [NAMESPACE]

    @pytest.mark.asyncio
    async def test_delete_namespace_import_deletes_namespace(self, operation_factory, store):
        await operation_factory().reconcile()

        result = await operation_factory(handle_namespace=False).delete()

        assert result.status_of("delete-namespace") is TaskStatus.SUCCEEDED
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_delete_with_nothing_deployed(self, operation_factory, store):
        result = await operation_factory().delete()

        assert result.success
        assert len(store) == 0


class TestInfrastructureProviders:
    @pytest.mark.parametrize(
        "name,provisioner",
        [
            ("aws", "kubernetes.io/aws-ebs"),
            ("gcp", "kubernetes.io/gce-pd"),
            ("alicloud", "diskplugin.csi.alibabacloud.com"),
            ("GCP", "kubernetes.io/gce-pd"),
        ],
    )
    def test_storage_class_provisioner(self, name, provisioner):
        provider = new_infrastructure_provider(name)
        assert provider.compute_storage_class_configuration()[0] == provisioner

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError) as exc_info:
            new_infrastructure_provider("openstack")

        assert exc_info.value.details["supported"] == ["alicloud", "aws", "gcp"]

    def test_unknown_provider_in_imports(self, operation_factory, imports_data):
        def unknown(data):
            data["hostingCluster"]["infrastructureProvider"] = "openstack"

        with pytest.raises(ConfigurationError):
            operation_factory(imports=imports_with(imports_data, unknown))


async def load_certificate(store, name, key):
    return x509.load_pem_x509_certificate(get_secret_value(await store.get(secret(name)), key))


def alt_dns_names(cert):
    alt_names = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    return alt_names.get_values_for_type(x509.DNSName)


def key_usages(cert):
    return list(cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value)


class TestCertificates:
    """Tests for the kube-apiserver and kube-aggregator certificates."""

    @pytest.mark.asyncio
    async def test_server_certificate_issued_by_ca(self, operation_factory, store):
        await operation_factory().reconcile()

        ca = await load_certificate(store, CONFIG.kube_apiserver_ca_secret, CA_CERT_KEY)
        server = await load_certificate(store, CONFIG.kube_apiserver_server_secret, TLS_CERT_KEY)

        server.verify_directly_issued_by(ca)
        dns_names = alt_dns_names(server)
        assert "api.virtual.example.com" in dns_names
        assert "gardener.virtual.example.com" in dns_names
        assert f"{CONFIG.kube_apiserver_name}.garden.svc" in dns_names
        assert "kubernetes.default.svc.cluster.local" in dns_names
        assert key_usages(server) == [ExtendedKeyUsageOID.SERVER_AUTH]
        bundled = get_secret_value(
            await store.get(secret(CONFIG.kube_apiserver_server_secret)), CA_CERT_KEY
        )
        assert x509.load_pem_x509_certificate(bundled) == ca

    @pytest.mark.asyncio
    async def test_aggregator_client_certificate(self, operation_factory, store):
        await operation_factory().reconcile()

        ca = await load_certificate(store, CONFIG.kube_aggregator_ca_secret, CA_CERT_KEY)
        client = await load_certificate(store, CONFIG.kube_aggregator_client_secret, TLS_CERT_KEY)

        client.verify_directly_issued_by(ca)
        common_name = client.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
        assert common_name == "system:kube-aggregator"
        assert key_usages(client) == [ExtendedKeyUsageOID.CLIENT_AUTH]

    @pytest.mark.asyncio
    async def test_load_balancer_addresses_in_server_certificate(self, operation_factory, store):
        service = ResourceIdentity("Service", CONFIG.kube_apiserver_name, "garden")
        obj = service.empty_object()
        obj["status"] = {
            "loadBalancer": {"ingress": [{"ip": "203.0.113.10"}, {"hostname": "lb.example.com"}]}
        }
        await store.create(service, obj)

        await operation_factory().reconcile()

        server = await load_certificate(store, CONFIG.kube_apiserver_server_secret, TLS_CERT_KEY)
        alt_names = server.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        ips = [str(ip) for ip in alt_names.get_values_for_type(x509.IPAddress)]
        assert ips == ["203.0.113.10"]
        assert "lb.example.com" in alt_dns_names(server)

    @pytest.mark.asyncio
    async def test_access_domain_change_reissues_server_certificate(
        self, operation_factory, store, imports_data
    ):
        await operation_factory().reconcile()
        before = {name: (await store.get(secret(name)))["data"] for name in CONFIG.certificate_secrets}
        annotations = await pod_annotations(store)

        def change(data):
            data["virtualGarden"]["kubeAPIServer"]["dnsAccessDomain"] = "other.example.com"

        await operation_factory(imports=imports_with(imports_data, change)).reconcile()
        after = {name: (await store.get(secret(name)))["data"] for name in CONFIG.certificate_secrets}

        server_secret = CONFIG.kube_apiserver_server_secret
        assert after[server_secret] != before[server_secret]
        for name in CONFIG.certificate_secrets:
            if name != server_secret:
                assert after[name] == before[name], name
        server = await load_certificate(store, server_secret, TLS_CERT_KEY)
        assert "api.other.example.com" in alt_dns_names(server)
        assert "api.virtual.example.com" not in alt_dns_names(server)
        checksum = secret_checksum_key(server_secret)
        assert (await pod_annotations(store))[checksum] != annotations[checksum]

    def test_certificate_from_other_ca_not_accepted(self):
        request = CertificateRequest(common_name="server", dns_names=("a.example.com",), server=True)
        ca_cert, ca_key = generate_ca("ca-one")
        other_ca_cert, _ = generate_ca("ca-two")
        cert, _ = sign_certificate(request, ca_cert, ca_key)

        assert certificate_satisfies(cert, ca_cert, request)
        assert not certificate_satisfies(cert, other_ca_cert, request)
        wider = CertificateRequest(
            common_name="server", dns_names=("a.example.com", "b.example.com"), server=True
        )
        assert not certificate_satisfies(cert, ca_cert, wider)
        assert not certificate_satisfies(b"not a certificate", ca_cert, request)


class TestServerDefaults:
    """Reconciling objects the API server has filled in with defaults."""

    def test_merge_desired(self):
        target = {
            "replicas": 1,
            "strategy": {"type": "RollingUpdate"},
            "ports": [{"port": 443, "nodePort": 30443}],
            "args": ["--a", "--b"],
        }

        merge_desired(target, {"replicas": 3, "ports": [{"port": 8443}], "args": ["--c"]})

        assert target == {
            "replicas": 3,
            "strategy": {"type": "RollingUpdate"},
            "ports": [{"port": 8443, "nodePort": 30443}],
            "args": ["--c"],
        }

    @pytest.mark.asyncio
    async def test_defaulted_fields_are_kept(self, operation_factory, store):
        op = operation_factory()
        await op.reconcile()

        service_id = ResourceIdentity("Service", CONFIG.kube_apiserver_name, "garden")
        statefulset_id = ResourceIdentity("StatefulSet", CONFIG.etcd_name("main"), "garden")

        deployment = await store.get(DEPLOYMENT)
        deployment["spec"]["progressDeadlineSeconds"] = 600
        deployment["spec"]["template"]["spec"]["dnsPolicy"] = "ClusterFirst"
        deployment["spec"]["template"]["spec"]["containers"][0]["imagePullPolicy"] = "IfNotPresent"
        await store.update(DEPLOYMENT, deployment)

        service = await store.get(service_id)
        service["spec"]["clusterIP"] = "10.0.0.12"
        service["spec"]["ports"][0]["nodePort"] = 30443
        await store.update(service_id, service)

        statefulset = await store.get(statefulset_id)
        statefulset["spec"]["podManagementPolicy"] = "OrderedReady"
        statefulset["spec"]["volumeClaimTemplates"][0]["spec"]["volumeMode"] = "Filesystem"
        await store.update(statefulset_id, statefulset)

        defaulted = {
            identity: await store.get(identity)
            for identity in (DEPLOYMENT, service_id, statefulset_id)
        }

        result = await op.reconcile()

        assert result.success
        for identity, obj in defaulted.items():
            assert await store.get(identity) == obj, str(identity)

    @pytest.mark.asyncio
    async def test_dropped_settings_are_removed(self, operation_factory, store, imports_data):
        await operation_factory().reconcile()

        def disable(data):
            data["virtualGarden"]["kubeAPIServer"]["auditWebhookConfig"]["config"] = ""
            del data["virtualGarden"]["priorityClassName"]

        await operation_factory(imports=imports_with(imports_data, disable)).reconcile()

        deployment = await store.get(DEPLOYMENT)
        pod_spec = deployment["spec"]["template"]["spec"]
        annotations = deployment["spec"]["template"]["metadata"]["annotations"]
        assert secret_checksum_key(CONFIG.audit_webhook_config_secret) not in annotations
        assert "priorityClassName" not in pod_spec
        assert len(pod_spec["volumes"]) == len(ALL_SECRETS) - 1


class TestOperationLogging:
    @pytest.mark.asyncio
    async def test_events_carry_namespace(self, operation_factory):
        with capture_logs() as logs:
            await operation_factory().reconcile()

        reconciled = [entry for entry in logs if entry["event"] == "resource_reconciled"]
        assert reconciled
        assert {entry["namespace"] for entry in reconciled} == {"garden"}
