"""
TLS material of the virtual garden kube-apiserver.

Two certificate authorities are created once: one for the kube-apiserver and
one for the front proxy (the kube-aggregator). The serving certificate and
the aggregator client certificate are signed by them and carried forward.
The serving certificate is only reissued when its CA changed or when it no
longer covers the names the apiserver is reachable under.
"""

from __future__ import annotations

import datetime
import ipaddress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from vgarden.flow import TaskContext
from vgarden.reconcile.reconciler import get_secret_value, set_secret_value
from vgarden.virtualgarden.secrets import reconcile_secret

if TYPE_CHECKING:
    from vgarden.virtualgarden.operation import Operation

CA_CERT_KEY = "ca.crt"
CA_KEY_KEY = "ca.key"
TLS_CERT_KEY = "tls.crt"
TLS_KEY_KEY = "tls.key"

CA_VALIDITY = datetime.timedelta(days=3650)
CERT_VALIDITY = datetime.timedelta(days=730)

KUBE_APISERVER_CA_NAME = "virtual-garden:ca:kube-apiserver"
KUBE_APISERVER_SERVER_NAME = "virtual-garden:server:kube-apiserver"
KUBE_AGGREGATOR_CA_NAME = "virtual-garden:ca:kube-aggregator"
KUBE_AGGREGATOR_CLIENT_NAME = "system:kube-aggregator"

IN_CLUSTER_DNS_NAMES = (
    "kubernetes",
    "kubernetes.default",
    "kubernetes.default.svc",
    "kubernetes.default.svc.cluster.local",
)

PemPair = Tuple[bytes, bytes]


@dataclass(frozen=True)
class CertificateRequest:
    common_name: str
    organization: Optional[str] = None
    dns_names: Tuple[str, ...] = ()
    ip_addresses: Tuple[str, ...] = ()
    server: bool = False
    client: bool = False


def _private_key_pem(key: Any) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _name(common_name: str, organization: Optional[str] = None) -> x509.Name:
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if organization:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    return x509.Name(attributes)


def _key_usage(ca: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=ca,
        crl_sign=ca,
        encipher_only=False,
        decipher_only=False,
    )


def generate_ca(common_name: str) -> PemPair:
    """Self-signed CA certificate and its key."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = _name(common_name)
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + CA_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(_key_usage(ca=True), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM), _private_key_pem(key)


def sign_certificate(request: CertificateRequest, ca_cert_pem: bytes, ca_key_pem: bytes) -> PemPair:
    """Certificate for ``request`` issued by the given CA, and its key."""
    ca_cert = x509.load_pem_x509_certificate(ca_cert_pem)
    ca_key = serialization.load_pem_private_key(ca_key_pem, password=None)
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.datetime.now(datetime.timezone.utc)

    usages = []
    if request.server:
        usages.append(ExtendedKeyUsageOID.SERVER_AUTH)
    if request.client:
        usages.append(ExtendedKeyUsageOID.CLIENT_AUTH)

    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(request.common_name, request.organization))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + CERT_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(_key_usage(ca=False), critical=True)
    )
    if usages:
        builder = builder.add_extension(x509.ExtendedKeyUsage(usages), critical=False)
    alt_names: List[x509.GeneralName] = [x509.DNSName(name) for name in request.dns_names]
    alt_names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in request.ip_addresses]
    if alt_names:
        builder = builder.add_extension(x509.SubjectAlternativeName(alt_names), critical=False)

    cert = builder.sign(ca_key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.PEM), _private_key_pem(key)


def certificate_satisfies(cert_pem: bytes, ca_cert_pem: bytes, request: CertificateRequest) -> bool:
    """Whether ``cert_pem`` was issued by the CA and covers every requested name."""
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
        ca_cert = x509.load_pem_x509_certificate(ca_cert_pem)
        cert.verify_directly_issued_by(ca_cert)
    except (ValueError, TypeError, InvalidSignature):
        return False

    try:
        alt_names = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return not request.dns_names and not request.ip_addresses
    dns_names = set(alt_names.get_values_for_type(x509.DNSName))
    ip_addresses = {str(ip) for ip in alt_names.get_values_for_type(x509.IPAddress)}
    wanted_ips = {str(ipaddress.ip_address(ip)) for ip in request.ip_addresses}
    return set(request.dns_names) <= dns_names and wanted_ips <= ip_addresses


def generate_pair_once(
    obj: Dict[str, Any],
    cert_key: str,
    key_key: str,
    generate: Callable[[], PemPair],
    keep: Callable[[bytes], bool] = lambda cert: True,
) -> PemPair:
    """Stored certificate and key, generated when absent or when ``keep`` rejects them."""
    cert = get_secret_value(obj, cert_key)
    key = get_secret_value(obj, key_key)
    if cert is not None and key is not None and keep(cert):
        return cert, key
    cert, key = generate()
    set_secret_value(obj, cert_key, cert)
    set_secret_value(obj, key_key, key)
    return cert, key


def _load_balancer_addresses(service: Optional[Dict[str, Any]]) -> Tuple[List[str], List[str]]:
    ingress = (((service or {}).get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
    hostnames = [entry["hostname"] for entry in ingress if entry.get("hostname")]
    ips = [entry["ip"] for entry in ingress if entry.get("ip")]
    return hostnames, ips


def server_certificate_request(
    op: "Operation", service: Optional[Dict[str, Any]] = None
) -> CertificateRequest:
    """Names the kube-apiserver serving certificate has to cover."""
    name = op.config.kube_apiserver_name
    dns_names: List[str] = [
        name,
        f"{name}.{op.namespace}",
        f"{name}.{op.namespace}.svc",
        f"{name}.{op.namespace}.svc.cluster.local",
    ]
    dns_names.extend(IN_CLUSTER_DNS_NAMES)
    access_domain = op.imports.virtual_garden.kube_api_server.dns_access_domain
    if access_domain:
        dns_names.extend([f"api.{access_domain}", f"gardener.{access_domain}"])
    hostnames, ips = _load_balancer_addresses(service)
    dns_names.extend(hostnames)
    return CertificateRequest(
        common_name=KUBE_APISERVER_SERVER_NAME,
        dns_names=tuple(dict.fromkeys(dns_names)),
        ip_addresses=tuple(ips),
        server=True,
    )


AGGREGATOR_CLIENT_REQUEST = CertificateRequest(
    common_name=KUBE_AGGREGATOR_CLIENT_NAME, client=True
)


async def _reconcile_ca(op: "Operation", name: str, common_name: str) -> PemPair:
    issued: List[PemPair] = []

    def fill(obj: Dict[str, Any]) -> None:
        issued.append(
            generate_pair_once(obj, CA_CERT_KEY, CA_KEY_KEY, lambda: generate_ca(common_name))
        )

    await reconcile_secret(op, name, fill)
    return issued[-1]


async def _reconcile_signed(
    op: "Operation", name: str, request: CertificateRequest, ca: PemPair
) -> None:
    ca_cert, ca_key = ca

    def fill(obj: Dict[str, Any]) -> None:
        generate_pair_once(
            obj,
            TLS_CERT_KEY,
            TLS_KEY_KEY,
            lambda: sign_certificate(request, ca_cert, ca_key),
            keep=lambda cert: certificate_satisfies(cert, ca_cert, request),
        )
        set_secret_value(obj, CA_CERT_KEY, ca_cert)

    await reconcile_secret(op, name, fill)


async def deploy_kube_apiserver_certificates(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    config = op.config
    service = await op.reconciler.get(op.identity("Service", config.kube_apiserver_name))

    ca = await _reconcile_ca(op, config.kube_apiserver_ca_secret, KUBE_APISERVER_CA_NAME)
    ctx.raise_if_cancelled()
    await _reconcile_signed(
        op, config.kube_apiserver_server_secret, server_certificate_request(op, service), ca
    )
    ctx.raise_if_cancelled()
    aggregator_ca = await _reconcile_ca(op, config.kube_aggregator_ca_secret, KUBE_AGGREGATOR_CA_NAME)
    ctx.raise_if_cancelled()
    await _reconcile_signed(
        op, config.kube_aggregator_client_secret, AGGREGATOR_CLIENT_REQUEST, aggregator_ca
    )


async def delete_kube_apiserver_certificates(ctx: TaskContext) -> None:
    op: Operation = ctx.context
    await op.reconciler.delete_all(
        op.identity("Secret", name) for name in op.config.certificate_secrets
    )
