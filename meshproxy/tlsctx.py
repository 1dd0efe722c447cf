"""TLS contexts for workload and control-plane connections, and peer identity checks."""

from __future__ import annotations

import enum
import logging
import ssl
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from meshproxy.certs import (
    Certs,
    TlsError,
    extract_sans,
    trust_domain_of,
    verify_san,
    verify_san_trust_domain,
)

logger = logging.getLogger(__name__)

ALPN_H2 = "h2"
LOCALHOST = "localhost"
CONTROL_PLANE_HOST = "istiod.istio-system.svc"


def encode_alpn(protocols) -> bytes:
    """Wire encoding of an ALPN protocol list: each name prefixed by its length."""
    encoded = bytearray()
    for name in protocols:
        raw = name.encode("ascii") if isinstance(name, str) else bytes(name)
        if not 0 < len(raw) < 256:
            raise ValueError(f"invalid ALPN protocol {name!r}")
        encoded.append(len(raw))
        encoded += raw
    return bytes(encoded)


class _Kind(enum.Enum):
    NONE = "none"
    SAN = "san"
    SAN_TRUST_DOMAIN = "san_trust_domain"


@dataclass(frozen=True)
class Verifier:
    """How a peer certificate's identity is checked once the chain itself is trusted."""

    kind: _Kind
    identity: str | None = None

    @classmethod
    def none(cls) -> Verifier:
        """Accept any identity."""
        return cls(_Kind.NONE)

    @classmethod
    def san(cls, identity) -> Verifier:
        """Require exactly ``identity`` among the peer's SANs."""
        trust_domain_of(identity)
        return cls(_Kind.SAN, str(identity))

    @classmethod
    def san_trust_domain(cls, identity) -> Verifier:
        """Require some peer SAN in the same trust domain as ``identity``."""
        trust_domain_of(identity)
        return cls(_Kind.SAN_TRUST_DOMAIN, str(identity))

    def check(self, peer_der: bytes) -> list[str]:
        """Check a DER peer certificate; return its identities or raise a TlsError."""
        try:
            cert = x509.load_der_x509_certificate(peer_der)
        except ValueError as err:
            raise TlsError(f"invalid peer certificate: {err}") from err
        if self.kind is _Kind.SAN:
            verify_san(cert, self.identity)
        elif self.kind is _Kind.SAN_TRUST_DOMAIN:
            verify_san_trust_domain(cert, self.identity)
        return extract_sans(cert)


def _pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def _load_identity(context: ssl.SSLContext, certs: Certs) -> None:
    """Install the key, the leaf plus intermediates, and the chain as trust roots."""
    chain = list(certs.iter_chain())
    # The last chain certificate is the root, which the peer already has.
    presented = b"".join(_pem(cert) for cert in [certs.x509, *chain[:-1]])
    key_pem = certs.key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    try:
        with tempfile.TemporaryDirectory() as directory:
            cert_file = Path(directory) / "cert-chain.pem"
            key_file = Path(directory) / "key.pem"
            cert_file.write_bytes(presented)
            key_file.write_bytes(key_pem)
            context.load_cert_chain(certfile=str(cert_file), keyfile=str(key_file))
        if chain:
            context.load_verify_locations(cadata=b"".join(_pem(c) for c in chain).decode())
    except (ssl.SSLError, ValueError) as err:
        raise TlsError(f"ssl error: {err}") from err


def _workload_context(protocol: int, certs: Certs) -> ssl.SSLContext:
    context = ssl.SSLContext(protocol)
    context.minimum_version = ssl.TLSVersion.TLSv1_3
    context.maximum_version = ssl.TLSVersion.TLSv1_3
    context.set_alpn_protocols([ALPN_H2])
    _load_identity(context, certs)
    return context


def server_context(certs: Certs) -> ssl.SSLContext:
    """A TLS 1.3 server context that does not ask for a client certificate."""
    context = _workload_context(ssl.PROTOCOL_TLS_SERVER, certs)
    context.verify_mode = ssl.CERT_NONE
    return context


def mtls_server_context(certs: Certs, dest_id=None) -> tuple[ssl.SSLContext, Verifier]:
    """A TLS 1.3 server context requiring a client certificate.

    With ``dest_id`` the returned verifier accepts only clients in its trust domain.
    """
    context = _workload_context(ssl.PROTOCOL_TLS_SERVER, certs)
    context.verify_mode = ssl.CERT_REQUIRED
    verifier = Verifier.none() if dest_id is None else Verifier.san_trust_domain(dest_id)
    return context, verifier


def client_context(certs: Certs, dest_id) -> tuple[ssl.SSLContext, Verifier]:
    """A TLS 1.3 client context presenting ``certs``; the verifier requires ``dest_id``."""
    context = _workload_context(ssl.PROTOCOL_TLS_CLIENT, certs)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_REQUIRED
    return context, Verifier.san(dest_id)


def grpc_client_context(
    uri: str, root_cert_file=None, root_cert_pem=None
) -> tuple[ssl.SSLContext, str]:
    """A client context for the control plane and the host name to verify against.

    Calls to localhost verify the control plane's service name instead.
    """
    if root_cert_file is not None and root_cert_pem is not None:
        raise ValueError("give a root certificate file or PEM data, not both")
    try:
        parts = urlsplit(uri)
        host = parts.hostname
        parts.port  # noqa: B018 - raises on an invalid port
    except ValueError as err:
        raise TlsError(f"invalid uri: {err}") from err
    if not parts.scheme or not host:
        raise TlsError(f"invalid uri: {uri}")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.verify_mode = ssl.CERT_REQUIRED
    context.check_hostname = True
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.maximum_version = ssl.TLSVersion.TLSv1_3
    context.set_alpn_protocols([ALPN_H2])
    try:
        if root_cert_file is not None:
            context.load_verify_locations(cafile=str(root_cert_file))
        elif root_cert_pem is not None:
            pem = root_cert_pem.decode() if isinstance(root_cert_pem, bytes) else root_cert_pem
            context.load_verify_locations(cadata=pem)
        else:
            context.load_default_certs(ssl.Purpose.SERVER_AUTH)
    except (ssl.SSLError, OSError, ValueError) as err:
        raise TlsError(f"invalid root certificate: {err}") from err

    server_hostname = CONTROL_PLANE_HOST if host == LOCALHOST else host
    return context, server_hostname


def verify_peer(ssl_object, verifier: Verifier) -> list[str]:
    """Check the peer of a completed handshake; return its identities or raise a TlsError."""
    peer_der = ssl_object.getpeercert(binary_form=True)
    try:
        if peer_der is None:
            raise TlsError("failed getting peer cert")
        return verifier.check(peer_der)
    except TlsError as err:
        logger.info("failed verifying TLS: %s", err)
        raise


class ControlPlaneCertProvider:
    """Hands out a server context built from fixed control-plane certificates."""

    def __init__(self, certs: Certs) -> None:
        self.certs = certs

    async def fetch_context(self, conn) -> ssl.SSLContext:
        """The server context for an incoming connection."""
        return server_context(self.certs)