"""Workload certificates: loading, test issuance, expiry and SAN checks."""

from __future__ import annotations

import functools
import hashlib
import ipaddress
import random
import secrets
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

_SPIFFE_PREFIX = "spiffe://"
_TRUST_DOMAIN = "cluster.local"
_DEFAULT_SEED = 427
_SERIAL_BYTES = 20

_CA_NOT_BEFORE = datetime(2023, 1, 1, tzinfo=timezone.utc)
_CA_NOT_AFTER = datetime(2123, 1, 1, tzinfo=timezone.utc)


class TlsError(Exception):
    """Base class for certificate and TLS errors."""


class SanError(TlsError):
    """The peer certificate does not carry the expected identity."""

    def __init__(self, identity: str, sans: list[str]) -> None:
        self.identity = identity
        self.sans = sans
        super().__init__(
            "san verification error: remote did not present the expected SAN "
            f"({identity}), got {sans!r}"
        )


class SanTrustDomainError(TlsError):
    """No identity in the peer certificate shares the expected trust domain."""

    def __init__(self, trust_domain: str, sans: list[str]) -> None:
        self.trust_domain = trust_domain
        self.sans = sans
        super().__init__(
            "san verification error: remote did not present the expected trustdomain "
            f"({trust_domain}), got {sans!r}"
        )


def _parse_identity(identity) -> tuple[str, str, str]:
    text = str(identity)
    if not text.startswith(_SPIFFE_PREFIX):
        raise ValueError(f"invalid identity {text!r}")
    parts = text[len(_SPIFFE_PREFIX):].split("/")
    if (
        len(parts) != 5
        or parts[1] != "ns"
        or parts[3] != "sa"
        or not all((parts[0], parts[2], parts[4]))
    ):
        raise ValueError(f"invalid identity {text!r}")
    return parts[0], parts[2], parts[4]


def _format_identity(parts: tuple[str, str, str]) -> str:
    trust_domain, namespace, service_account = parts
    return f"{_SPIFFE_PREFIX}{trust_domain}/ns/{namespace}/sa/{service_account}"


def trust_domain_of(identity) -> str:
    """The trust domain of a SPIFFE identity; ValueError if it is not one."""
    return _parse_identity(identity)[0]


def _validity(cert: x509.Certificate) -> tuple[datetime, datetime]:
    before = getattr(cert, "not_valid_before_utc", None)
    after = getattr(cert, "not_valid_after_utc", None)
    if before is None or after is None:
        before = cert.not_valid_before.replace(tzinfo=timezone.utc)
        after = cert.not_valid_after.replace(tzinfo=timezone.utc)
    return before, after


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _key_der(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


@dataclass(frozen=True)
class CertSign:
    """A PEM certificate signing request and the PEM private key behind it."""

    csr: bytes
    pkey: bytes


@dataclass(frozen=True)
class CsrOptions:
    """Options for a certificate signing request."""

    san: str

    def generate(self) -> CertSign:
        """Create a P-256 key and a CSR carrying ``san`` as a critical URI SAN."""
        key = ec.generate_private_key(ec.SECP256R1())
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([]))
            .add_extension(
                x509.SubjectAlternativeName([x509.UniformResourceIdentifier(self.san)]),
                critical=True,
            )
            .sign(key, hashes.SHA256())
        )
        pkey_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        return CertSign(csr=csr.public_bytes(serialization.Encoding.PEM), pkey=pkey_pem)


@dataclass
class ZtunnelCert:
    """An X.509 certificate with validity bounds kept at sub-second precision."""

    x509: x509.Certificate
    not_before: datetime
    not_after: datetime

    @classmethod
    def from_x509(cls, cert: x509.Certificate) -> ZtunnelCert:
        not_before, not_after = _validity(cert)
        return cls(x509=cert, not_before=not_before, not_after=not_after)


@dataclass(eq=False)
class Certs:
    """A leaf certificate, its private key and the rest of its chain."""

    cert: ZtunnelCert
    chain: list[ZtunnelCert] = field(default_factory=list)
    key: object = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Certs):
            return NotImplemented
        return (
            self.cert.x509.public_bytes(serialization.Encoding.DER)
            == other.cert.x509.public_bytes(serialization.Encoding.DER)
            and _key_der(self.key) == _key_der(other.key)
            and self.cert.not_after == other.cert.not_after
            and self.cert.not_before == other.cert.not_before
        )

    __hash__ = None  # type: ignore[assignment]

    @property
    def x509(self) -> x509.Certificate:
        return self.cert.x509

    def chain_pem(self) -> bytes:
        """PEM of the first certificate after the leaf."""
        if not self.chain:
            raise TlsError("certificate chain is empty")
        return self.chain[0].x509.public_bytes(serialization.Encoding.PEM)

    def iter_chain(self) -> Iterator[x509.Certificate]:
        """The chain certificates, leaf excluded."""
        return (entry.x509 for entry in self.chain)

    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) > self.cert.not_after

    def refresh_at(self) -> datetime:
        """Half way through the validity period."""
        valid_for = self.cert.not_after - self.cert.not_before
        if valid_for < timedelta(0):
            return self.cert.not_after
        return self.cert.not_before + valid_for / 2

    def get_duration_until_refresh(self) -> timedelta:
        """Time left until half the validity has passed; zero if not yet valid or past it."""
        halflife = max(self.cert.not_after - self.cert.not_before, timedelta(0)) / 2
        now = datetime.now(timezone.utc)
        elapsed = now - self.cert.not_before if now >= self.cert.not_before else halflife
        return max(halflife - elapsed, timedelta(0))

    def verify_san(self, identity) -> None:
        verify_san(self.cert.x509, identity)

    def verify_san_trust_domain(self, identity) -> None:
        verify_san_trust_domain(self.cert.x509, identity)


def cert_from(key: bytes, cert: bytes, chain: list[bytes]) -> Certs:
    """Build Certs from a PEM key, a PEM leaf and PEM chain certificates."""
    private_key = serialization.load_pem_private_key(key, password=None)
    leaf = ZtunnelCert.from_x509(x509.load_pem_x509_certificate(cert))
    rest = [ZtunnelCert.from_x509(x509.load_pem_x509_certificate(pem)) for pem in chain]
    return Certs(cert=leaf, chain=rest, key=private_key)


def extract_sans(cert: x509.Certificate) -> list[str]:
    """The SPIFFE identities in the URI SANs; empty if any of them is not one."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    try:
        return [
            _format_identity(_parse_identity(uri))
            for uri in san.get_values_for_type(x509.UniformResourceIdentifier)
        ]
    except ValueError:
        return []


def verify_san(cert: x509.Certificate, identity) -> None:
    """Raise SanError unless ``cert`` carries ``identity``."""
    expected = _parse_identity(identity)
    sans = extract_sans(cert)
    if not any(_parse_identity(san) == expected for san in sans):
        raise SanError(_format_identity(expected), sans)


def verify_san_trust_domain(cert: x509.Certificate, identity) -> None:
    """Raise SanTrustDomainError unless ``cert`` has an identity in ``identity``'s trust domain."""
    expected = trust_domain_of(identity)
    sans = extract_sans(cert)
    if not any(trust_domain_of(san) == expected for san in sans):
        raise SanTrustDomainError(expected, sans)


def _seed_bytes(label: str, length: int) -> bytes:
    return hashlib.sha256(label.encode()).digest()[:length]


@functools.cache
def _ca_material() -> tuple[x509.Certificate, ed25519.Ed25519PrivateKey]:
    key = ed25519.Ed25519PrivateKey.from_private_bytes(_seed_bytes("meshproxy test root", 32))
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, _TRUST_DOMAIN)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(1)
        .not_valid_before(_CA_NOT_BEFORE)
        .not_valid_after(_CA_NOT_AFTER)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, None)
    )
    return cert, key


def test_ca() -> tuple[x509.Certificate, ed25519.Ed25519PrivateKey]:
    """The fixed root certificate and key used to issue test certificates."""
    return _ca_material()


@functools.cache
def _leaf_key() -> ec.EllipticCurvePrivateKey:
    secret_value = int.from_bytes(_seed_bytes("meshproxy test leaf", 31), "big") or 1
    return ec.derive_private_key(secret_value, ec.SECP256R1())


def _san_for(identity) -> x509.GeneralName:
    if isinstance(identity, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return x509.IPAddress(identity)
    try:
        return x509.IPAddress(ipaddress.ip_address(str(identity)))
    except ValueError:
        return x509.UniformResourceIdentifier(str(identity))


def _generate_certs_at(
    identity, not_before: datetime, not_after: datetime, rng: random.Random | None
) -> Certs:
    not_before = _aware(not_before)
    not_after = _aware(not_after)
    key = _leaf_key()
    ca_cert, ca_key = _ca_material()

    data = bytearray(rng.randbytes(_SERIAL_BYTES) if rng else secrets.token_bytes(_SERIAL_BYTES))
    # Clear the top bit so the serial stays a positive 159-bit number.
    data[0] &= 0x7F
    serial = int.from_bytes(data, "big") or 1

    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([]))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(not_before.replace(microsecond=0))
        .not_valid_after(not_after.replace(microsecond=0))
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH]
            ),
            critical=False,
        )
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
        .add_extension(x509.SubjectAlternativeName([_san_for(identity)]), critical=True)
    )
    leaf = builder.sign(ca_key, None)
    return Certs(
        cert=ZtunnelCert(x509=leaf, not_before=not_before, not_after=not_after),
        chain=[ZtunnelCert.from_x509(ca_cert)],
        key=key,
    )


def generate_test_certs(
    identity, duration_until_valid: timedelta, duration_until_expiry: timedelta
) -> Certs:
    """Issue a test certificate for ``identity`` (a SPIFFE identity or an IP address)."""
    not_before = datetime.now(timezone.utc) + duration_until_valid
    return _generate_certs_at(identity, not_before, not_before + duration_until_expiry, None)


class CertGenerator:
    """Issues test certificates deterministically from a seed."""

    def __init__(self, seed: int = _DEFAULT_SEED) -> None:
        self._rng = random.Random(seed)

    def new_certs(self, identity, not_before: datetime, not_after: datetime) -> Certs:
        return _generate_certs_at(identity, not_before, not_after, self._rng)