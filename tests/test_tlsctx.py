import ssl
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives import serialization

from meshproxy.certs import (
    SanError,
    SanTrustDomainError,
    TlsError,
    generate_test_certs,
)
from meshproxy.tlsctx import (
    CONTROL_PLANE_HOST,
    ControlPlaneCertProvider,
    Verifier,
    client_context,
    encode_alpn,
    grpc_client_context,
    mtls_server_context,
    server_context,
    verify_peer,
)

DEFAULT_ID = "spiffe://cluster.local/ns/default/sa/default"
OTHER_SA_ID = "spiffe://cluster.local/ns/default/sa/my-app"
OTHER_TD_ID = "spiffe://clusterset.local/ns/default/sa/my-app"


def _certs(identity):
    return generate_test_certs(identity, timedelta(0), timedelta(seconds=100))


def _der(certs):
    return certs.x509.public_bytes(serialization.Encoding.DER)


def _handshake(client_ctx, server_ctx):
    c_in, c_out = ssl.MemoryBIO(), ssl.MemoryBIO()
    s_in, s_out = ssl.MemoryBIO(), ssl.MemoryBIO()
    client = client_ctx.wrap_bio(c_in, c_out, server_side=False)
    server = server_ctx.wrap_bio(s_in, s_out, server_side=True)
    done = {"client": False, "server": False}
    for _ in range(20):
        for name, obj in (("client", client), ("server", server)):
            if not done[name]:
                try:
                    obj.do_handshake()
                    done[name] = True
                except ssl.SSLWantReadError:
                    pass
        s_in.write(c_out.read())
        c_in.write(s_out.read())
        if all(done.values()):
            break
    assert all(done.values())
    return client, server


def test_encode_alpn_h2():
    assert encode_alpn(["h2"]) == b"\x02h2"


def test_encode_alpn_rejects_empty_name():
    with pytest.raises(ValueError):
        encode_alpn([""])


def test_verifier_none_returns_identities():
    certs = _certs(DEFAULT_ID)
    assert Verifier.none().check(_der(certs)) == [DEFAULT_ID]


def test_verifier_san_match_and_mismatch():
    der = _der(_certs(DEFAULT_ID))
    assert Verifier.san(DEFAULT_ID).check(der) == [DEFAULT_ID]
    with pytest.raises(SanError):
        Verifier.san(OTHER_SA_ID).check(der)


def test_verifier_san_trust_domain():
    der = _der(_certs(DEFAULT_ID))
    assert Verifier.san_trust_domain(OTHER_SA_ID).check(der) == [DEFAULT_ID]
    with pytest.raises(SanTrustDomainError):
        Verifier.san_trust_domain(OTHER_TD_ID).check(der)


def test_verifier_rejects_invalid_identity():
    with pytest.raises(ValueError):
        Verifier.san("not-an-identity")


def test_verifier_rejects_garbage_der():
    with pytest.raises(TlsError):
        Verifier.none().check(b"garbage")


def test_mtls_handshake_verifies_both_sides():
    server_certs = _certs(DEFAULT_ID)
    client_certs = _certs(OTHER_SA_ID)
    server_ctx, server_verifier = mtls_server_context(server_certs, DEFAULT_ID)
    client_ctx, client_verifier = client_context(client_certs, DEFAULT_ID)
    client, server = _handshake(client_ctx, server_ctx)
    assert verify_peer(client, client_verifier) == [DEFAULT_ID]
    assert verify_peer(server, server_verifier) == [OTHER_SA_ID]
    assert client.selected_alpn_protocol() == "h2"
    assert client.version() == "TLSv1.3"


def test_mtls_trust_domain_mismatch_rejected():
    server_ctx, server_verifier = mtls_server_context(_certs(DEFAULT_ID), DEFAULT_ID)
    client_ctx, _ = client_context(_certs(OTHER_TD_ID), DEFAULT_ID)
    _, server = _handshake(client_ctx, server_ctx)
    with pytest.raises(SanTrustDomainError):
        verify_peer(server, server_verifier)


def test_client_rejects_unexpected_server_identity():
    server_ctx, _ = mtls_server_context(_certs(OTHER_SA_ID))
    client_ctx, client_verifier = client_context(_certs(DEFAULT_ID), DEFAULT_ID)
    client, _ = _handshake(client_ctx, server_ctx)
    with pytest.raises(SanError):
        verify_peer(client, client_verifier)


def test_server_context_without_client_cert():
    certs = _certs(DEFAULT_ID)
    client_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    client_ctx.check_hostname = False
    client_ctx.load_verify_locations(cadata=certs.chain_pem().decode())
    client, server = _handshake(client_ctx, server_context(certs))
    assert verify_peer(client, Verifier.none()) == [DEFAULT_ID]
    with pytest.raises(TlsError, match="failed getting peer cert"):
        verify_peer(server, Verifier.none())


@pytest.mark.asyncio
async def test_control_plane_provider_context():
    certs = _certs(DEFAULT_ID)
    ctx = await ControlPlaneCertProvider(certs).fetch_context(None)
    assert ctx.verify_mode == ssl.CERT_NONE
    assert ctx.minimum_version == ssl.TLSVersion.TLSv1_3


def test_grpc_localhost_uses_control_plane_name():
    pem = _certs(DEFAULT_ID).chain_pem()
    ctx, hostname = grpc_client_context("https://localhost:15012", root_cert_pem=pem)
    assert hostname == CONTROL_PLANE_HOST
    assert ctx.minimum_version == ssl.TLSVersion.TLSv1_2
    assert ctx.verify_mode == ssl.CERT_REQUIRED


def test_grpc_other_host_kept():
    pem = _certs(DEFAULT_ID).chain_pem()
    _, hostname = grpc_client_context("https://10.0.0.1:15012", root_cert_pem=pem)
    assert hostname == "10.0.0.1"


def test_grpc_invalid_root_cert():
    with pytest.raises(TlsError, match="invalid root certificate"):
        grpc_client_context("https://localhost:15012", root_cert_pem=b"not a pem")


def test_grpc_invalid_uri():
    with pytest.raises(TlsError, match="invalid uri"):
        grpc_client_context("no-scheme-here", root_cert_pem=b"")