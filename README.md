# meshproxy

Building blocks for a node-level service-mesh proxy, plus the tooling used
to exercise one in tests.

## What is inside

| Module | Purpose |
| --- | --- |
| `meshproxy.sockets` | Address canonicalisation (`to_canonical`), transparent-proxy socket options (`set_transparent`, `set_freebind_and_transparent`), original-destination lookup (`orig_dst_addr`, `orig_dst_addr_or_default`) and a bidirectional asyncio stream `relay`. |
| `meshproxy.certs` | Workload certificates: `Certs`, `ZtunnelCert`, CSR generation with `CsrOptions`, SPIFFE SAN checks (`verify_san`, `verify_san_trust_domain`, `extract_sans`, `trust_domain_of`) and test certificate issuance (`test_ca`, `generate_test_certs`, `CertGenerator`). |
| `meshproxy.tlsctx` | `ssl.SSLContext` builders for workload and control-plane connections (`server_context`, `mtls_server_context`, `client_context`, `grpc_client_context`), ALPN encoding (`encode_alpn`), peer identity checks via `Verifier` and `verify_peer`, and `ControlPlaneCertProvider`. |
| `meshproxy.telemetry` | Logging setup and run-time filter control (`setup_logging`, `set_level`, `get_current_loglevel`, `LogFilter`). The initial filter comes from the `MESHPROXY_LOG` environment variable, falling back to `info`. |
| `meshproxy.timeconv` | `Converter` between wall-clock nanoseconds and `time.monotonic_ns` instants. |
| `meshproxy.version` | `BuildInfo`, read from `MESHPROXY_BUILD_*` and `ISTIO_VERSION` environment variables. |
| `meshproxy.tcp` | A TCP test server (`TestServer`) and a throughput client (`run_client`), both driven by a `Mode`. |
| `meshproxy.testapp` | SOCKS5 client handshake (`socks5_connect`), readiness polling (`readiness_request`, `wait_ready`), metrics scraping (`fetch_metrics`) and Prometheus text parsing (`ParsedMetrics`, `Sample`, `superset_of`). |
| `meshproxy.helpers` | Small test helpers: `initialize_telemetry`, `with_ip`, `run_command`. |

## Examples

### Build information

```python
from meshproxy.version import BuildInfo

print(BuildInfo.current())
```

### Run-time log filters

```python
from meshproxy.telemetry import setup_logging, set_level, get_current_loglevel

setup_logging()
set_level(False, "meshproxy.sockets=debug")
print(get_current_loglevel())
```

Calling `set_level` or `get_current_loglevel` before `setup_logging` raises
`UninitializedError`; a malformed directive raises `InvalidFilterError`.

### Certificates for tests

```python
from datetime import timedelta

from meshproxy.certs import generate_test_certs

certs = generate_test_certs(
    "spiffe://cluster.local/ns/default/sa/default",
    timedelta(seconds=0),
    timedelta(seconds=1000),
)
assert not certs.is_expired()
certs.verify_san("spiffe://cluster.local/ns/default/sa/default")
```

A failed SAN check raises `SanError` (or `SanTrustDomainError` for the
trust-domain variant), both subclasses of `TlsError`. `CertGenerator(seed)`
issues certificates with reproducible serial numbers.

### TLS contexts

```python
from meshproxy.tlsctx import client_context, verify_peer

context, verifier = client_context(certs, "spiffe://cluster.local/ns/default/sa/default")
# after the handshake on an ssl object `tls`:
# identities = verify_peer(tls, verifier)
```

### Reading metrics

```python
from meshproxy.testapp import ParsedMetrics

text = """\
# HELP istio_tcp_connections_opened The number of TCP connections opened.
# TYPE istio_tcp_connections_opened counter
istio_tcp_connections_opened_total{reporter="source"} 1
istio_tcp_connections_opened_total{reporter="destination"} 2
"""

metrics = ParsedMetrics.parse(text)
print(metrics.query_sum("istio_tcp_connections_opened_total", {}))                      # 3
print(metrics.query_sum("istio_tcp_connections_opened_total", {"reporter": "source"}))  # 1
```

`query` returns `None` when the metric family has no `HELP` line, and a list
of matching samples otherwise.

## What this package does not do

It is a set of parts, not a proxy. There is no command to run, and no
inbound or outbound proxy listeners, SOCKS5 server, admin, stats or
readiness servers, control-plane configuration client or certificate
authority client. `meshproxy.testapp` talks to such endpoints when
something else provides them. There is no HTTP/2 tunnelling server either;
`meshproxy.tcp` serves plain TCP only.

## Requirements

Python 3.10 or later and the `cryptography` distribution. The transparent
proxy and original-destination socket options work on Linux only; elsewhere
they raise `OSError`. `run_command` needs `sh`.