"""Building blocks for a service-mesh node proxy: sockets, certificates, TLS, logging and test tooling."""

__version__ = "0.1.0"

__all__ = [
    "certs",
    "helpers",
    "sockets",
    "tcp",
    "telemetry",
    "testapp",
    "timeconv",
    "tlsctx",
    "version",
]