"""Helpers for driving a running proxy: metrics scraping, readiness and SOCKS5."""

from __future__ import annotations

import asyncio
import ipaddress
import math
import re
import urllib.error
import urllib.request
from dataclasses import dataclass, field

from meshproxy.sockets import to_canonical

_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_TYPE_SUFFIXES = ("_total", "_created", "_count", "_sum", "_bucket", "_info", "_gcount", "_gsum")
_SUMMABLE_KINDS = frozenset({"counter", "untyped", "unknown"})
_U64_MAX = 2**64 - 1
_HTTP_TIMEOUT = 5.0
_UNSPECIFIED_HOSTS = frozenset({"", "0.0.0.0", "::"})
_ESCAPES = {"n": "\n", '"': '"', "\\": "\\"}

_opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))


@dataclass(frozen=True)
class Sample:
    """One sample line of a metrics scrape."""

    metric: str
    value: float
    labels: dict[str, str] = field(default_factory=dict)
    kind: str = "untyped"
    timestamp: float | None = None


def superset_of(base: dict, check: dict) -> bool:
    """Whether every label in ``check`` appears in ``base`` with the same value."""
    return all(base.get(key) == value for key, value in check.items())


def _skip_spaces(line: str, pos: int) -> int:
    while pos < len(line) and line[pos] in " \t":
        pos += 1
    return pos


def _parse_labels(line: str, pos: int) -> tuple[dict[str, str], int]:
    labels: dict[str, str] = {}
    while True:
        pos = _skip_spaces(line, pos)
        if pos >= len(line):
            raise ValueError(f"unterminated label set in {line!r}")
        if line[pos] == "}":
            return labels, pos + 1
        match = _LABEL_NAME.match(line, pos)
        if not match:
            raise ValueError(f"invalid label name in {line!r}")
        pos = _skip_spaces(line, match.end())
        if not line.startswith("=", pos):
            raise ValueError(f"expected '=' in {line!r}")
        pos = _skip_spaces(line, pos + 1)
        if not line.startswith('"', pos):
            raise ValueError(f"expected quoted label value in {line!r}")
        pos += 1
        value: list[str] = []
        while True:
            if pos >= len(line):
                raise ValueError(f"unterminated label value in {line!r}")
            char = line[pos]
            if char == '"':
                pos += 1
                break
            if char == "\\" and pos + 1 < len(line):
                escaped = line[pos + 1]
                value.append(_ESCAPES.get(escaped, "\\" + escaped))
                pos += 2
                continue
            value.append(char)
            pos += 1
        labels[match.group()] = "".join(value)
        pos = _skip_spaces(line, pos)
        if pos < len(line) and line[pos] == ",":
            pos += 1


def _kind_of(name: str, types: dict[str, str]) -> str:
    if name in types:
        return types[name]
    for suffix in _TYPE_SUFFIXES:
        if name.endswith(suffix) and name[: -len(suffix)] in types:
            return types[name[: -len(suffix)]]
    return "untyped"


def _parse_sample(line: str, types: dict[str, str]) -> Sample:
    match = _NAME.match(line)
    if not match:
        raise ValueError(f"invalid sample line {line!r}")
    name = match.group()
    pos = match.end()
    labels: dict[str, str] = {}
    if pos < len(line) and line[pos] == "{":
        labels, pos = _parse_labels(line, pos + 1)
    rest = line[pos:].split(" # ", 1)[0]
    fields = rest.split()
    if not fields or len(fields) > 2:
        raise ValueError(f"invalid sample line {line!r}")
    value = float(fields[0])
    timestamp = float(fields[1]) if len(fields) == 2 else None
    return Sample(name, value, labels, _kind_of(name, types), timestamp)


def _to_u64(value: float) -> int:
    if math.isnan(value) or value <= 0:
        return 0
    if math.isinf(value):
        return _U64_MAX
    return min(int(value), _U64_MAX)


@dataclass
class ParsedMetrics:
    """A parsed Prometheus/OpenMetrics text scrape."""

    docs: dict[str, str] = field(default_factory=dict)
    types: dict[str, str] = field(default_factory=dict)
    samples: list[Sample] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> ParsedMetrics:
        """Parse scrape text; ValueError on a malformed line."""
        parsed = cls()
        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue
            if line.startswith("#"):
                parts = line[1:].strip().split(None, 2)
                if len(parts) >= 2 and parts[0] == "HELP":
                    parsed.docs[parts[1]] = parts[2] if len(parts) == 3 else ""
                elif len(parts) == 3 and parts[0] == "TYPE":
                    parsed.types[parts[1]] = parts[2].strip().lower()
                continue
            parsed.samples.append(_parse_sample(line, parsed.types))
        return parsed

    def query(self, metric: str, labels: dict | None = None) -> list[Sample] | None:
        """Samples of ``metric`` carrying ``labels``; None if the metric is not documented."""
        if metric.removesuffix("_total") not in self.docs:
            return None
        wanted = labels or {}
        return [s for s in self.samples if s.metric == metric and superset_of(s.labels, wanted)]

    def query_sum(self, metric: str, labels: dict | None = None) -> int:
        """The sum of the matching counter samples, each truncated to an integer."""
        samples = self.query(metric, labels)
        if samples is None:
            return 0
        total = 0
        for sample in samples:
            if sample.kind not in _SUMMABLE_KINDS:
                raise ValueError(f"query_sum({metric}) must be a counter")
            total += _to_u64(sample.value)
        return total

    def dump(self) -> str:
        return "\n".join(repr(sample) for sample in self.samples)


async def socks5_connect(
    reader: asyncio.StreamReader, writer: asyncio.StreamWriter, addr: tuple
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Ask a SOCKS5 proxy on the stream to connect to ``addr``, without authentication."""
    ip = ipaddress.ip_address(to_canonical(addr)[0])
    addr_type = 0x01 if ip.version == 4 else 0x04
    writer.write(bytes([0x05, 0x01, 0x00]))
    await writer.drain()
    await reader.readexactly(2)
    request = bytes([0x05, 0x01, 0x00, addr_type]) + ip.packed + int(addr[1]).to_bytes(2, "big")
    writer.write(request)
    await writer.drain()
    # The reply only needs clearing out of the stream.
    await reader.readexactly(10)
    return reader, writer


def _url(host: str, port: int, path: str) -> str:
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}/{path}"


def _get(url: str) -> tuple[int, bytes]:
    try:
        with _opener.open(url, timeout=_HTTP_TIMEOUT) as response:
            return response.status, response.read()
    except urllib.error.HTTPError as err:
        try:
            return err.code, b""
        finally:
            err.close()


async def fetch_metrics(address: tuple) -> ParsedMetrics:
    """Scrape ``/metrics`` from the stats server at ``address``."""
    host, port = str(address[0]), int(address[1])
    _, body = await asyncio.to_thread(_get, _url(host, port, "metrics"))
    return ParsedMetrics.parse(body.decode("utf-8"))


async def readiness_request(address: tuple) -> None:
    """Query the readiness endpoint; RuntimeError unless it answers 200."""
    host, port = str(address[0]), int(address[1])
    if host in _UNSPECIFIED_HOSTS:
        host = "localhost"
    status, _ = await asyncio.to_thread(_get, _url(host, port, "healthz/ready"))
    if status != 200:
        raise RuntimeError(f"non-200 status code from readiness request: received {status}")


async def wait_ready(address: tuple, attempts: int = 200, interval: float = 0.01) -> None:
    """Poll readiness until it succeeds; RuntimeError after ``attempts`` failures."""
    last_err: RuntimeError | None = None
    for _ in range(attempts):
        try:
            await readiness_request(address)
            return
        except RuntimeError as err:
            last_err = err
        await asyncio.sleep(interval)
    raise RuntimeError(f"failed to get ready (last: {last_err!r})")