"""Plain TCP test servers and clients that read and write as fast as they can."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import socket
import time

logger = logging.getLogger(__name__)

BUFFER_SIZE = 2 * 1024 * 1024
_BYTES_PER_GIGABIT = 0.125e9


class Mode(enum.Enum):
    """What a peer does with the stream."""

    READ_DOUBLE_WRITE = "read_double_write"
    READ_WRITE = "read_write"
    WRITE = "write"
    READ = "read"


def _gbps(transferred: int, elapsed: float) -> float:
    if elapsed <= 0:
        return float("inf")
    return transferred / elapsed / _BYTES_PER_GIGABIT


async def run_client(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    target: int,
    mode: Mode,
) -> int:
    """Move ``target`` bytes through the stream according to ``mode``.

    Returns the number of bytes transferred.
    """
    chunk = memoryview(bytes(min(BUFFER_SIZE, target)))
    start = time.monotonic()
    transferred = 0
    while transferred < target:
        length = min(len(chunk), target - transferred)
        if mode is Mode.READ:
            data = await reader.read(length)
            if not data:
                raise asyncio.IncompleteReadError(b"", target - transferred)
            transferred += len(data)
        else:
            writer.write(chunk[:length])
            await writer.drain()
            transferred += length
            if mode is Mode.READ_WRITE:
                await reader.readexactly(length)
            elif mode is Mode.READ_DOUBLE_WRITE:
                await reader.readexactly(2 * length)
        if logger.isEnabledFor(logging.DEBUG):
            elapsed = time.monotonic() - start
            logger.debug(
                "throughput: %.3f Gb/s, transferred %s Gb (%.3f%%) in %.6fs (%s)",
                _gbps(transferred, elapsed),
                transferred / _BYTES_PER_GIGABIT,
                100.0 * transferred / target,
                elapsed,
                mode.name,
            )
    elapsed = time.monotonic() - start
    logger.info(
        "throughput: %.3f Gb/s, transferred %d in %.6fs (%s)",
        _gbps(transferred, elapsed),
        transferred,
        elapsed,
        mode.name,
    )
    return transferred


async def handle_stream(mode: Mode, reader: asyncio.StreamReader, writer) -> None:
    """Serve one connection according to ``mode`` until the peer stops."""
    if mode is Mode.READ_WRITE:
        while data := await reader.read(BUFFER_SIZE):
            writer.write(data)
            await writer.drain()
    elif mode is Mode.READ_DOUBLE_WRITE:
        while data := await reader.read(BUFFER_SIZE):
            writer.write(data)
            writer.write(data)
            await writer.drain()
    elif mode is Mode.WRITE:
        buffer = bytes(BUFFER_SIZE)
        while not writer.is_closing():
            writer.write(buffer)
            await writer.drain()
    else:
        while await reader.read(BUFFER_SIZE):
            pass


def _listening_socket(port: int) -> socket.socket:
    """A dual-stack listener on all addresses, or IPv4 only where IPv6 is missing."""
    try:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    except OSError:
        sock = None
    if sock is not None:
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("::", port))
            sock.listen()
            sock.setblocking(False)
            return sock
        except OSError:
            sock.close()
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("0.0.0.0", port))
        sock.listen()
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class TestServer:
    """A TCP server on all addresses that serves every connection in one ``Mode``."""

    __test__ = False

    def __init__(self, mode: Mode, port: int = 0) -> None:
        self.mode = mode
        self.port = port
        self._server: asyncio.base_events.Server | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self) -> TestServer:
        """Bind and begin accepting connections."""
        if self._server is None:
            self._server = await asyncio.start_server(
                self._handle, sock=_listening_socket(self.port)
            )
        return self

    def address(self) -> tuple[str, int]:
        """The bound local address."""
        if self._server is None:
            raise RuntimeError("server is not started")
        host, port = self._server.sockets[0].getsockname()[:2]
        return host, port

    async def run(self) -> None:
        """Serve until cancelled."""
        await self.start()
        await self._server.serve_forever()

    async def close(self) -> None:
        """Stop accepting and drop open connections."""
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        for writer in list(self._writers):
            writer.close()
        await server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        sock = writer.get_extra_info("socket")
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._writers.add(writer)
        try:
            await handle_stream(self.mode, reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError) as err:
            logger.debug("connection ended: %r", err)
        finally:
            self._writers.discard(writer)
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()