"""Socket helpers: transparent binding, original destination lookup and relaying."""

from __future__ import annotations

import asyncio
import errno
import ipaddress
import logging
import socket
import struct
import sys

logger = logging.getLogger(__name__)

_IS_LINUX = sys.platform.startswith("linux")

_SOL_IP = getattr(socket, "SOL_IP", 0)
_SOL_IPV6 = getattr(socket, "SOL_IPV6", 41)
_IP_TRANSPARENT = getattr(socket, "IP_TRANSPARENT", 19)
_IP_FREEBIND = getattr(socket, "IP_FREEBIND", 15)
_IPV6_TRANSPARENT = 75
_IPV6_FREEBIND = 78
_SO_ORIGINAL_DST = 80
_IP6T_SO_ORIGINAL_DST = 80

_SOCKADDR_IN_SIZE = 16
_SOCKADDR_IN6_SIZE = 28

_RELAY_BUFFER_SIZE = 64 * 1024


def to_canonical(addr: tuple) -> tuple:
    """Turn an IPv4-mapped IPv6 socket address into a plain IPv4 one."""
    ip = ipaddress.ip_address(addr[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return (str(ip.ipv4_mapped), addr[1])
    return addr


def set_transparent(sock: socket.socket) -> None:
    """Enable IP_TRANSPARENT on a listening socket."""
    if not _IS_LINUX:
        raise OSError(errno.EOPNOTSUPP, "IP_TRANSPARENT not supported on this operating system")
    sock.setsockopt(_SOL_IP, _IP_TRANSPARENT, 1)


def set_freebind_and_transparent(sock: socket.socket) -> None:
    """Enable transparent mode and free binding for the socket's address family."""
    if not _IS_LINUX:
        raise OSError(
            errno.EOPNOTSUPP,
            "IP_TRANSPARENT and IP_FREEBIND are not supported on this operating system",
        )
    if sock.family == socket.AF_INET:
        sock.setsockopt(_SOL_IP, _IP_TRANSPARENT, 1)
        sock.setsockopt(_SOL_IP, _IP_FREEBIND, 1)
    elif sock.family == socket.AF_INET6:
        sock.setsockopt(_SOL_IPV6, _IPV6_TRANSPARENT, 1)
        sock.setsockopt(_SOL_IPV6, _IPV6_FREEBIND, 1)
    else:
        raise OSError(errno.EOPNOTSUPP, "unsupported domain")


def _parse_sockaddr_in(buf: bytes) -> tuple[str, int]:
    (port,) = struct.unpack_from("!H", buf, 2)
    return socket.inet_ntop(socket.AF_INET, buf[4:8]), port


def _parse_sockaddr_in6(buf: bytes) -> tuple[str, int]:
    (port,) = struct.unpack_from("!H", buf, 2)
    return socket.inet_ntop(socket.AF_INET6, buf[8:24]), port


def _is_transparent(sock: socket.socket) -> bool:
    try:
        return bool(sock.getsockopt(_SOL_IP, _IP_TRANSPARENT))
    except OSError:
        return False


def _describe(getter) -> str:
    try:
        return repr(getter())
    except OSError:
        return "unknown"


def orig_dst_addr(sock: socket.socket) -> tuple[str, int]:
    """Read the original destination of a redirected connection (SO_ORIGINAL_DST)."""
    if not _IS_LINUX:
        raise OSError(
            errno.EOPNOTSUPP, "SO_ORIGINAL_DST not supported on this operating system"
        )
    try:
        return _parse_sockaddr_in(sock.getsockopt(_SOL_IP, _SO_ORIGINAL_DST, _SOCKADDR_IN_SIZE))
    except OSError as e4:
        try:
            return _parse_sockaddr_in6(
                sock.getsockopt(_SOL_IPV6, _IP6T_SO_ORIGINAL_DST, _SOCKADDR_IN6_SIZE)
            )
        except OSError as e6:
            if not _is_transparent(sock):
                # In TPROXY mode this is normal, so only log otherwise.
                logger.warning(
                    "failed to read SO_ORIGINAL_DST: %r, %r (peer=%s local=%s)",
                    e4,
                    e6,
                    _describe(sock.getpeername),
                    _describe(sock.getsockname),
                )
            raise e6 from e4


def orig_dst_addr_or_default(sock: socket.socket) -> tuple:
    """The original destination, or the local address when it cannot be read."""
    try:
        addr = orig_dst_addr(sock)
    except OSError:
        addr = sock.getsockname()
    return to_canonical(addr)


async def _copy(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> int:
    total = 0
    while chunk := await reader.read(_RELAY_BUFFER_SIZE):
        writer.write(chunk)
        await writer.drain()
        total += len(chunk)
    if writer.can_write_eof():
        writer.write_eof()
    return total


async def relay(
    downstream_reader: asyncio.StreamReader,
    downstream_writer: asyncio.StreamWriter,
    upstream_reader: asyncio.StreamReader,
    upstream_writer: asyncio.StreamWriter,
) -> tuple[int, int]:
    """Copy data both ways until both sides reach end of stream.

    Returns the bytes sent downstream-to-upstream and upstream-to-downstream.
    """
    forward = asyncio.ensure_future(_copy(downstream_reader, upstream_writer))
    backward = asyncio.ensure_future(_copy(upstream_reader, downstream_writer))
    try:
        sent, received = await asyncio.gather(forward, backward)
    except BaseException:
        forward.cancel()
        backward.cancel()
        raise
    return sent, received