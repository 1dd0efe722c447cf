import asyncio
import socket

import pytest

from meshproxy.sockets import (
    orig_dst_addr,
    orig_dst_addr_or_default,
    relay,
    set_freebind_and_transparent,
    to_canonical,
)


def test_to_canonical_mapped_address():
    assert to_canonical(("::ffff:127.0.0.1", 8080)) == ("127.0.0.1", 8080)


def test_to_canonical_mapped_four_tuple():
    assert to_canonical(("::ffff:10.0.0.5", 443, 0, 0)) == ("10.0.0.5", 443)


def test_to_canonical_keeps_ipv4():
    addr = ("192.168.1.1", 80)
    assert to_canonical(addr) == addr


def test_to_canonical_keeps_plain_ipv6():
    addr = ("2001:db8::1", 80, 0, 0)
    assert to_canonical(addr) == addr


def test_to_canonical_rejects_garbage():
    with pytest.raises(ValueError):
        to_canonical(("not-an-ip", 80))


def test_freebind_unsupported_family():
    a, b = socket.socketpair()
    try:
        if a.family in (socket.AF_INET, socket.AF_INET6):
            a.close()
            a = socket.socket(socket.AF_UNIX) if hasattr(socket, "AF_UNIX") else a
        with pytest.raises(OSError):
            set_freebind_and_transparent(a)
    finally:
        a.close()
        b.close()


@pytest.fixture
def connected_pair():
    srv = socket.create_server(("127.0.0.1", 0))
    client = socket.create_connection(srv.getsockname())
    conn, _ = srv.accept()
    yield srv, client, conn
    conn.close()
    client.close()
    srv.close()


def test_orig_dst_without_redirect_fails(connected_pair):
    _, _, conn = connected_pair
    with pytest.raises(OSError):
        orig_dst_addr(conn)


def test_orig_dst_falls_back_to_local_address(connected_pair):
    srv, _, conn = connected_pair
    assert orig_dst_addr_or_default(conn) == srv.getsockname()


@pytest.mark.asyncio
async def test_relay_copies_both_ways():
    a1, a2 = socket.socketpair()
    b1, b2 = socket.socketpair()
    client_r, client_w = await asyncio.open_connection(sock=a1)
    down_r, down_w = await asyncio.open_connection(sock=a2)
    up_r, up_w = await asyncio.open_connection(sock=b1)
    server_r, server_w = await asyncio.open_connection(sock=b2)

    task = asyncio.ensure_future(relay(down_r, down_w, up_r, up_w))
    client_w.write(b"hello world")
    client_w.write_eof()
    server_w.write(b"pong")
    server_w.write_eof()

    assert await asyncio.wait_for(server_r.read(), 5) == b"hello world"
    assert await asyncio.wait_for(client_r.read(), 5) == b"pong"
    assert await asyncio.wait_for(task, 5) == (11, 4)

    for w in (client_w, down_w, up_w, server_w):
        w.close()