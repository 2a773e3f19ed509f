import socket
import time

import pytest

from relaygear import dokodemo
from relaygear.metadata import AddressType

TARGET_PORT = 5353


def _make_server(udp_timeout=30):
    return dokodemo.Server(
        dokodemo.Config(
            local_host="127.0.0.1",
            local_port=0,
            target_host="127.0.0.1",
            target_port=TARGET_PORT,
            udp_timeout=udp_timeout,
        )
    )


def _udp_client():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(5)
    return sock


def _recv_exact(reader, size):
    data = b""
    while len(data) < size:
        chunk = reader(size - len(data))
        assert chunk
        data += chunk
    return data


@pytest.fixture
def server():
    srv = _make_server()
    yield srv
    srv.close()


def test_tcp_connection_carries_target(server):
    client = socket.create_connection(server.tcp_address, timeout=5)
    conn = server.accept_conn(None)
    try:
        meta = conn.metadata()
        assert meta.address.port == TARGET_PORT
        assert meta.address.address_type == AddressType.IPV4
        assert str(meta) == f"127.0.0.1:{TARGET_PORT}"
        client.sendall(b"x" * 1024)
        assert _recv_exact(conn.read, 1024) == b"x" * 1024
        conn.write(b"y" * 1024)
        assert _recv_exact(client.recv, 1024) == b"y" * 1024
    finally:
        client.close()
        conn.close()


def test_udp_sessions(server):
    first = _udp_client()
    second = _udp_client()
    try:
        first.sendto(b"hello1", server.udp_address)
        packet1 = server.accept_packet(None)
        data, meta = packet1.read_with_metadata(100)
        assert data == b"hello1"
        assert meta.address.port == TARGET_PORT

        packet1.write_with_metadata(b"reply1", meta)
        reply, sender = first.recvfrom(100)
        assert reply == b"reply1"
        assert sender == server.udp_address

        first.sendto(b"again", server.udp_address)
        assert packet1.read_with_metadata(100)[0] == b"again"

        second.sendto(b"hello2", server.udp_address)
        packet2 = server.accept_packet(None)
        assert packet2 is not packet1
        assert packet2.read_with_metadata(100)[0] == b"hello2"
        packet2.write_with_metadata(b"reply2", meta)
        assert second.recvfrom(100)[0] == b"reply2"
    finally:
        first.close()
        second.close()


def test_read_from_and_write_to(server):
    client = _udp_client()
    try:
        client.sendto(b"ping", server.udp_address)
        packet = server.accept_packet(None)
        data, address = packet.read_from(2)
        assert data == b"pi"
        assert address.port == TARGET_PORT
        # the destination given is ignored: replies go back to the sender
        assert packet.write_to(b"pong", ("127.0.0.1", 1)) == 4
        assert client.recvfrom(100)[0] == b"pong"
        assert packet.local_address == server.udp_address
    finally:
        client.close()


def test_closed_packet_conn_raises(server):
    client = _udp_client()
    try:
        client.sendto(b"data", server.udp_address)
        packet = server.accept_packet(None)
        packet.close()
        with pytest.raises(ConnectionError):
            packet.read_with_metadata(10)
        with pytest.raises(ConnectionError):
            packet.write_with_metadata(b"data", None)
    finally:
        client.close()


def test_idle_session_times_out():
    srv = _make_server(udp_timeout=1)
    client = _udp_client()
    try:
        client.sendto(b"first", srv.udp_address)
        first = srv.accept_packet(None)
        assert first.read_with_metadata(100)[0] == b"first"
        time.sleep(1.6)
        with pytest.raises(ConnectionError):
            first.read_with_metadata(100)
        client.sendto(b"second", srv.udp_address)
        second = srv.accept_packet(None)
        assert second is not first
        assert second.read_with_metadata(100)[0] == b"second"
    finally:
        client.close()
        srv.close()


def test_accept_after_close_raises():
    srv = _make_server()
    srv.close()
    with pytest.raises(ConnectionError):
        srv.accept_packet(None)
    with pytest.raises(ConnectionError):
        srv.accept_conn(None)


def test_tunnel():
    tunnel = dokodemo.Tunnel()
    assert tunnel.name() == "DOKODEMO"
    with pytest.raises(RuntimeError):
        tunnel.new_client(dokodemo.Config(), None)
    srv = tunnel.new_server(
        dokodemo.Config(local_host="127.0.0.1", target_host="example.com", target_port=80), None
    )
    try:
        assert srv.target_addr.address_type == AddressType.DOMAIN_NAME
        assert str(srv.target_addr) == "example.com:80"
    finally:
        srv.close()


def test_default_config():
    cfg = dokodemo.Config()
    assert cfg.udp_timeout == 60
    assert cfg.local_port == 0