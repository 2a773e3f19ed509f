import io
import os
import socket
import threading

import pytest

from relaygear.freedom import (
    Client,
    Config,
    PacketConn,
    SocksPacketConn,
    Tunnel,
)
from relaygear.metadata import (
    Metadata,
    ProtocolError,
    new_address_from_addr,
    new_address_from_host_port,
    read_address,
)


def _recv_exact(sock, size):
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionError("short read")
        data += chunk
    return bytes(data)


def _read_all(conn, size):
    data = bytearray()
    while len(data) < size:
        chunk = conn.read(size - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


def _pipe(src, dst):
    try:
        while data := src.recv(4096):
            dst.sendall(data)
    except OSError:
        pass
    finally:
        for sock in (src, dst):
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass


@pytest.fixture
def tcp_echo():
    server = socket.socket()
    server.bind(("127.0.0.1", 0))
    server.listen()

    def handle(conn):
        with conn:
            while True:
                try:
                    data = conn.recv(4096)
                except OSError:
                    return
                if not data:
                    return
                conn.sendall(data)

    def serve():
        while True:
            try:
                conn, _ = server.accept()
            except OSError:
                return
            threading.Thread(target=handle, args=(conn,), daemon=True).start()

    threading.Thread(target=serve, daemon=True).start()
    yield "127.0.0.1:%d" % server.getsockname()[1]
    server.close()


@pytest.fixture
def udp_echo():
    server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    server.bind(("127.0.0.1", 0))

    def serve():
        while True:
            try:
                data, sender = server.recvfrom(65535)
                server.sendto(data, sender)
            except OSError:
                return

    threading.Thread(target=serve, daemon=True).start()
    yield "127.0.0.1:%d" % server.getsockname()[1]
    server.close()


@pytest.fixture
def socks_server():
    server = socket.socket()
    server.bind(("127.0.0.1", 0))
    server.listen()

    def relay_udp(relay):
        client = None
        while True:
            try:
                data, sender = relay.recvfrom(65535)
            except OSError:
                return
            if client is None or sender == client:
                client = sender
                stream = io.BytesIO(data[3:])
                target = read_address(stream)
                relay.sendto(stream.read(), (str(target.ip), target.port))
            else:
                origin = new_address_from_host_port("udp", sender[0], sender[1])
                relay.sendto(b"\x00\x00\x00" + origin.to_bytes() + data, client)

    def handle(conn):
        try:
            _, count = _recv_exact(conn, 2)
            _recv_exact(conn, count)
            conn.sendall(b"\x05\x00")
            _, command, _ = _recv_exact(conn, 3)
            target = read_address(conn)
        except (OSError, ProtocolError):
            conn.close()
            return
        host = str(target.ip) if target.ip is not None else target.domain_name
        if command == 1:
            upstream = socket.create_connection((host, target.port))
            conn.sendall(b"\x05\x00\x00\x01\x00\x00\x00\x00\x00\x00")
            threading.Thread(target=_pipe, args=(conn, upstream), daemon=True).start()
            threading.Thread(target=_pipe, args=(upstream, conn), daemon=True).start()
        elif command == 3:
            relay = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            relay.bind(("127.0.0.1", 0))
            bound = new_address_from_host_port("udp", "127.0.0.1", relay.getsockname()[1])
            conn.sendall(b"\x05\x00\x00" + bound.to_bytes())
            threading.Thread(target=relay_udp, args=(relay,), daemon=True).start()
            try:
                while conn.recv(64):
                    pass
            except OSError:
                pass
            relay.close()
            conn.close()
        else:
            conn.close()

    def serve():
        while True:
            try:
                conn, _ = server.accept()
            except OSError:
                return
            threading.Thread(target=handle, args=(conn,), daemon=True).start()

    threading.Thread(target=serve, daemon=True).start()
    yield server.getsockname()[1]
    server.close()


def test_conn(tcp_echo):
    client = Client()
    addr = new_address_from_addr("tcp", tcp_echo)
    conn = client.dial_conn(addr, None)
    conn.settimeout(5)
    payload = os.urandom(1024)
    assert conn.write(payload) == 1024
    assert _read_all(conn, 1024) == payload
    assert conn.metadata() is None
    conn.close()
    client.close()


def test_packet(udp_echo):
    client = Client()
    addr = new_address_from_addr("udp", udp_echo)
    conn = client.dial_packet(None)
    conn.settimeout(5)
    payload = os.urandom(1024)
    assert conn.write_to(payload, addr) == 1024
    data, source = conn.read_from(2048)
    assert data == payload
    assert str(source) == udp_echo
    conn.close()


def test_packet_with_metadata(udp_echo):
    client = Client(prefer_ipv4=True)
    target = new_address_from_addr("udp", udp_echo)
    with client.dial_packet(None) as conn:
        conn.settimeout(5)
        conn.write_with_metadata(b"hello1", Metadata(address=target))
        data, metadata = conn.read_with_metadata(100)
    assert data == b"hello1"
    assert str(metadata) == udp_echo
    assert metadata.network() == "udp"


def test_socks(socks_server, tcp_echo, udp_echo):
    proxy = new_address_from_host_port("tcp", "127.0.0.1", socks_server)
    client = Client(forward_proxy=True, proxy_addr=proxy, no_delay=True)

    target = new_address_from_addr("tcp", tcp_echo)
    conn = client.dial_conn(target, None)
    conn.settimeout(5)
    payload = os.urandom(1024)
    conn.write(payload)
    assert _read_all(conn, 1024) == payload
    conn.close()

    udp_target = new_address_from_addr("udp", udp_echo)
    packet = client.dial_packet(None)
    packet.settimeout(5)
    assert packet.write_with_metadata(payload, Metadata(address=udp_target)) == 1024
    data, metadata = packet.read_with_metadata(1024)
    assert len(data) == 1024
    assert data == payload
    assert str(metadata) == udp_echo
    packet.close()
    client.close()


def test_socks_packet_wire_format():
    receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    receiver.bind(("127.0.0.1", 0))
    receiver.settimeout(5)
    sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sender.bind(("127.0.0.1", 0))
    conn = SocksPacketConn(sender, receiver.getsockname())
    try:
        target = new_address_from_host_port("udp", "127.0.0.1", 53)
        assert conn.write_with_metadata(b"ping", Metadata(address=target)) == 4
        data, _ = receiver.recvfrom(100)
        assert data == b"\x00\x00\x00\x01\x7f\x00\x00\x01\x00\x35ping"
    finally:
        conn.close()
        receiver.close()


def test_socks_packet_read_parses_header():
    peer = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    peer.bind(("127.0.0.1", 0))
    local = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    local.bind(("127.0.0.1", 0))
    conn = SocksPacketConn(local, peer.getsockname())
    conn.settimeout(5)
    try:
        origin = new_address_from_host_port("udp", "test.com", 443)
        peer.sendto(b"\x00\x00\x00" + origin.to_bytes() + b"12345678", local.getsockname())
        data, metadata = conn.read_with_metadata(100)
        assert data == b"12345678"
        assert str(metadata) == "test.com:443"
    finally:
        conn.close()
        peer.close()


def test_socks_packet_rejects_bad_header():
    peer = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    peer.bind(("127.0.0.1", 0))
    local = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    local.bind(("127.0.0.1", 0))
    conn = SocksPacketConn(local, peer.getsockname())
    conn.settimeout(5)
    try:
        peer.sendto(b"\x00\x00\x00\x09", local.getsockname())
        with pytest.raises(ProtocolError):
            conn.read_with_metadata(100)
    finally:
        conn.close()
        peer.close()


def test_packet_write_accepts_tuple(udp_echo):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    conn = PacketConn(sock)
    conn.settimeout(5)
    target = new_address_from_addr("udp", udp_echo)
    try:
        conn.write_to(b"abc", ("127.0.0.1", target.port))
        data, source = conn.read_from(100)
        assert data == b"abc"
        assert source.port == target.port
    finally:
        conn.close()


def test_tunnel_client_from_config_defaults():
    tunnel = Tunnel()
    client = tunnel.new_client(Config(), None)
    assert tunnel.name() == "FREEDOM"
    assert client.no_delay is True
    assert client.keep_alive is True
    assert client.prefer_ipv4 is False
    assert client.forward_proxy is False


def test_tunnel_has_no_server():
    with pytest.raises(RuntimeError):
        Tunnel().new_server(Config(), None)


def test_closed_client_refuses_to_dial(tcp_echo):
    client = Client()
    client.close()
    with pytest.raises(ConnectionError):
        client.dial_conn(new_address_from_addr("tcp", tcp_echo), None)


def test_dial_refused_raises():
    with socket.socket() as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
    client = Client()
    with pytest.raises(ConnectionError, match="freedom failed to dial"):
        client.dial_conn(new_address_from_host_port("tcp", "127.0.0.1", port), None)