import ipaddress
import socket
import threading

import pytest

from relaygear.metadata import Address, AddressType, Metadata
from relaygear.router import (
    CIDRRule,
    Client,
    Config,
    DomainRule,
    DomainStrategy,
    DomainType,
    Policy,
    RouterConfig,
    Tunnel,
    load_code,
    match_domain,
    match_ip,
)


class MockPacketConn:
    def __init__(self):
        self.closed = False

    def write_with_metadata(self, payload, metadata):
        raise ConnectionError("mockproxy")

    def read_with_metadata(self, size):
        raise ConnectionError("mockproxy")

    def close(self):
        self.closed = True


class MockClient:
    def __init__(self):
        self.closed = False

    def dial_conn(self, address, overlay):
        raise ConnectionError("mockproxy")

    def dial_packet(self, overlay):
        return MockPacketConn()

    def close(self):
        self.closed = True


def make_config():
    return Config(
        router=RouterConfig(
            enabled=True,
            bypass=[
                "regex:bypassreg(.*)",
                "full:bypassfull",
                "full:localhost",
                "domain:bypass.com",
                "cidr:127.0.0.0/8",
            ],
            block=[
                "regexp:blockreg(.*)",
                "full:blockfull",
                "domain:block.com",
                "cidr:10.9.0.0/16",
            ],
            proxy=[
                "regexp:proxyreg(.*)",
                "full:proxyfull",
                "domain:proxy.com",
                "cidr:192.168.1.1/16",
            ],
        )
    )


@pytest.fixture
def client():
    c = Client(make_config(), MockClient())
    yield c
    c.close()


def domain(name, port=80):
    return Address(domain_name=name, port=port, address_type=AddressType.DOMAIN_NAME)


def ipv4(text, port=80):
    return Address(ip=ipaddress.ip_address(text), port=port, address_type=AddressType.IPV4)


@pytest.mark.parametrize("name", ["proxy.com", "proxyreg123456", "proxyfull"])
def test_proxied_domains_reach_underlay(client, name):
    with pytest.raises(ConnectionError, match="^mockproxy$"):
        client.dial_conn(domain(name), None)


def test_proxied_ip_reaches_underlay(client):
    with pytest.raises(ConnectionError, match="^mockproxy$"):
        client.dial_conn(ipv4("192.168.123.123"), None)


def test_blocked_domain(client):
    with pytest.raises(ConnectionError, match="block"):
        client.dial_conn(domain("block.com"), None)


def test_route_decisions(client):
    assert client.route(domain("localhost")) == Policy.BYPASS
    assert client.route(domain("www.bypass.com")) == Policy.BYPASS
    assert client.route(domain("blockreg42")) == Policy.BLOCK
    assert client.route(ipv4("10.9.3.4")) == Policy.BLOCK
    assert client.route(domain("unlisted.org")) == Policy.PROXY


def test_bypass_dials_directly(client):
    server = socket.create_server(("127.0.0.1", 0))
    port = server.getsockname()[1]

    def serve():
        conn, _ = server.accept()
        conn.sendall(b"hello")
        conn.close()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    conn = client.dial_conn(ipv4("127.0.0.1", port), None)
    received = b""
    while len(received) < 5:
        chunk = conn.read(5 - len(received))
        if not chunk:
            break
        received += chunk
    conn.close()
    thread.join(2)
    server.close()
    assert received == b"hello"


def test_packet_proxy_route(client):
    packet = client.dial_packet(None)
    try:
        with pytest.raises(ConnectionError, match="^mockproxy$"):
            packet.write_with_metadata(b"\x00" * 10, Metadata(address=domain("proxyfull")))
    finally:
        packet.close()


def test_packet_block_route(client):
    packet = client.dial_packet(None)
    try:
        with pytest.raises(ConnectionError, match="blocked"):
            packet.write_with_metadata(b"data", Metadata(address=domain("blockfull")))
    finally:
        packet.close()


def test_packet_bypass_round_trip(client):
    echo = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    echo.bind(("127.0.0.1", 0))
    echo.settimeout(5)
    port = echo.getsockname()[1]
    packet = client.dial_packet(None)
    try:
        sent = packet.write_with_metadata(b"ping", Metadata(address=ipv4("127.0.0.1", port)))
        assert sent == 4
        data, src = echo.recvfrom(100)
        assert data == b"ping"
        echo.sendto(b"pong", src)
        payload, metadata = packet.read_with_metadata(100)
        assert payload == b"pong"
        assert metadata.address.port == port
        assert str(metadata.address) == f"127.0.0.1:{port}"
    finally:
        packet.close()
        echo.close()


def test_packet_closed_read_raises(client):
    packet = client.dial_packet(None)
    packet.close()
    with pytest.raises(EOFError):
        packet.read_with_metadata(10)


def test_close_closes_underlay():
    underlay = MockClient()
    c = Client(make_config(), underlay)
    c.close()
    assert underlay.closed is True


def test_match_domain_kinds():
    rules = [DomainRule(DomainType.DOMAIN, "example.com")]
    assert match_domain(rules, "example.com") is True
    assert match_domain(rules, "sub.example.com") is True
    assert match_domain(rules, "notexample.com") is False
    assert match_domain([DomainRule(DomainType.FULL, "a.b")], "x.a.b") is False
    assert match_domain([DomainRule(DomainType.PLAIN, "goo")], "www.google.com") is True
    assert match_domain([DomainRule(DomainType.REGEX, "^ab+c$")], "abbbc") is True
    assert match_domain([DomainRule(DomainType.REGEX, "^ab+c$")], "xabc") is False


def test_match_ip_families():
    rules = [CIDRRule(ipaddress.ip_address("192.168.1.1"), 16)]
    assert match_ip(rules, ipaddress.ip_address("192.168.200.1")) is True
    assert match_ip(rules, ipaddress.ip_address("192.169.0.1")) is False
    assert match_ip(rules, ipaddress.ip_address("::ffff:192.168.0.9")) is True
    assert match_ip(rules, ipaddress.ip_address("2001:db8::1")) is False
    v6 = [CIDRRule(ipaddress.ip_address("2001:db8::"), 32)]
    assert match_ip(v6, ipaddress.ip_address("2001:db8:5::1")) is True
    assert match_ip(v6, ipaddress.ip_address("10.0.0.1")) is False
    assert match_ip(rules, None) is False


def test_load_code_order_and_empty_rules():
    config = Config(
        router=RouterConfig(
            bypass=["full:b", "full:"],
            proxy=["full:p", "domain:x"],
            block=["full:k"],
        )
    )
    codes = load_code(config, "full:")
    assert [(c.code, c.policy) for c in codes] == [
        ("p", Policy.PROXY),
        ("b", Policy.BYPASS),
        ("k", Policy.BLOCK),
    ]


def test_rules_are_lowercased():
    config = Config(router=RouterConfig(proxy=["full:Example.COM"], default_policy="block"))
    c = Client(config, MockClient())
    try:
        assert c.route(domain("example.com")) == Policy.PROXY
        assert c.route(domain("other.com")) == Policy.BLOCK
    finally:
        c.close()


def test_ip_if_non_match_uses_resolved_ip():
    config = Config(
        router=RouterConfig(block=["cidr:127.0.0.0/8"], domain_strategy="IP-If-Non-Match")
    )
    c = Client(config, MockClient())
    try:
        assert c.domain_strategy == DomainStrategy.IP_IF_NON_MATCH
        assert c.route(domain("127.0.0.1")) == Policy.BLOCK
    finally:
        c.close()


@pytest.mark.parametrize(
    "rule",
    ["regex:([a-z", "cidr:10.0.0.0", "cidr:notanip/8", "cidr:10.0.0.0/x"],
)
def test_invalid_rules_raise(rule):
    with pytest.raises(ValueError):
        Client(Config(router=RouterConfig(proxy=[rule])), MockClient())


def test_unknown_strategy_and_policy():
    with pytest.raises(ValueError, match="unknown strategy"):
        Client(Config(router=RouterConfig(domain_strategy="sometimes")), MockClient())
    with pytest.raises(ValueError, match="unknown policy"):
        Client(Config(router=RouterConfig(default_policy="maybe")), MockClient())


def test_tunnel():
    tunnel = Tunnel()
    assert tunnel.name() == "ROUTER"
    with pytest.raises(RuntimeError):
        tunnel.new_server(None, None)
    c = tunnel.new_client(Config(), MockClient())
    try:
        assert c.default_policy == Policy.PROXY
        assert c.domain_strategy == DomainStrategy.AS_IS
    finally:
        c.close()