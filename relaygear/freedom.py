"""Direct outbound connections, optionally through a SOCKS5 forward proxy."""

from __future__ import annotations

import io
import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from typing import Optional, Union

from .metadata import (
    Address,
    Metadata,
    ProtocolError,
    new_address_from_host_port,
    read_address,
)

logger = logging.getLogger(__name__)

NAME = "FREEDOM"
MAX_PACKET_SIZE = 1024 * 8

_SOCKS_CONNECT = 1
_SOCKS_UDP_ASSOCIATE = 3


@dataclass
class TCPConfig:
    prefer_ipv4: bool = False
    keep_alive: bool = True
    no_delay: bool = True


@dataclass
class ForwardProxyConfig:
    enabled: bool = False
    proxy_host: str = ""
    proxy_port: int = 0
    username: str = ""
    password: str = ""


@dataclass
class Config:
    local_host: str = ""
    local_port: int = 0
    tcp: TCPConfig = field(default_factory=TCPConfig)
    forward_proxy: ForwardProxyConfig = field(default_factory=ForwardProxyConfig)


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionError(f"expected {size} bytes, got {len(data)}")
        data += chunk
    return bytes(data)


def _host_of(address: Address) -> str:
    return str(address.ip) if address.ip is not None else address.domain_name


def _dial_tcp(host: str, port: int, family: int = 0) -> socket.socket:
    last_error: Optional[OSError] = None
    for af, kind, proto, _, sockaddr in socket.getaddrinfo(host, port, family, socket.SOCK_STREAM):
        sock = socket.socket(af, kind, proto)
        try:
            sock.connect(sockaddr)
            return sock
        except OSError as exc:
            sock.close()
            last_error = exc
    raise last_error or OSError(f"no address for {host}")


def _socks_negotiate(sock: socket.socket, username: str, secret: str) -> None:
    methods = b"\x00\x02" if username else b"\x00"
    sock.sendall(b"\x05" + bytes([len(methods)]) + methods)
    version, method = _recv_exact(sock, 2)
    if version != 5:
        raise ConnectionError(f"unexpected socks version {version}")
    if method == 0x02 and username:
        user = username.encode("utf-8")
        key = secret.encode("utf-8")
        sock.sendall(b"\x01" + bytes([len(user)]) + user + bytes([len(key)]) + key)
        _, status = _recv_exact(sock, 2)
        if status != 0:
            raise ConnectionError("socks authentication failed")
    elif method != 0x00:
        raise ConnectionError("socks server has no acceptable authentication method")


def _socks_request(sock: socket.socket, command: int, address: Address) -> Address:
    sock.sendall(bytes([5, command, 0]) + address.to_bytes())
    _, reply, _ = _recv_exact(sock, 3)
    if reply != 0:
        raise ConnectionError(f"socks request failed with code {reply}")
    return read_address(sock)


def _listen_udp(prefer_ipv4: bool) -> socket.socket:
    if not prefer_ipv4 and socket.has_ipv6:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.bind(("::", 0))
            return sock
        except OSError:
            sock.close()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("", 0))
    return sock


class Conn:
    """A direct stream connection; it carries no metadata unless one is given."""

    def __init__(self, sock: socket.socket, metadata: Optional[Metadata] = None) -> None:
        self.socket = sock
        self._metadata = metadata

    def metadata(self) -> Optional[Metadata]:
        return self._metadata

    def read(self, size: int) -> bytes:
        return self.socket.recv(size)

    def write(self, data: bytes) -> int:
        self.socket.sendall(data)
        return len(data)

    def settimeout(self, seconds: Optional[float]) -> None:
        self.socket.settimeout(seconds)

    def close(self) -> None:
        self.socket.close()

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class PacketConn:
    """A UDP socket addressed with Address objects."""

    def __init__(self, sock: socket.socket) -> None:
        self.socket = sock

    def _sockaddr(self, address: Address) -> tuple:
        ip = address.resolve_ip()
        if self.socket.family == socket.AF_INET6 and ip.version == 4:
            return (f"::ffff:{ip}", address.port)
        return (str(ip), address.port)

    def write_to(self, payload: bytes, addr: Union[Address, tuple]) -> int:
        if not isinstance(addr, Address):
            host, port = addr[0], addr[1]
            addr = new_address_from_host_port("udp", host, port)
        return self.socket.sendto(payload, self._sockaddr(addr))

    def read_from(self, size: int) -> tuple[bytes, Address]:
        data, sender = self.socket.recvfrom(size)
        return data, new_address_from_host_port("udp", sender[0], sender[1])

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        return self.write_to(payload, metadata.address)

    def read_with_metadata(self, size: int) -> tuple[bytes, Metadata]:
        data, address = self.read_from(size)
        return data, Metadata(address=address)

    def settimeout(self, seconds: Optional[float]) -> None:
        self.socket.settimeout(seconds)

    def close(self) -> None:
        self.socket.close()

    def __enter__(self) -> "PacketConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class SocksPacketConn:
    """UDP through a SOCKS5 relay; each datagram carries a SOCKS5 UDP header."""

    def __init__(
        self,
        sock: socket.socket,
        socks_addr: tuple,
        control: Optional[socket.socket] = None,
    ) -> None:
        self.socket = sock
        self.socks_addr = socks_addr
        self._control = control

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        packet = b"\x00\x00\x00" + metadata.address.to_bytes() + payload  # RSV, FRAG
        self.socket.sendto(packet, self.socks_addr)
        logger.debug("sent udp packet to %s with metadata %s", self.socks_addr, metadata)
        return len(payload)

    def read_with_metadata(self, size: int) -> tuple[bytes, Metadata]:
        data, sender = self.socket.recvfrom(MAX_PACKET_SIZE)
        logger.debug("recv udp packet from %s", sender)
        stream = io.BytesIO(data[3:])
        try:
            address = read_address(stream)
        except ProtocolError as exc:
            raise ProtocolError("socks5 failed to parse addr in the packet") from exc
        payload = stream.read(size)
        if not payload and size > 0:
            raise EOFError("empty socks5 udp payload")
        return payload, Metadata(address=address)

    def settimeout(self, seconds: Optional[float]) -> None:
        self.socket.settimeout(seconds)

    def close(self) -> None:
        if self._control is not None:
            self._control.close()
        self.socket.close()

    def __enter__(self) -> "SocksPacketConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Client:
    """Dials targets directly, or through a SOCKS5 forward proxy."""

    def __init__(
        self,
        *,
        prefer_ipv4: bool = False,
        no_delay: bool = False,
        keep_alive: bool = False,
        forward_proxy: bool = False,
        proxy_addr: Optional[Address] = None,
        username: str = "",
        password: Optional[str] = None,
    ) -> None:
        self.prefer_ipv4 = prefer_ipv4
        self.no_delay = no_delay
        self.keep_alive = keep_alive
        self.forward_proxy = forward_proxy
        self.proxy_addr = proxy_addr
        self.username = username
        self.password = password or ""
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise ConnectionError("freedom client closed")

    def _connect_proxy(self) -> socket.socket:
        if self.proxy_addr is None:
            raise ConnectionError("freedom failed to init socks dialer")
        try:
            sock = _dial_tcp(_host_of(self.proxy_addr), self.proxy_addr.port)
        except OSError as exc:
            raise ConnectionError("freedom failed to init socks dialer") from exc
        return sock

    def dial_conn(self, address: Address, overlay=None) -> Conn:
        """Open a stream to the address."""
        self._check_open()
        if self.forward_proxy:
            sock = self._connect_proxy()
            try:
                _socks_negotiate(sock, self.username, self.password)
                _socks_request(sock, _SOCKS_CONNECT, address)
            except (OSError, ProtocolError) as exc:
                sock.close()
                raise ConnectionError(
                    f"freedom failed to dial target address via socks proxy {address}"
                ) from exc
            return Conn(sock)

        family = socket.AF_INET if self.prefer_ipv4 else 0
        try:
            sock = _dial_tcp(_host_of(address), address.port, family)
        except OSError as exc:
            raise ConnectionError(f"freedom failed to dial {address}") from exc
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, int(self.keep_alive))
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(self.no_delay))
        return Conn(sock)

    def dial_packet(self, overlay=None) -> Union[PacketConn, SocksPacketConn]:
        """Open a packet connection, through the proxy's UDP relay if one is set."""
        self._check_open()
        if self.forward_proxy:
            control = self._connect_proxy()
            try:
                _socks_negotiate(control, self.username, self.password)
            except (OSError, ProtocolError) as exc:
                control.close()
                raise ConnectionError("freedom failed to negotiate socks") from exc
            placeholder = new_address_from_host_port("udp", "1.1.1.1", 53)
            try:
                bound = _socks_request(control, _SOCKS_UDP_ASSOCIATE, placeholder)
            except (OSError, ProtocolError) as exc:
                control.close()
                raise ConnectionError("freedom failed to dial udp to socks") from exc
            try:
                udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                udp.bind(("127.0.0.1", 0))
            except OSError as exc:
                control.close()
                raise ConnectionError("freedom failed to listen udp") from exc
            try:
                ip = bound.resolve_ip()
            except OSError as exc:
                udp.close()
                control.close()
                raise ConnectionError("freedom recv invalid socks bind addr") from exc
            if isinstance(ip, ipaddress.IPv6Address):
                udp.close()
                control.close()
                raise ConnectionError("freedom recv invalid socks bind addr")
            return SocksPacketConn(udp, (str(ip), bound.port), control)

        try:
            sock = _listen_udp(self.prefer_ipv4)
        except OSError as exc:
            raise ConnectionError("freedom failed to listen udp socket") from exc
        return PacketConn(sock)

    def close(self) -> None:
        self._closed = True


def _new_client(config: Config) -> Client:
    proxy = config.forward_proxy
    return Client(
        prefer_ipv4=config.tcp.prefer_ipv4,
        no_delay=config.tcp.no_delay,
        keep_alive=config.tcp.keep_alive,
        forward_proxy=proxy.enabled,
        proxy_addr=new_address_from_host_port("tcp", proxy.proxy_host, proxy.proxy_port),
        username=proxy.username,
        password=proxy.password,
    )


class Tunnel:
    """The outbound end of a tunnel stack."""

    def name(self) -> str:
        return NAME

    def new_client(self, config: Optional[Config], underlay=None) -> Client:
        return _new_client(config if config is not None else Config())

    def new_server(self, config, underlay=None):
        message = f"{self.name().lower()} tunnel has no server side"
        raise RuntimeError(message)