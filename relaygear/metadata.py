"""Addresses and request headers encoded in the SOCKS5 address format."""

from __future__ import annotations

import ipaddress
import re
import socket
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class ProtocolError(Exception):
    """Raised when an address or header cannot be encoded or decoded."""


class AddressType(IntEnum):
    IPV4 = 1
    DOMAIN_NAME = 3
    IPV6 = 4


def _unmap(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _parse_ip(text: str) -> Optional[IPAddress]:
    """Parse an IP literal; IPv4-mapped IPv6 addresses become IPv4."""
    if "%" in text:
        return None
    try:
        return _unmap(ipaddress.ip_address(text))
    except ValueError:
        return None


def _read_exact(stream, size: int) -> bytes:
    reader = getattr(stream, "read", None) or stream.recv
    data = bytearray()
    while len(data) < size:
        chunk = reader(size - len(data))
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {len(data)}")
        data += chunk
    return bytes(data)


def _write_all(stream, data: bytes) -> None:
    writer = getattr(stream, "write", None) or stream.sendall
    writer(data)


@dataclass
class Address:
    """A network destination: an IP address or a domain name, and a port."""

    domain_name: str = ""
    port: int = 0
    network_type: str = ""
    ip: Optional[IPAddress] = None
    address_type: Optional[AddressType] = None

    def __post_init__(self) -> None:
        if self.ip is not None and not isinstance(self.ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            self.ip = ipaddress.ip_address(self.ip)

    def __str__(self) -> str:
        ip_text = "<nil>" if self.ip is None else str(_unmap(self.ip))
        if self.address_type == AddressType.IPV4:
            return f"{ip_text}:{self.port}"
        if self.address_type == AddressType.IPV6:
            return f"[{ip_text}]:{self.port}"
        if self.address_type == AddressType.DOMAIN_NAME:
            return f"{self.domain_name}:{self.port}"
        return "INVALID_ADDRESS_TYPE"

    def network(self) -> str:
        return self.network_type

    def resolve_ip(self) -> Optional[IPAddress]:
        """Return the IP address, looking the domain name up once if needed."""
        if self.address_type in (AddressType.IPV4, AddressType.IPV6) or self.ip is not None:
            return self.ip
        infos = socket.getaddrinfo(self.domain_name, None)
        ipv4 = [info for info in infos if info[0] == socket.AF_INET]
        host = (ipv4 or infos)[0][4][0].split("%", 1)[0]
        self.ip = ipaddress.ip_address(host)
        return self.ip

    def to_bytes(self) -> bytes:
        atyp = self.address_type
        if atyp == AddressType.DOMAIN_NAME:
            name = self.domain_name.encode("utf-8", "surrogateescape")
            if len(name) > 255:
                raise ProtocolError("domain name too long")
            body = bytes([len(name)]) + name
        elif atyp in (AddressType.IPV4, AddressType.IPV6):
            if self.ip is None:
                raise ProtocolError("missing IP address")
            ip = _unmap(self.ip)
            if atyp == AddressType.IPV4:
                if ip.version != 4:
                    raise ProtocolError(f"not an IPv4 address: {ip}")
                body = ip.packed
            else:
                body = ip.packed if ip.version == 6 else b"\x00" * 10 + b"\xff\xff" + ip.packed
        else:
            raise ProtocolError(f"invalid ATYP {int(atyp or 0)}")
        return bytes([atyp]) + body + struct.pack("!H", self.port & 0xFFFF)

    def write_to(self, stream) -> None:
        _write_all(stream, self.to_bytes())


@dataclass
class Metadata:
    """A command byte followed by a destination address."""

    command: int = 0
    address: Address = field(default_factory=Address)

    def __str__(self) -> str:
        return str(self.address)

    def network(self) -> str:
        return self.address.network()

    def to_bytes(self) -> bytes:
        return bytes([self.command & 0xFF]) + self.address.to_bytes()

    def write_to(self, stream) -> None:
        data = self.to_bytes()
        # use tcp by default
        self.address.network_type = "tcp"
        _write_all(stream, data)


def _read(stream, size: int, message: str) -> bytes:
    try:
        return _read_exact(stream, size)
    except EOFError as exc:
        raise ProtocolError(message) from exc


def read_address(stream) -> Address:
    """Decode one address from a readable stream."""
    raw_type = _read(stream, 1, "unable to read ATYP")[0]
    try:
        atyp = AddressType(raw_type)
    except ValueError:
        raise ProtocolError(f"invalid ATYP {raw_type}") from None

    if atyp == AddressType.IPV4:
        buf = _read(stream, 6, "failed to read IPv4")
        return Address(ip=ipaddress.IPv4Address(buf[:4]), port=struct.unpack("!H", buf[4:])[0], address_type=atyp)
    if atyp == AddressType.IPV6:
        buf = _read(stream, 18, "failed to read IPv6")
        return Address(ip=ipaddress.IPv6Address(buf[:16]), port=struct.unpack("!H", buf[16:])[0], address_type=atyp)

    length = _read(stream, 1, "failed to read domain name length")[0]
    buf = _read(stream, length + 2, "failed to read domain name")
    host = buf[:length].decode("utf-8", "surrogateescape")
    port = struct.unpack("!H", buf[length:])[0]
    # clients sometimes send an IP literal as a domain name
    ip = _parse_ip(host)
    if ip is not None:
        kind = AddressType.IPV4 if ip.version == 4 else AddressType.IPV6
        return Address(ip=ip, port=port, address_type=kind)
    return Address(domain_name=host, port=port, address_type=AddressType.DOMAIN_NAME)


def read_metadata(stream) -> Metadata:
    """Decode a command byte and an address from a readable stream."""
    command = _read(stream, 1, "failed to read command")[0]
    try:
        address = read_address(stream)
    except ProtocolError as exc:
        raise ProtocolError("failed to marshal address") from exc
    return Metadata(command=command, address=address)


def _split_host_port(addr: str) -> tuple[str, str]:
    if addr.startswith("["):
        host, sep, rest = addr[1:].partition("]")
        if not sep:
            raise ValueError(f"address {addr}: missing ']' in address")
        if not rest.startswith(":"):
            raise ValueError(f"address {addr}: missing port in address")
        port = rest[1:]
        if "[" in host or "[" in port or "]" in port:
            raise ValueError(f"address {addr}: unexpected bracket in address")
        return host, port
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {addr}: too many colons in address")
    if any(c in host for c in "[]") or "]" in port:
        raise ValueError(f"address {addr}: unexpected bracket in address")
    return host, port


def new_address_from_addr(network: str, addr: str) -> Address:
    """Build an address from a "host:port" string."""
    host, port_text = _split_host_port(addr)
    if not re.fullmatch(r"[+-]?\d+", port_text):
        raise ValueError(f"invalid port {port_text!r}")
    port = int(port_text)
    if not -(1 << 31) <= port < (1 << 31):
        raise ValueError(f"port out of range: {port_text}")
    return new_address_from_host_port(network, host, port)


def new_address_from_host_port(network: str, host: str, port: int) -> Address:
    """Build an address, classifying the host as IPv4, IPv6 or a domain name."""
    ip = _parse_ip(host)
    if ip is None:
        return Address(domain_name=host, port=port, address_type=AddressType.DOMAIN_NAME, network_type=network)
    kind = AddressType.IPV4 if ip.version == 4 else AddressType.IPV6
    return Address(ip=ip, port=port, address_type=kind, network_type=network)