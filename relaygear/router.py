"""Rule-based outbound routing: proxy, bypass or block each destination."""

from __future__ import annotations

import ipaddress
import logging
import queue
import re
import socket
import threading
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Iterable, NamedTuple, Optional, Union

from . import freedom
from .metadata import (
    Address,
    AddressType,
    Metadata,
    ProtocolError,
    new_address_from_host_port,
)

logger = logging.getLogger(__name__)

NAME = "ROUTER"
MAX_PACKET_SIZE = 1024 * 8

_POLL = 0.1
_INT_RE = re.compile(r"[+-]?\d+")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class Policy(IntEnum):
    BLOCK = 0
    BYPASS = 1
    PROXY = 2


class DomainStrategy(IntEnum):
    AS_IS = 0
    IP_IF_NON_MATCH = 1
    IP_ON_DEMAND = 2


class DomainType(Enum):
    PLAIN = 0
    REGEX = 1
    DOMAIN = 2
    FULL = 3


@dataclass(frozen=True)
class DomainRule:
    type: DomainType
    value: str
    attributes: tuple = ()


@dataclass(frozen=True)
class CIDRRule:
    ip: IPAddress
    prefix: int


@dataclass
class RouterConfig:
    enabled: bool = False
    bypass: list[str] = field(default_factory=list)
    proxy: list[str] = field(default_factory=list)
    block: list[str] = field(default_factory=list)
    domain_strategy: str = "as_is"
    default_policy: str = "proxy"
    geoip_filename: str = "geoip.dat"
    geosite_filename: str = "geosite.dat"


@dataclass
class Config:
    router: RouterConfig = field(default_factory=RouterConfig)


class _CodeInfo(NamedTuple):
    code: str
    policy: Policy


_STRATEGIES = {
    "as_is": DomainStrategy.AS_IS,
    "as-is": DomainStrategy.AS_IS,
    "asis": DomainStrategy.AS_IS,
    "ip_if_non_match": DomainStrategy.IP_IF_NON_MATCH,
    "ip-if-non-match": DomainStrategy.IP_IF_NON_MATCH,
    "ipifnonmatch": DomainStrategy.IP_IF_NON_MATCH,
    "ip_on_demand": DomainStrategy.IP_ON_DEMAND,
    "ip-on-demand": DomainStrategy.IP_ON_DEMAND,
    "ipondemand": DomainStrategy.IP_ON_DEMAND,
}

_POLICIES = {
    "proxy": Policy.PROXY,
    "bypass": Policy.BYPASS,
    "block": Policy.BLOCK,
}


def _normalize_ip(ip: Optional[IPAddress]) -> Optional[IPAddress]:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def match_domain(rules: Iterable[DomainRule], target: str) -> bool:
    """Return True if any rule matches the domain name."""
    for rule in rules:
        if rule.type == DomainType.FULL:
            if rule.value == target:
                logger.debug("domain %s hit domain(full) rule: %s", target, rule.value)
                return True
        elif rule.type == DomainType.DOMAIN:
            if target.endswith(rule.value):
                idx = target.find(rule.value)
                if idx == 0 or target[idx - 1] == ".":
                    logger.debug("domain %s hit domain rule: %s", target, rule.value)
                    return True
        elif rule.type == DomainType.PLAIN:
            if rule.value in target:
                logger.debug("domain %s hit keyword rule: %s", target, rule.value)
                return True
        elif rule.type == DomainType.REGEX:
            try:
                matched = re.search(rule.value, target) is not None
            except re.error:
                logger.error("invalid regex %s", rule.value)
                return False
            if matched:
                logger.debug("domain %s hit regex rule: %s", target, rule.value)
                return True
        else:
            logger.debug("unknown rule type: %s", rule.type)
    return False


def match_ip(rules: Iterable[CIDRRule], target: Optional[IPAddress]) -> bool:
    """Return True if the address lies in any rule's network of the same family."""
    target = _normalize_ip(target)
    if target is None:
        return False
    for rule in rules:
        cidr_ip = _normalize_ip(rule.ip)
        if cidr_ip is None or cidr_ip.version != target.version:
            continue
        if not 0 <= rule.prefix <= cidr_ip.max_prefixlen:
            continue
        network = ipaddress.ip_network((cidr_ip, rule.prefix), strict=False)
        if target in network:
            return True
    return False


def load_code(config: Config, prefix: str) -> list[_CodeInfo]:
    """Collect the rules starting with prefix, as (code, policy) pairs."""
    codes: list[_CodeInfo] = []
    sources = (
        (config.router.proxy, Policy.PROXY),
        (config.router.bypass, Policy.BYPASS),
        (config.router.block, Policy.BLOCK),
    )
    for entries, policy in sources:
        for entry in entries:
            if not entry.startswith(prefix):
                continue
            rest = entry[len(prefix):]
            if rest:
                codes.append(_CodeInfo(rest, policy))
            else:
                logger.warning("invalid empty rule: %s", entry)
    return codes


def _parse_cidr(code: str) -> CIDRRule:
    parts = code.split("/")
    if len(parts) != 2:
        raise ValueError("invalid cidr: " + code)
    try:
        ip = ipaddress.ip_address(parts[0])
    except ValueError:
        raise ValueError("invalid cidr ip: " + code) from None
    if not _INT_RE.fullmatch(parts[1]):
        raise ValueError("invalid prefix: " + parts[1])
    return CIDRRule(ip=ip, prefix=int(parts[1]))


def _open_direct_socket() -> socket.socket:
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


class Client:
    """Sends each destination through the proxy, directly, or nowhere."""

    def __init__(self, config: Config, underlay) -> None:
        cfg = config.router
        strategy = _STRATEGIES.get(cfg.domain_strategy.lower())
        if strategy is None:
            raise ValueError("unknown strategy: " + cfg.domain_strategy)
        policy = _POLICIES.get(cfg.default_policy.lower())
        if policy is None:
            raise ValueError("unknown policy: " + cfg.default_policy)
        self.domain_strategy = strategy
        self.default_policy = policy
        self.domains: dict[Policy, list[DomainRule]] = {p: [] for p in Policy}
        self.cidrs: dict[Policy, list[CIDRRule]] = {p: [] for p in Policy}

        for info in load_code(config, "geoip:"):
            logger.error("geoip:%s not loaded: geodata files are not supported", info.code)

        for info in load_code(config, "geosite:"):
            idx = info.code.find("@")
            if idx == 0 or (idx > 0 and info.code.endswith("@")):
                logger.warning("geosite:%s invalid", info.code)
                continue
            logger.error("geosite:%s not loaded: geodata files are not supported", info.code)

        for info in load_code(config, "domain:"):
            self.domains[info.policy].append(DomainRule(DomainType.DOMAIN, info.code.lower()))
        for info in load_code(config, "keyword:"):
            self.domains[info.policy].append(DomainRule(DomainType.PLAIN, info.code.lower()))
        for prefix in ("regex:", "regexp:"):
            for info in load_code(config, prefix):
                try:
                    re.compile(info.code)
                except re.error as exc:
                    raise ValueError("invalid regular expression: " + info.code) from exc
                self.domains[info.policy].append(DomainRule(DomainType.REGEX, info.code))
        for info in load_code(config, "full:"):
            self.domains[info.policy].append(DomainRule(DomainType.FULL, info.code.lower()))
        for info in load_code(config, "cidr:"):
            self.cidrs[info.policy].append(_parse_cidr(info.code))

        self._underlay = underlay
        self._direct = freedom.Tunnel().new_client(freedom.Config(), None)
        self._stop = threading.Event()
        logger.info("router client created")

    def _route_by_ip(self, address: Address) -> Optional[Policy]:
        try:
            ip = address.resolve_ip()
        except (OSError, UnicodeError, ValueError) as exc:
            logger.debug("router failed to resolve ip: %s", exc)
            return None
        for policy in Policy:
            if match_ip(self.cidrs[policy], ip):
                return policy
        return None

    def route(self, address: Address) -> Policy:
        """Decide what to do with a destination."""
        if address.address_type == AddressType.DOMAIN_NAME:
            if self.domain_strategy == DomainStrategy.IP_ON_DEMAND:
                found = self._route_by_ip(address)
                if found is not None:
                    return found
            for policy in Policy:
                if match_domain(self.domains[policy], address.domain_name):
                    return policy
            if self.domain_strategy == DomainStrategy.IP_IF_NON_MATCH:
                found = self._route_by_ip(address)
                if found is not None:
                    return found
        else:
            for policy in Policy:
                if match_ip(self.cidrs[policy], address.ip):
                    return policy
        return self.default_policy

    def dial_conn(self, address: Address, overlay=None):
        """Open a stream to the address according to its policy."""
        policy = self.route(address)
        if policy == Policy.PROXY:
            return self._underlay.dial_conn(address, overlay)
        if policy == Policy.BLOCK:
            raise ConnectionError(f"router blocked address: {address}")
        try:
            return self._direct.dial_conn(address, Tunnel())
        except OSError as exc:
            raise ConnectionError("router dial error") from exc

    def dial_packet(self, overlay=None) -> "PacketConn":
        """Open a packet connection that routes every datagram by its destination."""
        try:
            direct = _open_direct_socket()
        except OSError as exc:
            raise ConnectionError("router failed to dial udp (direct)") from exc
        try:
            proxy = self._underlay.dial_packet(overlay)
        except OSError as exc:
            direct.close()
            raise ConnectionError("router failed to dial udp (proxy)") from exc
        conn = PacketConn(self, direct, proxy)
        conn._start()
        return conn

    def close(self) -> None:
        self._stop.set()
        self._direct.close()
        self._underlay.close()

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class PacketConn:
    """Datagrams from the proxy and from direct peers, merged into one stream."""

    def __init__(self, client: Client, direct: socket.socket, proxy) -> None:
        self._client = client
        self._direct = direct
        self._proxy = proxy
        self._packets: queue.Queue = queue.Queue(16)
        self._stop = threading.Event()

    def _stopped(self) -> bool:
        return self._stop.is_set() or self._client._stop.is_set()

    def _start(self) -> None:
        self._direct.settimeout(_POLL)
        threading.Thread(target=self._proxy_loop, name="router-proxy-udp", daemon=True).start()
        threading.Thread(target=self._direct_loop, name="router-direct-udp", daemon=True).start()

    def _push(self, item) -> None:
        while not self._stopped():
            try:
                self._packets.put(item, timeout=_POLL)
                return
            except queue.Full:
                continue

    def _proxy_loop(self) -> None:
        while not self._stopped():
            try:
                payload, metadata = self._proxy.read_with_metadata(MAX_PACKET_SIZE)
            except (OSError, EOFError, ProtocolError) as exc:
                if self._stopped():
                    return
                logger.error("router packetConn error: %s", exc)
                self._stop.wait(_POLL)
                continue
            self._push((metadata, payload))

    def _direct_loop(self) -> None:
        while not self._stopped():
            try:
                data, src = self._direct.recvfrom(MAX_PACKET_SIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stopped():
                    return
                logger.error("router packetConn error: %s", exc)
                self._stop.wait(_POLL)
                continue
            host = src[0].split("%", 1)[0]
            address = new_address_from_host_port("udp", host, src[1])
            self._push((Metadata(address=address), data))

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        """Send a datagram through the route its destination calls for."""
        policy = self._client.route(metadata.address)
        if policy == Policy.PROXY:
            return self._proxy.write_with_metadata(payload, metadata)
        if policy == Policy.BLOCK:
            raise ConnectionError(f"router blocked address (udp): {metadata.address}")
        try:
            ip = metadata.address.resolve_ip()
        except (OSError, UnicodeError, ValueError) as exc:
            raise ConnectionError("router failed to resolve udp address") from exc
        ip = _normalize_ip(ip)
        host = str(ip)
        if self._direct.family == socket.AF_INET6 and ip.version == 4:
            host = "::ffff:" + host
        return self._direct.sendto(payload, (host, metadata.address.port))

    def read_with_metadata(self, size: int) -> tuple[bytes, Metadata]:
        """Wait for the next datagram from either route."""
        while True:
            if self._stopped():
                raise EOFError("router packet conn closed")
            try:
                metadata, payload = self._packets.get(timeout=_POLL)
            except queue.Empty:
                continue
            return payload[:size], metadata

    def close(self) -> None:
        self._stop.set()
        self._proxy.close()
        self._direct.close()

    def __enter__(self) -> "PacketConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Tunnel:
    """The routing layer of an outbound stack."""

    def name(self) -> str:
        return NAME

    def new_client(self, config: Optional[Config], underlay) -> Client:
        return Client(config if config is not None else Config(), underlay)

    def new_server(self, config, underlay=None):
        raise RuntimeError("not supported")