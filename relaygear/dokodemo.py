"""Transparent forwarder: every connection and datagram goes to one fixed target."""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass
from typing import Optional, Union

from .metadata import (
    Address,
    Metadata,
    new_address_from_addr,
    new_address_from_host_port,
)

logger = logging.getLogger(__name__)

NAME = "DOKODEMO"
MAX_PACKET_SIZE = 1024 * 8

_POLL = 0.1


@dataclass
class Config:
    local_host: str = ""
    local_port: int = 0
    target_host: str = ""
    target_port: int = 0
    udp_timeout: int = 60


class _Closed(Exception):
    """One of the watched cancellation events was set."""


def _take(items: queue.Queue, events, timeout: Optional[float] = None):
    """Get an item, raising _Closed on cancellation or queue.Empty on timeout."""
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if any(event.is_set() for event in events):
            raise _Closed
        wait = _POLL
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise queue.Empty
            wait = min(wait, remaining)
        try:
            return items.get(timeout=wait)
        except queue.Empty:
            continue


def _give(items: queue.Queue, item, events) -> bool:
    """Put an item, giving up (and returning False) on cancellation."""
    while not any(event.is_set() for event in events):
        try:
            items.put(item, timeout=_POLL)
            return True
        except queue.Full:
            continue
    return False


def _bind_udp(host: str, port: int) -> socket.socket:
    infos = socket.getaddrinfo(host or None, port, 0, socket.SOCK_DGRAM, 0, socket.AI_PASSIVE)
    family, kind, proto, _, sockaddr = infos[0]
    sock = socket.socket(family, kind, proto)
    try:
        sock.bind(sockaddr)
    except OSError:
        sock.close()
        raise
    return sock


class Conn:
    """An accepted stream whose destination is the configured target."""

    def __init__(self, sock: socket.socket, target: Metadata) -> None:
        self.socket = sock
        self._metadata = target

    def metadata(self) -> Metadata:
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
    """One UDP session, fed by the server's dispatcher; closing leaves the socket open."""

    def __init__(self, listener: socket.socket, metadata: Metadata, src, server_stop: threading.Event) -> None:
        self.listener = listener
        self.src = src
        self._metadata = metadata
        self._input: queue.Queue = queue.Queue(16)
        self._output: queue.Queue = queue.Queue(16)
        self._closed = threading.Event()
        self._events = (self._closed, server_stop)

    @property
    def local_address(self):
        return self.listener.getsockname()

    def read_with_metadata(self, size: int) -> tuple[bytes, Metadata]:
        try:
            payload = _take(self._input, self._events)
        except _Closed:
            raise ConnectionError("dokodemo packet conn closed") from None
        return payload[:size], self._metadata

    def write_with_metadata(self, payload: bytes, metadata: Optional[Metadata] = None) -> int:
        if not _give(self._output, bytes(payload), self._events):
            raise ConnectionError("dokodemo packet conn failed to write")
        return len(payload)

    def read_from(self, size: int) -> tuple[bytes, Address]:
        payload, metadata = self.read_with_metadata(size)
        return payload, metadata.address

    def write_to(self, payload: bytes, addr: Union[Address, tuple, str]) -> int:
        if isinstance(addr, tuple):
            address = new_address_from_host_port("udp", addr[0], addr[1])
        elif isinstance(addr, str):
            address = new_address_from_addr("udp", addr)
        else:
            address = addr
        return self.write_with_metadata(payload, Metadata(address=address))

    def close(self) -> None:
        self._closed.set()

    def __enter__(self) -> "PacketConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Server:
    """Listens on TCP and UDP and hands everything out addressed to the target."""

    def __init__(self, config: Config) -> None:
        self.target_addr = new_address_from_host_port("tcp", config.target_host, config.target_port)
        try:
            self._tcp = socket.create_server((config.local_host, config.local_port))
        except OSError as exc:
            raise ConnectionError("failed to listen tcp") from exc
        try:
            self._udp = _bind_udp(config.local_host, config.local_port)
        except OSError as exc:
            self._tcp.close()
            raise ConnectionError("failed to listen udp") from exc
        self._tcp.settimeout(_POLL)
        self._udp.settimeout(_POLL)
        self._timeout = float(config.udp_timeout)
        self._mapping: dict = {}
        self._mapping_lock = threading.Lock()
        self._packets: queue.Queue = queue.Queue(32)
        self._stop = threading.Event()
        threading.Thread(target=self._dispatch_loop, name="dokodemo-udp", daemon=True).start()

    @property
    def tcp_address(self):
        return self._tcp.getsockname()

    @property
    def udp_address(self):
        return self._udp.getsockname()

    def _dispatch_loop(self) -> None:
        fixed = Metadata(address=self.target_addr)
        events = (self._stop,)
        while not self._stop.is_set():
            try:
                data, src = self._udp.recvfrom(MAX_PACKET_SIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                if not self._stop.is_set():
                    logger.critical("dokodemo failed to read from udp socket: %s", exc)
                return
            logger.debug("udp packet from %s", src)
            with self._mapping_lock:
                conn = self._mapping.get(src)
                if conn is None:
                    conn = PacketConn(self._udp, fixed, src, self._stop)
                    self._mapping[src] = conn
                    fresh = True
                else:
                    fresh = False
            _give(conn._input, data, events)
            if not fresh:
                continue
            _give(self._packets, conn, events)
            threading.Thread(target=self._serve_output, args=(conn,), daemon=True).start()

    def _serve_output(self, conn: PacketConn) -> None:
        while True:
            try:
                payload = _take(conn._output, (self._stop,), timeout=self._timeout)
            except _Closed:
                return
            except queue.Empty:
                with self._mapping_lock:
                    if self._mapping.get(conn.src) is conn:
                        del self._mapping[conn.src]
                conn.close()
                logger.debug("closing timeout packetConn")
                return
            try:
                self._udp.sendto(payload, conn.src)
            except OSError as exc:
                logger.error("dokodemo udp write error: %s", exc)
                return

    def accept_conn(self, overlay=None) -> Conn:
        """Wait for a TCP connection."""
        while True:
            if self._stop.is_set():
                raise ConnectionError("dokodemo server closed")
            try:
                sock, _ = self._tcp.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stop.is_set():
                    raise ConnectionError("dokodemo server closed") from exc
                raise ConnectionError("dokodemo failed to accept connection") from exc
            sock.settimeout(None)
            return Conn(sock, Metadata(address=self.target_addr))

    def accept_packet(self, overlay=None) -> PacketConn:
        """Wait for a new UDP session."""
        try:
            return _take(self._packets, (self._stop,))
        except _Closed:
            raise ConnectionError("dokodemo server closed") from None

    def close(self) -> None:
        self._stop.set()
        self._tcp.close()
        self._udp.close()

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Tunnel:
    """The inbound end of a forwarding tunnel."""

    def name(self) -> str:
        return NAME

    def new_server(self, config: Optional[Config], underlay=None) -> Server:
        return Server(config if config is not None else Config())

    def new_client(self, config, underlay=None):
        message = f"{self.name().lower()} tunnel has no client side: not supported"
        raise RuntimeError(message)