"""Local inbound that splits one TCP port between SOCKS5 and HTTP proxying."""

from __future__ import annotations

import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Optional

from . import httpproxy, socks
from .freedom import Conn, PacketConn

logger = logging.getLogger(__name__)

NAME = "ADAPTER"

_POLL = 0.1
_SOCKS_VERSION = 5


@dataclass
class Config:
    local_host: str = ""
    local_port: int = 0


class _Closed(Exception):
    """The server was closed."""


def _take(items: queue.Queue, stop: threading.Event):
    while True:
        if stop.is_set():
            raise _Closed
        try:
            return items.get(timeout=_POLL)
        except queue.Empty:
            continue


def _give(items: queue.Queue, item, stop: threading.Event) -> bool:
    while not stop.is_set():
        try:
            items.put(item, timeout=_POLL)
            return True
        except queue.Full:
            continue
    return False


class Server:
    """Listens on TCP and UDP; TCP streams go to SOCKS5 or HTTP by their first byte."""

    def __init__(self, config: Config) -> None:
        host = config.local_host
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            self._tcp = socket.create_server((host, config.local_port), family=family)
        except OSError as exc:
            raise ConnectionError("adapter failed to create tcp listener") from exc
        # with an ephemeral port, UDP shares the port TCP was given
        port = self._tcp.getsockname()[1]
        try:
            self._udp = socket.socket(family, socket.SOCK_DGRAM)
            self._udp.bind((host, port))
        except OSError as exc:
            self._tcp.close()
            raise ConnectionError("adapter failed to create udp listener") from exc
        self._tcp.settimeout(_POLL)
        self._socks: queue.Queue = queue.Queue(32)
        self._http: queue.Queue = queue.Queue(32)
        self._socks_lock = threading.Lock()
        self._next_socks = False
        self._stop = threading.Event()
        logger.info("adapter listening on tcp/udp: %s:%d", host, port)
        threading.Thread(target=self._accept_loop, name="adapter-accept", daemon=True).start()

    @property
    def tcp_address(self):
        return self._tcp.getsockname()

    @property
    def udp_address(self):
        return self._udp.getsockname()

    def _accept_loop(self) -> None:
        while not self._stop.is_set():
            try:
                sock, _ = self._tcp.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stop.is_set():
                    logger.debug("exiting")
                    return
                continue
            threading.Thread(target=self._classify, args=(sock,), daemon=True).start()

    def _classify(self, sock: socket.socket) -> None:
        sock.settimeout(None)
        try:
            head = sock.recv(3, socket.MSG_PEEK)
        except OSError as exc:
            logger.error("failed to detect proxy protocol type: %s", exc)
            sock.close()
            return
        if not head:
            logger.error("failed to detect proxy protocol type: connection closed")
            sock.close()
            return
        with self._socks_lock:
            socks_wanted = self._next_socks
        if head[0] == _SOCKS_VERSION and socks_wanted:
            logger.debug("socks5 connection")
            target = self._socks
        else:
            logger.debug("http connection")
            target = self._http
        if not _give(target, Conn(sock), self._stop):
            sock.close()

    def accept_conn(self, overlay) -> Conn:
        """Wait for a stream meant for the given overlay (HTTP or SOCKS5)."""
        if isinstance(overlay, httpproxy.Tunnel):
            source = self._http
        elif isinstance(overlay, socks.Tunnel):
            with self._socks_lock:
                self._next_socks = True
            source = self._socks
        else:
            raise TypeError("invalid overlay")
        try:
            return _take(source, self._stop)
        except _Closed:
            raise ConnectionError("adapter closed") from None

    def accept_packet(self, overlay=None) -> PacketConn:
        """Return the shared UDP socket as a packet connection."""
        return PacketConn(self._udp)

    def close(self) -> None:
        self._stop.set()
        self._tcp.close()
        self._udp.close()

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Tunnel:
    """The bottom layer of a local client stack."""

    def name(self) -> str:
        return NAME

    def new_server(self, config: Optional[Config], underlay=None) -> Server:
        return Server(config if config is not None else Config())

    def new_client(self, config, underlay=None):
        raise RuntimeError("not supported")