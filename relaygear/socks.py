"""SOCKS5 inbound server: CONNECT streams and UDP ASSOCIATE sessions."""

from __future__ import annotations

import io
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .metadata import (
    Address,
    Metadata,
    ProtocolError,
    new_address_from_host_port,
    read_address,
)

logger = logging.getLogger(__name__)

NAME = "SOCKS"
CONNECT = 1
ASSOCIATE = 3
MAX_PACKET_SIZE = 1024 * 8

_POLL = 0.1
_SESSION_IDLE = 5.0
_CONNECT_REPLY = bytes([0x05, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00])


@dataclass
class Config:
    local_host: str = ""
    local_port: int = 0
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


def _read_exact(conn, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = conn.read(size - len(data))
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {len(data)}")
        data += chunk
    return bytes(data)


class Conn:
    """A stream that finished the SOCKS5 handshake, with its requested destination."""

    def __init__(self, conn, metadata: Metadata) -> None:
        self.conn = conn
        self._metadata = metadata

    def metadata(self) -> Metadata:
        return self._metadata

    def read(self, size: int) -> bytes:
        return self.conn.read(size)

    def write(self, data: bytes) -> int:
        return self.conn.write(data)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class PacketConn:
    """One UDP session from a SOCKS5 client, fed by the server's dispatcher."""

    def __init__(self, listener, src, server_stop: threading.Event) -> None:
        self.listener = listener
        self.src = src
        self._input: queue.Queue = queue.Queue(128)
        self._output: queue.Queue = queue.Queue(128)
        self._closed = threading.Event()
        self._events = (self._closed, server_stop)

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        if not _give(self._output, (metadata, bytes(payload)), self._events):
            raise ConnectionError("socks packet conn closed")
        return len(payload)

    def read_with_metadata(self, size: int) -> tuple[bytes, Metadata]:
        try:
            metadata, payload = _take(self._input, self._events)
        except _Closed:
            raise ConnectionError("socks packet conn closed") from None
        return payload[:size], metadata

    def close(self) -> None:
        self._closed.set()

    def __enter__(self) -> "PacketConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Server:
    """Speaks SOCKS5 over the streams and datagrams of an underlying server."""

    def __init__(self, config: Config, underlay) -> None:
        try:
            self._listen = underlay.accept_packet(Tunnel())
        except OSError as exc:
            raise ConnectionError("socks failed to listen packet from underlying server") from exc
        self._underlay = underlay
        self.local_host = config.local_host
        self.local_port = config.local_port
        self.timeout = float(config.udp_timeout)
        self._conns: queue.Queue = queue.Queue(32)
        self._packets: queue.Queue = queue.Queue(32)
        self._mapping: dict[str, PacketConn] = {}
        self._mapping_lock = threading.Lock()
        self._stop = threading.Event()
        threading.Thread(target=self._accept_loop, name="socks-accept", daemon=True).start()
        threading.Thread(target=self._packet_dispatch_loop, name="socks-udp", daemon=True).start()
        logger.debug("socks server created")

    def accept_conn(self, overlay=None) -> Conn:
        """Wait for a stream whose client asked to CONNECT."""
        try:
            return _take(self._conns, (self._stop,))
        except _Closed:
            raise ConnectionError("socks server closed") from None

    def accept_packet(self, overlay=None) -> PacketConn:
        """Wait for a new UDP session."""
        try:
            return _take(self._packets, (self._stop,))
        except _Closed:
            raise ConnectionError("socks server closed") from None

    def close(self) -> None:
        self._stop.set()
        self._underlay.close()

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _handshake(self, conn) -> Conn:
        try:
            version = _read_exact(conn, 1)[0]
        except (OSError, EOFError) as exc:
            raise ProtocolError("failed to read socks version") from exc
        if version != 5:
            raise ProtocolError(f"invalid socks version {version}")
        try:
            nmethods = _read_exact(conn, 1)[0]
        except (OSError, EOFError):
            raise ProtocolError("failed to read NMETHODS") from None
        try:
            _read_exact(conn, nmethods)
        except (OSError, EOFError) as exc:
            raise ProtocolError("socks failed to read methods") from exc
        try:
            conn.write(b"\x05\x00")
        except OSError as exc:
            raise ProtocolError("failed to respond auth") from exc
        try:
            request = _read_exact(conn, 3)
        except (OSError, EOFError):
            raise ProtocolError("failed to read command") from None
        address = read_address(conn)
        return Conn(conn, Metadata(command=request[1], address=address))

    def _handle(self, conn) -> None:
        try:
            new_conn = self._handshake(conn)
        except (OSError, EOFError, ProtocolError) as exc:
            logger.error("socks failed to handshake with client: %s", exc)
            return
        metadata = new_conn.metadata()
        logger.info("socks connection metadata %s", metadata)
        if metadata.command == CONNECT:
            try:
                new_conn.write(_CONNECT_REPLY)
            except OSError as exc:
                logger.error("socks failed to respond CONNECT: %s", exc)
                new_conn.close()
                return
            _give(self._conns, new_conn, (self._stop,))
        elif metadata.command == ASSOCIATE:
            try:
                bound = new_address_from_host_port("udp", self.local_host, self.local_port)
                try:
                    new_conn.write(b"\x05\x00\x00" + bound.to_bytes())
                except (OSError, ProtocolError) as exc:
                    logger.error("socks failed to respond to associate request: %s", exc)
                    return
                # the session lasts until the client sends or hangs up
                try:
                    new_conn.read(16)
                except OSError:
                    pass
                logger.debug("socks udp session ends")
            finally:
                new_conn.close()
        else:
            logger.error("unknown socks command %d", metadata.command)
            new_conn.close()

    def _accept_loop(self) -> None:
        while True:
            try:
                conn = self._underlay.accept_conn(Tunnel())
            except OSError as exc:
                logger.error("socks accept err: %s", exc)
                return
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _serve_session(self, conn: PacketConn, key: str) -> None:
        try:
            while True:
                try:
                    metadata, payload = _take(conn._output, conn._events, timeout=_SESSION_IDLE)
                except _Closed:
                    logger.info("socks udp session closed")
                    return
                except queue.Empty:
                    logger.info("socks udp session timeout, closed")
                    with self._mapping_lock:
                        if self._mapping.get(key) is conn:
                            del self._mapping[key]
                    return
                try:
                    packet = b"\x00\x00\x00" + metadata.address.to_bytes() + payload
                    self._listen.write_to(packet, conn.src)
                except (OSError, ProtocolError) as exc:
                    logger.error("socks failed to respond packet to %s: %s", key, exc)
                    return
                logger.debug("socks respond udp packet to %s metadata %s", key, metadata)
        finally:
            conn.close()

    def _packet_dispatch_loop(self) -> None:
        settimeout = getattr(self._listen, "settimeout", None)
        if settimeout is not None:
            settimeout(_POLL)
        while True:
            try:
                data, src = self._listen.read_from(MAX_PACKET_SIZE)
            except TimeoutError:
                if self._stop.is_set():
                    return
                continue
            except OSError:
                if self._stop.wait(_POLL):
                    logger.debug("exiting")
                    return
                continue
            key = str(src)
            logger.debug("socks recv udp packet from %s", key)
            with self._mapping_lock:
                conn = self._mapping.get(key)
            if conn is None:
                conn = PacketConn(self._listen, src, self._stop)
                threading.Thread(
                    target=self._serve_session, args=(conn, key), daemon=True
                ).start()
                with self._mapping_lock:
                    self._mapping[key] = conn
                _give(self._packets, conn, (self._stop,))
                logger.info("socks new udp session from %s", key)
            stream = io.BytesIO(data[3:])
            try:
                address = read_address(stream)
            except ProtocolError as exc:
                logger.error("socks failed to parse incoming packet: %s", exc)
                continue
            payload = stream.read(MAX_PACKET_SIZE)
            try:
                conn._input.put_nowait((Metadata(address=address), payload))
            except queue.Full:
                logger.warning("socks udp queue full")


class Tunnel:
    """The inbound SOCKS5 layer of a tunnel stack."""

    def name(self) -> str:
        return NAME

    def new_server(self, config: Optional[Config], underlay) -> Server:
        return Server(config if config is not None else Config(), underlay)

    def new_client(self, config, underlay=None):
        raise RuntimeError("not supported")