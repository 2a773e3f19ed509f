"""HTTP proxy inbound: CONNECT tunnels and plain forwarded requests."""

from __future__ import annotations

import logging
import queue
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

from .metadata import (
    Metadata,
    ProtocolError,
    new_address_from_addr,
    new_address_from_host_port,
)

logger = logging.getLogger(__name__)

NAME = "HTTP"

_POLL = 0.1
_MAX_LINE = 65536
_VERSION_RE = re.compile(r"HTTP/(\d+)\.(\d+)")
_NO_BODY_STATUS = {204, 304}


class _Closed(Exception):
    """One of the watched cancellation events was set."""


def _take(items: queue.Queue, events):
    while True:
        if any(event.is_set() for event in events):
            raise _Closed
        try:
            return items.get(timeout=_POLL)
        except queue.Empty:
            continue


def _give(items: queue.Queue, item, events) -> bool:
    while not any(event.is_set() for event in events):
        try:
            items.put(item, timeout=_POLL)
            return True
        except queue.Full:
            continue
    return False


class _Pipe:
    """An in-memory byte pipe with separately closable ends."""

    def __init__(self) -> None:
        self._buf = bytearray()
        self._cond = threading.Condition()
        self._reader_closed = False
        self._writer_closed = False

    def read(self, size: int) -> bytes:
        with self._cond:
            while not self._buf and not self._reader_closed and not self._writer_closed:
                self._cond.wait()
            if self._reader_closed:
                raise BrokenPipeError("read on closed pipe")
            data = bytes(self._buf[:size])
            del self._buf[:size]
            return data

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._reader_closed or self._writer_closed:
                raise BrokenPipeError("write on closed pipe")
            self._buf += data
            self._cond.notify_all()
            return len(data)

    def close_reader(self) -> None:
        with self._cond:
            self._reader_closed = True
            self._cond.notify_all()

    def close_writer(self) -> None:
        with self._cond:
            self._writer_closed = True
            self._cond.notify_all()


class _StreamReader:
    """Buffered reading over anything with a read(size) method."""

    def __init__(self, source) -> None:
        self._source = source
        self._buf = bytearray()

    def _fill(self) -> bool:
        chunk = self._source.read(4096)
        if not chunk:
            return False
        self._buf += chunk
        return True

    def readline(self) -> bytes:
        while True:
            end = self._buf.find(b"\n")
            if end >= 0:
                line = bytes(self._buf[:end + 1])
                del self._buf[:end + 1]
                return line
            if len(self._buf) > _MAX_LINE:
                raise ProtocolError("header line too long")
            if not self._fill():
                raise EOFError("unexpected end of stream")

    def read_exact(self, size: int) -> bytes:
        while len(self._buf) < size:
            if not self._fill():
                raise EOFError("unexpected end of stream")
        data = bytes(self._buf[:size])
        del self._buf[:size]
        return data

    def read_all(self) -> bytes:
        while self._fill():
            pass
        data = bytes(self._buf)
        self._buf.clear()
        return data

    def read(self, size: int) -> bytes:
        if self._buf:
            data = bytes(self._buf[:size])
            del self._buf[:size]
            return data
        return self._source.read(size)


@dataclass
class _Request:
    method: str
    target: str
    major: int
    minor: int
    host: str
    headers: list = field(default_factory=list)
    body: bytes = b""
    chunked: bool = False
    has_length: bool = False


@dataclass
class _Response:
    proto: str
    status: int
    reason: str
    headers: list = field(default_factory=list)
    body: bytes = b""
    chunked: bool = False
    known_length: bool = True
    has_body: bool = True


def _header(headers: list, name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers:
        if key.lower() == lowered:
            return value
    return None


def _read_headers(reader: _StreamReader) -> list:
    headers = []
    while True:
        line = reader.readline().decode("latin-1").rstrip("\r\n")
        if not line:
            return headers
        name, sep, value = line.partition(":")
        if not sep or not name.strip() or name != name.strip():
            raise ProtocolError(f"malformed header line {line!r}")
        headers.append((name, value.strip()))


def _read_body(reader: _StreamReader, headers: list) -> tuple[bytes, bool, bool]:
    """Return (body, chunked, has_length)."""
    encoding = _header(headers, "Transfer-Encoding")
    if encoding is not None and "chunked" in encoding.lower():
        body = bytearray()
        while True:
            size_text = reader.readline().split(b";", 1)[0].strip()
            try:
                size = int(size_text, 16)
            except ValueError:
                raise ProtocolError("invalid chunk size") from None
            if size == 0:
                while reader.readline().strip():
                    pass
                return bytes(body), True, False
            body += reader.read_exact(size)
            reader.read_exact(2)
    length = _header(headers, "Content-Length")
    if length is not None:
        try:
            size = int(length)
        except ValueError:
            raise ProtocolError(f"invalid Content-Length {length!r}") from None
        if size < 0:
            raise ProtocolError(f"invalid Content-Length {length!r}")
        return reader.read_exact(size), False, True
    return b"", False, False


def _parse_version(text: str) -> tuple[int, int]:
    match = _VERSION_RE.fullmatch(text)
    if match is None:
        raise ProtocolError(f"malformed HTTP version {text!r}")
    return int(match.group(1)), int(match.group(2))


def _read_request(reader: _StreamReader) -> _Request:
    line = reader.readline().decode("latin-1").rstrip("\r\n")
    parts = line.split(" ")
    if len(parts) != 3:
        raise ProtocolError(f"malformed HTTP request {line!r}")
    method, target, version = parts
    major, minor = _parse_version(version)
    headers = _read_headers(reader)
    if method.upper() == "CONNECT" and not target.startswith("/"):
        host = target
    elif "://" in target:
        host = urlsplit(target).netloc
    else:
        host = ""
    if not host:
        host = _header(headers, "Host") or ""
    body, chunked, has_length = _read_body(reader, headers)
    return _Request(method, target, major, minor, host, headers, body, chunked, has_length)


def _request_uri(target: str) -> str:
    if "://" in target:
        parts = urlsplit(target)
        uri = parts.path or "/"
        if parts.query:
            uri += "?" + parts.query
        return uri
    return target or "/"


def _chunked(body: bytes) -> bytes:
    data = b""
    if body:
        data += f"{len(body):x}\r\n".encode("ascii") + body + b"\r\n"
    return data + b"0\r\n\r\n"


_FRAMING = {"host", "content-length", "transfer-encoding"}


def _serialize_request(request: _Request) -> bytes:
    lines = [f"{request.method} {_request_uri(request.target)} HTTP/1.1", f"Host: {request.host}"]
    lines += [f"{k}: {v}" for k, v in request.headers if k.lower() not in _FRAMING]
    if request.chunked:
        lines.append("Transfer-Encoding: chunked")
        body = _chunked(request.body)
    else:
        if request.has_length or request.body:
            lines.append(f"Content-Length: {len(request.body)}")
        body = request.body
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


def _read_response(reader: _StreamReader, method: str) -> _Response:
    line = reader.readline().decode("latin-1").rstrip("\r\n")
    proto, _, rest = line.partition(" ")
    _parse_version(proto)
    code_text, _, reason = rest.partition(" ")
    if len(code_text) != 3 or not code_text.isdigit():
        raise ProtocolError(f"malformed HTTP status code {code_text!r}")
    status = int(code_text)
    headers = _read_headers(reader)
    response = _Response(proto, status, reason, headers)
    if method.upper() == "HEAD" or status < 200 or status in _NO_BODY_STATUS:
        response.has_body = False
        return response
    encoding = _header(headers, "Transfer-Encoding")
    if (encoding is not None and "chunked" in encoding.lower()) or _header(headers, "Content-Length") is not None:
        response.body, response.chunked, _ = _read_body(reader, headers)
    else:
        response.body = reader.read_all()
        response.known_length = False
    return response


def _serialize_response(response: _Response) -> bytes:
    status_line = f"{response.proto} {response.status:03d}"
    if response.reason:
        status_line += f" {response.reason}"
    lines = [status_line]
    if not response.has_body:
        lines += [f"{k}: {v}" for k, v in response.headers]
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
    lines += [
        f"{k}: {v}" for k, v in response.headers
        if k.lower() not in ("content-length", "transfer-encoding")
    ]
    if response.chunked:
        lines.append("Transfer-Encoding: chunked")
        body = _chunked(response.body)
    elif response.known_length:
        lines.append(f"Content-Length: {len(response.body)}")
        body = response.body
    else:
        connection = _header(response.headers, "Connection")
        if connection is None or connection.lower() != "close":
            lines.append("Connection: close")
        body = response.body
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


class ConnectConn:
    """A client stream after a successful CONNECT, with the requested destination."""

    def __init__(self, conn, reader: _StreamReader, metadata: Metadata) -> None:
        self.conn = conn
        self._reader = reader
        self._metadata = metadata

    def metadata(self) -> Metadata:
        return self._metadata

    def read(self, size: int) -> bytes:
        return self._reader.read(size)

    def write(self, data: bytes) -> int:
        return self.conn.write(data)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "ConnectConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class OtherConn:
    """One forwarded HTTP exchange: reads yield the request, writes carry the response."""

    def __init__(self, conn, metadata: Metadata, requests: _Pipe, responses: _Pipe,
                 server_stop: threading.Event) -> None:
        self.conn = conn
        self._metadata = metadata
        self._requests = requests
        self._responses = responses
        self._closed = threading.Event()
        self._server_stop = server_stop

    def metadata(self) -> Metadata:
        return self._metadata

    def read(self, size: int) -> bytes:
        data = self._requests.read(size)
        if data:
            return data
        while not (self._closed.wait(_POLL) or self._server_stop.is_set()):
            pass
        raise ConnectionError("http conn closed")

    def write(self, data: bytes) -> int:
        return self._responses.write(data)

    def close(self) -> None:
        self._closed.set()
        self._requests.close_reader()
        self._responses.close_writer()

    def __enter__(self) -> "OtherConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Server:
    """Turns HTTP proxy requests arriving on an underlying server into connections."""

    def __init__(self, underlay) -> None:
        self._underlay = underlay
        self._conns: queue.Queue = queue.Queue(32)
        self._stop = threading.Event()
        threading.Thread(target=self._accept_loop, name="http-accept", daemon=True).start()

    def _accept_loop(self) -> None:
        while True:
            try:
                conn = self._underlay.accept_conn(Tunnel())
            except OSError as exc:
                if self._stop.is_set():
                    logger.error("http closed")
                    return
                logger.error("http failed to accept connection: %s", exc)
                if self._stop.wait(_POLL):
                    return
                continue
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn) -> None:
        reader = _StreamReader(conn)
        try:
            request = _read_request(reader)
        except (OSError, EOFError, ProtocolError) as exc:
            logger.error("not a valid http request: %s", exc)
            conn.close()
            return
        if request.method.upper() == "CONNECT":
            self._serve_connect(conn, reader, request)
        else:
            self._serve_plain(conn, reader, request)

    def _serve_connect(self, conn, reader: _StreamReader, request: _Request) -> None:
        try:
            address = new_address_from_addr("tcp", request.host)
        except ValueError as exc:
            logger.error("invalid http dest address: %s", exc)
            conn.close()
            return
        reply = f"HTTP/{request.major}.{request.minor} 200 Connection established\r\n\r\n"
        try:
            conn.write(reply.encode("ascii"))
        except OSError:
            logger.error("http failed to respond connect request")
            conn.close()
            return
        new_conn = ConnectConn(conn, reader, Metadata(address=address))
        if not _give(self._conns, new_conn, (self._stop,)):
            conn.close()

    def _serve_plain(self, conn, reader: _StreamReader, request: _Request) -> None:
        other: Optional[OtherConn] = None
        try:
            while True:
                try:
                    address = new_address_from_addr("tcp", request.host)
                except ValueError:
                    address = new_address_from_host_port("tcp", request.host, 80)
                logger.debug("http dest %s", address)
                requests, responses = _Pipe(), _Pipe()
                other = OtherConn(conn, Metadata(address=address), requests, responses, self._stop)
                if not _give(self._conns, other, (self._stop,)):
                    return
                try:
                    requests.write(_serialize_request(request))
                except OSError as exc:
                    logger.error("http failed to write http request: %s", exc)
                    return
                try:
                    response = _read_response(_StreamReader(responses), request.method)
                except (OSError, EOFError, ProtocolError) as exc:
                    logger.error("http failed to read http response: %s", exc)
                    return
                try:
                    conn.write(_serialize_response(response))
                except OSError as exc:
                    logger.error("http failed to write the response back: %s", exc)
                    return
                other.close()
                try:
                    request = _read_request(reader)
                except (OSError, EOFError, ProtocolError) as exc:
                    logger.error("http failed to the read request from local: %s", exc)
                    return
        finally:
            if other is not None:
                other.close()
            conn.close()

    def accept_conn(self, overlay=None):
        """Wait for the next CONNECT stream or forwarded request."""
        try:
            return _take(self._conns, (self._stop,))
        except _Closed:
            raise ConnectionError("http server closed") from None

    def accept_packet(self, overlay=None):
        """HTTP carries no datagrams: wait until the server closes, then fail."""
        self._stop.wait()
        raise ConnectionError("http server closed")

    def close(self) -> None:
        self._stop.set()
        self._underlay.close()

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Tunnel:
    """The inbound HTTP proxy layer of a tunnel stack."""

    def name(self) -> str:
        return NAME

    def new_server(self, config, underlay) -> Server:
        return Server(underlay)

    def new_client(self, config, underlay=None):
        raise RuntimeError("not supported")