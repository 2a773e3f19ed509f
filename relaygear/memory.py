"""In-memory authenticator with per-user traffic, speed and IP accounting."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from . import statistic
from .statistic import AuthError

logger = logging.getLogger(__name__)

NAME = "MEMORY"

_U64 = (1 << 64) - 1


@dataclass
class Config:
    passwords: list[str] = field(default_factory=list)


class _RateLimiter:
    """Token bucket: `rate` tokens per second, holding at most `burst`."""

    def __init__(self, rate: int, burst: int) -> None:
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def wait(self, n: int, stop: threading.Event) -> None:
        # requests larger than the bucket are refused without waiting
        if n > self.burst or stop.is_set():
            return
        with self._lock:
            now = time.monotonic()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.rate) - n
            self._last = now
            delay = -self._tokens / self.rate if self._tokens < 0 else 0.0
        if delay > 0 and stop.wait(delay):
            with self._lock:
                self._tokens = min(float(self.burst), self._tokens + n)


class User(statistic.User):
    """Counters for one user; a background thread samples speed every second."""

    def __init__(self, hash: str, parent: Optional[threading.Event] = None) -> None:
        self._hash = hash
        self._lock = threading.Lock()
        self._sent = self._recv = 0
        self._last_sent = self._last_recv = 0
        self._send_speed = self._recv_speed = 0
        self._ips: set[str] = set()
        self._max_ips = 0
        self._send_limiter: Optional[_RateLimiter] = None
        self._recv_limiter: Optional[_RateLimiter] = None
        self._parent = parent or threading.Event()
        self._closed = threading.Event()
        threading.Thread(target=self._update_speed, daemon=True).start()

    def __repr__(self) -> str:
        return f"User(hash={self._hash!r})"

    @property
    def hash(self) -> str:
        return self._hash

    def close(self) -> None:
        self.reset_traffic()
        self._closed.set()

    def add_ip(self, ip: str) -> bool:
        with self._lock:
            if self._max_ips <= 0 or ip in self._ips:
                return True
            if len(self._ips) + 1 > self._max_ips:
                return False
            self._ips.add(ip)
            return True

    def del_ip(self, ip: str) -> bool:
        with self._lock:
            if self._max_ips <= 0:
                return True
            if ip not in self._ips:
                return False
            self._ips.discard(ip)
            return True

    @property
    def ip_count(self) -> int:
        with self._lock:
            return len(self._ips)

    @property
    def ip_limit(self) -> int:
        return self._max_ips

    @ip_limit.setter
    def ip_limit(self, limit: int) -> None:
        self._max_ips = limit

    def add_traffic(self, sent: int, recv: int) -> None:
        """Record traffic, first waiting on the speed limit if one is set."""
        send_limiter, recv_limiter = self._send_limiter, self._recv_limiter
        if send_limiter is not None and sent >= 0:
            send_limiter.wait(sent, self._closed)
        elif recv_limiter is not None and recv >= 0:
            recv_limiter.wait(recv, self._closed)
        with self._lock:
            self._sent = (self._sent + sent) & _U64
            self._recv = (self._recv + recv) & _U64

    def set_speed_limit(self, send: int, recv: int) -> None:
        """Limit bytes per second; zero or less removes the limit."""
        self._send_limiter = _RateLimiter(send, send * 2) if send > 0 else None
        self._recv_limiter = _RateLimiter(recv, recv * 2) if recv > 0 else None

    def speed_limit(self) -> tuple[int, int]:
        send_limiter, recv_limiter = self._send_limiter, self._recv_limiter
        return (send_limiter.rate if send_limiter else 0, recv_limiter.rate if recv_limiter else 0)

    def set_traffic(self, sent: int, recv: int) -> None:
        with self._lock:
            self._sent, self._recv = sent & _U64, recv & _U64

    def traffic(self) -> tuple[int, int]:
        with self._lock:
            return self._sent, self._recv

    def reset_traffic(self) -> tuple[int, int]:
        """Zero the counters and return what they held."""
        with self._lock:
            sent, recv = self._sent, self._recv
            self._sent = self._recv = self._last_sent = self._last_recv = 0
        return sent, recv

    def speed(self) -> tuple[int, int]:
        with self._lock:
            return self._send_speed, self._recv_speed

    def _update_speed(self) -> None:
        while not self._closed.wait(1.0) and not self._parent.is_set():
            with self._lock:
                self._send_speed = (self._sent - self._last_sent) & _U64
                self._recv_speed = (self._recv - self._last_recv) & _U64
                self._last_sent, self._last_recv = self._sent, self._recv


class MemoryAuthenticator(statistic.Authenticator):
    """Keeps users in a dictionary keyed by password hash."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    def auth_user(self, hash: str) -> Optional[User]:
        with self._lock:
            return self._users.get(hash)

    def add_user(self, hash: str) -> None:
        with self._lock:
            if hash in self._users:
                raise AuthError(f"hash {hash} is already exist")
            self._users[hash] = User(hash, self._stopped)

    def del_user(self, hash: str) -> None:
        with self._lock:
            user = self._users.pop(hash, None)
        if user is None:
            raise AuthError(f"hash {hash} not found")
        user.close()

    def list_users(self) -> list[User]:
        with self._lock:
            return list(self._users.values())

    def close(self) -> None:
        """Stop the speed sampling of every user."""
        self._stopped.set()


def new_authenticator(config: Optional[Config] = None) -> MemoryAuthenticator:
    """Create an authenticator holding the SHA-224 hashes of the configured passwords."""
    auth = MemoryAuthenticator()
    for password in (config or Config()).passwords:
        digest = hashlib.sha224(password.encode("utf-8")).hexdigest()
        try:
            auth.add_user(digest)
        except AuthError:
            pass
    logger.debug("memory authenticator created")
    return auth


statistic.register_authenticator_creator(NAME, new_authenticator)