"""User accounting interfaces and the authenticator registry."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Raised when an authenticator cannot be found or a user operation fails."""


class User(ABC):
    """Traffic meter and IP recorder for one user."""

    hash: str
    ip_count: int
    ip_limit: int

    @abstractmethod
    def close(self) -> None: ...
    @abstractmethod
    def add_traffic(self, sent: int, recv: int) -> None: ...
    @abstractmethod
    def traffic(self) -> tuple[int, int]: ...
    @abstractmethod
    def set_traffic(self, sent: int, recv: int) -> None: ...
    @abstractmethod
    def reset_traffic(self) -> tuple[int, int]: ...
    @abstractmethod
    def speed(self) -> tuple[int, int]: ...
    @abstractmethod
    def speed_limit(self) -> tuple[int, int]: ...
    @abstractmethod
    def set_speed_limit(self, send: int, recv: int) -> None: ...
    @abstractmethod
    def add_ip(self, ip: str) -> bool: ...
    @abstractmethod
    def del_ip(self, ip: str) -> bool: ...


class Authenticator(ABC):
    """A store of users keyed by password hash."""

    @abstractmethod
    def auth_user(self, hash: str) -> Optional[User]: ...
    @abstractmethod
    def add_user(self, hash: str) -> None: ...
    @abstractmethod
    def del_user(self, hash: str) -> None: ...
    @abstractmethod
    def list_users(self) -> list[User]: ...
    @abstractmethod
    def close(self) -> None: ...

    def __enter__(self) -> "Authenticator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


Creator = Callable[[Any], Authenticator]

_lock = threading.Lock()
_creators: dict[str, Creator] = {}
_created: dict[int, tuple[Any, Authenticator]] = {}


def register_authenticator_creator(name: str, creator: Creator) -> None:
    """Register a factory under a driver name (looked up in upper case)."""
    _creators[name] = creator


def new_authenticator(context: Any, name: str) -> Authenticator:
    """Return the authenticator for this context, creating it on first use."""
    with _lock:
        cached = _created.get(id(context))
        if cached is not None and cached[0] is context:
            logger.debug("authenticator has been created: %s", name)
            return cached[1]
        creator = _creators.get(name.upper())
        if creator is None:
            raise AuthError(f"auth driver name {name} not found")
        auth = creator(context)
        _created[id(context)] = (context, auth)
        return auth