"""Authenticator that keeps users and their traffic in sync with a MySQL table."""

from __future__ import annotations

import hashlib
import logging
import ssl
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import pymysql

from . import statistic
from .memory import MemoryAuthenticator
from .statistic import AuthError

logger = logging.getLogger(__name__)

NAME = "MYSQL"

_UPDATE_SQL = (
    "UPDATE `users` SET `upload`=`upload`+%s, `download`=`download`+%s "
    "WHERE `password`=%s;"
)
_SELECT_SQL = "SELECT password,quota,download,upload FROM users"

_DB_ERRORS = (pymysql.MySQLError, OSError)


@dataclass
class MySQLConfig:
    enabled: bool = False
    server_host: str = ""
    server_port: int = 3306
    database: str = ""
    username: str = ""
    password: str = ""
    key: str = ""
    cert: str = ""
    ca: str = ""
    check_rate: int = 30


@dataclass
class Config:
    mysql: MySQLConfig = field(default_factory=MySQLConfig)
    # users loaded before the first synchronisation with the database
    passwords: list[str] = field(default_factory=list)


class _Database:
    """A lazily opened connection; it reconnects after a connection failure."""

    def __init__(self, **params: Any) -> None:
        self._params = params
        self._conn: Optional[pymysql.connections.Connection] = None
        self._lock = threading.Lock()

    def _connection(self) -> pymysql.connections.Connection:
        if self._conn is None:
            self._conn = pymysql.connect(**self._params)
        return self._conn

    def _drop(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except pymysql.MySQLError:
                pass
            self._conn = None

    def _run(self, sql: str, args: Sequence[Any], fetch: bool):
        with self._lock:
            conn = self._connection()
            try:
                with conn.cursor() as cursor:
                    count = cursor.execute(sql, args)
                    return list(cursor.fetchall()) if fetch else count
            except (pymysql.OperationalError, pymysql.InterfaceError):
                self._drop()
                raise

    def execute(self, sql: str, args: Sequence[Any] = ()) -> int:
        """Run a statement and return the number of affected rows."""
        return self._run(sql, args, fetch=False)

    def query(self, sql: str, args: Sequence[Any] = ()) -> list:
        """Run a query and return all of its rows."""
        return self._run(sql, args, fetch=True)

    def close(self) -> None:
        with self._lock:
            self._drop()


def connect_database(
    username: str,
    password: str,
    host: str,
    port: int,
    db_name: str,
    key_path: str,
    cert_path: str,
    ca_path: str,
) -> _Database:
    """Prepare a database handle; the connection itself is opened on first use."""
    params: dict[str, Any] = dict(
        host=host,
        port=port,
        user=username,
        password=password,
        database=db_name,
        charset="utf8",
        autocommit=True,
    )
    if ca_path:
        with open(ca_path, "rb") as handle:
            pem = handle.read()
        if bool(key_path) != bool(cert_path):
            raise ValueError("Set both key and cert, or set neither.")
        try:
            context = ssl.create_default_context(cadata=pem.decode("ascii", "replace"))
        except (ssl.SSLError, ValueError) as exc:
            raise ValueError("failed to load CA certificates") from exc
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        if key_path and cert_path:
            context.load_cert_chain(cert_path, key_path)
        params["ssl"] = context
    return _Database(**params)


class MySQLAuthenticator(MemoryAuthenticator):
    """In-memory users, periodically reconciled with the `users` table."""

    def __init__(self, db: Any, update_duration: float) -> None:
        super().__init__()
        self._db = db
        self._update_duration = update_duration
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _start_updater(self) -> None:
        self._thread = threading.Thread(target=self._run_updater, name="mysql-updater", daemon=True)
        self._thread.start()

    def _run_updater(self) -> None:
        while True:
            try:
                self.update_once()
            except Exception:
                logger.exception("mysql synchronisation failed")
            if self._stop.wait(self._update_duration):
                logger.debug("MySQL daemon exiting...")
                return

    def _ensure_user(self, user_hash: str) -> None:
        try:
            self.add_user(user_hash)
        except AuthError:
            pass

    def _discard_user(self, user_hash: str) -> None:
        try:
            self.del_user(user_hash)
        except AuthError:
            pass

    def update_once(self) -> None:
        """Flush buffered traffic to the table, then reload the allowed users."""
        for user in self.list_users():
            user_hash = user.hash
            sent, recv = user.reset_traffic()
            # the client's upload is what the server received
            try:
                affected = self._db.execute(_UPDATE_SQL, (recv, sent, user_hash))
            except _DB_ERRORS as exc:
                logger.error("failed to update data to user table: %s", exc)
                continue
            if affected == 0:
                self._discard_user(user_hash)
        logger.info("buffered data has been written into the database")

        try:
            rows = self._db.query(_SELECT_SQL)
        except _DB_ERRORS as exc:
            logger.error("failed to pull data from the database: %s", exc)
            return
        for row in rows:
            try:
                user_hash, quota, download, upload = row[0], int(row[1]), int(row[2]), int(row[3])
                if isinstance(user_hash, (bytes, bytearray)):
                    user_hash = bytes(user_hash).decode("utf-8")
                user_hash = str(user_hash)
            except (TypeError, ValueError, IndexError) as exc:
                logger.error("failed to obtain data from the query result: %s", exc)
                break
            if download + upload < quota or quota < 0:
                self._ensure_user(user_hash)
            else:
                self._discard_user(user_hash)

    def close(self) -> None:
        """Stop synchronisation and release the database handle."""
        self._stop.set()
        super().close()
        self._db.close()


def new_authenticator(config: Optional[Config] = None) -> MySQLAuthenticator:
    """Create an authenticator backed by the configured database and start syncing."""
    config = config if config is not None else Config()
    cfg = config.mysql
    try:
        db = connect_database(
            cfg.username,
            cfg.password,
            cfg.server_host,
            cfg.server_port,
            cfg.database,
            cfg.key,
            cfg.cert,
            cfg.ca,
        )
    except (OSError, ValueError, ssl.SSLError) as exc:
        raise AuthError("Failed to connect to database server") from exc
    auth = MySQLAuthenticator(db, float(cfg.check_rate))
    for secret in config.passwords:
        try:
            auth.add_user(hashlib.sha224(secret.encode("utf-8")).hexdigest())
        except AuthError:
            pass
    auth._start_updater()
    logger.debug("mysql authenticator created")
    return auth


statistic.register_authenticator_creator(NAME, new_authenticator)