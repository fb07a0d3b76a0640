from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from cloudsync.config import settings
from cloudsync.exceptions import RemoteConnectionError
from cloudsync.services.sync_tables import PRIMARY_KEY, quote_ident
from cloudsync.utils.logger import logger, mask_connection_string


def normalize_database_url(connection_string: str) -> str:
    """Turn provider-style URLs into something SQLAlchemy accepts.

    Neon/Supabase/Heroku hand out ``postgres://`` URLs; SQLAlchemy only knows
    the ``postgresql`` dialect name.
    """
    if connection_string.startswith("postgres://"):
        return connection_string.replace("postgres://", "postgresql+psycopg2://", 1)
    return connection_string


ClientFactory = Callable[..., "RemoteClient"]


def error_message(exc: BaseException) -> str:
    """Driver error text without the SQL/parameter dump SQLAlchemy appends."""
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc).strip()


def is_disconnect(exc: BaseException) -> bool:
    return bool(getattr(exc, "connection_invalidated", False))


class RemoteClient:
    """Thin SQL client for the remote database used by export/import/verify.

    One client owns ONE database session for its whole life. That matters:
    Postgres advisory locks are session scoped, so the lock, the data
    transaction and the unlock must all go through the same connection.

    Statements issued outside :meth:`begin`/:meth:`commit` are committed
    immediately so the connection never sits in an implicit transaction.
    """

    def __init__(
        self,
        connection_string: str,
        *,
        statement_timeout_ms: Optional[int] = None,
        connect_timeout_seconds: Optional[int] = None,
    ):
        self.connection_string = connection_string
        self.url = normalize_database_url(connection_string)
        self.statement_timeout_ms = statement_timeout_ms or settings.CLOUD_SYNC_EXPORT_STATEMENT_TIMEOUT_MS
        self.connect_timeout_seconds = connect_timeout_seconds or settings.CLOUD_SYNC_CONNECT_TIMEOUT_SECONDS
        self._engine: Optional[Engine] = None
        self._conn: Optional[Connection] = None
        self._tx = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def _connect_args(self) -> Dict[str, Any]:
        if self.url.startswith("sqlite"):
            return {"check_same_thread": False}
        return {
            "connect_timeout": self.connect_timeout_seconds,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }

    def _create_engine(self) -> Engine:
        return create_engine(
            self.url,
            connect_args=self._connect_args(),
            poolclass=NullPool,
            echo=False,
        )

    def connect(self) -> "RemoteClient":
        try:
            self._engine = self._create_engine()
            self._conn = self._engine.connect()
        except (SQLAlchemyError, ImportError) as exc:
            self._dispose_engine()
            raise RemoteConnectionError(f"Failed to connect to PostgreSQL: {exc}") from exc
        logger.info("[cloud-sync] Connected to remote database %s", mask_connection_string(self.connection_string))
        return self

    def close(self) -> None:
        try:
            if self._conn is not None:
                self._conn.close()
        finally:
            self._conn = None
            self._tx = None
            self._dispose_engine()

    def release(self, lock_key: Optional[int] = None) -> None:
        """Best-effort unlock (when a key is given) and close.

        Used on every exit path of a sync run; failures are logged, never
        raised, so the original error is the one that surfaces.
        """
        if lock_key is not None:
            try:
                self.advisory_unlock(lock_key)
            except (SQLAlchemyError, RemoteConnectionError) as exc:
                logger.error("[cloud-sync] Failed to release advisory lock: %s", exc)
        try:
            self.close()
        except SQLAlchemyError as exc:
            logger.error("[cloud-sync] Failed to close remote connection: %s", exc)

    def _dispose_engine(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> "RemoteClient":
        return self.connect()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def conn(self) -> Connection:
        if self._conn is None:
            raise RemoteConnectionError("Remote client is not connected")
        return self._conn

    def _finish_autobegin(self) -> None:
        if self._tx is None and self.conn.in_transaction():
            self.conn.commit()

    # ------------------------------------------------------------------
    # Advisory lock (session scoped)
    # ------------------------------------------------------------------

    def try_advisory_lock(self, key: int) -> bool:
        locked = self.conn.execute(
            text("SELECT pg_try_advisory_lock(:key) AS locked"), {"key": key}
        ).scalar()
        self._finish_autobegin()
        return bool(locked)

    def advisory_unlock(self, key: int) -> None:
        self.conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
        self._finish_autobegin()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def begin(self) -> None:
        self._finish_autobegin()
        self._tx = self.conn.begin()

    def commit(self) -> None:
        if self._tx is not None:
            self._tx.commit()
            self._tx = None

    def rollback(self) -> None:
        tx, self._tx = self._tx, None
        if tx is not None and tx.is_active:
            tx.rollback()

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        """Run the body under ``SAVEPOINT name``.

        On error the transaction is rolled back to the savepoint, which
        recovers it from the aborted state, and the error is re-raised for the
        caller to record.
        """
        self.conn.execute(text(f"SAVEPOINT {name}"))
        try:
            yield
        except Exception:
            try:
                self.conn.execute(text(f"ROLLBACK TO SAVEPOINT {name}"))
            except SQLAlchemyError as rollback_exc:
                logger.error("[cloud-sync] Error rolling back savepoint %s: %s", name, rollback_exc)
            raise
        self.conn.execute(text(f"RELEASE SAVEPOINT {name}"))

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _run(self, sql: str, params: Optional[Mapping[str, Any]]):
        try:
            return self.conn.execute(text(sql), dict(params or {}))
        except SQLAlchemyError:
            # Outside an explicit transaction a failed statement must not leave
            # the session stuck in an aborted implicit transaction.
            if self._tx is None and self._conn is not None and self._conn.in_transaction():
                self._conn.rollback()
            raise

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int:
        rowcount = self._run(sql, params).rowcount
        self._finish_autobegin()
        return rowcount

    def fetch_all(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        rows = [dict(row) for row in self._run(sql, params).mappings().all()]
        self._finish_autobegin()
        return rows

    def table_exists(self, table: str) -> bool:
        exists = inspect(self.conn).has_table(table)
        self._finish_autobegin()
        return exists

    def table_columns(self, table: str) -> List[str]:
        columns = [col["name"] for col in inspect(self.conn).get_columns(table)]
        self._finish_autobegin()
        return columns

    def read_all_rows(self, table: str) -> List[Dict[str, Any]]:
        return self.fetch_all(f"SELECT * FROM {quote_ident(table)} ORDER BY {quote_ident(PRIMARY_KEY)}")

    def read_ids(self, table: str) -> List[Any]:
        rows = self.fetch_all(f"SELECT {quote_ident(PRIMARY_KEY)} AS id FROM {quote_ident(table)}")
        return [row["id"] for row in rows]

    def count_rows(self, table: str) -> int:
        rows = self.fetch_all(f"SELECT COUNT(*) AS count FROM {quote_ident(table)}")
        return int(rows[0]["count"]) if rows else 0
