import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from cloudsync.config import settings
from cloudsync.services.sync_tables import PRIMARY_KEY, quote_ident
from cloudsync.utils.logger import logger


def utcnow_str() -> str:
    """Fixed-width UTC timestamp used for ledger rows (sorts lexically)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")


class LocalStore:
    """Handle on the local SQLite database.

    The handle is tied to one file path. Switching files (restore, moving the
    database) goes through :meth:`reopen`, which returns a NEW handle; callers
    keep a reference and refresh it instead of relying on a global being
    swapped underneath them.

    Connections are opened per operation with ``isolation_level=None`` so
    transactions are always explicit (``BEGIN``/``COMMIT``/``ROLLBACK``).
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"Initialized local store at {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self.connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS cloud_sync_connections (
                    id TEXT PRIMARY KEY,
                    provider TEXT NOT NULL,
                    label TEXT,
                    connection_string_encrypted TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS cloud_sync_jobs (
                    id TEXT PRIMARY KEY,
                    job_type TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    connection_id TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    dry_run INTEGER NOT NULL DEFAULT 0,
                    initiated_by TEXT,
                    details TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            conn.execute(
                'CREATE INDEX IF NOT EXISTS idx_cloud_sync_jobs_status '
                'ON cloud_sync_jobs (status, created_at)'
            )

    def reopen(self, db_path: Optional[str] = None) -> "LocalStore":
        return LocalStore(db_path or self.db_path)

    # ------------------------------------------------------------------
    # Generic row access
    # ------------------------------------------------------------------

    def table_columns(
        self, table: str, conn: Optional[sqlite3.Connection] = None
    ) -> List[Tuple[str, str]]:
        """(name, declared type) pairs; empty when the table does not exist."""
        if conn is None:
            with self.connection() as own:
                return self.table_columns(table, own)
        rows = conn.execute(f"PRAGMA table_info({quote_ident(table)})").fetchall()
        return [(row["name"], row["type"] or "") for row in rows]

    def table_exists(self, table: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        return bool(self.table_columns(table, conn))

    def read_all_rows(
        self, table: str, conn: Optional[sqlite3.Connection] = None
    ) -> List[Dict[str, Any]]:
        if conn is None:
            with self.connection() as own:
                return self.read_all_rows(table, own)
        columns = [name for name, _ in self.table_columns(table, conn)]
        query = f"SELECT * FROM {quote_ident(table)}"
        if PRIMARY_KEY in columns:
            query += f" ORDER BY {quote_ident(PRIMARY_KEY)}"
        return [dict(row) for row in conn.execute(query).fetchall()]

    def count_rows(self, table: str, conn: Optional[sqlite3.Connection] = None) -> int:
        if conn is None:
            with self.connection() as own:
                return self.count_rows(table, own)
        row = conn.execute(f"SELECT COUNT(*) AS count FROM {quote_ident(table)}").fetchone()
        return int(row["count"])

    def get_row(
        self, conn: sqlite3.Connection, table: str, row_id: Any
    ) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            f"SELECT * FROM {quote_ident(table)} WHERE {quote_ident(PRIMARY_KEY)} = ?",
            (row_id,),
        ).fetchone()
        return dict(row) if row else None

    def insert_row(self, conn: sqlite3.Connection, table: str, values: Mapping[str, Any]) -> None:
        cols = list(values.keys())
        placeholders = ", ".join("?" for _ in cols)
        conn.execute(
            f"INSERT INTO {quote_ident(table)} ({', '.join(quote_ident(c) for c in cols)}) "
            f"VALUES ({placeholders})",
            [values[c] for c in cols],
        )

    def update_row(
        self, conn: sqlite3.Connection, table: str, row_id: Any, values: Mapping[str, Any]
    ) -> None:
        if not values:
            return
        set_clause = ", ".join(f"{quote_ident(c)} = ?" for c in values)
        conn.execute(
            f"UPDATE {quote_ident(table)} SET {set_clause} WHERE {quote_ident(PRIMARY_KEY)} = ?",
            [*values.values(), row_id],
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @staticmethod
    def begin(conn: sqlite3.Connection) -> None:
        conn.execute("BEGIN")

    @staticmethod
    def commit(conn: sqlite3.Connection) -> None:
        conn.execute("COMMIT")

    @staticmethod
    def rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    # ------------------------------------------------------------------
    # File level
    # ------------------------------------------------------------------

    def backup_to(self, dest_path: str) -> str:
        """Copy the database file to ``dest_path``.

        Pending WAL content is checkpointed first so the copy is complete.
        """
        with self.connection() as conn:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        shutil.copy2(self.db_path, dest_path)
        return dest_path


_store: Optional[LocalStore] = None


def get_store() -> LocalStore:
    """Return the current local store handle, opening it on first use."""
    global _store
    if _store is None:
        _store = LocalStore(settings.database_path)
    return _store


def set_store(store: Optional[LocalStore]) -> None:
    global _store
    _store = store
