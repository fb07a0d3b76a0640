import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Set

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import NullPool

from cloudsync.config import settings
from cloudsync.services.local_store import LocalStore, set_store
from cloudsync.services.remote_client import RemoteClient

# The remote side is a SQLite file in tests; let it store datetimes the way
# Postgres TIMESTAMP columns come back (no timezone).
sqlite3.register_adapter(datetime, lambda value: value.isoformat(" "))


BUSINESS_SCHEMA = [
    '''
    CREATE TABLE products (
        id TEXT PRIMARY KEY,
        company TEXT NOT NULL,
        product_name TEXT NOT NULL,
        created_at INTEGER,
        updated_at INTEGER
    )
    ''',
    '''
    CREATE TABLE variants (
        id TEXT PRIMARY KEY,
        product_id TEXT NOT NULL REFERENCES products(id),
        packing_size TEXT NOT NULL,
        rate REAL,
        is_active INTEGER DEFAULT 1,
        created_at INTEGER
    )
    ''',
    '''
    CREATE TABLE colors (
        id TEXT PRIMARY KEY,
        variant_id TEXT NOT NULL REFERENCES variants(id),
        color_code TEXT NOT NULL,
        color_name TEXT,
        stock_quantity INTEGER DEFAULT 0,
        notes TEXT,
        created_at INTEGER,
        updated_at INTEGER
    )
    ''',
    '''
    CREATE TABLE settings (
        id INTEGER PRIMARY KEY,
        store_name TEXT,
        show_stock_badges INTEGER,
        perm_stock_delete INTEGER,
        updated_at INTEGER
    )
    ''',
]

# 2024-01-01 00:00:00 UTC in epoch milliseconds.
JAN_1_2024 = 1704067200000


# Advisory locks held by SqliteRemoteClient instances, keyed like pg locks.
_held_locks: Set[int] = set()


class SqliteRemoteClient(RemoteClient):
    """RemoteClient against a SQLite file.

    pysqlite's own transaction handling is switched off so SAVEPOINT and
    explicit BEGIN behave like they do on Postgres, and the advisory lock is
    emulated in-process.
    """

    def _create_engine(self):
        engine = create_engine(self.url, connect_args=self._connect_args(), poolclass=NullPool)

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return engine

    def try_advisory_lock(self, key: int) -> bool:
        if key in _held_locks:
            return False
        _held_locks.add(key)
        return True

    def advisory_unlock(self, key: int) -> None:
        _held_locks.discard(key)


@pytest.fixture(autouse=True)
def _reset_locks():
    _held_locks.clear()
    yield
    _held_locks.clear()


@pytest.fixture
def empty_store(tmp_path):
    store = LocalStore(str(tmp_path / "local.db"))
    set_store(store)
    yield store
    set_store(None)


@pytest.fixture
def store(empty_store):
    with empty_store.connection() as conn:
        for ddl in BUSINESS_SCHEMA:
            conn.execute(ddl)
    return empty_store


@pytest.fixture
def seeded_store(store):
    insert_rows(store, "products", [
        {"id": "p1", "company": "Asian Paints", "product_name": "Apex", "created_at": JAN_1_2024, "updated_at": JAN_1_2024},
        {"id": "p2", "company": "Berger", "product_name": "Weathercoat", "created_at": JAN_1_2024, "updated_at": None},
    ])
    insert_rows(store, "variants", [
        {"id": "v1", "product_id": "p1", "packing_size": "1L", "rate": 450.5, "is_active": 1, "created_at": JAN_1_2024},
        {"id": "v2", "product_id": "p2", "packing_size": "4L", "rate": 1600.0, "is_active": 0, "created_at": JAN_1_2024},
    ])
    insert_rows(store, "colors", [
        {"id": "c1", "variant_id": "v1", "color_code": "8012", "color_name": "Ivory", "stock_quantity": 5,
         "notes": None, "created_at": JAN_1_2024, "updated_at": JAN_1_2024},
        {"id": "c2", "variant_id": "v2", "color_code": "L102", "color_name": "Sky", "stock_quantity": 0,
         "notes": "back order", "created_at": JAN_1_2024, "updated_at": JAN_1_2024},
    ])
    insert_rows(store, "settings", [
        {"id": 1, "store_name": "Main Store", "show_stock_badges": 1, "perm_stock_delete": 0, "updated_at": JAN_1_2024},
    ])
    return store


@pytest.fixture
def remote_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'remote.db'}"


@pytest.fixture
def fast_jobs(monkeypatch):
    monkeypatch.setattr(settings, "CLOUD_SYNC_JOB_DELAY_SECONDS", 0)


def insert_rows(store: LocalStore, table: str, rows: List[Dict[str, Any]]) -> None:
    with store.connection() as conn:
        for row in rows:
            store.insert_row(conn, table, row)


def local_row(store: LocalStore, table: str, row_id: Any) -> Dict[str, Any]:
    with store.connection() as conn:
        return store.get_row(conn, table, row_id)


def remote_rows(url: str, table: str) -> List[Dict[str, Any]]:
    with SqliteRemoteClient(url) as client:
        return client.read_all_rows(table)


def remote_execute(url: str, *statements: str) -> None:
    with SqliteRemoteClient(url) as client:
        for sql in statements:
            client.execute(sql)
