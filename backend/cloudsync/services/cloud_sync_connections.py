"""Stored remote connections (the secret store).

Only the encrypted connection string is ever written to disk. Reads that need
the plaintext go through :func:`get_connection`, which decrypts on demand and
treats an undecryptable row as "connection unusable" instead of failing.
"""
from typing import Any, Dict, List, Optional

from cloudsync.exceptions import DecryptionError
from cloudsync.services.local_store import LocalStore, get_store, utcnow_str
from cloudsync.utils import crypto
from cloudsync.utils.logger import logger


def save_connection(
    id: str,
    provider: str,
    connection_string: str,
    label: Optional[str] = None,
    *,
    store: Optional[LocalStore] = None,
) -> None:
    """Encrypt and upsert a connection by id."""

    store = store or get_store()
    encrypted = crypto.encrypt(connection_string)
    now = utcnow_str()

    with store.connection() as conn:
        conn.execute('''
            INSERT INTO cloud_sync_connections
                (id, provider, label, connection_string_encrypted, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                provider = excluded.provider,
                label = excluded.label,
                connection_string_encrypted = excluded.connection_string_encrypted,
                updated_at = excluded.updated_at
        ''', (id, provider, label or None, encrypted, now, now))

    logger.info(f"[cloud-sync] Saved connection {id} (provider={provider})")


def list_connections(*, store: Optional[LocalStore] = None) -> List[Dict[str, Any]]:
    """List stored connections WITHOUT any secret material."""

    store = store or get_store()
    with store.connection() as conn:
        rows = conn.execute(
            "SELECT id, provider, label, created_at, updated_at "
            "FROM cloud_sync_connections ORDER BY created_at DESC"
        ).fetchall()
    return [dict(row) for row in rows]


def get_connection(connection_id: str, *, store: Optional[LocalStore] = None) -> Optional[Dict[str, Any]]:
    """Return the connection with its decrypted ``connection_string``.

    Returns None when the id is unknown or when the stored ciphertext cannot
    be decrypted (wrong key, corrupted row); the latter is logged.
    """

    store = store or get_store()
    with store.connection() as conn:
        row = conn.execute(
            "SELECT * FROM cloud_sync_connections WHERE id = ?", (connection_id,)
        ).fetchone()

    if not row:
        return None

    record = dict(row)
    try:
        record["connection_string"] = crypto.decrypt(record.pop("connection_string_encrypted"))
    except DecryptionError as exc:
        logger.error(f"[cloud-sync] Error decrypting connection string for {connection_id}: {exc}")
        return None
    return record


def delete_connection(connection_id: str, *, store: Optional[LocalStore] = None) -> bool:
    store = store or get_store()
    with store.connection() as conn:
        cursor = conn.execute("DELETE FROM cloud_sync_connections WHERE id = ?", (connection_id,))
        deleted = cursor.rowcount > 0
    if deleted:
        logger.info(f"[cloud-sync] Deleted connection {connection_id}")
    return deleted
