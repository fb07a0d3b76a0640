"""
Import remote Postgres tables into the local SQLite database.

The whole run is one local transaction. Rows that already exist locally are
resolved with a :class:`ConflictStrategy`; per-row failures are counted and
sampled but never abort the table. A non-dry-run import takes a file backup
of the local database first, which :func:`restore_from_backup` can put back.
"""
import os
import shutil
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from cloudsync.config import settings
from cloudsync.exceptions import (
    BackupNotFoundError,
    RestoreError,
    SyncImportError,
    SyncLockError,
)
from cloudsync.models.sync import (
    BatchSummary,
    ConflictStrategy,
    ImportResult,
    RestoreResult,
    RowOutcome,
    TableImportSummary,
)
from cloudsync.services.local_store import LocalStore, get_store, set_store
from cloudsync.services.remote_client import ClientFactory, RemoteClient, error_message, is_disconnect
from cloudsync.services.sync_tables import (
    PRIMARY_KEY,
    SYNC_TABLES,
    advisory_lock_key,
    batched,
    has_id,
    overall_checksum,
    parse_timestamp,
    table_checksum,
    to_local_value,
)
from cloudsync.utils.logger import logger

BACKUP_PREFIX = "backup-before-import-"
PROGRESS_EVERY_BATCHES = 5

# Last-modified fields compared by the "newest" strategy, in order of preference.
MODIFIED_FIELDS = ("updated_at", "created_at")


# ---------------------------------------------------------------------------
# Backup / restore
# ---------------------------------------------------------------------------

def create_backup(store: Optional[LocalStore] = None) -> Optional[str]:
    """Copy the local database next to itself as a timestamped backup.

    Returns the backup path, or None when there is nothing to back up or the
    copy failed. A failed backup is logged and does not stop the import.
    """

    store = store or get_store()
    if not os.path.exists(store.db_path):
        logger.warning(f"[cloud-sync-import] Database file {store.db_path} not found, skipping backup")
        return None

    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")
    directory = os.path.dirname(store.db_path)
    backup_path = os.path.join(directory, f"{BACKUP_PREFIX}{stamp}.db")
    suffix = 1
    while os.path.exists(backup_path):
        backup_path = os.path.join(directory, f"{BACKUP_PREFIX}{stamp}-{suffix}.db")
        suffix += 1

    try:
        store.backup_to(backup_path)
    except (OSError, sqlite3.Error) as exc:
        logger.error(f"[cloud-sync-import] Failed to create backup: {exc}")
        return None

    logger.info(f"[cloud-sync-import] Created backup at {backup_path}")
    return backup_path


def restore_from_backup(backup_path: str, *, store: Optional[LocalStore] = None) -> RestoreResult:
    """Overwrite the live database with ``backup_path`` and reopen the store.

    The reopened handle is installed with :func:`set_store`; callers holding
    the old handle should switch to :func:`get_store`.
    """

    store = store or get_store()
    if not os.path.exists(backup_path):
        raise BackupNotFoundError(f"Backup file not found: {backup_path}")

    try:
        shutil.copy2(backup_path, store.db_path)
        for sidecar in ("-wal", "-shm"):
            if os.path.exists(store.db_path + sidecar):
                os.remove(store.db_path + sidecar)
        restored = store.reopen()
    except (OSError, sqlite3.Error) as exc:
        raise RestoreError(f"Restore failed: {exc}") from exc

    set_store(restored)
    logger.info(f"[cloud-sync-import] Database restored from {backup_path}")
    return RestoreResult(ok=True, message=f"Database successfully restored from {backup_path}")


# ---------------------------------------------------------------------------
# Conflict resolution
# ---------------------------------------------------------------------------

def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _modified_at(row: Mapping[str, Any]) -> Optional[datetime]:
    for field in MODIFIED_FIELDS:
        if not _is_blank(row.get(field)):
            return parse_timestamp(row[field])
    return None


def resolve_conflict(
    strategy: ConflictStrategy, local_row: Mapping[str, Any], remote_row: Mapping[str, Any]
) -> Dict[str, Any]:
    """Columns to update on the local row; empty means leave it alone."""

    incoming = {c: v for c, v in remote_row.items() if c != PRIMARY_KEY}

    if strategy == ConflictStrategy.SKIP:
        return {}
    if strategy == ConflictStrategy.OVERWRITE:
        return incoming
    if strategy == ConflictStrategy.MERGE:
        return {
            c: v for c, v in incoming.items()
            if _is_blank(local_row.get(c)) and not _is_blank(v)
        }
    if strategy == ConflictStrategy.NEWEST:
        remote_ts = _modified_at(remote_row)
        local_ts = _modified_at(local_row)
        if remote_ts is not None and local_ts is not None and remote_ts > local_ts:
            return incoming
        return {}
    raise SyncImportError(f"Unknown conflict strategy: {strategy}")


def apply_row(
    store: LocalStore,
    conn: sqlite3.Connection,
    table: str,
    row: Dict[str, Any],
    strategy: ConflictStrategy,
) -> RowOutcome:
    existing = store.get_row(conn, table, row[PRIMARY_KEY])
    if existing is None:
        store.insert_row(conn, table, row)
        return RowOutcome("inserted")

    changes = resolve_conflict(strategy, existing, row)
    if not changes:
        return RowOutcome("skipped")
    store.update_row(conn, table, row[PRIMARY_KEY], changes)
    return RowOutcome("updated")


def process_import_batch(
    store: LocalStore,
    conn: sqlite3.Connection,
    table: str,
    rows: Iterable[Mapping[str, Any]],
    strategy: ConflictStrategy,
    *,
    start_index: int = 0,
    local_columns: Optional[Set[str]] = None,
) -> BatchSummary:
    """Apply a batch of remote rows to the local table.

    Remote columns unknown to the local table are dropped; the local schema
    decides the shape of a row.
    """

    summary = BatchSummary()
    for index, remote_row in enumerate(rows, start=start_index):
        if not has_id(remote_row):
            summary.add(RowOutcome("skipped"))
            continue

        row = {
            column: to_local_value(column, value)
            for column, value in remote_row.items()
            if local_columns is None or column in local_columns
        }
        try:
            outcome = apply_row(store, conn, table, row, strategy)
        except sqlite3.Error as exc:
            logger.warning(f"[cloud-sync-import] {table} row {index} (id: {row[PRIMARY_KEY]}) failed: {exc}")
            outcome = RowOutcome.error(f"Row {index} (id: {row[PRIMARY_KEY]}): {exc}")
        summary.add(outcome)
    return summary


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

def verify_schema(client: RemoteClient, store: LocalStore) -> List[str]:
    """Compare table presence on both sides. Issues are warnings, not errors."""

    issues: List[str] = []
    for table in SYNC_TABLES:
        if not client.table_exists(table):
            issues.append(f"Remote table '{table}' does not exist")
        if not store.table_exists(table):
            issues.append(f"Local table '{table}' does not exist - will be created if needed")

    for issue in issues:
        logger.warning(f"[cloud-sync-import] Schema check: {issue}")
    return issues


def parse_strategy(strategy: Union[str, ConflictStrategy]) -> ConflictStrategy:
    try:
        return ConflictStrategy(strategy)
    except ValueError:
        raise SyncImportError(f"Unknown conflict strategy: {strategy}") from None


def _import_table(
    client: RemoteClient,
    store: LocalStore,
    conn: sqlite3.Connection,
    table: str,
    strategy: ConflictStrategy,
    *,
    dry_run: bool,
    batch_size: int,
) -> Optional[TableImportSummary]:
    """Import one table; None when the remote table cannot be read."""

    if not client.table_exists(table):
        logger.warning(f"[cloud-sync-import] Remote table {table} not found, skipping")
        return None
    try:
        remote_rows = client.read_all_rows(table)
    except SQLAlchemyError as exc:
        if is_disconnect(exc):
            raise
        logger.warning(f"[cloud-sync-import] Cannot read remote table {table}, skipping: {error_message(exc)}")
        return None

    summary = TableImportSummary(remote_rows=len(remote_rows), checksum=table_checksum(remote_rows))
    if dry_run:
        return summary

    local_columns = {name for name, _ in store.table_columns(table, conn)}
    if not local_columns:
        logger.warning(f"[cloud-sync-import] Local table {table} does not exist, skipping")
        return summary

    totals = BatchSummary()
    for batch_number, (start, batch) in enumerate(batched(remote_rows, batch_size), start=1):
        totals.merge(process_import_batch(
            store, conn, table, batch, strategy, start_index=start, local_columns=local_columns
        ))
        if batch_number % PROGRESS_EVERY_BATCHES == 0:
            logger.info(f"[cloud-sync-import] {table}: {start + len(batch)}/{len(remote_rows)} rows processed")

    summary.inserted = totals.inserted
    summary.updated = totals.updated
    summary.skipped = totals.skipped
    summary.errors = totals.errors
    summary.error_details = totals.error_details
    logger.info(
        f"[cloud-sync-import] {table}: {totals.inserted} inserted, {totals.updated} updated, "
        f"{totals.skipped} skipped, {totals.errors} errors"
    )
    return summary


def import_from_postgres(
    connection_string: str,
    strategy: Union[str, ConflictStrategy] = ConflictStrategy.MERGE,
    dry_run: bool = True,
    create_backup_first: bool = True,
    *,
    store: Optional[LocalStore] = None,
    client_factory: ClientFactory = RemoteClient,
) -> ImportResult:
    """Pull every table in :data:`SYNC_TABLES` from the remote database.

    Raises:
        SyncImportError: unknown strategy, or the run failed outside per-row
            handling (the local transaction was rolled back).
        RemoteConnectionError: the remote database cannot be reached.
        SyncLockError: another sync holds the advisory lock for this remote.
    """

    started = time.monotonic()
    strategy = parse_strategy(strategy)
    store = store or get_store()
    batch_size = settings.CLOUD_SYNC_BATCH_SIZE

    backup_path: Optional[str] = None
    if not dry_run and create_backup_first:
        backup_path = create_backup(store)

    client = client_factory(
        connection_string,
        statement_timeout_ms=settings.CLOUD_SYNC_IMPORT_STATEMENT_TIMEOUT_MS,
        connect_timeout_seconds=settings.CLOUD_SYNC_CONNECT_TIMEOUT_SECONDS,
    )
    client.connect()

    lock_key = advisory_lock_key(connection_string)
    try:
        locked = client.try_advisory_lock(lock_key)
    except SQLAlchemyError as exc:
        client.release()
        raise SyncImportError(f"Import failed: {error_message(exc)}") from exc
    if not locked:
        client.release()
        raise SyncLockError()

    logger.info(f"[cloud-sync-import] Starting import (strategy={strategy.value}, dry_run={dry_run})")
    summary: Dict[str, TableImportSummary] = {}
    checksums: List[Tuple[str, str]] = []

    with store.connection() as conn:
        try:
            schema_issues = verify_schema(client, store)
            if not dry_run:
                store.begin(conn)

            for table in SYNC_TABLES:
                table_summary = _import_table(
                    client, store, conn, table, strategy, dry_run=dry_run, batch_size=batch_size
                )
                if table_summary is None:
                    summary[table] = TableImportSummary()
                    continue
                summary[table] = table_summary
                checksums.append((table, table_summary.checksum))

            if not dry_run:
                store.commit(conn)
        except Exception as exc:
            logger.error(f"[cloud-sync-import] Import failed: {exc}", exc_info=True)
            try:
                store.rollback(conn)
            except sqlite3.Error as rollback_exc:
                logger.error(f"[cloud-sync-import] Local rollback failed: {rollback_exc}")
            client.release(lock_key)
            raise SyncImportError(f"Import failed: {error_message(exc)}") from exc

    client.release(lock_key)

    result = ImportResult(
        ok=True,
        dry_run=dry_run,
        strategy=strategy,
        summary=summary,
        total_rows=sum(s.remote_rows for s in summary.values()),
        total_imported=sum(s.inserted + s.updated for s in summary.values()),
        total_skipped=sum(s.skipped for s in summary.values()),
        total_errors=sum(s.errors for s in summary.values()),
        import_checksum=overall_checksum(checksums),
        backup_path=backup_path,
        schema_issues=schema_issues,
        duration=int((time.monotonic() - started) * 1000),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    logger.info(
        f"[cloud-sync-import] Import complete: {result.total_imported}/{result.total_rows} rows imported, "
        f"{result.total_skipped} skipped, {result.total_errors} errors"
    )
    return result
