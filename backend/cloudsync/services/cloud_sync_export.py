"""
Export the local SQLite tables to a remote Postgres database.

One export run is one remote transaction guarded by a session-scoped advisory
lock. Each row is upserted inside its own savepoint, so a bad row is rolled
back and counted without aborting the rest of the table.
"""
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from cloudsync.config import settings
from cloudsync.exceptions import ExportError, RemoteSchemaError, SyncLockError
from cloudsync.models.sync import BatchSummary, ExportResult, RowOutcome, TableExportSummary
from cloudsync.services.local_store import LocalStore, get_store
from cloudsync.services.remote_client import ClientFactory, RemoteClient, error_message, is_disconnect
from cloudsync.services.sync_tables import (
    PRIMARY_KEY,
    SYNC_TABLES,
    advisory_lock_key,
    batched,
    overall_checksum,
    quote_ident,
    remote_column_type,
    row_to_remote,
    table_checksum,
    validate_export_row,
)
from cloudsync.utils.logger import logger

# Log progress every N batches.
PROGRESS_EVERY_BATCHES = 5


def savepoint_name(table: str, suffix: Any) -> str:
    return re.sub(r"[^A-Za-z0-9_]", "_", f"sp_{table}_{suffix}")


def ensure_remote_table(client: RemoteClient, table: str, columns: Sequence[Tuple[str, str]]) -> str:
    """Create ``table`` remotely or add the columns it is missing.

    Existing columns are never altered and the primary key is never re-added.
    Returns ``"created"``, ``"altered"`` or ``"unchanged"``.
    """

    if not client.table_exists(table):
        column_sql = ", ".join(
            f"{quote_ident(name)} {remote_column_type(name, declared)}" for name, declared in columns
        )
        client.execute(f"CREATE TABLE IF NOT EXISTS {quote_ident(table)} ({column_sql})")
        logger.info(f"[cloud-sync-export] Created remote table {table}")
        return "created"

    existing = set(client.table_columns(table))
    if PRIMARY_KEY not in existing:
        raise RemoteSchemaError(f"Remote table {table} has no {PRIMARY_KEY} column")

    added: List[str] = []
    for name, declared in columns:
        if name in existing or name == PRIMARY_KEY:
            continue
        client.execute(
            f"ALTER TABLE {quote_ident(table)} ADD COLUMN {quote_ident(name)} "
            f"{remote_column_type(name, declared)}"
        )
        added.append(name)

    if added:
        logger.info(f"[cloud-sync-export] Added columns to remote {table}: {', '.join(added)}")
        return "altered"
    return "unchanged"


def build_upsert_sql(table: str, columns: Sequence[str]) -> str:
    """INSERT ... ON CONFLICT (id) DO UPDATE with ``:p0..:pN`` bind names."""

    column_list = ", ".join(quote_ident(c) for c in columns)
    values = ", ".join(f":p{i}" for i in range(len(columns)))
    updates = [f"{quote_ident(c)} = EXCLUDED.{quote_ident(c)}" for c in columns if c != PRIMARY_KEY]
    conflict = f"ON CONFLICT ({quote_ident(PRIMARY_KEY)}) "
    conflict += f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
    return f"INSERT INTO {quote_ident(table)} ({column_list}) VALUES ({values}) {conflict}"


def export_row(
    client: RemoteClient,
    table: str,
    row: Dict[str, Any],
    index: int,
    *,
    upsert_sql: str,
    columns: Sequence[str],
    declared_types: Dict[str, str],
    existing_ids: Set[str],
) -> RowOutcome:
    problems = validate_export_row(table, row)
    if problems:
        return RowOutcome.error(f"Row {index}: {'; '.join(problems)}")

    remote_row = row_to_remote(row, declared_types)
    params = {f"p{i}": remote_row.get(column) for i, column in enumerate(columns)}

    try:
        with client.savepoint(savepoint_name(table, index)):
            client.execute(upsert_sql, params)
    except SQLAlchemyError as exc:
        if is_disconnect(exc):
            raise
        message = error_message(exc)
        logger.warning(f"[cloud-sync-export] {table} row {index} (id: {row.get(PRIMARY_KEY)}) failed: {message}")
        return RowOutcome.error(f"Row {index} (id: {row.get(PRIMARY_KEY)}): {message}")

    key = str(row[PRIMARY_KEY])
    if key in existing_ids:
        return RowOutcome("updated")
    existing_ids.add(key)
    return RowOutcome("inserted")


def export_table(
    client: RemoteClient,
    store: LocalStore,
    local_conn,
    table: str,
    *,
    dry_run: bool,
    batch_size: int,
) -> Optional[TableExportSummary]:
    """Export one table. Returns None when the table does not exist locally."""

    columns = store.table_columns(table, local_conn)
    if not columns:
        logger.info(f"[cloud-sync-export] Local table {table} does not exist, skipping")
        return None

    rows = store.read_all_rows(table, local_conn)
    summary = TableExportSummary(rows=len(rows), checksum=table_checksum(rows))
    if dry_run:
        return summary

    try:
        with client.savepoint(savepoint_name(table, "schema")):
            ensure_remote_table(client, table, columns)
            existing_ids = {str(value) for value in client.read_ids(table)}
    except (SQLAlchemyError, RemoteSchemaError) as exc:
        if is_disconnect(exc):
            raise
        summary.schema_error = error_message(exc)
        logger.warning(f"[cloud-sync-export] Schema error on {table}, skipping table: {summary.schema_error}")
        return summary

    column_names = [name for name, _ in columns]
    declared_types = dict(columns)
    upsert_sql = build_upsert_sql(table, column_names)

    totals = BatchSummary()
    for batch_number, (start, batch) in enumerate(batched(rows, batch_size), start=1):
        for offset, row in enumerate(batch):
            totals.add(export_row(
                client,
                table,
                row,
                start + offset,
                upsert_sql=upsert_sql,
                columns=column_names,
                declared_types=declared_types,
                existing_ids=existing_ids,
            ))
        if batch_number % PROGRESS_EVERY_BATCHES == 0:
            logger.info(f"[cloud-sync-export] {table}: {start + len(batch)}/{len(rows)} rows processed")

    summary.inserted = totals.inserted
    summary.updated = totals.updated
    summary.errors = totals.errors
    summary.error_details = totals.error_details
    logger.info(
        f"[cloud-sync-export] {table}: {totals.inserted} inserted, {totals.updated} updated, "
        f"{totals.errors} errors"
    )
    return summary


def export_to_postgres(
    connection_string: str,
    dry_run: bool = True,
    *,
    store: Optional[LocalStore] = None,
    client_factory: ClientFactory = RemoteClient,
) -> ExportResult:
    """Push every table in :data:`SYNC_TABLES` to the remote database.

    Raises:
        RemoteConnectionError: the remote database cannot be reached.
        SyncLockError: another sync holds the advisory lock for this remote.
        ExportError: the run failed outside per-row handling; the remote
            transaction was rolled back and the lock released.
    """

    started = time.monotonic()
    store = store or get_store()
    batch_size = settings.CLOUD_SYNC_BATCH_SIZE

    client = client_factory(
        connection_string,
        statement_timeout_ms=settings.CLOUD_SYNC_EXPORT_STATEMENT_TIMEOUT_MS,
        connect_timeout_seconds=settings.CLOUD_SYNC_CONNECT_TIMEOUT_SECONDS,
    )
    client.connect()

    lock_key = advisory_lock_key(connection_string)
    try:
        locked = client.try_advisory_lock(lock_key)
    except SQLAlchemyError as exc:
        client.release()
        raise ExportError(f"Export failed: {error_message(exc)}") from exc
    if not locked:
        client.release()
        raise SyncLockError()

    logger.info(f"[cloud-sync-export] Starting export (dry_run={dry_run})")
    summary: Dict[str, TableExportSummary] = {}
    checksums: List[Tuple[str, str]] = []

    try:
        client.begin()
        with store.connection() as local_conn:
            for table in SYNC_TABLES:
                table_summary = export_table(
                    client, store, local_conn, table, dry_run=dry_run, batch_size=batch_size
                )
                if table_summary is None:
                    summary[table] = TableExportSummary()
                    continue
                summary[table] = table_summary
                checksums.append((table, table_summary.checksum))
        client.commit()
    except Exception as exc:
        logger.error(f"[cloud-sync-export] Export failed: {exc}", exc_info=True)
        try:
            client.rollback()
        except SQLAlchemyError as rollback_exc:
            logger.error(f"[cloud-sync-export] Rollback failed: {rollback_exc}")
        client.release(lock_key)
        raise ExportError(f"Export failed: {error_message(exc)}") from exc

    client.release(lock_key)

    result = ExportResult(
        ok=True,
        dry_run=dry_run,
        summary=summary,
        total_rows=sum(s.rows for s in summary.values()),
        total_exported=sum(s.inserted + s.updated for s in summary.values()),
        total_errors=sum(s.errors for s in summary.values()),
        export_checksum=overall_checksum(checksums),
        duration=int((time.monotonic() - started) * 1000),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    logger.info(
        f"[cloud-sync-export] Export complete: {result.total_exported}/{result.total_rows} rows, "
        f"{result.total_errors} errors, checksum={result.export_checksum}"
    )
    return result
