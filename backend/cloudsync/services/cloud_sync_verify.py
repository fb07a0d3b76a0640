"""Read-only comparison of the local database with a remote copy.

Neither check takes the advisory lock or writes anything; a verify running
next to an export may therefore see a half-exported remote.
"""
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from cloudsync.config import settings
from cloudsync.exceptions import VerificationError
from cloudsync.models.sync import (
    TableChecksumReport,
    TableCountReport,
    VerifyExportResult,
    VerifyImportResult,
)
from cloudsync.services.local_store import LocalStore, get_store
from cloudsync.services.remote_client import ClientFactory, RemoteClient, error_message
from cloudsync.services.sync_tables import NOT_FOUND_CHECKSUM, SYNC_TABLES, table_checksum
from cloudsync.utils.logger import logger

# Row count reported for a table that does not exist on that side.
ABSENT = -1


def _open(connection_string: str, client_factory: ClientFactory) -> RemoteClient:
    client = client_factory(
        connection_string,
        statement_timeout_ms=settings.CLOUD_SYNC_EXPORT_STATEMENT_TIMEOUT_MS,
        connect_timeout_seconds=settings.CLOUD_SYNC_CONNECT_TIMEOUT_SECONDS,
    )
    return client.connect()


def verify_export(
    connection_string: str,
    *,
    store: Optional[LocalStore] = None,
    client_factory: ClientFactory = RemoteClient,
) -> VerifyExportResult:
    """Compare per-table checksums of local rows and remote rows."""

    store = store or get_store()
    client = _open(connection_string, client_factory)
    details: Dict[str, TableChecksumReport] = {}
    mismatches: List[str] = []

    try:
        for table in SYNC_TABLES:
            if store.table_exists(table):
                local_rows = store.read_all_rows(table)
                local_checksum = table_checksum(local_rows)
            else:
                local_rows = []
                local_checksum = NOT_FOUND_CHECKSUM

            if client.table_exists(table):
                remote_rows = client.read_all_rows(table)
                remote_checksum = table_checksum(remote_rows)
            else:
                remote_rows = []
                remote_checksum = NOT_FOUND_CHECKSUM

            report = TableChecksumReport(
                local_rows=len(local_rows),
                remote_rows=len(remote_rows),
                local_checksum=local_checksum,
                remote_checksum=remote_checksum,
                match=local_checksum == remote_checksum,
            )
            details[table] = report
            if not report.match:
                mismatches.append(table)
    except SQLAlchemyError as exc:
        raise VerificationError(f"Verification failed: {error_message(exc)}") from exc
    finally:
        client.release()

    if mismatches:
        logger.warning(f"[cloud-sync-verify] Export verification mismatches: {', '.join(mismatches)}")
    else:
        logger.info("[cloud-sync-verify] Export verification passed")
    return VerifyExportResult(ok=not mismatches, mismatches=mismatches, details=details)


def verify_import(
    connection_string: str,
    *,
    store: Optional[LocalStore] = None,
    client_factory: ClientFactory = RemoteClient,
) -> VerifyImportResult:
    """Compare per-table row counts. ``-1`` marks a table absent on that side."""

    store = store or get_store()
    client = _open(connection_string, client_factory)
    details: Dict[str, TableCountReport] = {}
    mismatches: List[str] = []

    try:
        for table in SYNC_TABLES:
            remote_count = client.count_rows(table) if client.table_exists(table) else ABSENT
            local_count = store.count_rows(table) if store.table_exists(table) else ABSENT
            details[table] = TableCountReport(
                remote=remote_count, local=local_count, match=remote_count == local_count
            )
            if remote_count != local_count:
                mismatches.append(table)
    except SQLAlchemyError as exc:
        raise VerificationError(f"Verification failed: {error_message(exc)}") from exc
    finally:
        client.release()

    if mismatches:
        logger.warning(f"[cloud-sync-verify] Import verification mismatches: {', '.join(mismatches)}")
    else:
        logger.info("[cloud-sync-verify] Import verification passed")
    return VerifyImportResult(ok=not mismatches, mismatches=mismatches, details=details)
