from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobType(str, Enum):
    EXPORT = "export"
    IMPORT = "import"
    VERIFY_EXPORT = "verify_export"
    VERIFY_IMPORT = "verify_import"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = (JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED)


class ConflictStrategy(str, Enum):
    """How an import treats a row whose id already exists locally."""

    SKIP = "skip"
    OVERWRITE = "overwrite"
    MERGE = "merge"
    NEWEST = "newest"


# Number of per-row error messages kept per table.
MAX_ERROR_SAMPLES = 10


@dataclass
class RowOutcome:
    """Result of syncing a single row: inserted, updated, skipped or error."""

    action: str
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.action != "error"

    @classmethod
    def error(cls, message: str) -> "RowOutcome":
        return cls("error", message)


@dataclass
class BatchSummary:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: List[str] = field(default_factory=list)

    def add(self, outcome: RowOutcome) -> None:
        if outcome.action == "inserted":
            self.inserted += 1
        elif outcome.action == "updated":
            self.updated += 1
        elif outcome.action == "skipped":
            self.skipped += 1
        else:
            self.errors += 1
            if outcome.message and len(self.error_details) < MAX_ERROR_SAMPLES:
                self.error_details.append(outcome.message)

    def merge(self, other: "BatchSummary") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.errors += other.errors
        room = MAX_ERROR_SAMPLES - len(self.error_details)
        if room > 0:
            self.error_details.extend(other.error_details[:room])


class TableExportSummary(BaseModel):
    rows: int = 0
    inserted: int = 0
    updated: int = 0
    errors: int = 0
    error_details: List[str] = Field(default_factory=list)
    checksum: str = "empty"
    schema_error: Optional[str] = None


class ExportResult(BaseModel):
    ok: bool = True
    dry_run: bool
    summary: Dict[str, TableExportSummary] = Field(default_factory=dict)
    total_rows: int = 0
    total_exported: int = 0
    total_errors: int = 0
    export_checksum: str
    duration: int  # milliseconds
    timestamp: str


class TableImportSummary(BaseModel):
    remote_rows: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: List[str] = Field(default_factory=list)
    checksum: str = "empty"


class ImportResult(BaseModel):
    ok: bool = True
    dry_run: bool
    strategy: ConflictStrategy
    summary: Dict[str, TableImportSummary] = Field(default_factory=dict)
    total_rows: int = 0
    total_imported: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    import_checksum: str
    backup_path: Optional[str] = None
    schema_issues: List[str] = Field(default_factory=list)
    duration: int  # milliseconds
    timestamp: str


class TableChecksumReport(BaseModel):
    local_rows: int
    remote_rows: int
    local_checksum: str
    remote_checksum: str
    match: bool


class VerifyExportResult(BaseModel):
    ok: bool
    mismatches: List[str] = Field(default_factory=list)
    details: Dict[str, TableChecksumReport] = Field(default_factory=dict)


class TableCountReport(BaseModel):
    remote: int
    local: int
    match: bool


class VerifyImportResult(BaseModel):
    ok: bool
    mismatches: List[str] = Field(default_factory=list)
    details: Dict[str, TableCountReport] = Field(default_factory=dict)


class RestoreResult(BaseModel):
    ok: bool
    message: str


class JobResult(BaseModel):
    id: str
    status: JobStatus
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration: int = 0  # milliseconds


class ProcessAllResult(BaseModel):
    processed: int
    busy: bool = False
    results: List[JobResult] = Field(default_factory=list)
