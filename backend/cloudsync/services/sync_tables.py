"""Table set, naming conventions and checksums shared by export/import/verify.

Rows are schemaless dicts discovered at runtime, so the only type information
for a column is its declared SQLite type and its NAME. This module is the one
place where naming conventions stand in for real types:

- ``*_at`` / ``*_date`` (or a declared DATE/TIME type) is a timestamp. Locally
  timestamps are epoch milliseconds; remotely they are ``TIMESTAMP`` values
  (naive, UTC).
- ``is_*``, ``perm_*``, ``show_*`` and ``stock_restored`` are booleans. Locally
  they are 0/1; remotely they are ``BOOLEAN``.

Keep the tables below in sync with the business schema.
"""
from __future__ import annotations

import hashlib
import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


# Dependency order: referenced tables come before the tables pointing at them.
# Import relies on this to avoid foreign-key violations, export relies on it
# for a safe table-creation order. Do not sort or parallelise.
SYNC_TABLES: Tuple[str, ...] = (
    "products",           # no dependencies
    "variants",           # -> products
    "colors",             # -> variants
    "sales",              # no dependencies
    "sale_items",         # -> sales, colors
    "stock_in_history",   # -> colors
    "payment_history",    # -> sales
    "returns",            # -> sales (optional)
    "return_items",       # -> returns, colors
    "customer_accounts",  # no dependencies
    "settings",           # no dependencies
)

PRIMARY_KEY = "id"

# Minimal per-table required fields checked before a row is exported.
REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "products": ("company", "product_name"),
    "variants": ("product_id", "packing_size"),
    "colors": ("variant_id", "color_code"),
    "sales": ("customer_phone",),
    "sale_items": ("sale_id", "color_id"),
    "stock_in_history": ("color_id",),
    "payment_history": ("sale_id",),
    "return_items": ("return_id", "color_id"),
    "customer_accounts": ("customer_phone",),
}

TIMESTAMP_SUFFIXES = ("_at", "_date")
BOOLEAN_PREFIXES = ("is_", "perm_", "show_")
BOOLEAN_NAMES = ("stock_restored",)

_TRUE_STRINGS = {"true", "t", "1", "yes"}
_FALSE_STRINGS = {"false", "f", "0", "no", ""}

_EPOCH = datetime(1970, 1, 1)
_ONE_MS = timedelta(milliseconds=1)

EMPTY_CHECKSUM = "empty"
NOT_FOUND_CHECKSUM = "not_found"


# ---------------------------------------------------------------------------
# Naming conventions
# ---------------------------------------------------------------------------

def is_timestamp_column(name: str, declared_type: str = "") -> bool:
    typ = (declared_type or "").upper()
    return name.endswith(TIMESTAMP_SUFFIXES) or "DATE" in typ or "TIME" in typ


def is_boolean_column(name: str) -> bool:
    return name.startswith(BOOLEAN_PREFIXES) or name in BOOLEAN_NAMES


def remote_column_type(name: str, declared_type: str = "") -> str:
    """Map a local column to the Postgres type used when creating it remotely."""

    typ = (declared_type or "").upper()

    if name == PRIMARY_KEY:
        return ("BIGINT" if "INT" in typ else "TEXT") + " PRIMARY KEY"
    if is_boolean_column(name):
        return "BOOLEAN"
    if is_timestamp_column(name, typ):
        return "TIMESTAMP"
    if "INT" in typ:
        return "BIGINT"
    if "REAL" in typ or "FLOA" in typ or "DOUB" in typ:
        return "DOUBLE PRECISION"
    if "BLOB" in typ:
        return "BYTEA"
    if "NUMERIC" in typ or "DECIMAL" in typ:
        return "NUMERIC"
    return "TEXT"


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort conversion of a timestamp-ish value to a naive UTC datetime.

    Accepts datetimes, dates, epoch milliseconds, ISO-8601 strings and the
    ``DD-MM-YYYY`` strings the stock screens store. Returns None when the
    value cannot be interpreted.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float, Decimal)):
        try:
            return _EPOCH + timedelta(milliseconds=float(value))
        except OverflowError:
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_timestamp(datetime.fromisoformat(text))
        except ValueError:
            pass
        try:
            return datetime.strptime(text, "%d-%m-%Y")
        except ValueError:
            return None
    return None


def to_epoch_ms(value: datetime) -> int:
    return (value - _EPOCH) // _ONE_MS


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return bool(value)


def to_remote_value(column: str, value: Any, declared_type: str = "") -> Any:
    """Convert a local SQLite value for storage in Postgres."""

    if value is None:
        return None
    if is_timestamp_column(column, declared_type):
        parsed = parse_timestamp(value)
        return parsed if parsed is not None else value
    if is_boolean_column(column):
        return _coerce_bool(value)
    return value


def to_local_value(column: str, value: Any) -> Any:
    """Convert a value read from Postgres into its SQLite representation."""

    if value is None:
        return None
    if isinstance(value, memoryview):
        value = bytes(value)
    if isinstance(value, (datetime, date)):
        return to_epoch_ms(parse_timestamp(value))
    if is_timestamp_column(column):
        if isinstance(value, str):
            parsed = parse_timestamp(value)
            if parsed is not None:
                return to_epoch_ms(parsed)
        return value
    if is_boolean_column(column):
        return 1 if _coerce_bool(value) else 0
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    return value


def row_to_local(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {column: to_local_value(column, value) for column, value in row.items()}


def row_to_remote(
    row: Mapping[str, Any], declared_types: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    types = declared_types or {}
    return {
        column: to_remote_value(column, value, types.get(column, ""))
        for column, value in row.items()
    }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def has_id(row: Mapping[str, Any]) -> bool:
    value = row.get(PRIMARY_KEY)
    return value is not None and value != ""


def validate_export_row(table: str, row: Mapping[str, Any]) -> List[str]:
    """Return the list of problems that keep ``row`` from being exported."""

    errors: List[str] = []
    if not has_id(row):
        errors.append(f"Missing '{PRIMARY_KEY}' field")
    for field in REQUIRED_FIELDS.get(table, ()):
        value = row.get(field)
        if value is None or value == "":
            errors.append(f"Missing required field '{field}'")
    return errors


# ---------------------------------------------------------------------------
# Checksums and lock keys
# ---------------------------------------------------------------------------

def _canonical(column: str, value: Any) -> Any:
    value = to_local_value(column, value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, bytes):
        return value.hex()
    return value


def table_checksum(rows: Sequence[Mapping[str, Any]]) -> str:
    """Deterministic checksum over a table's rows.

    Keys are sorted and values normalised to their local representation, so
    the same content read from SQLite or from Postgres hashes identically.
    Neither column order nor row order matters: the two databases collate
    text ids differently, so rows are sorted after normalisation.
    """

    if not rows:
        return EMPTY_CHECKSUM
    serialised = sorted(
        json.dumps(
            {column: _canonical(column, row[column]) for column in row.keys()},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        for row in rows
    )
    payload = "[" + ",".join(serialised) + "]"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def overall_checksum(table_checksums: Iterable[Tuple[str, str]]) -> str:
    joined = "|".join(f"{table}:{checksum}" for table, checksum in table_checksums)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:32]


def advisory_lock_key(connection_string: str) -> int:
    """63-bit positive lock key derived from the connection string.

    Every process pointed at the same remote database derives the same key,
    which is what makes the advisory lock a cross-instance mutex.
    """

    digest = hashlib.sha256(connection_string.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") & 0x7FFF_FFFF_FFFF_FFFF


def batched(rows: Sequence[Any], size: int) -> Iterable[Tuple[int, Sequence[Any]]]:
    """Yield ``(start_index, batch)`` pairs in order."""

    size = max(1, int(size))
    for start in range(0, len(rows), size):
        yield start, rows[start:start + size]
