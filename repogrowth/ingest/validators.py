from __future__ import annotations

from collections.abc import Iterable

from repogrowth.config import app_config
from repogrowth.exceptions import ImportLimitExceeded, SchemaError

# Columns the exporter writes next to "email"; they describe provenance and
# are never stored as tags on import.
PROVENANCE_COLUMNS = ("source", "addedat", "verified", "active")

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


def enforce_row_cap(count: int, max_rows: int | None = None) -> None:
    cap = app_config.imports.max_rows if max_rows is None else int(max_rows)
    if count > cap:
        raise ImportLimitExceeded(
            f"Input contains {count:,} rows but the cap is {cap:,}. "
            "Split the file or raise IMPORT_MAX_ROWS."
        )


def enforce_byte_cap(size: int, max_bytes: int | None = None) -> None:
    cap = app_config.imports.max_bytes if max_bytes is None else int(max_bytes)
    if size > cap:
        raise ImportLimitExceeded(f"Input is {size:,} bytes but the cap is {cap:,}.")


def validate_header_csv(fieldnames: Iterable[str] | None) -> str:
    """
    CSV must have a header row with an "email" column (any case).

    Returns the header exactly as written so rows can be indexed with it.
    """
    if not fieldnames:
        raise SchemaError("CSV has no header row")
    for name in fieldnames:
        if name is not None and name.strip().lower() == "email":
            return name
    raise SchemaError("CSV header has no 'email' column")


def parse_bool(val: object) -> bool:
    return str(val or "").strip().lower() in _TRUE_VALUES


def is_tag_column(name: str | None, email_column: str) -> bool:
    if name is None or name == email_column:
        return False
    key = name.strip()
    return bool(key) and key.lower() not in PROVENANCE_COLUMNS


__all__ = [
    "PROVENANCE_COLUMNS",
    "enforce_row_cap",
    "enforce_byte_cap",
    "validate_header_csv",
    "parse_bool",
    "is_tag_column",
]
