# repogrowth/ingest/csv_import.py
"""
CSV import pipeline.

Lifecycle of one csv_imports row:

    pending -> processing -> completed   (row-level errors are fine)
                          -> failed      (pipeline fault: no email column,
                                          undecodable bytes, size/row cap)
                          -> cancelled   (request_cancel() while processing)

Terminal rows are frozen.

Rows are numbered by file line with the header excluded, so the first data
line is row 1 and skipped blank lines still count. Normalization fans out
over a bounded thread pool; ledger writes then run serially in row order
through the caller's connection, one admission transaction per row. A bad row is
recorded in csv_import_errors and never aborts the batch; accepted rows are
never rolled back, not even on cancellation.
"""

from __future__ import annotations

import csv
import io
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from repogrowth.config import ImportConfig, app_config
from repogrowth.db import transaction, ts_iso8601_z
from repogrowth.exceptions import ImportLimitExceeded, ImportNotFound, SchemaError
from repogrowth.export.exporter import unescape_cell
from repogrowth.ingest.validators import (
    enforce_byte_cap,
    enforce_row_cap,
    is_tag_column,
    parse_bool,
    validate_header_csv,
)
from repogrowth.ledger import AdmissionOutcome, admit
from repogrowth.models import Repository, Source
from repogrowth.normalize import try_normalize
from repogrowth.repositories import get_repository

log = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed", "cancelled")

# Counters are flushed to csv_imports every N rows so progress is visible
# to pollers while a large file is processing.
PROGRESS_BATCH = 100


@dataclass
class CSVError:
    row: int
    email: str | None
    error: str


@dataclass
class ImportSummary:
    import_id: int
    repository_id: int
    status: str
    filename: str | None = None
    imported_by: str | None = None
    row_count: int = 0
    success_count: int = 0
    duplicate_count: int = 0
    review_count: int = 0
    error_count: int = 0
    failure_reason: str | None = None
    created_at: str | None = None
    finished_at: str | None = None
    errors: list[CSVError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _PreparedRow:
    row: int
    raw_email: str | None
    address: str | None
    error: str | None
    tags: dict[str, str]
    verified: bool


# -------------------- persistence helpers --------------------


def _load(conn: sqlite3.Connection, import_id: int) -> sqlite3.Row:
    row = conn.execute("SELECT * FROM csv_imports WHERE id = ?", (import_id,)).fetchone()
    if row is None:
        raise ImportNotFound(f"import {import_id} not found")
    return row


def import_errors(conn: sqlite3.Connection, import_id: int) -> list[CSVError]:
    _load(conn, import_id)
    rows = conn.execute(
        "SELECT row_no, email, error FROM csv_import_errors"
        " WHERE import_id = ? ORDER BY row_no, id",
        (import_id,),
    ).fetchall()
    return [CSVError(row=r["row_no"], email=r["email"], error=r["error"]) for r in rows]


def get_import(conn: sqlite3.Connection, import_id: int) -> ImportSummary:
    r = _load(conn, import_id)
    return ImportSummary(
        import_id=int(r["id"]),
        repository_id=int(r["repository_id"]),
        status=r["status"],
        filename=r["filename"],
        imported_by=r["imported_by"],
        row_count=r["row_count"],
        success_count=r["success_count"],
        duplicate_count=r["duplicate_count"],
        review_count=r["review_count"],
        error_count=r["error_count"],
        failure_reason=r["failure_reason"],
        created_at=r["created_at"],
        finished_at=r["finished_at"],
        errors=import_errors(conn, import_id),
    )


def create_import(
    conn: sqlite3.Connection,
    repository_id: int,
    *,
    filename: str | None = None,
    imported_by: str | None = None,
    now: datetime | str | None = None,
) -> int:
    """Register a pending import. Raises RepositoryNotFound."""
    get_repository(conn, repository_id)
    with transaction(conn):
        cur = conn.execute(
            """
            INSERT INTO csv_imports (repository_id, filename, imported_by, status, created_at)
            VALUES (?, ?, ?, 'pending', ?)
            """,
            (repository_id, filename, imported_by, ts_iso8601_z(now)),
        )
    return int(cur.lastrowid)


def request_cancel(conn: sqlite3.Connection, import_id: int) -> bool:
    """
    Ask a pending/processing import to stop after the current row.

    Returns False when the import already reached a terminal state.
    """
    _load(conn, import_id)
    cur = conn.execute(
        """
        UPDATE csv_imports
           SET cancel_requested = 1
         WHERE id = ? AND status IN ('pending', 'processing')
        """,
        (import_id,),
    )
    return cur.rowcount == 1


def _cancel_requested(conn: sqlite3.Connection, import_id: int) -> bool:
    row = conn.execute(
        "SELECT cancel_requested FROM csv_imports WHERE id = ?", (import_id,)
    ).fetchone()
    return bool(row and row["cancel_requested"])


def _flush_counts(conn: sqlite3.Connection, import_id: int, s: ImportSummary) -> None:
    conn.execute(
        """
        UPDATE csv_imports
           SET row_count = ?, success_count = ?, duplicate_count = ?,
               review_count = ?, error_count = ?
         WHERE id = ?
        """,
        (s.row_count, s.success_count, s.duplicate_count, s.review_count, s.error_count, import_id),
    )


def _finish(
    conn: sqlite3.Connection,
    import_id: int,
    s: ImportSummary,
    status: str,
    *,
    reason: str | None = None,
) -> None:
    s.status = status
    s.failure_reason = reason
    s.finished_at = ts_iso8601_z(None)
    with transaction(conn):
        _flush_counts(conn, import_id, s)
        conn.execute(
            """
            UPDATE csv_imports
               SET status = ?, failure_reason = ?, finished_at = ?
             WHERE id = ? AND status NOT IN ('completed', 'failed', 'cancelled')
            """,
            (status, reason, s.finished_at, import_id),
        )
    log.info(
        "Import %s %s: rows=%s success=%s duplicate=%s review=%s error=%s%s",
        import_id,
        status,
        s.row_count,
        s.success_count,
        s.duplicate_count,
        s.review_count,
        s.error_count,
        f" ({reason})" if reason else "",
    )


def _record_error(
    conn: sqlite3.Connection, import_id: int, s: ImportSummary, err: CSVError
) -> None:
    s.error_count += 1
    s.errors.append(err)
    conn.execute(
        "INSERT INTO csv_import_errors (import_id, row_no, email, error) VALUES (?, ?, ?, ?)",
        (import_id, err.row, err.email, err.error),
    )


# -------------------- parsing --------------------


def _decode(data: str | bytes) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8-sig")
    return data[1:] if data.startswith("\ufeff") else data


def _prepare(row_no: int, record: dict[str | None, Any], email_column: str) -> _PreparedRow:
    raw = record.get(email_column)
    raw_email = unescape_cell(raw.strip()) if isinstance(raw, str) else None
    address, error = try_normalize(raw_email)
    tags: dict[str, str] = {}
    for name, value in record.items():
        if not is_tag_column(name, email_column) or not isinstance(value, str):
            continue
        val = unescape_cell(value) or ""
        if val != "":
            tags[name.strip()] = val  # type: ignore[union-attr]
    verified = ""
    for name, value in record.items():
        if name is not None and name.strip().lower() == "verified":
            verified = value or ""
    return _PreparedRow(
        row=row_no,
        raw_email=raw_email or None,
        address=address,
        error=f"invalid_format: {error}" if error else None,
        tags=tags,
        verified=parse_bool(verified),
    )


# -------------------- processing --------------------


def process_import(
    conn: sqlite3.Connection,
    import_id: int,
    data: str | bytes,
    *,
    strict: bool = False,
    config: ImportConfig | None = None,
    now: datetime | str | None = None,
) -> ImportSummary:
    """
    Parse `data` and admit every row through the ledger.

    With strict=True, SchemaError/ImportLimitExceeded/UnicodeDecodeError are
    re-raised after the import is marked failed; otherwise the failed summary
    is returned.
    """
    cfg = config or app_config.imports
    rec = _load(conn, import_id)
    if rec["status"] in TERMINAL_STATUSES:
        return get_import(conn, import_id)

    repo = get_repository(conn, int(rec["repository_id"]))
    summary = ImportSummary(
        import_id=import_id,
        repository_id=repo.id,
        status="processing",
        filename=rec["filename"],
        imported_by=rec["imported_by"],
        created_at=rec["created_at"],
    )

    # A retried job restarts from scratch; the ledger makes replayed rows duplicates.
    with transaction(conn):
        conn.execute("DELETE FROM csv_import_errors WHERE import_id = ?", (import_id,))
        conn.execute("UPDATE csv_imports SET status = 'processing' WHERE id = ?", (import_id,))
        _flush_counts(conn, import_id, summary)

    try:
        size = len(data.encode("utf-8")) if isinstance(data, str) else len(data)
        enforce_byte_cap(size, cfg.max_bytes)
        text = _decode(data)
        reader = csv.DictReader(io.StringIO(text, newline=""))
        email_column = validate_header_csv(reader.fieldnames)
        # Row number = physical line minus the header line, so blank lines count.
        records = [(reader.line_num - 1, rec) for rec in reader]
        enforce_row_cap(len(records), cfg.max_rows)
    except (SchemaError, ImportLimitExceeded, UnicodeDecodeError, csv.Error) as exc:
        reason = str(exc) if not isinstance(exc, UnicodeDecodeError) else "input is not valid UTF-8"
        _finish(conn, import_id, summary, "failed", reason=reason)
        if strict:
            raise
        return summary

    summary.row_count = len(records)
    with ThreadPoolExecutor(max_workers=max(1, cfg.row_concurrency)) as pool:
        prepared = list(
            pool.map(lambda pair: _prepare(pair[0], pair[1], email_column), records)
        )

    ts = ts_iso8601_z(now)
    try:
        for done, item in enumerate(prepared, start=1):
            if _cancel_requested(conn, import_id):
                _finish(conn, import_id, summary, "cancelled", reason="cancelled by request")
                return summary

            if item.address is None:
                error = item.error or "invalid_format"
                _record_error(conn, import_id, summary, CSVError(item.row, item.raw_email, error))
            else:
                _apply_row(conn, repo, import_id, summary, item, item.address, ts)

            if done % PROGRESS_BATCH == 0:
                _flush_counts(conn, import_id, summary)
    except sqlite3.Error as exc:
        log.exception("Import %s failed at the storage layer", import_id)
        _finish(conn, import_id, summary, "failed", reason=f"storage error: {exc}")
        raise

    _finish(conn, import_id, summary, "completed")
    return summary


def _apply_row(
    conn: sqlite3.Connection,
    repo: Repository,
    import_id: int,
    summary: ImportSummary,
    item: _PreparedRow,
    address: str,
    ts: str,
) -> None:
    result = admit(
        conn,
        repo,
        address,
        Source.CSV,
        actor=summary.imported_by,
        tags=item.tags,
        verified=item.verified,
        now=ts,
    )
    if result.counts_as_success:
        summary.success_count += 1
    elif result.outcome is AdmissionOutcome.DUPLICATE:
        summary.duplicate_count += 1
    elif result.outcome is AdmissionOutcome.QUEUED_FOR_REVIEW:
        summary.review_count += 1
        _record_error(conn, import_id, summary, CSVError(item.row, address, "manual_review"))
    else:
        _record_error(
            conn,
            import_id,
            summary,
            CSVError(item.row, address, result.reason or result.outcome.value),
        )


def run_import(
    conn: sqlite3.Connection,
    repository_id: int,
    data: str | bytes,
    *,
    filename: str | None = None,
    imported_by: str | None = None,
    strict: bool = False,
    config: ImportConfig | None = None,
    now: datetime | str | None = None,
) -> ImportSummary:
    """create_import() + process_import() in one call."""
    import_id = create_import(
        conn, repository_id, filename=filename, imported_by=imported_by, now=now
    )
    return process_import(conn, import_id, data, strict=strict, config=config, now=now)


__all__ = [
    "CSVError",
    "ImportSummary",
    "TERMINAL_STATUSES",
    "create_import",
    "process_import",
    "run_import",
    "request_cancel",
    "get_import",
    "import_errors",
]
