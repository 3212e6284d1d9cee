# repogrowth/export/exporter.py
"""
CSV export of a repository's ledger.

Layout:

  email, source, addedAt, verified, active, <tag columns sorted by name>

Key decisions:

- One row per ledger row, ordered by dedup key, so two exports of an
  unchanged repository are byte-identical.
- Active rows only unless include_inactive=True.
- Booleans are written as true/false.
- Text cells go through escape_cell() (formula-injection guard); the import
  pipeline reverses it with unescape_cell(), so export -> import -> export
  into the same repository reproduces the same bytes.
"""

from __future__ import annotations

import csv
import io
import sqlite3
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from repogrowth.ledger import RESERVED_TAG_KEYS, list_emails
from repogrowth.repositories import get_repository

BASE_COLUMNS = ["email", "source", "addedAt", "verified", "active"]

_FORMULA_CHARS = ("=", "+", "-", "@", "\t", "\r")


@dataclass
class ExportRow:
    email: str
    source: str
    added_at: str
    verified: bool
    active: bool
    tags: dict[str, str] = field(default_factory=dict)


def escape_cell(value: str | None) -> str | None:
    """
    Guard against Excel/Sheets "formula injection" (CSV Injection / DDE attacks).

    Prefixes any cell starting with a dangerous character with a single quote.
    Dangerous characters per OWASP CSV Injection guidance:
      =  +  -  @  \\t (tab)  \\r (carriage return)

    A cell that already starts with quotes followed by one of those characters
    gets one more quote, so unescape_cell() always restores the original.

    Reference: https://owasp.org/www-community/attacks/CSV_Injection
    """
    if value is None:
        return None
    if value.lstrip("'")[:1] in _FORMULA_CHARS:
        return "'" + value
    return value


def unescape_cell(value: str | None) -> str | None:
    """Inverse of escape_cell()."""
    if value is None:
        return None
    rest = value.lstrip("'")
    if value.startswith("'") and rest[:1] in _FORMULA_CHARS:
        return value[1:]
    return value


def _bool(v: bool) -> str:
    return "true" if v else "false"


def iter_export_rows(
    conn: sqlite3.Connection,
    repository_id: int,
    *,
    include_inactive: bool = False,
    sources: list[str] | None = None,
) -> Iterator[ExportRow]:
    get_repository(conn, repository_id)
    for rec in list_emails(
        conn,
        repository_id,
        active=None if include_inactive else True,
        sources=sources,
    ):
        yield ExportRow(
            email=rec.email,
            source=rec.source.value,
            added_at=rec.added_at,
            verified=rec.verified,
            active=rec.active,
            tags=dict(rec.tags),
        )


def export_header(rows: Iterable[ExportRow]) -> list[str]:
    tag_names: set[str] = set()
    for r in rows:
        tag_names.update(k for k in r.tags if k.lower() not in RESERVED_TAG_KEYS)
    return BASE_COLUMNS + sorted(tag_names)


def write_csv(rows: list[ExportRow], out: io.TextIOBase | io.StringIO) -> None:
    fieldnames = export_header(rows)
    writer = csv.DictWriter(out, fieldnames=fieldnames, lineterminator="\n")
    writer.writeheader()
    for r in rows:
        record = {
            "email": escape_cell(r.email),
            "source": r.source,
            "addedAt": r.added_at,
            "verified": _bool(r.verified),
            "active": _bool(r.active),
        }
        for name in fieldnames[len(BASE_COLUMNS) :]:
            record[name] = escape_cell(r.tags.get(name, ""))
        writer.writerow(record)


def export_csv(
    conn: sqlite3.Connection,
    repository_id: int,
    *,
    include_inactive: bool = False,
    sources: list[str] | None = None,
) -> str:
    """Return the repository's ledger as CSV text. Raises RepositoryNotFound."""
    rows = list(
        iter_export_rows(conn, repository_id, include_inactive=include_inactive, sources=sources)
    )
    buf = io.StringIO()
    write_csv(rows, buf)
    return buf.getvalue()


__all__ = [
    "BASE_COLUMNS",
    "ExportRow",
    "escape_cell",
    "unescape_cell",
    "iter_export_rows",
    "export_header",
    "write_csv",
    "export_csv",
]
