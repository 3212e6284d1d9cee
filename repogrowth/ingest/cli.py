# repogrowth/ingest/cli.py
"""
CSV import CLI.
Every file goes through the same pipeline as API uploads (run_import).

Usage examples
--------------
# Import one list into the "Rustaceans" repository
python -m repogrowth.ingest.cli --repository Rustaceans members.csv

# Several files, fail fast on a missing email column, JSON summaries
python -m repogrowth.ingest.cli --repository 3 --strict --json a.csv b.csv
"""

from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import sys
from collections.abc import Iterator
from pathlib import Path

from repogrowth.db import apply_schema, get_connection
from repogrowth.exceptions import RepositoryNotFound
from repogrowth.ingest.csv_import import ImportSummary, run_import
from repogrowth.models import Repository
from repogrowth.repositories import get_repository, get_repository_by_name

log = logging.getLogger(__name__)


def resolve_repository(conn: sqlite3.Connection, ref: str) -> Repository:
    """Look the name up first; a numeric ref falls back to the repository id."""
    try:
        return get_repository_by_name(conn, ref)
    except RepositoryNotFound:
        if ref.strip().isdigit():
            return get_repository(conn, int(ref))
        raise


def import_files(
    conn: sqlite3.Connection,
    repository: Repository,
    paths: list[Path],
    *,
    imported_by: str | None = None,
    strict: bool = False,
) -> Iterator[ImportSummary]:
    for p in paths:
        data = p.read_bytes()
        yield run_import(
            conn,
            repository.id,
            data,
            filename=p.name,
            imported_by=imported_by,
            strict=strict,
        )


def _print_summary(s: ImportSummary, as_json: bool) -> None:
    if as_json:
        print(json.dumps(s.to_dict(), ensure_ascii=False))
        return
    print(
        f"[{s.status}] {s.filename}: {s.row_count} row(s), {s.success_count} added, "
        f"{s.duplicate_count} duplicate, {s.review_count} for review, {s.error_count} error(s)"
    )
    if s.failure_reason:
        print(f"  reason: {s.failure_reason}")
    for e in s.errors:
        print(f"  row {e.row}: {e.error} ({e.email or '-'})")


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Import CSV email lists into a repository.")
    p.add_argument("inputs", nargs="+", help="Input .csv files")
    p.add_argument("--repository", "-r", required=True, help="Repository id or name")
    p.add_argument("--db", default=None, help="SQLite path (default: DATABASE_URL/DATABASE_PATH)")
    p.add_argument("--imported-by", default=None, help="Actor recorded as added_by")
    p.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero on schema/limit errors instead of recording a failed import.",
    )
    p.add_argument("--json", action="store_true", help="Print one JSON summary per file.")
    args = p.parse_args(argv)

    paths = [Path(s) for s in args.inputs]
    for pth in paths:
        if not pth.exists():
            raise SystemExit(f"Input not found: {pth}")

    conn = get_connection(args.db)
    try:
        apply_schema(conn)
        repo = resolve_repository(conn, args.repository)
        failed = 0
        for summary in import_files(
            conn, repo, paths, imported_by=args.imported_by, strict=args.strict
        ):
            _print_summary(summary, args.json)
            if summary.status == "failed":
                failed += 1
    finally:
        conn.close()
    return 1 if failed else 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    sys.exit(main())
