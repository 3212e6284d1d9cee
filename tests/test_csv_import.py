from __future__ import annotations

import pytest

from repogrowth import ledger
from repogrowth.config import ImportConfig
from repogrowth.exceptions import ImportNotFound, SchemaError
from repogrowth.ingest import csv_import
from repogrowth.ingest.csv_import import create_import, get_import, process_import, run_import

MALFORMED = {10: "notanemail", 50: "@incomplete.com", 103: "user@"}


def _csv_with_errors() -> str:
    lines = ["email,team"]
    valid = iter(range(100))
    for row_no in range(1, 104):
        if row_no in MALFORMED:
            lines.append(f"{MALFORMED[row_no]},x")
        else:
            lines.append(f"user{next(valid)}@acme.io,core")
    return "\n".join(lines) + "\n"


def test_partial_failure_isolation(conn, repo):
    s = run_import(conn, repo.id, _csv_with_errors(), filename="list.csv")
    assert s.status == "completed"
    assert s.row_count == 103
    assert s.success_count == 100
    assert s.error_count == 3
    assert [(e.row, e.email) for e in s.errors] == [
        (10, "notanemail"),
        (50, "@incomplete.com"),
        (103, "user@"),
    ]
    assert s.errors[0].error == "invalid_format: expected_single_at"

    stored = get_import(conn, s.import_id)
    assert stored.status == "completed"
    assert stored.success_count == 100
    assert len(stored.errors) == 3
    assert len(ledger.list_emails(conn, repo.id)) == 100


def test_blank_lines_keep_row_numbers_aligned_with_the_file(conn, repo):
    text = "email\n\nok@acme.io\n\n\nbroken\nlast@acme.io\n"
    s = run_import(conn, repo.id, text)
    assert s.row_count == 3
    assert s.success_count == 2
    assert [(e.row, e.email) for e in s.errors] == [(5, "broken")]


def test_reimport_is_idempotent(conn, repo):
    run_import(conn, repo.id, _csv_with_errors())
    s = run_import(conn, repo.id, _csv_with_errors())
    assert s.success_count == 0
    assert s.duplicate_count == 100
    assert s.error_count == 3
    assert len(ledger.list_emails(conn, repo.id)) == 100


def test_header_is_case_insensitive_and_bom_tolerant(conn, repo):
    data = "\ufeffEMAIL,Verified,city\nA@acme.io,true,Oslo\n".encode()
    s = run_import(conn, repo.id, data)
    assert s.success_count == 1
    rec = ledger.get_email(conn, repo.id, "a@acme.io")
    assert rec.verified is True
    assert rec.tags == {"city": "Oslo"}
    assert rec.source.value == "csv"


def test_missing_email_column_fails_import(conn, repo):
    s = run_import(conn, repo.id, "name\nBob\n")
    assert s.status == "failed"
    assert s.failure_reason == "CSV header has no 'email' column"

    with pytest.raises(SchemaError):
        run_import(conn, repo.id, "", strict=True)


def test_row_cap(conn, repo):
    cfg = ImportConfig(max_rows=2, max_bytes=1_000_000, row_concurrency=2, repo_max_concurrency=1)
    s = run_import(conn, repo.id, "email\na@acme.io\nb@acme.io\nc@acme.io\n", config=cfg)
    assert s.status == "failed"
    assert "cap is 2" in s.failure_reason
    assert ledger.list_emails(conn, repo.id) == []


def test_below_threshold_rows_go_to_review(conn, make_repo):
    strict_repo = make_repo(quality_threshold=0.9)
    s = run_import(conn, strict_repo.id, "email\na@acme.io\n")
    assert s.success_count == 0
    assert s.review_count == 1
    assert s.error_count == 1
    assert s.errors[0].error == "manual_review"


def test_cancellation_keeps_accepted_rows(conn, repo, monkeypatch):
    calls = {"n": 0}

    def cancel_after_five(_conn, _import_id):
        calls["n"] += 1
        return calls["n"] > 5

    monkeypatch.setattr(csv_import, "_cancel_requested", cancel_after_five)
    data = "email\n" + "".join(f"u{i}@acme.io\n" for i in range(20))
    s = run_import(conn, repo.id, data)
    assert s.status == "cancelled"
    assert s.success_count == 5
    assert len(ledger.list_emails(conn, repo.id)) == 5

    stored = get_import(conn, s.import_id)
    assert stored.status == "cancelled"
    assert csv_import.request_cancel(conn, s.import_id) is False
    # terminal imports are frozen
    again = process_import(conn, s.import_id, data)
    assert again.status == "cancelled"
    assert again.success_count == 5


def test_request_cancel_before_processing(conn, repo):
    import_id = create_import(conn, repo.id, filename="late.csv")
    assert csv_import.request_cancel(conn, import_id) is True
    s = process_import(conn, import_id, "email\na@acme.io\n")
    assert s.status == "cancelled"
    assert s.success_count == 0


def test_unknown_import(conn):
    with pytest.raises(ImportNotFound):
        get_import(conn, 999)
