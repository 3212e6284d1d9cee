from __future__ import annotations

import threading

import pytest

from repogrowth import ledger
from repogrowth.db import apply_schema, get_connection
from repogrowth.exceptions import EmailNotFound, InvalidFormat, PermissionDenied
from repogrowth.ledger import AdmissionOutcome, Resolution
from repogrowth.models import GrowthConfig, ReviewState, Source
from repogrowth.repositories import archive_repository, create_repository, get_repository

OWNER = "owner-1"
T0 = "2024-05-01T09:00:00Z"


def test_new_then_duplicate_case_insensitive(conn, repo):
    first = ledger.admit(conn, repo, "Bob@Acme.io", Source.MANUAL, actor=OWNER, now=T0)
    assert first.outcome is AdmissionOutcome.CREATED
    assert first.resolution is Resolution.NEW

    again = ledger.admit(conn, repo, "bob@ACME.IO", Source.CSV)
    assert again.outcome is AdmissionOutcome.DUPLICATE
    assert again.resolution is Resolution.ACTIVE
    assert again.address == "Bob@acme.io"

    rows = ledger.list_emails(conn, repo.id)
    assert [r.email for r in rows] == ["Bob@acme.io"]


def test_invalid_address_raises(conn, repo):
    with pytest.raises(InvalidFormat):
        ledger.admit(conn, repo, "user@", Source.MANUAL, actor=OWNER)


def test_tags_merge_existing_keys_win(conn, repo):
    ledger.admit(conn, repo, "a@acme.io", Source.MANUAL, actor=OWNER, tags={"team": "core"})
    ledger.admit(
        conn, repo, "a@acme.io", Source.CSV, tags={"team": "infra", "city": "Oslo", "empty": ""}
    )
    rec = ledger.get_email(conn, repo.id, "a@acme.io")
    assert rec.tags == {"team": "core", "city": "Oslo"}
    events = [h["event"] for h in ledger.history(conn, repo.id, "a@acme.io")]
    assert events == ["admitted", "tags_merged"]


def test_unsubscribe_blocks_implicit_readmission(conn, repo):
    ledger.admit(conn, repo, "a@acme.io", Source.MANUAL, actor=OWNER, now=T0)
    assert ledger.unsubscribe(conn, repo.id, "A@acme.io") is True
    rec = ledger.get_email(conn, repo.id, "a@acme.io")
    assert rec.active is False
    assert rec.unsubscribed_at is not None

    r = ledger.admit(conn, repo, "a@acme.io", Source.CSV)
    assert r.outcome is AdmissionOutcome.REJECTED
    assert r.reason == "unsubscribed"
    assert r.resolution is Resolution.INACTIVE

    r = ledger.admit(conn, repo, "a@acme.io", Source.SIGNUP, now="2024-06-01T00:00:00Z")
    assert r.outcome is AdmissionOutcome.REACTIVATED
    rec = ledger.get_email(conn, repo.id, "a@acme.io")
    assert rec.active is True
    assert rec.unsubscribed_at is None
    # provenance is first-write-wins
    assert rec.source is Source.MANUAL
    assert rec.added_by == OWNER
    assert rec.added_at == T0


def test_unsubscribe_unknown_address(conn, repo):
    assert ledger.unsubscribe(conn, repo.id, "ghost@acme.io") is False


def test_untrusted_api_goes_to_review(conn, repo):
    r = ledger.admit(conn, repo, "new@acme.io", Source.API, actor="stranger")
    assert r.outcome is AdmissionOutcome.QUEUED_FOR_REVIEW
    rec = ledger.get_email(conn, repo.id, "new@acme.io")
    assert rec.active is False
    assert rec.review_state is ReviewState.PENDING
    assert [e.email for e in ledger.review_queue(conn, repo.id)] == ["new@acme.io"]

    with pytest.raises(PermissionDenied):
        ledger.approve_review(conn, repo.id, "new@acme.io", "stranger")

    rec = ledger.approve_review(conn, repo.id, "new@acme.io", OWNER)
    assert rec.active is True
    assert rec.review_state is ReviewState.NONE
    assert ledger.review_queue(conn, repo.id) == []

    with pytest.raises(ValueError):
        ledger.approve_review(conn, repo.id, "new@acme.io", OWNER)


def test_rejected_review_counts_as_opt_out(conn, repo):
    ledger.admit(conn, repo, "new@acme.io", Source.API, actor="stranger")
    rec = ledger.reject_review(conn, repo.id, "new@acme.io", OWNER)
    assert rec.review_state is ReviewState.REJECTED

    r = ledger.admit(conn, repo, "new@acme.io", Source.CSV)
    assert r.outcome is AdmissionOutcome.REJECTED
    assert r.reason == "unsubscribed"


def test_blocked_domain_is_rejected_and_logged(conn, make_repo):
    repo = make_repo(blocked_domains=("spam.com",))
    r = ledger.admit(conn, repo, "x@mail.spam.com", Source.MANUAL, actor=OWNER)
    assert r.outcome is AdmissionOutcome.REJECTED
    assert r.reason == "blocked_domain"
    assert ledger.get_email(conn, repo.id, "x@mail.spam.com") is None
    assert [h["event"] for h in ledger.history(conn, repo.id, "x@mail.spam.com")] == ["rejected"]


def test_remove_and_bounce(conn, repo):
    ledger.admit(conn, repo, "a@acme.io", Source.MANUAL, actor=OWNER)
    rec = ledger.remove(conn, repo.id, "a@acme.io", OWNER)
    assert rec.active is False
    assert rec.unsubscribed_at is None

    r = ledger.admit(conn, repo, "a@acme.io", Source.CSV)
    assert r.outcome is AdmissionOutcome.REACTIVATED

    assert ledger.record_bounce(conn, repo.id, "a@acme.io", "5.1.1") is True
    rec = ledger.get_email(conn, repo.id, "a@acme.io")
    assert rec.active is False
    assert rec.unsubscribed_at is not None

    with pytest.raises(EmailNotFound):
        ledger.remove(conn, repo.id, "ghost@acme.io", OWNER)


def test_mark_verified(conn, repo):
    ledger.admit(conn, repo, "a@acme.io", Source.MANUAL, actor=OWNER)
    assert ledger.mark_verified(conn, repo.id, "a@acme.io").verified is True


def test_archived_repository_rejects(conn, repo):
    archived = archive_repository(conn, repo.id, OWNER)
    r = ledger.admit(conn, archived, "a@acme.io", Source.SIGNUP)
    assert r.outcome is AdmissionOutcome.REJECTED
    assert r.reason == "repository_archived"


def test_concurrent_admissions_create_one_row(tmp_path):
    db = str(tmp_path / "ledger.db")
    setup = get_connection(db)
    apply_schema(setup)
    repo = create_repository(setup, "Race", OWNER, growth=GrowthConfig())
    setup.close()

    workers = 8
    barrier = threading.Barrier(workers)
    outcomes: list[str] = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        con = get_connection(db)
        try:
            r = get_repository(con, repo.id)
            barrier.wait()
            result = ledger.admit(con, r, "Same@acme.io", Source.MANUAL, actor=OWNER)
            with lock:
                outcomes.append(result.outcome.value)
        finally:
            con.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["created"] + ["duplicate"] * (workers - 1)

    check = get_connection(db)
    n = check.execute("SELECT COUNT(*) FROM repository_emails").fetchone()[0]
    check.close()
    assert n == 1
