from __future__ import annotations

from datetime import UTC, datetime

import pytest

from repogrowth import digest, ledger
from repogrowth.delivery import DeliveryBounce, DeliveryReport
from repogrowth.exceptions import DigestNotFound
from repogrowth.models import Source

OWNER = "owner-1"
START = "2024-05-06T00:00:00Z"
END = "2024-05-13T00:00:00Z"


class FakeClient:
    def __init__(self, report: DeliveryReport) -> None:
        self.report = report
        self.payloads: list[dict] = []

    def send(self, payload):
        self.payloads.append(payload)
        return self.report


class FixedRanker:
    def top_content(self, repository, period_start, period_end, limit):
        return [{"title": f"post {i}"} for i in range(limit + 5)]


def _members(conn, repo):
    before = "2024-05-01T00:00:00Z"
    ledger.admit(conn, repo, "alice@acme.io", Source.MANUAL, actor=OWNER, verified=True, now=before)
    ledger.admit(conn, repo, "bob@acme.io", Source.MANUAL, actor=OWNER, verified=True, now=before)
    ledger.admit(conn, repo, "unverified@acme.io", Source.MANUAL, actor=OWNER, now=before)
    ledger.admit(
        conn, repo, "late@acme.io", Source.MANUAL, actor=OWNER, verified=True,
        now="2024-05-07T00:00:00Z",
    )


def test_recipients_are_active_verified_and_present_at_start(conn, repo):
    _members(conn, repo)
    job = digest.build_digest(conn, repo.id, START, END)
    assert job.status == "created"
    assert job.recipient_count == 2
    assert digest.recipients(conn, job.id) == ["alice@acme.io", "bob@acme.io"]


def test_build_is_idempotent(conn, repo):
    _members(conn, repo)
    first = digest.build_digest(conn, repo.id, START, END)
    # a member joining later must not change the stored snapshot
    ledger.admit(conn, repo, "carol@acme.io", Source.MANUAL, actor=OWNER, verified=True, now=START)
    second = digest.build_digest(conn, repo.id, START, END)
    assert second.id == first.id
    assert second.recipient_count == 2
    n = conn.execute("SELECT COUNT(*) FROM digest_jobs").fetchone()[0]
    assert n == 1


def test_same_window_written_with_an_offset_is_one_job(conn, repo):
    _members(conn, repo)
    first = digest.build_digest(conn, repo.id, START, END)
    second = digest.build_digest(
        conn, repo.id, "2024-05-06T00:00:00+00:00", "2024-05-13T02:00:00+02:00"
    )
    assert second.id == first.id
    assert (second.period_start, second.period_end) == (START, END)
    assert conn.execute("SELECT COUNT(*) FROM digest_jobs").fetchone()[0] == 1


def test_unparseable_window_is_rejected(conn, repo):
    with pytest.raises(ValueError):
        digest.build_digest(conn, repo.id, "last monday", END)
    assert conn.execute("SELECT COUNT(*) FROM digest_jobs").fetchone()[0] == 0


def test_content_is_capped(conn, repo):
    job = digest.build_digest(conn, repo.id, START, END, ranker=FixedRanker(), max_items=3)
    assert len(job.content) == 3


def test_invalid_window(conn, repo):
    with pytest.raises(ValueError):
        digest.build_digest(conn, repo.id, END, START)


def test_hard_bounce_drops_recipient_from_next_window(conn, repo):
    _members(conn, repo)
    job = digest.build_digest(conn, repo.id, START, END)
    client = FakeClient(
        DeliveryReport(
            status="delivered",
            delivered=1,
            bounces=[
                DeliveryBounce("alice@acme.io", "hard", "5.1.1"),
                DeliveryBounce("bob@acme.io", "soft", "mailbox full"),
            ],
        )
    )
    done = digest.dispatch_digest(conn, job.id, client, now="2024-05-13T08:00:00Z")
    assert done.status == "delivered"
    assert client.payloads[0]["recipients"] == ["alice@acme.io", "bob@acme.io"]

    alice = ledger.get_email(conn, repo.id, "alice@acme.io")
    assert alice.active is False
    assert alice.unsubscribed_at is not None
    assert ledger.get_email(conn, repo.id, "bob@acme.io").active is True

    nxt = digest.build_digest(conn, repo.id, END, "2024-05-20T00:00:00Z")
    assert digest.recipients(conn, nxt.id) == ["bob@acme.io", "late@acme.io"]

    # dispatching again is a no-op
    again = digest.dispatch_digest(conn, job.id, client)
    assert again.status == "delivered"
    assert len(client.payloads) == 1


def test_failed_report(conn, repo):
    job = digest.build_digest(conn, repo.id, START, END)
    done = digest.dispatch_digest(conn, job.id, FakeClient(DeliveryReport(status="failed")))
    assert done.status == "failed"


def test_unknown_job(conn):
    with pytest.raises(DigestNotFound):
        digest.get_job(conn, 42)


def test_period_windows():
    now = datetime(2024, 5, 15, 10, 30, tzinfo=UTC)  # Wednesday
    assert digest.period_for("daily", now) == (
        datetime(2024, 5, 14, tzinfo=UTC),
        datetime(2024, 5, 15, tzinfo=UTC),
    )
    assert digest.period_for("weekly", now) == (
        datetime(2024, 5, 6, tzinfo=UTC),
        datetime(2024, 5, 13, tzinfo=UTC),
    )
    assert digest.period_for("monthly", now) == (
        datetime(2024, 4, 1, tzinfo=UTC),
        datetime(2024, 5, 1, tzinfo=UTC),
    )
    start, end = digest.period_for("biweekly", now)
    assert end.weekday() == 0
    assert (end - start).days == 14
    assert end <= now < end + (end - start)
    assert digest.period_for("never", now) is None
    with pytest.raises(ValueError):
        digest.period_for("hourly", now)


def test_january_monthly_window():
    start, end = digest.period_for("monthly", datetime(2024, 1, 3, tzinfo=UTC))
    assert (start, end) == (datetime(2023, 12, 1, tzinfo=UTC), datetime(2024, 1, 1, tzinfo=UTC))


def test_schedule_due_digests(conn, make_repo):
    weekly = make_repo("Weekly")
    make_repo("Quiet", digest_frequency="never")
    calls = []
    now = datetime(2024, 5, 15, tzinfo=UTC)

    def enqueue(rid, start, end):
        calls.append((rid, start, end))
        digest.build_digest(conn, rid, start, end)

    due = digest.schedule_due_digests(conn, now, enqueue)
    assert due == [(weekly.id, START, END)]
    assert calls == due
    # already built -> nothing due
    assert digest.schedule_due_digests(conn, now, enqueue) == []


DSN = """\
From: MAILER-DAEMON@mx.example.net
To: bounces@ourapp.io
Subject: Undelivered Mail Returned to Sender
MIME-Version: 1.0
Content-Type: multipart/report; report-type=delivery-status; boundary="XYZ"

--XYZ
Content-Type: text/plain; charset=utf-8

Delivery to Gone@Acme.io failed permanently.

--XYZ
Content-Type: message/delivery-status

Reporting-MTA: dns; mx.example.net

Final-Recipient: rfc822; gone@acme.io
Action: failed
Status: 5.1.1

--XYZ--
"""


def test_parse_bounce_addresses():
    found = digest.parse_bounce_addresses(
        DSN, ignore=["MAILER-DAEMON@mx.example.net", "bounces@ourapp.io"]
    )
    assert found == ["gone@acme.io"]


def test_bounce_message_deactivates_in_every_repository(conn, make_repo):
    a = make_repo("A")
    b = make_repo("B")
    for r in (a, b):
        ledger.admit(conn, r, "gone@acme.io", Source.MANUAL, actor=OWNER)
    out = digest.handle_bounce_message(conn, DSN, ignore=["bounces@ourapp.io"])
    assert out == {"gone@acme.io": 2}
    for r in (a, b):
        assert ledger.get_email(conn, r.id, "gone@acme.io").active is False
