# repogrowth/digest.py
"""
Digest scheduler.

Builds one immutable DigestJob per (repository, period window):

  - recipients: active AND verified rows whose added_at <= period_start,
    snapshotted into digest_recipients at build time
  - content: whatever the ContentRanker collaborator returns for the window
    (NullContentRanker -> [])

build_digest() is idempotent: a second call for the same window returns the
stored job and never re-snapshots. The job row and its recipients are
written in one transaction.

Jobs then move created -> dispatched -> delivered|failed as the delivery
collaborator reports. Hard bounces from a report deactivate the address in
the ledger (active=false, unsubscribed_at set), so it drops out of the next
window's snapshot.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from email import message_from_bytes
from email.message import Message
from typing import Any, Protocol

from repogrowth import ledger
from repogrowth.config import app_config
from repogrowth.db import transaction, ts_iso8601_z
from repogrowth.delivery import DeliveryClient, DeliveryReport
from repogrowth.exceptions import DigestNotFound, InvalidFormat
from repogrowth.models import Repository
from repogrowth.normalize import dedup_key, normalize_address
from repogrowth.repositories import get_repository, list_repositories

log = logging.getLogger(__name__)

# Monday; biweekly windows are counted from here.
BIWEEKLY_ANCHOR = datetime(1970, 1, 5, tzinfo=UTC)


@dataclass
class DigestJob:
    id: int
    repository_id: int
    period_start: str
    period_end: str
    content: list[Any] = field(default_factory=list)
    recipient_count: int = 0
    status: str = "created"
    created_at: str | None = None
    dispatched_at: str | None = None
    finished_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DigestJob:
        return cls(
            id=int(row["id"]),
            repository_id=int(row["repository_id"]),
            period_start=row["period_start"],
            period_end=row["period_end"],
            content=json.loads(row["content"] or "[]"),
            recipient_count=int(row["recipient_count"]),
            status=row["status"],
            created_at=row["created_at"],
            dispatched_at=row["dispatched_at"],
            finished_at=row["finished_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "repository_id": self.repository_id,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "content": self.content,
            "recipient_count": self.recipient_count,
            "status": self.status,
            "created_at": self.created_at,
            "dispatched_at": self.dispatched_at,
            "finished_at": self.finished_at,
        }


class ContentRanker(Protocol):
    def top_content(
        self,
        repository: Repository,
        period_start: str,
        period_end: str,
        limit: int,
    ) -> list[dict[str, Any]]: ...


class NullContentRanker:
    """Ranker used when no content collaborator is wired in."""

    def top_content(
        self,
        repository: Repository,
        period_start: str,
        period_end: str,
        limit: int,
    ) -> list[dict[str, Any]]:
        return []


# -------------------- periods --------------------


def _midnight(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    dt = dt.astimezone(UTC)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def period_for(frequency: str, now: datetime) -> tuple[datetime, datetime] | None:
    """
    Last complete window for `frequency` as of `now` (UTC).

      daily     previous calendar day
      weekly    previous Monday..Monday week
      biweekly  previous 14-day window counted from 1970-01-05
      monthly   previous calendar month
      never     None
    """
    today = _midnight(now)
    if frequency == "never":
        return None
    if frequency == "daily":
        return today - timedelta(days=1), today
    if frequency == "weekly":
        end = today - timedelta(days=today.weekday())
        return end - timedelta(days=7), end
    if frequency == "biweekly":
        days = (today - BIWEEKLY_ANCHOR).days
        end = BIWEEKLY_ANCHOR + timedelta(days=(days // 14) * 14)
        return end - timedelta(days=14), end
    if frequency == "monthly":
        end = today.replace(day=1)
        start = (end - timedelta(days=1)).replace(day=1)
        return start, end
    raise ValueError(f"unknown digest frequency: {frequency!r}")


# -------------------- build --------------------


def _find_job(
    conn: sqlite3.Connection, repository_id: int, start: str, end: str
) -> sqlite3.Row | None:
    return conn.execute(
        """
        SELECT * FROM digest_jobs
         WHERE repository_id = ? AND period_start = ? AND period_end = ?
        """,
        (repository_id, start, end),
    ).fetchone()


def get_job(conn: sqlite3.Connection, job_id: int) -> DigestJob:
    row = conn.execute("SELECT * FROM digest_jobs WHERE id = ?", (job_id,)).fetchone()
    if row is None:
        raise DigestNotFound(f"digest job {job_id} not found")
    return DigestJob.from_row(row)


def recipients(conn: sqlite3.Connection, job_id: int) -> list[str]:
    rows = conn.execute(
        "SELECT email FROM digest_recipients WHERE job_id = ? ORDER BY email_key",
        (job_id,),
    ).fetchall()
    return [r["email"] for r in rows]


def build_digest(
    conn: sqlite3.Connection,
    repository_id: int,
    period_start: datetime | str,
    period_end: datetime | str,
    *,
    ranker: ContentRanker | None = None,
    max_items: int | None = None,
    now: datetime | str | None = None,
) -> DigestJob:
    start = ts_iso8601_z(period_start)
    end = ts_iso8601_z(period_end)
    if start >= end:
        raise ValueError("period_start must be before period_end")

    repo = get_repository(conn, repository_id)
    existing = _find_job(conn, repo.id, start, end)
    if existing is not None:
        return DigestJob.from_row(existing)

    limit = app_config.delivery.max_items if max_items is None else max_items
    content = list((ranker or NullContentRanker()).top_content(repo, start, end, limit))[:limit]

    with transaction(conn):
        cur = conn.execute(
            """
            INSERT INTO digest_jobs (
                repository_id, period_start, period_end, content, status, created_at
            )
            VALUES (?, ?, ?, ?, 'created', ?)
            ON CONFLICT(repository_id, period_start, period_end) DO NOTHING
            """,
            (repo.id, start, end, json.dumps(content, sort_keys=True), ts_iso8601_z(now)),
        )
        if cur.rowcount == 0:
            return DigestJob.from_row(_find_job(conn, repo.id, start, end))
        job_id = int(cur.lastrowid)
        snap = conn.execute(
            """
            INSERT INTO digest_recipients (job_id, email_key, email)
            SELECT ?, email_key, email
              FROM repository_emails
             WHERE repository_id = ? AND active = 1 AND verified = 1 AND added_at <= ?
            """,
            (job_id, repo.id, start),
        )
        conn.execute(
            "UPDATE digest_jobs SET recipient_count = ? WHERE id = ?",
            (snap.rowcount, job_id),
        )

    job = get_job(conn, job_id)
    log.info(
        "Built digest %s for repository %s [%s, %s): %s recipient(s), %s item(s)",
        job.id,
        repo.id,
        start,
        end,
        job.recipient_count,
        len(job.content),
    )
    return job


def schedule_due_digests(
    conn: sqlite3.Connection,
    now: datetime,
    enqueue: Callable[[int, str, str], Any],
) -> list[tuple[int, str, str]]:
    """
    Call enqueue(repository_id, period_start, period_end) for every
    non-archived repository whose last complete window has no job yet.
    """
    due: list[tuple[int, str, str]] = []
    for repo in list_repositories(conn):
        window = period_for(repo.growth.digest_frequency, now)
        if window is None:
            continue
        start, end = ts_iso8601_z(window[0]), ts_iso8601_z(window[1])
        if _find_job(conn, repo.id, start, end) is not None:
            continue
        enqueue(repo.id, start, end)
        due.append((repo.id, start, end))
    if due:
        log.info("Scheduled %s digest build(s)", len(due))
    return due


# -------------------- dispatch / reports --------------------


def build_payload(conn: sqlite3.Connection, job: DigestJob) -> dict[str, Any]:
    repo = get_repository(conn, job.repository_id)
    return {
        "job_id": job.id,
        "repository": {"id": repo.id, "name": repo.name},
        "period_start": job.period_start,
        "period_end": job.period_end,
        "content": job.content,
        "recipients": recipients(conn, job.id),
    }


def dispatch_digest(
    conn: sqlite3.Connection,
    job_id: int,
    client: DeliveryClient,
    *,
    now: datetime | str | None = None,
) -> DigestJob:
    """
    Hand a created job to the delivery collaborator and apply its report.

    Jobs past 'created' are returned untouched. DeliveryError propagates and
    leaves the job in 'created' so the caller can retry.
    """
    job = get_job(conn, job_id)
    if job.status != "created":
        return job

    report = client.send(build_payload(conn, job))
    ts = ts_iso8601_z(now)
    with transaction(conn):
        conn.execute(
            "UPDATE digest_jobs SET status = 'dispatched', dispatched_at = ?"
            " WHERE id = ? AND status = 'created'",
            (ts, job_id),
        )
        apply_delivery_report(conn, job_id, report, now=ts)
    return get_job(conn, job_id)


def apply_delivery_report(
    conn: sqlite3.Connection,
    job_id: int,
    report: DeliveryReport,
    *,
    now: datetime | str | None = None,
) -> DigestJob:
    """
    Apply bounces and the final status. Replaying a report is harmless:
    bounces are idempotent and a finished job keeps its status.
    """
    job = get_job(conn, job_id)
    ts = ts_iso8601_z(now)
    with transaction(conn):
        for bounce in report.bounces:
            if bounce.kind != "hard":
                log.info(
                    "Soft bounce for %s on digest %s: %s", bounce.address, job_id, bounce.reason
                )
                continue
            try:
                ledger.record_bounce(conn, job.repository_id, bounce.address, bounce.reason, now=ts)
            except InvalidFormat:
                log.warning(
                    "Ignoring bounce for malformed address %r on digest %s", bounce.address, job_id
                )
        conn.execute(
            """
            UPDATE digest_jobs
               SET status = ?, finished_at = ?
             WHERE id = ? AND status IN ('created', 'dispatched')
            """,
            (report.status, ts, job_id),
        )
    return get_job(conn, job_id)


# -------------------- inbound bounces --------------------

EMAIL_RE = re.compile(
    r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}",
)


def _extract_emails(text: str) -> set[str]:
    return set(EMAIL_RE.findall(text or ""))


def parse_bounce_addresses(
    raw_message: str | bytes,
    ignore: Iterable[str] | None = None,
) -> list[str]:
    """
    Extract likely bounced addresses from a raw RFC 822 / DSN message.

    Strategy:
      - Common DSN headers: Final-Recipient, Original-Recipient,
        X-Orig-Recipient, X-Original-To, Delivered-To (never To:, which is
        usually the bounce mailbox itself).
      - Every text/* part (the message/delivery-status report included) is
        scanned for email-looking tokens.
      - Addresses in `ignore` (the bounce mailbox, postmaster) are dropped.

    Returns dedup keys in sorted order.
    """
    ignore_keys = {a.strip().lower() for a in (ignore or ())}
    if isinstance(raw_message, bytes):
        data = raw_message
    else:
        data = raw_message.encode("utf-8", errors="ignore")
    msg: Message = message_from_bytes(data)
    candidates: set[str] = set()

    for key in (
        "Final-Recipient",
        "Original-Recipient",
        "X-Orig-Recipient",
        "X-Original-To",
        "Delivered-To",
    ):
        value = msg.get(key)
        if value:
            candidates.update(_extract_emails(str(value)))

    for part in msg.walk():
        ctype = part.get_content_type()
        if ctype == "message/delivery-status":
            # Parsed as a list of header blocks, one per recipient.
            for block in part.get_payload() or []:
                if isinstance(block, Message):
                    for key in ("Final-Recipient", "Original-Recipient"):
                        if block.get(key):
                            candidates.update(_extract_emails(str(block.get(key))))
            continue
        if not ctype.startswith("text/"):
            continue
        payload_bytes = part.get_payload(decode=True)
        if not payload_bytes:
            continue
        charset = part.get_content_charset() or "utf-8"
        try:
            payload = payload_bytes.decode(charset, errors="ignore")
        except LookupError:
            payload = payload_bytes.decode("utf-8", errors="ignore")
        candidates.update(_extract_emails(payload))

    return sorted({c.lower() for c in candidates if c.lower() not in ignore_keys})


def handle_bounce(
    conn: sqlite3.Connection,
    address: str,
    repository_id: int | None = None,
    *,
    reason: str | None = None,
    now: datetime | str | None = None,
) -> int:
    """
    Deactivate a hard-bounced address in one repository, or in every
    repository that holds it. Returns how many repositories were touched.
    """
    key = dedup_key(normalize_address(address))
    if repository_id is not None:
        repo_ids = [repository_id]
    else:
        repo_ids = [
            int(r["repository_id"])
            for r in conn.execute(
                "SELECT DISTINCT repository_id FROM repository_emails"
                " WHERE email_key = ? ORDER BY repository_id",
                (key,),
            )
        ]
    touched = 0
    for rid in repo_ids:
        if ledger.record_bounce(conn, rid, address, reason, now=now):
            touched += 1
    return touched


def handle_bounce_message(
    conn: sqlite3.Connection,
    raw_message: str | bytes,
    *,
    ignore: Iterable[str] | None = None,
    now: datetime | str | None = None,
) -> dict[str, int]:
    """parse_bounce_addresses() + handle_bounce() for each address found."""
    out: dict[str, int] = {}
    for addr in parse_bounce_addresses(raw_message, ignore=ignore):
        try:
            out[addr] = handle_bounce(conn, addr, reason="dsn", now=now)
        except InvalidFormat:
            log.warning("Skipping unparseable bounce address %r", addr)
    return out


__all__ = [
    "DigestJob",
    "ContentRanker",
    "NullContentRanker",
    "period_for",
    "build_digest",
    "get_job",
    "recipients",
    "schedule_due_digests",
    "build_payload",
    "dispatch_digest",
    "apply_delivery_report",
    "parse_bounce_addresses",
    "handle_bounce",
    "handle_bounce_message",
]
