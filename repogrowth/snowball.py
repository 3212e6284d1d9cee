# repogrowth/snowball.py
"""
Snowball propagator: turns forward/referral events into admissions.

Per (repository, referred address) the state moves

    unseen -> tracked(count) -> admitted

where count is the number of distinct referrers seen in the repository's
current snowball epoch. Once count reaches forward_threshold the quality
gate is consulted with source=snowball. "admitted" is terminal; later
events are still stored but never re-trigger the gate.

Disabling snowball bumps the repository's epoch (see
repositories.update_growth_config), so counts restart from zero when it is
turned back on.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from repogrowth import ledger
from repogrowth.db import transaction, ts_iso8601_z
from repogrowth.models import Source
from repogrowth.normalize import dedup_key, normalize_address
from repogrowth.repositories import get_repository

log = logging.getLogger(__name__)

TRUST_ACTIVE_VERIFIED = 1.0
TRUST_ACTIVE = 0.5


class ForwardOutcome(str, Enum):
    DROPPED = "dropped"
    DUPLICATE_EVENT = "duplicate_event"
    TRACKED = "tracked"
    ADMITTED = "admitted"
    REJECTED = "rejected"
    REVIEW = "review"
    ALREADY_ADMITTED = "already_admitted"


@dataclass(frozen=True)
class ForwardResult:
    outcome: ForwardOutcome
    referred: str
    forward_count: int = 0
    reason: str | None = None
    admission: ledger.AdmissionResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "referred": self.referred,
            "forward_count": self.forward_count,
            "reason": self.reason,
            "admission": self.admission.to_dict() if self.admission else None,
        }


_ADMISSION_TO_FORWARD = {
    ledger.AdmissionOutcome.CREATED: ForwardOutcome.ADMITTED,
    ledger.AdmissionOutcome.REACTIVATED: ForwardOutcome.ADMITTED,
    ledger.AdmissionOutcome.DUPLICATE: ForwardOutcome.ALREADY_ADMITTED,
    ledger.AdmissionOutcome.QUEUED_FOR_REVIEW: ForwardOutcome.REVIEW,
    ledger.AdmissionOutcome.REJECTED: ForwardOutcome.REJECTED,
    ledger.AdmissionOutcome.THRESHOLD_NOT_MET: ForwardOutcome.TRACKED,
}


def _count_referrers(conn: sqlite3.Connection, repository_id: int, key: str, epoch: int) -> int:
    row = conn.execute(
        """
        SELECT COUNT(DISTINCT referrer_key) AS n
          FROM snowball_events
         WHERE repository_id = ? AND referred_key = ? AND epoch = ?
        """,
        (repository_id, key, epoch),
    ).fetchone()
    return int(row["n"] or 0)


def referrer_trust(conn: sqlite3.Connection, repository_id: int, key: str, epoch: int) -> float:
    """
    Mean trust of the distinct referrers of `key` in `epoch`.

    Active and verified members count 1.0, active members 0.5, anyone else 0.
    """
    rows = conn.execute(
        """
        SELECT e.referrer_key, r.active, r.verified
          FROM (SELECT DISTINCT referrer_key
                  FROM snowball_events
                 WHERE repository_id = ? AND referred_key = ? AND epoch = ?) AS e
          LEFT JOIN repository_emails AS r
            ON r.repository_id = ? AND r.email_key = e.referrer_key
        """,
        (repository_id, key, epoch, repository_id),
    ).fetchall()
    if not rows:
        return 0.0
    total = 0.0
    for r in rows:
        if r["active"]:
            total += TRUST_ACTIVE_VERIFIED if r["verified"] else TRUST_ACTIVE
    return total / len(rows)


def _tracking_row(conn: sqlite3.Connection, repository_id: int, key: str) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM snowball_tracking WHERE repository_id = ? AND referred_key = ?",
        (repository_id, key),
    ).fetchone()


def _mark_admitted(conn: sqlite3.Connection, repository_id: int, key: str, ts: str) -> None:
    conn.execute(
        """
        UPDATE snowball_tracking
           SET state = 'admitted', admitted_at = ?
         WHERE repository_id = ? AND referred_key = ?
        """,
        (ts, repository_id, key),
    )


def record_forward(
    conn: sqlite3.Connection,
    repository_id: int,
    referrer: str,
    referred: str,
    *,
    now: datetime | str | None = None,
) -> ForwardResult:
    """
    Record that `referrer` forwarded repository content to `referred`.

    Raises InvalidFormat if either address is malformed and
    RepositoryNotFound for an unknown repository.
    """
    repo = get_repository(conn, repository_id)
    referrer_addr = normalize_address(referrer)
    referred_addr = normalize_address(referred)
    rkey = dedup_key(referrer_addr)
    dkey = dedup_key(referred_addr)

    if not repo.growth.snowball_enabled:
        return ForwardResult(ForwardOutcome.DROPPED, referred_addr, reason="snowball_disabled")
    if rkey == dkey:
        return ForwardResult(ForwardOutcome.DROPPED, referred_addr, reason="self_referral")

    epoch = repo.snowball_epoch
    ts = ts_iso8601_z(now)

    with transaction(conn):
        cur = conn.execute(
            """
            INSERT INTO snowball_events (
                repository_id, referrer_key, referred_key, referred_email, epoch, observed_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(repository_id, referrer_key, referred_key, epoch) DO NOTHING
            """,
            (repository_id, rkey, dkey, referred_addr, epoch, ts),
        )
        new_event = cur.rowcount == 1

        conn.execute(
            """
            INSERT INTO snowball_tracking (
                repository_id, referred_key, referred_email, state, forward_count, epoch,
                first_seen_at
            )
            VALUES (?, ?, ?, 'tracked', 0, ?, ?)
            ON CONFLICT(repository_id, referred_key) DO NOTHING
            """,
            (repository_id, dkey, referred_addr, epoch, ts),
        )
        tracking = _tracking_row(conn, repository_id, dkey)
        count = _count_referrers(conn, repository_id, dkey, epoch)

        if tracking["state"] == "admitted":
            if new_event:
                return ForwardResult(ForwardOutcome.ALREADY_ADMITTED, referred_addr, count)
            return ForwardResult(ForwardOutcome.DUPLICATE_EVENT, referred_addr, count)

        conn.execute(
            """
            UPDATE snowball_tracking
               SET forward_count = ?, epoch = ?
             WHERE repository_id = ? AND referred_key = ?
            """,
            (count, epoch, repository_id, dkey),
        )

        if not new_event:
            return ForwardResult(ForwardOutcome.DUPLICATE_EVENT, referred_addr, count)

        if ledger.resolve(conn, repository_id, referred_addr) is ledger.Resolution.ACTIVE:
            _mark_admitted(conn, repository_id, dkey, ts)
            return ForwardResult(ForwardOutcome.ALREADY_ADMITTED, referred_addr, count)

        if count < repo.growth.forward_threshold:
            return ForwardResult(
                ForwardOutcome.TRACKED, referred_addr, count, reason="forward_threshold_not_met"
            )

        trust = referrer_trust(conn, repository_id, dkey, epoch)
        admission = ledger.admit(
            conn,
            repo,
            referred_addr,
            Source.SNOWBALL,
            actor=referrer_addr,
            referrer_trust=trust,
            forward_count=count,
            now=ts,
        )
        outcome = _ADMISSION_TO_FORWARD[admission.outcome]
        if outcome in (ForwardOutcome.ADMITTED, ForwardOutcome.ALREADY_ADMITTED):
            _mark_admitted(conn, repository_id, dkey, ts)

    log.info(
        "Snowball %s -> %s in repository %s: %s after %s referrers",
        referrer_addr,
        referred_addr,
        repository_id,
        outcome.value,
        count,
    )
    return ForwardResult(outcome, referred_addr, count, admission.reason, admission)


def forward_count(conn: sqlite3.Connection, repository_id: int, referred: str) -> int:
    """Distinct referrers of `referred` in the repository's current epoch."""
    repo = get_repository(conn, repository_id)
    dkey = dedup_key(normalize_address(referred))
    return _count_referrers(conn, repository_id, dkey, repo.snowball_epoch)


def tracking_state(conn: sqlite3.Connection, repository_id: int, referred: str) -> str:
    """'unseen', 'tracked' or 'admitted'."""
    row = _tracking_row(conn, repository_id, dedup_key(normalize_address(referred)))
    return row["state"] if row is not None else "unseen"


def analytics(
    conn: sqlite3.Connection,
    repository_id: int,
    *,
    since: datetime | str | None = None,
    limit: int = 5,
) -> dict[str, Any]:
    """
    Snowball growth figures for one repository, optionally from `since` on.

      tracked                   referred addresses first seen in the window
      admitted                  ledger rows whose provenance is snowball
      conversion_rate           admitted / tracked (0.0 when nothing is tracked)
      forwards                  forward events recorded
      forwards_after_admission  events that arrived once the address was admitted
      top_referrers             [{"referrer", "admitted"}], most admissions first
      timeline                  [{"date": "YYYY-MM-DD", "admitted": n}] per UTC day

    Raises RepositoryNotFound.
    """
    get_repository(conn, repository_id)
    # '' sorts before every stored timestamp
    cutoff = ts_iso8601_z(since) if since is not None else ""
    args = (repository_id, cutoff)

    tracked = conn.execute(
        """
        SELECT COUNT(*) AS n FROM snowball_tracking
         WHERE repository_id = ? AND first_seen_at >= ?
        """,
        args,
    ).fetchone()["n"]
    admitted = conn.execute(
        """
        SELECT COUNT(*) AS n FROM repository_emails
         WHERE repository_id = ? AND source = 'snowball' AND added_at >= ?
        """,
        args,
    ).fetchone()["n"]
    forwards = conn.execute(
        """
        SELECT COUNT(*) AS n FROM snowball_events
         WHERE repository_id = ? AND observed_at >= ?
        """,
        args,
    ).fetchone()["n"]
    after_admission = conn.execute(
        """
        SELECT COUNT(*) AS n
          FROM snowball_events AS e
          JOIN snowball_tracking AS t
            ON t.repository_id = e.repository_id AND t.referred_key = e.referred_key
         WHERE e.repository_id = ? AND e.observed_at >= ?
           AND t.state = 'admitted' AND e.observed_at > t.admitted_at
        """,
        args,
    ).fetchone()["n"]
    top = conn.execute(
        """
        SELECT e.referrer_key AS referrer, COUNT(DISTINCT e.referred_key) AS admitted
          FROM snowball_events AS e
          JOIN repository_emails AS r
            ON r.repository_id = e.repository_id AND r.email_key = e.referred_key
         WHERE e.repository_id = ? AND r.added_at >= ?
           AND r.source = 'snowball' AND e.observed_at <= r.added_at
         GROUP BY e.referrer_key
         ORDER BY admitted DESC, referrer
         LIMIT ?
        """,
        (*args, limit),
    ).fetchall()
    timeline = conn.execute(
        """
        SELECT substr(added_at, 1, 10) AS day, COUNT(*) AS n
          FROM repository_emails
         WHERE repository_id = ? AND source = 'snowball' AND added_at >= ?
         GROUP BY day
         ORDER BY day
        """,
        args,
    ).fetchall()

    return {
        "since": cutoff or None,
        "tracked": int(tracked),
        "admitted": int(admitted),
        "conversion_rate": round(admitted / tracked, 4) if tracked else 0.0,
        "forwards": int(forwards),
        "forwards_after_admission": int(after_admission),
        "top_referrers": [{"referrer": r["referrer"], "admitted": int(r["admitted"])} for r in top],
        "timeline": [{"date": r["day"], "admitted": int(r["n"])} for r in timeline],
    }


__all__ = [
    "ForwardOutcome",
    "ForwardResult",
    "record_forward",
    "referrer_trust",
    "forward_count",
    "tracking_state",
    "analytics",
]
