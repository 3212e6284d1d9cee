# repogrowth/ledger.py
"""
Dedup & provenance ledger.

Two layers per repository:
  - repository_emails: one current-state row per dedup key (the projection)
  - email_history: append-only log of everything that happened to it

admit() is the single write path for new addresses:

    resolve -> gate -> write

and runs inside one BEGIN IMMEDIATE transaction. The row insert is an
insert-if-absent; losing that race raises ConcurrentConflict, which admit()
retries once (the retry resolves to ACTIVE/INACTIVE and takes that branch).

Provenance is first-write-wins: source, added_by and added_at are written
once at creation and never touched again, including on reactivation. Tags
from later admissions are merged additively (existing keys win).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from repogrowth import gate
from repogrowth.db import transaction, ts_iso8601_z
from repogrowth.exceptions import ConcurrentConflict, EmailNotFound, PermissionDenied
from repogrowth.models import Repository, RepositoryEmail, ReviewState, Source
from repogrowth.normalize import dedup_key, normalize_address
from repogrowth.repositories import get_repository

log = logging.getLogger(__name__)

# Export column names (lowercased); a tag may not shadow one of them.
RESERVED_TAG_KEYS = frozenset({"email", "source", "addedat", "verified", "active"})


class Resolution(str, Enum):
    NEW = "new"
    INACTIVE = "inactive"
    ACTIVE = "active"


class AdmissionOutcome(str, Enum):
    CREATED = "created"
    REACTIVATED = "reactivated"
    DUPLICATE = "duplicate"
    QUEUED_FOR_REVIEW = "queued_for_review"
    REJECTED = "rejected"
    THRESHOLD_NOT_MET = "threshold_not_met"


@dataclass(frozen=True)
class AdmissionResult:
    outcome: AdmissionOutcome
    address: str
    resolution: Resolution
    reason: str | None = None
    score: float | None = None

    @property
    def counts_as_success(self) -> bool:
        """New or reactivated rows; duplicates and reviews are not successes."""
        return self.outcome in (AdmissionOutcome.CREATED, AdmissionOutcome.REACTIVATED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "address": self.address,
            "resolution": self.resolution.value,
            "reason": self.reason,
            "score": self.score,
        }


# -------------------- row helpers --------------------


def _fetch(conn: sqlite3.Connection, repository_id: int, key: str) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM repository_emails WHERE repository_id = ? AND email_key = ?",
        (repository_id, key),
    ).fetchone()


def _resolution_of(row: sqlite3.Row | None) -> Resolution:
    if row is None:
        return Resolution.NEW
    return Resolution.ACTIVE if row["active"] else Resolution.INACTIVE


def _opted_out(row: sqlite3.Row | None) -> bool:
    if row is None:
        return False
    return row["unsubscribed_at"] is not None or row["review_state"] == ReviewState.REJECTED.value


def _clean_tags(tags: Mapping[str, Any] | None) -> dict[str, str]:
    if not tags:
        return {}
    out: dict[str, str] = {}
    for k, v in tags.items():
        key = str(k).strip()
        if not key or v is None:
            continue
        if key.lower() in RESERVED_TAG_KEYS:
            log.debug("Dropping tag %r: it names an export column", key)
            continue
        val = str(v)
        if val == "":
            continue
        out[key] = val
    return out


def _append_history(
    conn: sqlite3.Connection,
    repository_id: int,
    key: str,
    event: str,
    *,
    source: Source | str | None = None,
    actor: str | None = None,
    detail: Mapping[str, Any] | None = None,
    ts: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO email_history (
            repository_id, email_key, event, source, actor, detail, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            repository_id,
            key,
            event,
            Source(source).value if source else None,
            actor,
            json.dumps(dict(detail or {}), sort_keys=True),
            ts or ts_iso8601_z(None),
        ),
    )


def _merge_tags(
    conn: sqlite3.Connection,
    row: sqlite3.Row,
    tags: dict[str, str],
    *,
    source: Source,
    actor: str | None,
    ts: str,
) -> None:
    if not tags:
        return
    current = json.loads(row["tags"] or "{}")
    added = {k: v for k, v in tags.items() if k not in current}
    if not added:
        return
    current.update(added)
    conn.execute(
        "UPDATE repository_emails SET tags = ?, updated_at = ? WHERE id = ?",
        (json.dumps(current, sort_keys=True), ts, row["id"]),
    )
    _append_history(
        conn,
        row["repository_id"],
        row["email_key"],
        "tags_merged",
        source=source,
        actor=actor,
        detail={"added": sorted(added)},
        ts=ts,
    )


def _insert(
    conn: sqlite3.Connection,
    repository_id: int,
    address: str,
    key: str,
    *,
    source: Source,
    actor: str | None,
    verified: bool,
    active: bool,
    review_state: ReviewState,
    tags: dict[str, str],
    ts: str,
) -> None:
    cur = conn.execute(
        """
        INSERT INTO repository_emails (
            repository_id, email, email_key, source, added_by, added_at,
            verified, active, review_state, tags, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(repository_id, email_key) DO NOTHING
        """,
        (
            repository_id,
            address,
            key,
            source.value,
            actor,
            ts,
            int(verified),
            int(active),
            review_state.value,
            json.dumps(tags, sort_keys=True),
            ts,
        ),
    )
    if cur.rowcount == 0:
        raise ConcurrentConflict(f"{key} was inserted concurrently in repository {repository_id}")


# -------------------- resolve / admit --------------------


def resolve(conn: sqlite3.Connection, repository_id: int, address: str) -> Resolution:
    """Classify `address` (normalized) as NEW, INACTIVE or ACTIVE in the repository."""
    return _resolution_of(_fetch(conn, repository_id, dedup_key(address)))


def _admit_once(
    conn: sqlite3.Connection,
    repository: Repository,
    address: str,
    source: Source,
    *,
    actor: str | None,
    tags: dict[str, str],
    verified: bool,
    referrer_trust: float | None,
    forward_count: int,
    ts: str,
) -> AdmissionResult:
    key = dedup_key(address)
    with transaction(conn):
        row = _fetch(conn, repository.id, key)
        resolution = _resolution_of(row)

        if row is not None and resolution is Resolution.ACTIVE:
            _merge_tags(conn, row, tags, source=source, actor=actor, ts=ts)
            return AdmissionResult(AdmissionOutcome.DUPLICATE, row["email"], resolution)

        decision = gate.evaluate(
            repository,
            address,
            source,
            actor=actor,
            referrer_trust=referrer_trust,
            forward_count=forward_count,
            previously_unsubscribed=_opted_out(row),
        )
        display = row["email"] if row is not None else address

        if decision.verdict is gate.Verdict.THRESHOLD_NOT_MET:
            return AdmissionResult(
                AdmissionOutcome.THRESHOLD_NOT_MET, display, resolution, decision.reason
            )

        if decision.verdict is gate.Verdict.REJECT:
            _append_history(
                conn,
                repository.id,
                key,
                "rejected",
                source=source,
                actor=actor,
                detail={"reason": decision.reason},
                ts=ts,
            )
            return AdmissionResult(AdmissionOutcome.REJECTED, display, resolution, decision.reason)

        if decision.verdict is gate.Verdict.MANUAL_REVIEW:
            if row is None:
                _insert(
                    conn,
                    repository.id,
                    address,
                    key,
                    source=source,
                    actor=actor,
                    verified=verified,
                    active=False,
                    review_state=ReviewState.PENDING,
                    tags=tags,
                    ts=ts,
                )
            else:
                conn.execute(
                    "UPDATE repository_emails SET review_state = 'pending', updated_at = ?"
                    " WHERE id = ?",
                    (ts, row["id"]),
                )
                _merge_tags(conn, row, tags, source=source, actor=actor, ts=ts)
            _append_history(
                conn,
                repository.id,
                key,
                "queued_for_review",
                source=source,
                actor=actor,
                detail={"reason": decision.reason, "score": decision.score},
                ts=ts,
            )
            return AdmissionResult(
                AdmissionOutcome.QUEUED_FOR_REVIEW,
                display,
                resolution,
                decision.reason,
                decision.score,
            )

        # accept
        if row is None:
            _insert(
                conn,
                repository.id,
                address,
                key,
                source=source,
                actor=actor,
                verified=verified,
                active=True,
                review_state=ReviewState.NONE,
                tags=tags,
                ts=ts,
            )
            _append_history(
                conn,
                repository.id,
                key,
                "admitted",
                source=source,
                actor=actor,
                detail={"reason": decision.reason, "score": decision.score},
                ts=ts,
            )
            return AdmissionResult(
                AdmissionOutcome.CREATED, address, resolution, decision.reason, decision.score
            )

        conn.execute(
            """
            UPDATE repository_emails
               SET active = 1,
                   unsubscribed_at = NULL,
                   review_state = 'none',
                   verified = MAX(verified, ?),
                   updated_at = ?
             WHERE id = ?
            """,
            (int(verified), ts, row["id"]),
        )
        _merge_tags(conn, row, tags, source=source, actor=actor, ts=ts)
        _append_history(
            conn,
            repository.id,
            key,
            "reactivated",
            source=source,
            actor=actor,
            detail={"reason": decision.reason, "score": decision.score},
            ts=ts,
        )
        return AdmissionResult(
            AdmissionOutcome.REACTIVATED, display, resolution, decision.reason, decision.score
        )


def admit(
    conn: sqlite3.Connection,
    repository: Repository,
    address: str,
    source: Source | str,
    *,
    actor: str | None = None,
    tags: Mapping[str, Any] | None = None,
    verified: bool = False,
    referrer_trust: float | None = None,
    forward_count: int = 0,
    now: datetime | str | None = None,
) -> AdmissionResult:
    """
    Resolve, gate and write one admission request.

    Raises InvalidFormat for a malformed address. Every other outcome
    (duplicate, rejection, review, threshold not met) is returned.
    """
    canonical = normalize_address(address)
    kwargs: dict[str, Any] = dict(
        actor=actor,
        tags=_clean_tags(tags),
        verified=bool(verified),
        referrer_trust=referrer_trust,
        forward_count=forward_count,
        ts=ts_iso8601_z(now),
    )
    src = Source(source)
    try:
        result = _admit_once(conn, repository, canonical, src, **kwargs)
    except ConcurrentConflict:
        log.info(
            "Concurrent insert of %s in repository %s; retrying once",
            dedup_key(canonical),
            repository.id,
        )
        result = _admit_once(conn, repository, canonical, src, **kwargs)

    log.debug(
        "admit repo=%s addr=%s source=%s -> %s (%s)",
        repository.id,
        canonical,
        src.value,
        result.outcome.value,
        result.reason,
    )
    return result


# -------------------- lifecycle --------------------


def _require_row(conn: sqlite3.Connection, repository_id: int, address: str) -> sqlite3.Row:
    key = dedup_key(normalize_address(address))
    row = _fetch(conn, repository_id, key)
    if row is None:
        raise EmailNotFound(f"{address!r} is not in repository {repository_id}")
    return row


def _reload(conn: sqlite3.Connection, row: sqlite3.Row) -> RepositoryEmail:
    fresh = conn.execute("SELECT * FROM repository_emails WHERE id = ?", (row["id"],)).fetchone()
    return RepositoryEmail.from_row(fresh)


def _require_trusted(conn: sqlite3.Connection, repository_id: int, actor: str | None) -> None:
    repo = get_repository(conn, repository_id)
    if not repo.is_trusted(actor):
        raise PermissionDenied(f"{actor!r} may not moderate repository {repository_id}")


def approve_review(
    conn: sqlite3.Connection,
    repository_id: int,
    address: str,
    actor: str | None,
    *,
    now: datetime | str | None = None,
) -> RepositoryEmail:
    """Activate a row waiting in the review queue. Owner/moderators only."""
    _require_trusted(conn, repository_id, actor)
    ts = ts_iso8601_z(now)
    with transaction(conn):
        row = _require_row(conn, repository_id, address)
        if row["review_state"] != ReviewState.PENDING.value:
            raise ValueError(f"{row['email']} is not pending review")
        conn.execute(
            """
            UPDATE repository_emails
               SET active = 1, review_state = 'none', updated_at = ?
             WHERE id = ?
            """,
            (ts, row["id"]),
        )
        _append_history(
            conn, repository_id, row["email_key"], "review_approved", actor=actor, ts=ts
        )
    return _reload(conn, row)


def reject_review(
    conn: sqlite3.Connection,
    repository_id: int,
    address: str,
    actor: str | None,
    *,
    now: datetime | str | None = None,
) -> RepositoryEmail:
    _require_trusted(conn, repository_id, actor)
    ts = ts_iso8601_z(now)
    with transaction(conn):
        row = _require_row(conn, repository_id, address)
        if row["review_state"] != ReviewState.PENDING.value:
            raise ValueError(f"{row['email']} is not pending review")
        conn.execute(
            "UPDATE repository_emails SET review_state = 'rejected', updated_at = ? WHERE id = ?",
            (ts, row["id"]),
        )
        _append_history(
            conn, repository_id, row["email_key"], "review_rejected", actor=actor, ts=ts
        )
    return _reload(conn, row)


def remove(
    conn: sqlite3.Connection,
    repository_id: int,
    address: str,
    actor: str | None,
    *,
    now: datetime | str | None = None,
) -> RepositoryEmail:
    """
    Deactivate a row on behalf of the owner/moderators.

    A later gate-approved admission can reactivate it.
    """
    _require_trusted(conn, repository_id, actor)
    ts = ts_iso8601_z(now)
    with transaction(conn):
        row = _require_row(conn, repository_id, address)
        if row["active"]:
            conn.execute(
                "UPDATE repository_emails SET active = 0, updated_at = ? WHERE id = ?",
                (ts, row["id"]),
            )
            _append_history(conn, repository_id, row["email_key"], "removed", actor=actor, ts=ts)
    return _reload(conn, row)


def _opt_out(
    conn: sqlite3.Connection,
    repository_id: int,
    address: str,
    event: str,
    detail: Mapping[str, Any] | None,
    now: datetime | str | None,
) -> bool:
    ts = ts_iso8601_z(now)
    key = dedup_key(normalize_address(address))
    with transaction(conn):
        row = _fetch(conn, repository_id, key)
        if row is None:
            return False
        conn.execute(
            """
            UPDATE repository_emails
               SET active = 0,
                   unsubscribed_at = COALESCE(unsubscribed_at, ?),
                   updated_at = ?
             WHERE id = ?
            """,
            (ts, ts, row["id"]),
        )
        _append_history(conn, repository_id, key, event, detail=detail, ts=ts)
    return True


def unsubscribe(
    conn: sqlite3.Connection,
    repository_id: int,
    address: str,
    *,
    now: datetime | str | None = None,
) -> bool:
    """Opt an address out. Returns False if the repository never had it."""
    return _opt_out(conn, repository_id, address, "unsubscribed", None, now)


def record_bounce(
    conn: sqlite3.Connection,
    repository_id: int,
    address: str,
    reason: str | None = None,
    *,
    now: datetime | str | None = None,
) -> bool:
    """
    Apply a hard bounce: active=false and unsubscribed_at set.

    Only an explicit-intent admission (signup, trusted manual/api) can
    bring the address back.
    """
    ok = _opt_out(conn, repository_id, address, "bounced", {"reason": reason or "hard_bounce"}, now)
    if ok:
        log.info("Bounce recorded for %s in repository %s (%s)", address, repository_id, reason)
    return ok


def mark_verified(
    conn: sqlite3.Connection,
    repository_id: int,
    address: str,
    *,
    now: datetime | str | None = None,
) -> RepositoryEmail:
    ts = ts_iso8601_z(now)
    with transaction(conn):
        row = _require_row(conn, repository_id, address)
        if not row["verified"]:
            conn.execute(
                "UPDATE repository_emails SET verified = 1, updated_at = ? WHERE id = ?",
                (ts, row["id"]),
            )
            _append_history(conn, repository_id, row["email_key"], "verified", ts=ts)
    return _reload(conn, row)


# -------------------- reads --------------------


def get_email(conn: sqlite3.Connection, repository_id: int, address: str) -> RepositoryEmail | None:
    row = _fetch(conn, repository_id, dedup_key(normalize_address(address)))
    return RepositoryEmail.from_row(row) if row is not None else None


def list_emails(
    conn: sqlite3.Connection,
    repository_id: int,
    *,
    active: bool | None = True,
    sources: list[str] | None = None,
) -> list[RepositoryEmail]:
    """Rows ordered by dedup key. active=None returns everything."""
    sql = "SELECT * FROM repository_emails WHERE repository_id = ?"
    params: list[Any] = [repository_id]
    if active is not None:
        sql += " AND active = ?"
        params.append(int(active))
    if sources:
        sql += f" AND source IN ({', '.join('?' for _ in sources)})"
        params.extend(Source(s).value for s in sources)
    sql += " ORDER BY email_key"
    return [RepositoryEmail.from_row(r) for r in conn.execute(sql, params)]


def review_queue(conn: sqlite3.Connection, repository_id: int) -> list[RepositoryEmail]:
    rows = conn.execute(
        """
        SELECT * FROM repository_emails
         WHERE repository_id = ? AND review_state = 'pending'
         ORDER BY added_at, email_key
        """,
        (repository_id,),
    ).fetchall()
    return [RepositoryEmail.from_row(r) for r in rows]


def history(conn: sqlite3.Connection, repository_id: int, address: str) -> list[dict[str, Any]]:
    """Provenance log for one address, oldest first."""
    rows = conn.execute(
        """
        SELECT event, source, actor, detail, created_at
          FROM email_history
         WHERE repository_id = ? AND email_key = ?
         ORDER BY id
        """,
        (repository_id, dedup_key(normalize_address(address))),
    ).fetchall()
    return [
        {
            "event": r["event"],
            "source": r["source"],
            "actor": r["actor"],
            "detail": json.loads(r["detail"] or "{}"),
            "created_at": r["created_at"],
        }
        for r in rows
    ]


__all__ = [
    "RESERVED_TAG_KEYS",
    "Resolution",
    "AdmissionOutcome",
    "AdmissionResult",
    "resolve",
    "admit",
    "approve_review",
    "reject_review",
    "remove",
    "unsubscribe",
    "record_bounce",
    "mark_verified",
    "get_email",
    "list_emails",
    "review_queue",
    "history",
]
