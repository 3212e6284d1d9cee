# repogrowth/engine.py
"""
GrowthEngine: one object bundling a connection with the engine operations.

The HTTP layer, the CLI and the email command surface all go through this
facade, so they accept repositories by id, name or Repository record the
same way.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any

from repogrowth import digest, ledger, repositories, snowball
from repogrowth.delivery import DeliveryClient, HttpDeliveryClient
from repogrowth.export.exporter import export_csv
from repogrowth.ingest.csv_import import ImportSummary, run_import
from repogrowth.models import Repository, Source

log = logging.getLogger(__name__)

RepositoryRef = int | str | Repository


class GrowthEngine:
    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        delivery_client: DeliveryClient | None = None,
        ranker: digest.ContentRanker | None = None,
    ) -> None:
        self.conn = conn
        self.delivery_client = delivery_client
        self.ranker = ranker or digest.NullContentRanker()

    # -------------------- repositories --------------------

    def repository(self, ref: RepositoryRef) -> Repository:
        """
        Fresh Repository record for an id, a name or a (possibly stale) record.

        Only an int is an id; a string is always a name, digits included.
        """
        if isinstance(ref, Repository):
            return repositories.get_repository(self.conn, ref.id)
        if isinstance(ref, int):
            return repositories.get_repository(self.conn, ref)
        return repositories.get_repository_by_name(self.conn, ref)

    def create_repository(self, name: str, owner_id: str, **kwargs: Any) -> Repository:
        return repositories.create_repository(self.conn, name, owner_id, **kwargs)

    # -------------------- admission --------------------

    def admit(
        self,
        repository: RepositoryRef,
        address: str,
        source: Source | str = Source.API,
        actor: str | None = None,
        *,
        tags: dict[str, str] | None = None,
        verified: bool = False,
    ) -> ledger.AdmissionResult:
        repo = self.repository(repository)
        return ledger.admit(
            self.conn, repo, address, source, actor=actor, tags=tags, verified=verified
        )

    def import_csv(
        self,
        repository: RepositoryRef,
        data: str | bytes,
        *,
        filename: str | None = None,
        imported_by: str | None = None,
        strict: bool = False,
    ) -> ImportSummary:
        repo = self.repository(repository)
        return run_import(
            self.conn,
            repo.id,
            data,
            filename=filename,
            imported_by=imported_by,
            strict=strict,
        )

    def record_forward(
        self,
        repository: RepositoryRef,
        referrer: str,
        referred: str,
        *,
        now: datetime | str | None = None,
    ) -> snowball.ForwardResult:
        repo = self.repository(repository)
        return snowball.record_forward(self.conn, repo.id, referrer, referred, now=now)

    def unsubscribe(self, repository: RepositoryRef, address: str) -> bool:
        return ledger.unsubscribe(self.conn, self.repository(repository).id, address)

    def handle_bounce(
        self,
        address: str,
        repository: RepositoryRef | None = None,
        *,
        reason: str | None = None,
    ) -> int:
        rid = self.repository(repository).id if repository is not None else None
        return digest.handle_bounce(self.conn, address, rid, reason=reason)

    # -------------------- export / digests --------------------

    def export(
        self,
        repository: RepositoryRef,
        *,
        include_inactive: bool = False,
        sources: list[str] | None = None,
    ) -> str:
        repo = self.repository(repository)
        return export_csv(self.conn, repo.id, include_inactive=include_inactive, sources=sources)

    def build_digest(
        self,
        repository: RepositoryRef,
        period_start: datetime | str,
        period_end: datetime | str,
    ) -> digest.DigestJob:
        repo = self.repository(repository)
        return digest.build_digest(self.conn, repo.id, period_start, period_end, ranker=self.ranker)

    def dispatch_digest(self, job_id: int) -> digest.DigestJob:
        client = self.delivery_client or HttpDeliveryClient()
        return digest.dispatch_digest(self.conn, job_id, client)

    # -------------------- stats --------------------

    def snowball_analytics(
        self,
        repository: RepositoryRef,
        *,
        since: datetime | str | None = None,
        limit: int = 5,
    ) -> dict[str, Any]:
        rid = self.repository(repository).id
        return snowball.analytics(self.conn, rid, since=since, limit=limit)

    def stats(self, repository: RepositoryRef) -> dict[str, Any]:
        repo = self.repository(repository)
        rid = repo.id
        totals = self.conn.execute(
            """
            SELECT COUNT(*)                                          AS total,
                   COALESCE(SUM(active), 0)                          AS active,
                   COALESCE(SUM(active = 1 AND verified = 1), 0)     AS verified,
                   COALESCE(SUM(active = 0), 0)                      AS inactive,
                   COALESCE(SUM(review_state = 'pending'), 0)        AS pending_review,
                   COALESCE(SUM(unsubscribed_at IS NOT NULL), 0)     AS unsubscribed
              FROM repository_emails
             WHERE repository_id = ?
            """,
            (rid,),
        ).fetchone()
        by_source = {
            r["source"]: r["n"]
            for r in self.conn.execute(
                """
                SELECT source, COUNT(*) AS n
                  FROM repository_emails
                 WHERE repository_id = ? AND active = 1
                 GROUP BY source
                 ORDER BY source
                """,
                (rid,),
            )
        }
        tracking = {
            r["state"]: r["n"]
            for r in self.conn.execute(
                "SELECT state, COUNT(*) AS n FROM snowball_tracking"
                " WHERE repository_id = ? GROUP BY state",
                (rid,),
            )
        }
        imports = self.conn.execute(
            "SELECT COUNT(*) AS n FROM csv_imports WHERE repository_id = ?", (rid,)
        ).fetchone()
        last_import = self.conn.execute(
            "SELECT status FROM csv_imports WHERE repository_id = ? ORDER BY id DESC LIMIT 1",
            (rid,),
        ).fetchone()
        digests = self.conn.execute(
            "SELECT COUNT(*) AS n FROM digest_jobs WHERE repository_id = ?", (rid,)
        ).fetchone()

        return {
            "repository": {"id": repo.id, "name": repo.name},
            "total": totals["total"],
            "active": totals["active"],
            "verified": totals["verified"],
            "inactive": totals["inactive"],
            "pending_review": totals["pending_review"],
            "unsubscribed": totals["unsubscribed"],
            "by_source": by_source,
            "snowball": {
                "enabled": repo.growth.snowball_enabled,
                "tracked": tracking.get("tracked", 0),
                "admitted": tracking.get("admitted", 0),
            },
            "imports": imports["n"],
            "last_import_status": last_import["status"] if last_import else None,
            "digests": digests["n"],
            "snowball_analytics": snowball.analytics(self.conn, rid),
        }


__all__ = ["GrowthEngine", "RepositoryRef"]
