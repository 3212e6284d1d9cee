# repogrowth/queueing/tasks.py
"""
RQ entry points.

Every task opens its own SQLite connection; connections never cross the
queue. Tasks return plain dicts so results are readable from rq-dashboard
and `rq info`.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from datetime import UTC, datetime
from typing import Any

from rq import Queue, Retry

from repogrowth import digest, snowball
from repogrowth.config import app_config
from repogrowth.db import apply_schema, get_connection, parse_ts
from repogrowth.delivery import HttpDeliveryClient
from repogrowth.ingest.csv_import import get_import, process_import
from repogrowth.queueing.rate_limit import repository_slot
from repogrowth.queueing.redis_conn import get_redis

log = logging.getLogger(__name__)


def _conn() -> sqlite3.Connection:
    con = get_connection()
    apply_schema(con)
    return con


def get_queue(name: str | None = None) -> Queue:
    return Queue(name or app_config.queue.queue_name, connection=get_redis())


def default_retry() -> Retry:
    """Exponential schedule, one interval per allowed retry (10s, 30s, 90s, ...)."""
    schedule = [min(600, 10 * 3**i) for i in range(app_config.queue.max_retries)]
    return Retry(max=len(schedule), interval=schedule)


def enqueue(func, *args, **kwargs):
    """Enqueue with the standard retry policy and job timeout unless overridden."""
    q = get_queue()
    kwargs.setdefault("retry", default_retry())
    kwargs.setdefault("job_timeout", app_config.queue.job_timeout_seconds)
    return q.enqueue(func, *args, **kwargs)


# -------------------- imports --------------------


def task_process_import(import_id: int, data: bytes | str, strict: bool = False) -> dict[str, Any]:
    with closing(_conn()) as con:
        rec = get_import(con, import_id)
        with repository_slot(rec.repository_id, redis=get_redis()):
            summary = process_import(con, import_id, data, strict=strict)
    log.info("Import %s finished as %s", import_id, summary.status)
    out = summary.to_dict()
    out.pop("errors", None)
    return out


# -------------------- snowball --------------------


def task_record_forward(repository_id: int, referrer: str, referred: str) -> dict[str, Any]:
    with closing(_conn()) as con:
        return snowball.record_forward(con, repository_id, referrer, referred).to_dict()


# -------------------- digests --------------------


def task_build_digest(repository_id: int, period_start: str, period_end: str) -> dict[str, Any]:
    with closing(_conn()) as con:
        job = digest.build_digest(con, repository_id, period_start, period_end)
    if job.status == "created" and app_config.delivery.url:
        enqueue(task_dispatch_digest, job.id)
    return job.to_dict()


def task_dispatch_digest(job_id: int) -> dict[str, Any]:
    # DeliveryError propagates so RQ retries; the job stays 'created' meanwhile.
    with closing(_conn()) as con:
        return digest.dispatch_digest(con, job_id, HttpDeliveryClient()).to_dict()


def task_schedule_digests(now: str | None = None) -> list[list[Any]]:
    when = parse_ts(now) if now else datetime.now(UTC)
    with closing(_conn()) as con:
        due = digest.schedule_due_digests(
            con,
            when,
            lambda rid, start, end: enqueue(task_build_digest, rid, start, end),
        )
    return [list(d) for d in due]


__all__ = [
    "get_queue",
    "default_retry",
    "enqueue",
    "task_process_import",
    "task_record_forward",
    "task_build_digest",
    "task_dispatch_digest",
    "task_schedule_digests",
]
