# repogrowth/queueing/dlq.py
from __future__ import annotations

import logging

from rq import Queue
from rq.job import Job

from repogrowth.config import app_config

log = logging.getLogger(__name__)


def push_to_dlq(job: Job, *, err: BaseException | str, **extra_meta) -> str | None:
    """
    Re-enqueue a failed job on the dead-letter queue with the same call.

    Returns the DLQ job id, or None when the job already came from the DLQ.
    """
    dlq_name = app_config.queue.dlq_name
    if getattr(job, "origin", "") == dlq_name:
        return None

    meta = dict(job.meta or {})
    meta.update(
        {
            "dlq_reason": str(err),
            "failed_job_id": job.id,
            "origin": job.origin,
            "exc_type": f"{type(err).__module__}.{type(err).__name__}",
        }
    )
    meta.update(extra_meta)

    new_job = Queue(dlq_name, connection=job.connection).enqueue(
        job.func,
        *job.args,
        **job.kwargs,
        job_timeout=job.timeout,
        meta=meta,
    )
    log.warning("Moved job %s to DLQ %s as %s", job.id, dlq_name, new_job.id)
    return new_job.id


__all__ = ["push_to_dlq"]
