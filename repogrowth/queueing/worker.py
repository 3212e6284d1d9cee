# repogrowth/queueing/worker.py
from __future__ import annotations

import importlib
import logging
import os

from rq import Queue
from rq import SimpleWorker as RQSimpleWorker
from rq import Worker as RQWorker

from repogrowth.config import app_config
from repogrowth.queueing import tasks as _tasks  # noqa: F401  (task functions must be importable)
from repogrowth.queueing.dlq import push_to_dlq
from repogrowth.queueing.redis_conn import get_redis

log = logging.getLogger(__name__)

# Failures that no retry can fix go to the DLQ straight away.
_PERMANENT_ERRORS = (
    "repogrowth.exceptions.RepositoryNotFound",
    "repogrowth.exceptions.ImportNotFound",
    "repogrowth.exceptions.DigestNotFound",
)


def _to_exc_name(exc_type) -> str:
    return f"{exc_type.__module__}.{exc_type.__name__}"


def _dlq_exception_handler(job, exc_type, exc_value, tb):
    if getattr(job, "origin", "") == app_config.queue.dlq_name:
        return True
    exhausted = not getattr(job, "retries_left", 0)
    if exhausted or _to_exc_name(exc_type) in _PERMANENT_ERRORS:
        try:
            push_to_dlq(job, err=exc_value)
        except Exception:  # noqa: BLE001
            log.exception("Failed to push job %s to DLQ", getattr(job, "id", "<?>"))
    # Let RQ's default handling (retry scheduling, failed registry) run too.
    return True


def _queue_names() -> list[str]:
    raw = os.getenv("RQ_QUEUE", "")
    if raw.strip():
        return [q.strip() for q in raw.split(",") if q.strip()]
    return [app_config.queue.queue_name]


def _select_worker_cls():
    """Honor RQ_WORKER_CLASS; Windows has no fork, so it always gets SimpleWorker."""
    if os.name == "nt":
        return RQSimpleWorker
    env_cls = os.getenv("RQ_WORKER_CLASS", "").strip()
    if env_cls:
        mod, name = env_cls.rsplit(".", 1)
        return getattr(importlib.import_module(mod), name)
    return RQWorker


def run() -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    r = get_redis()
    queue_names = _queue_names()
    queues = [Queue(name, connection=r) for name in queue_names]
    worker_cls = _select_worker_cls()
    log.info("Worker class: %s.%s", worker_cls.__module__, worker_cls.__name__)
    log.info("Queues: %s", ", ".join(queue_names))

    w = worker_cls(queues, connection=r, exception_handlers=[_dlq_exception_handler])
    if worker_cls is RQWorker:
        w.work(with_scheduler=True)
    else:
        w.work()


if __name__ == "__main__":
    run()
