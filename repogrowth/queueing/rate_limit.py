# repogrowth/queueing/rate_limit.py
"""
Redis counting semaphores.

An import holds one slot of its repository's semaphore for its whole run,
so a burst of uploads to one repository queues behind
REPO_IMPORT_MAX_CONCURRENCY workers instead of fighting over the SQLite
write lock. Keys expire after SEM_TTL so a dead worker cannot wedge a
repository forever.
"""

import time
from contextlib import contextmanager

from redis import Redis
from redis.exceptions import WatchError

from repogrowth.config import app_config

REPO_SEM = "sem:repo:{repository_id}"
SEM_TTL = 120  # seconds


def try_acquire(redis: Redis, key: str, limit: int) -> bool:
    """Take one slot under `key` unless `limit` slots are already held."""
    while True:
        with redis.pipeline() as p:
            try:
                p.watch(key)
                cur_raw = p.get(key)
                cur = int(cur_raw) if cur_raw is not None else 0
                if cur >= limit:
                    p.unwatch()
                    return False
                p.multi()
                p.incr(key, 1)
                p.expire(key, SEM_TTL)
                p.execute()
                return True
            except WatchError:
                continue


def release(redis: Redis, key: str) -> None:
    """Give back one slot; the counter never goes below zero."""
    while True:
        with redis.pipeline() as p:
            try:
                p.watch(key)
                cur = int(p.get(key) or 0)
                new_val = max(cur - 1, 0)
                p.multi()
                if new_val == 0:
                    p.delete(key)
                else:
                    p.set(key, new_val)
                    p.expire(key, SEM_TTL)
                p.execute()
                return
            except WatchError:
                continue


def held(redis: Redis, key: str) -> int:
    return int(redis.get(key) or 0)


@contextmanager
def repository_slot(
    repository_id: int,
    *,
    redis: Redis,
    max_concurrency: int | None = None,
    acquire_timeout_s: float = 30.0,
    poll_ms: int = 100,
):
    """
    Hold one of the repository's import slots for the duration of the block.

    Raises TimeoutError when no slot frees up within acquire_timeout_s; the
    job then fails and RQ retries it later.
    """
    limit = int(max_concurrency or app_config.imports.repo_max_concurrency)
    key = REPO_SEM.format(repository_id=repository_id)
    deadline = time.monotonic() + acquire_timeout_s

    while not try_acquire(redis, key, limit):
        if time.monotonic() > deadline:
            raise TimeoutError(f"repository_slot acquire timed out for repository {repository_id}")
        time.sleep(poll_ms / 1000.0)

    try:
        yield
    finally:
        release(redis, key)


__all__ = ["REPO_SEM", "SEM_TTL", "try_acquire", "release", "held", "repository_slot"]
