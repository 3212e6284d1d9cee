from __future__ import annotations

import fakeredis
import pytest

from repogrowth.config import app_config
from repogrowth.db import apply_schema, get_connection
from repogrowth.ingest.csv_import import create_import, get_import
from repogrowth.models import GrowthConfig
from repogrowth.queueing import tasks
from repogrowth.queueing.rate_limit import REPO_SEM
from repogrowth.repositories import create_repository


@pytest.fixture
def fake_redis(monkeypatch):
    r = fakeredis.FakeRedis()
    monkeypatch.setattr(tasks, "get_redis", lambda: r)
    return r


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "tasks.db"
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DATABASE_PATH", str(path))
    return str(path)


def test_default_retry_matches_config():
    retry = tasks.default_retry()
    assert retry.max == app_config.queue.max_retries
    assert len(retry.intervals) == app_config.queue.max_retries


def test_enqueue_applies_retry_and_timeout(fake_redis):
    job = tasks.enqueue(tasks.task_record_forward, 1, "a@acme.io", "b@acme.io")
    assert job.origin == app_config.queue.queue_name
    assert job.timeout == app_config.queue.job_timeout_seconds
    assert job.retries_left == app_config.queue.max_retries


def test_task_process_import_runs_under_repository_slot(fake_redis, db_path):
    con = get_connection(db_path)
    apply_schema(con)
    repo = create_repository(con, "Queued", "owner-1", growth=GrowthConfig())
    import_id = create_import(con, repo.id, filename="q.csv")
    con.close()

    out = tasks.task_process_import(import_id, b"email\na@acme.io\nbad\n")
    assert out["status"] == "completed"
    assert out["success_count"] == 1
    assert out["error_count"] == 1
    assert "errors" not in out
    assert fake_redis.get(REPO_SEM.format(repository_id=repo.id)) is None

    con = get_connection(db_path)
    assert get_import(con, import_id).status == "completed"
    con.close()


def test_task_record_forward(db_path):
    con = get_connection(db_path)
    apply_schema(con)
    repo = create_repository(con, "Forwards", "owner-1", growth=GrowthConfig(forward_threshold=1))
    con.close()

    out = tasks.task_record_forward(repo.id, "r1@acme.io", "new@acme.io")
    assert out["outcome"] == "admitted"
