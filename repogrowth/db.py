# repogrowth/db.py
import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from itertools import count

# -------------------- schema --------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS repositories (
  id                INTEGER PRIMARY KEY,
  name              TEXT NOT NULL,
  name_key          TEXT NOT NULL UNIQUE,
  owner_id          TEXT NOT NULL,
  description       TEXT,
  snowball_enabled  INTEGER NOT NULL DEFAULT 1,
  forward_threshold INTEGER NOT NULL DEFAULT 3,
  quality_threshold REAL    NOT NULL DEFAULT 0.7,
  allowed_domains   TEXT    NOT NULL DEFAULT '[]',
  blocked_domains   TEXT    NOT NULL DEFAULT '[]',
  digest_frequency  TEXT    NOT NULL DEFAULT 'weekly',
  snowball_epoch    INTEGER NOT NULL DEFAULT 0,
  created_at        TEXT NOT NULL,
  updated_at        TEXT NOT NULL,
  archived_at       TEXT
);

CREATE TABLE IF NOT EXISTS repository_moderators (
  repository_id INTEGER NOT NULL REFERENCES repositories(id),
  user_id       TEXT NOT NULL,
  added_at      TEXT NOT NULL,
  PRIMARY KEY (repository_id, user_id)
);

CREATE TABLE IF NOT EXISTS repository_emails (
  id              INTEGER PRIMARY KEY,
  repository_id   INTEGER NOT NULL REFERENCES repositories(id),
  email           TEXT NOT NULL,
  email_key       TEXT NOT NULL,
  source          TEXT NOT NULL
                  CHECK (source IN ('manual', 'csv', 'snowball', 'api', 'signup')),
  added_by        TEXT,
  added_at        TEXT NOT NULL,
  verified        INTEGER NOT NULL DEFAULT 0,
  active          INTEGER NOT NULL DEFAULT 1,
  unsubscribed_at TEXT,
  review_state    TEXT NOT NULL DEFAULT 'none',
  tags            TEXT NOT NULL DEFAULT '{}',
  updated_at      TEXT NOT NULL,
  UNIQUE (repository_id, email_key)
);

CREATE INDEX IF NOT EXISTS ix_repository_emails_recipients
  ON repository_emails(repository_id, active, verified);

CREATE TABLE IF NOT EXISTS email_history (
  id            INTEGER PRIMARY KEY,
  repository_id INTEGER NOT NULL REFERENCES repositories(id),
  email_key     TEXT NOT NULL,
  event         TEXT NOT NULL,
  source        TEXT,
  actor         TEXT,
  detail        TEXT NOT NULL DEFAULT '{}',
  created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_email_history_key
  ON email_history(repository_id, email_key, id);

CREATE TABLE IF NOT EXISTS csv_imports (
  id               INTEGER PRIMARY KEY,
  repository_id    INTEGER NOT NULL REFERENCES repositories(id),
  filename         TEXT,
  imported_by      TEXT,
  row_count        INTEGER NOT NULL DEFAULT 0,
  success_count    INTEGER NOT NULL DEFAULT 0,
  duplicate_count  INTEGER NOT NULL DEFAULT 0,
  review_count     INTEGER NOT NULL DEFAULT 0,
  error_count      INTEGER NOT NULL DEFAULT 0,
  status           TEXT NOT NULL DEFAULT 'pending',
  cancel_requested INTEGER NOT NULL DEFAULT 0,
  failure_reason   TEXT,
  created_at       TEXT NOT NULL,
  finished_at      TEXT
);

CREATE TABLE IF NOT EXISTS csv_import_errors (
  id        INTEGER PRIMARY KEY,
  import_id INTEGER NOT NULL REFERENCES csv_imports(id),
  row_no    INTEGER NOT NULL,
  email     TEXT,
  error     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snowball_events (
  id             INTEGER PRIMARY KEY,
  repository_id  INTEGER NOT NULL REFERENCES repositories(id),
  referrer_key   TEXT NOT NULL,
  referred_key   TEXT NOT NULL,
  referred_email TEXT NOT NULL,
  epoch          INTEGER NOT NULL,
  observed_at    TEXT NOT NULL,
  UNIQUE (repository_id, referrer_key, referred_key, epoch)
);

CREATE TABLE IF NOT EXISTS snowball_tracking (
  repository_id  INTEGER NOT NULL REFERENCES repositories(id),
  referred_key   TEXT NOT NULL,
  referred_email TEXT NOT NULL,
  state          TEXT NOT NULL DEFAULT 'tracked',
  forward_count  INTEGER NOT NULL DEFAULT 0,
  epoch          INTEGER NOT NULL,
  first_seen_at  TEXT NOT NULL,
  admitted_at    TEXT,
  PRIMARY KEY (repository_id, referred_key)
);

CREATE TABLE IF NOT EXISTS digest_jobs (
  id              INTEGER PRIMARY KEY,
  repository_id   INTEGER NOT NULL REFERENCES repositories(id),
  period_start    TEXT NOT NULL,
  period_end      TEXT NOT NULL,
  content         TEXT NOT NULL DEFAULT '[]',
  recipient_count INTEGER NOT NULL DEFAULT 0,
  status          TEXT NOT NULL DEFAULT 'created',
  created_at      TEXT NOT NULL,
  dispatched_at   TEXT,
  finished_at     TEXT,
  UNIQUE (repository_id, period_start, period_end)
);

CREATE TABLE IF NOT EXISTS digest_recipients (
  job_id    INTEGER NOT NULL REFERENCES digest_jobs(id),
  email_key TEXT NOT NULL,
  email     TEXT NOT NULL,
  PRIMARY KEY (job_id, email_key)
);
"""

# -------------------- basics --------------------


def _db_path() -> str:
    # Prefer DATABASE_URL if set; otherwise fall back to DATABASE_PATH; otherwise dev.db
    url = os.environ.get("DATABASE_URL")
    if url:
        if not url.startswith("sqlite:///"):
            raise RuntimeError(f"Only sqlite supported; got {url}")
        return url.removeprefix("sqlite:///")
    path = os.environ.get("DATABASE_PATH")
    if path:
        return path
    return "dev.db"


def get_connection(
    db_path: str | None = None,
    *,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """
    Shared SQLite connection helper for the engine, workers and scripts.

    - If db_path is None, uses _db_path() (DATABASE_URL/DATABASE_PATH/dev.db).
    - Ensures foreign key enforcement.
    - Sets row_factory to sqlite3.Row for dict-like access.
    - Autocommit mode: writers group statements with transaction().
    """
    if db_path is None:
        db_path = _db_path()
    con = sqlite3.connect(
        db_path,
        timeout=30.0,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys=ON")
    return con


def apply_schema(con: sqlite3.Connection) -> None:
    """Create all engine tables. Safe to call repeatedly."""
    con.executescript(SCHEMA_SQL)


_savepoints = count(1)


@contextmanager
def transaction(con: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Group writes into one atomic unit.

    Outermost use takes the database write lock up front (BEGIN IMMEDIATE),
    so a read-check-write inside the block cannot interleave with another
    writer. Nested use becomes a SAVEPOINT.
    """
    if con.in_transaction:
        name = f"sp_{next(_savepoints)}"
        con.execute(f"SAVEPOINT {name}")
        try:
            yield con
        except BaseException:
            con.execute(f"ROLLBACK TO SAVEPOINT {name}")
            con.execute(f"RELEASE SAVEPOINT {name}")
            raise
        con.execute(f"RELEASE SAVEPOINT {name}")
        return

    con.execute("BEGIN IMMEDIATE")
    try:
        yield con
    except BaseException:
        con.rollback()
        raise
    con.commit()


# -------------------- timestamps --------------------


def parse_ts(value: datetime | str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing 'Z', explicit offsets and bare dates; naive values
    are taken as UTC. Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            raise ValueError("empty timestamp")
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"invalid timestamp: {value!r}") from exc
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def ts_iso8601_z(value: datetime | str | None = None) -> str:
    """
    Canonical stored form: ISO-8601 UTC with second precision ('...Z').

    Strings are parsed first, so the same instant written with an offset or
    a 'Z' maps to the same text; None means "now".
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    return parse_ts(value).strftime("%Y-%m-%dT%H:%M:%SZ")


__all__ = [
    "SCHEMA_SQL",
    "get_connection",
    "apply_schema",
    "transaction",
    "ts_iso8601_z",
    "parse_ts",
]
