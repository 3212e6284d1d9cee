# repogrowth/repositories.py
"""
Repository records: creation, growth configuration, moderators, archive.

Repositories are never deleted; archive_repository() sets archived_at and
the gate rejects further admissions for archived repositories.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import Any

from repogrowth.config import app_config
from repogrowth.db import transaction, ts_iso8601_z
from repogrowth.exceptions import PermissionDenied, RepositoryExists, RepositoryNotFound
from repogrowth.models import GrowthConfig, Repository
from repogrowth.normalize import norm_domain

log = logging.getLogger(__name__)


def default_growth_config() -> GrowthConfig:
    g = app_config.growth
    return GrowthConfig(
        snowball_enabled=g.snowball_enabled,
        forward_threshold=g.forward_threshold,
        quality_threshold=g.quality_threshold,
        digest_frequency=g.digest_frequency,
    )


def _name_key(name: str) -> str:
    return " ".join(name.split()).lower()


def _domain_list(values: Any) -> tuple[str, ...]:
    out: list[str] = []
    for v in values or ():
        d = norm_domain(str(v).lstrip("@"))
        if d and d not in out:
            out.append(d)
    return tuple(out)


def _moderators(conn: sqlite3.Connection, repository_id: int) -> frozenset[str]:
    rows = conn.execute(
        "SELECT user_id FROM repository_moderators WHERE repository_id = ?",
        (repository_id,),
    ).fetchall()
    return frozenset(r["user_id"] for r in rows)


def create_repository(
    conn: sqlite3.Connection,
    name: str,
    owner_id: str,
    *,
    description: str | None = None,
    growth: GrowthConfig | None = None,
    now: datetime | str | None = None,
) -> Repository:
    clean_name = " ".join((name or "").split())
    if not clean_name:
        raise ValueError("repository name must not be empty")
    if not owner_id:
        raise ValueError("repository owner must not be empty")

    g = growth or default_growth_config()
    g = replace(
        g,
        allowed_domains=_domain_list(g.allowed_domains),
        blocked_domains=_domain_list(g.blocked_domains),
    )
    ts = ts_iso8601_z(now)
    try:
        with transaction(conn):
            cur = conn.execute(
                """
                INSERT INTO repositories (
                    name, name_key, owner_id, description,
                    snowball_enabled, forward_threshold, quality_threshold,
                    allowed_domains, blocked_domains, digest_frequency,
                    snowball_epoch, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    clean_name,
                    _name_key(clean_name),
                    owner_id,
                    description,
                    int(g.snowball_enabled),
                    g.forward_threshold,
                    g.quality_threshold,
                    json.dumps(list(g.allowed_domains)),
                    json.dumps(list(g.blocked_domains)),
                    g.digest_frequency,
                    ts,
                    ts,
                ),
            )
            repository_id = int(cur.lastrowid)
    except sqlite3.IntegrityError as exc:
        raise RepositoryExists(f"repository name already taken: {clean_name!r}") from exc

    log.info("Created repository %s (%r) for owner %s", repository_id, clean_name, owner_id)
    return get_repository(conn, repository_id)


def get_repository(conn: sqlite3.Connection, repository_id: int) -> Repository:
    row = conn.execute("SELECT * FROM repositories WHERE id = ?", (repository_id,)).fetchone()
    if row is None:
        raise RepositoryNotFound(f"repository {repository_id} not found")
    return Repository.from_row(row, _moderators(conn, int(row["id"])))


def get_repository_by_name(conn: sqlite3.Connection, name: str) -> Repository:
    row = conn.execute(
        "SELECT * FROM repositories WHERE name_key = ?",
        (_name_key(name or ""),),
    ).fetchone()
    if row is None:
        raise RepositoryNotFound(f"repository {name!r} not found")
    return Repository.from_row(row, _moderators(conn, int(row["id"])))


def list_repositories(
    conn: sqlite3.Connection,
    *,
    include_archived: bool = False,
) -> list[Repository]:
    sql = "SELECT * FROM repositories"
    if not include_archived:
        sql += " WHERE archived_at IS NULL"
    sql += " ORDER BY id"
    return [Repository.from_row(r, _moderators(conn, int(r["id"]))) for r in conn.execute(sql)]


def _require_trusted(repo: Repository, actor: str | None) -> None:
    if not repo.is_trusted(actor):
        raise PermissionDenied(f"{actor!r} may not modify repository {repo.id}")


def _require_owner(repo: Repository, actor: str | None) -> None:
    if actor != repo.owner_id:
        raise PermissionDenied(f"only the owner may do this for repository {repo.id}")


def update_growth_config(
    conn: sqlite3.Connection,
    repository_id: int,
    actor: str | None,
    **changes: Any,
) -> Repository:
    """
    Change growth settings; owner and moderators only.

    Accepted keys: snowball_enabled, forward_threshold, quality_threshold,
    allowed_domains, blocked_domains, digest_frequency.

    Turning snowball off bumps the repository's snowball epoch and zeroes
    the counters of addresses that were tracked but not admitted, so
    turning it back on counts from zero.
    """
    repo = get_repository(conn, repository_id)
    _require_trusted(repo, actor)

    allowed = {
        "snowball_enabled",
        "forward_threshold",
        "quality_threshold",
        "allowed_domains",
        "blocked_domains",
        "digest_frequency",
    }
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"unknown growth settings: {', '.join(sorted(unknown))}")

    if "allowed_domains" in changes:
        changes["allowed_domains"] = _domain_list(changes["allowed_domains"])
    if "blocked_domains" in changes:
        changes["blocked_domains"] = _domain_list(changes["blocked_domains"])
    if "snowball_enabled" in changes:
        changes["snowball_enabled"] = bool(changes["snowball_enabled"])

    new_growth = replace(repo.growth, **changes)
    disabling = repo.growth.snowball_enabled and not new_growth.snowball_enabled
    epoch = repo.snowball_epoch + 1 if disabling else repo.snowball_epoch

    with transaction(conn):
        conn.execute(
            """
            UPDATE repositories
               SET snowball_enabled  = ?,
                   forward_threshold = ?,
                   quality_threshold = ?,
                   allowed_domains   = ?,
                   blocked_domains   = ?,
                   digest_frequency  = ?,
                   snowball_epoch    = ?,
                   updated_at        = ?
             WHERE id = ?
            """,
            (
                int(new_growth.snowball_enabled),
                new_growth.forward_threshold,
                new_growth.quality_threshold,
                json.dumps(list(new_growth.allowed_domains)),
                json.dumps(list(new_growth.blocked_domains)),
                new_growth.digest_frequency,
                epoch,
                ts_iso8601_z(None),
                repository_id,
            ),
        )
        if disabling:
            conn.execute(
                """
                UPDATE snowball_tracking
                   SET forward_count = 0, epoch = ?
                 WHERE repository_id = ? AND state = 'tracked'
                """,
                (epoch, repository_id),
            )
            log.info("Snowball disabled for repository %s; epoch now %s", repository_id, epoch)

    return get_repository(conn, repository_id)


def add_moderator(
    conn: sqlite3.Connection,
    repository_id: int,
    actor: str | None,
    user_id: str,
) -> Repository:
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValueError("moderator user id must not be empty")
    repo = get_repository(conn, repository_id)
    _require_owner(repo, actor)
    conn.execute(
        """
        INSERT INTO repository_moderators (repository_id, user_id, added_at)
        VALUES (?, ?, ?)
        ON CONFLICT(repository_id, user_id) DO NOTHING
        """,
        (repository_id, user_id, ts_iso8601_z(None)),
    )
    return get_repository(conn, repository_id)


def archive_repository(
    conn: sqlite3.Connection,
    repository_id: int,
    actor: str | None,
    *,
    now: datetime | str | None = None,
) -> Repository:
    repo = get_repository(conn, repository_id)
    _require_owner(repo, actor)
    if repo.archived:
        return repo
    conn.execute(
        "UPDATE repositories SET archived_at = ?, updated_at = ? WHERE id = ?",
        (ts_iso8601_z(now), ts_iso8601_z(now), repository_id),
    )
    log.info("Archived repository %s", repository_id)
    return get_repository(conn, repository_id)


__all__ = [
    "default_growth_config",
    "create_repository",
    "get_repository",
    "get_repository_by_name",
    "list_repositories",
    "update_growth_config",
    "add_moderator",
    "archive_repository",
]
