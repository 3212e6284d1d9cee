"""
Record types shared across the engine.

Rows come back from SQLite as sqlite3.Row; the from_row() helpers turn
them into plain dataclasses so the gate and the scheduler stay free of
any DB access.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Source(str, Enum):
    """Closed set of admission sources; the gate dispatches on this."""

    MANUAL = "manual"
    CSV = "csv"
    SNOWBALL = "snowball"
    API = "api"
    SIGNUP = "signup"


class ReviewState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    REJECTED = "rejected"


DIGEST_FREQUENCIES = ("daily", "weekly", "biweekly", "monthly", "never")


def _json_list(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    data = json.loads(raw) if isinstance(raw, str) else raw
    return tuple(str(d).strip().lower() for d in data if str(d).strip())


def _json_dict(raw: Any) -> dict[str, str]:
    if not raw:
        return {}
    data = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


@dataclass(frozen=True)
class GrowthConfig:
    snowball_enabled: bool = True
    forward_threshold: int = 3
    quality_threshold: float = 0.7
    allowed_domains: tuple[str, ...] = ()
    blocked_domains: tuple[str, ...] = ()
    digest_frequency: str = "weekly"

    def __post_init__(self) -> None:
        if self.forward_threshold < 1:
            raise ValueError("forward_threshold must be >= 1")
        if not 0.0 <= self.quality_threshold <= 1.0:
            raise ValueError("quality_threshold must be between 0 and 1")
        if self.digest_frequency not in DIGEST_FREQUENCIES:
            raise ValueError(f"digest_frequency must be one of {', '.join(DIGEST_FREQUENCIES)}")


@dataclass(frozen=True)
class Repository:
    id: int
    name: str
    owner_id: str
    growth: GrowthConfig
    snowball_epoch: int = 0
    description: str | None = None
    created_at: str | None = None
    archived_at: str | None = None
    moderators: frozenset[str] = field(default_factory=frozenset)

    @property
    def archived(self) -> bool:
        return self.archived_at is not None

    def is_trusted(self, actor: str | None) -> bool:
        """Owner and moderators are trusted actors for manual/api admissions."""
        if not actor:
            return False
        return actor == self.owner_id or actor in self.moderators

    @classmethod
    def from_row(cls, row: sqlite3.Row, moderators: frozenset[str] = frozenset()) -> Repository:
        growth = GrowthConfig(
            snowball_enabled=bool(row["snowball_enabled"]),
            forward_threshold=int(row["forward_threshold"]),
            quality_threshold=float(row["quality_threshold"]),
            allowed_domains=_json_list(row["allowed_domains"]),
            blocked_domains=_json_list(row["blocked_domains"]),
            digest_frequency=row["digest_frequency"],
        )
        return cls(
            id=int(row["id"]),
            name=row["name"],
            owner_id=row["owner_id"],
            growth=growth,
            snowball_epoch=int(row["snowball_epoch"]),
            description=row["description"],
            created_at=row["created_at"],
            archived_at=row["archived_at"],
            moderators=moderators,
        )

    def to_dict(self) -> dict[str, Any]:
        g = self.growth
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "description": self.description,
            "snowball_enabled": g.snowball_enabled,
            "forward_threshold": g.forward_threshold,
            "quality_threshold": g.quality_threshold,
            "allowed_domains": list(g.allowed_domains),
            "blocked_domains": list(g.blocked_domains),
            "digest_frequency": g.digest_frequency,
            "moderators": sorted(self.moderators),
            "created_at": self.created_at,
            "archived_at": self.archived_at,
        }


@dataclass
class RepositoryEmail:
    """Current-state projection of one (repository, address) pair."""

    repository_id: int
    email: str
    email_key: str
    source: Source
    added_by: str | None
    added_at: str
    verified: bool
    active: bool
    unsubscribed_at: str | None
    review_state: ReviewState
    tags: dict[str, str]

    @classmethod
    def from_row(cls, row: sqlite3.Row | Mapping[str, Any]) -> RepositoryEmail:
        return cls(
            repository_id=int(row["repository_id"]),
            email=row["email"],
            email_key=row["email_key"],
            source=Source(row["source"]),
            added_by=row["added_by"],
            added_at=row["added_at"],
            verified=bool(row["verified"]),
            active=bool(row["active"]),
            unsubscribed_at=row["unsubscribed_at"],
            review_state=ReviewState(row["review_state"]),
            tags=_json_dict(row["tags"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository_id": self.repository_id,
            "email": self.email,
            "source": self.source.value,
            "added_by": self.added_by,
            "added_at": self.added_at,
            "verified": self.verified,
            "active": self.active,
            "unsubscribed_at": self.unsubscribed_at,
            "review_state": self.review_state.value,
            "tags": dict(self.tags),
        }


__all__ = [
    "Source",
    "ReviewState",
    "DIGEST_FREQUENCIES",
    "GrowthConfig",
    "Repository",
    "RepositoryEmail",
]
