"""
Quality gate: decides whether an admission request is accepted, rejected,
queued for manual review, or (snowball only) not yet eligible.

Typical usage:

    from repogrowth.gate import evaluate

    decision = evaluate(repo, "ann@example.com", Source.CSV)
    if decision.verdict is Verdict.ACCEPT:
        ... write the row ...

Policy, evaluated in order (first match wins):

    1. repository archived                      -> reject  "repository_archived"
    2. domain in blocked_domains                -> reject  "blocked_domain"
    3. allowed_domains set and domain not in it -> reject  "domain_not_allowed"
    4. address previously unsubscribed/bounced
       and the request is not explicit intent   -> reject  "unsubscribed"
    5. per-source rule:
         manual/api, trusted actor              -> accept  "trusted_actor"
         manual/api, anyone else                -> review  "untrusted_actor"
         signup                                 -> accept  "signup_opt_in"
         csv, threshold <= base trust score     -> accept  "csv_trust"
         csv, otherwise                         -> review  "csv_below_threshold"
         snowball, count < forward_threshold    -> wait    "forward_threshold_not_met"
         snowball, score >= quality_threshold   -> accept  "snowball_score"
         snowball, otherwise                    -> review  "snowball_score_below_threshold"

Domain rules run before the source rules, so a blocked domain is rejected
for every source, including a snowball referral that crossed its threshold.

The gate is pure: it reads the Repository record and the domain lists and
never touches the database.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any

from repogrowth.config import app_config, load_growth_policy
from repogrowth.models import Repository, Source
from repogrowth.normalize import domain_matches, domain_of

SNOWBALL_BASE_SCORE = 0.5
BUSINESS_DOMAIN_BONUS = 0.2
NON_DISPOSABLE_BONUS = 0.1
REFERRER_TRUST_WEIGHT = 0.2


class Verdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    MANUAL_REVIEW = "manual_review"
    THRESHOLD_NOT_MET = "threshold_not_met"


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    reason: str
    score: float | None = None

    @property
    def accepted(self) -> bool:
        return self.verdict is Verdict.ACCEPT

    @classmethod
    def accept(cls, reason: str, score: float | None = None) -> Decision:
        return cls(Verdict.ACCEPT, reason, score)

    @classmethod
    def reject(cls, reason: str) -> Decision:
        return cls(Verdict.REJECT, reason)

    @classmethod
    def review(cls, reason: str, score: float | None = None) -> Decision:
        return cls(Verdict.MANUAL_REVIEW, reason, score)


def _to_lower_set(values: Iterable[str] | None) -> frozenset[str]:
    if not values:
        return frozenset()
    return frozenset(str(v).strip().lower() for v in values if str(v).strip())


@dataclass(frozen=True)
class DomainLists:
    """Freemail/disposable classification used by the snowball score."""

    freemail: frozenset[str] = frozenset()
    disposable: frozenset[str] = frozenset()

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> DomainLists:
        return cls(
            freemail=_to_lower_set(cfg.get("freemail_domains")),
            disposable=_to_lower_set(cfg.get("disposable_domains")),
        )


@lru_cache(maxsize=1)
def default_domain_lists() -> DomainLists:
    return DomainLists.from_config(load_growth_policy())


def snowball_score(
    address: str,
    referrer_trust: float | None,
    lists: DomainLists | None = None,
) -> float:
    """
    Heuristic quality score in [0, 1] for a referred address.

    0.5 base, +0.2 for a non-freemail (business) domain, +0.1 for a
    non-disposable domain, +0.2 scaled by the referrers' trust.
    """
    lists = lists or default_domain_lists()
    domain = domain_of(address)
    score = SNOWBALL_BASE_SCORE
    if not domain_matches(domain, lists.freemail):
        score += BUSINESS_DOMAIN_BONUS
    if not domain_matches(domain, lists.disposable):
        score += NON_DISPOSABLE_BONUS
    trust = min(max(referrer_trust or 0.0, 0.0), 1.0)
    score += REFERRER_TRUST_WEIGHT * trust
    return round(min(score, 1.0), 4)


@dataclass(frozen=True)
class GateRequest:
    repository: Repository
    address: str
    source: Source
    actor: str | None = None
    referrer_trust: float | None = None
    forward_count: int = 0
    previously_unsubscribed: bool = False
    csv_trust_score: float = field(default_factory=lambda: app_config.growth.base_csv_trust_score)
    lists: DomainLists | None = None

    @property
    def domain(self) -> str:
        return domain_of(self.address)

    @property
    def explicit_intent(self) -> bool:
        if self.source is Source.SIGNUP:
            return True
        if self.source in (Source.MANUAL, Source.API):
            return self.repository.is_trusted(self.actor)
        return False


Rule = Callable[[GateRequest], "Decision | None"]


def _archived(req: GateRequest) -> Decision | None:
    if req.repository.archived:
        return Decision.reject("repository_archived")
    return None


def _blocked(req: GateRequest) -> Decision | None:
    if domain_matches(req.domain, req.repository.growth.blocked_domains):
        return Decision.reject("blocked_domain")
    return None


def _not_allowed(req: GateRequest) -> Decision | None:
    allowed = req.repository.growth.allowed_domains
    if allowed and not domain_matches(req.domain, allowed):
        return Decision.reject("domain_not_allowed")
    return None


def _unsubscribed(req: GateRequest) -> Decision | None:
    if req.previously_unsubscribed and not req.explicit_intent:
        return Decision.reject("unsubscribed")
    return None


def _manual_or_api(req: GateRequest) -> Decision:
    if req.repository.is_trusted(req.actor):
        return Decision.accept("trusted_actor")
    return Decision.review("untrusted_actor")


def _signup(_req: GateRequest) -> Decision:
    return Decision.accept("signup_opt_in")


def _csv(req: GateRequest) -> Decision:
    if req.repository.growth.quality_threshold <= req.csv_trust_score:
        return Decision.accept("csv_trust", req.csv_trust_score)
    return Decision.review("csv_below_threshold", req.csv_trust_score)


def _snowball(req: GateRequest) -> Decision:
    growth = req.repository.growth
    if req.forward_count < growth.forward_threshold:
        return Decision(Verdict.THRESHOLD_NOT_MET, "forward_threshold_not_met")
    score = snowball_score(req.address, req.referrer_trust, req.lists)
    if score >= growth.quality_threshold:
        return Decision.accept("snowball_score", score)
    return Decision.review("snowball_score_below_threshold", score)


POLICY: tuple[Rule, ...] = (_archived, _blocked, _not_allowed, _unsubscribed)

SOURCE_RULES: dict[Source, Callable[[GateRequest], Decision]] = {
    Source.MANUAL: _manual_or_api,
    Source.API: _manual_or_api,
    Source.SIGNUP: _signup,
    Source.CSV: _csv,
    Source.SNOWBALL: _snowball,
}


def evaluate_request(req: GateRequest) -> Decision:
    for rule in POLICY:
        decision = rule(req)
        if decision is not None:
            return decision
    return SOURCE_RULES[req.source](req)


def evaluate(
    repository: Repository,
    address: str,
    source: Source | str,
    *,
    actor: str | None = None,
    referrer_trust: float | None = None,
    forward_count: int = 0,
    previously_unsubscribed: bool = False,
    csv_trust_score: float | None = None,
    lists: DomainLists | None = None,
) -> Decision:
    """
    Evaluate one admission request against the repository's policy.

    `address` must already be normalized. `forward_count` and
    `referrer_trust` only matter for snowball requests.
    """
    req = GateRequest(
        repository=repository,
        address=address,
        source=Source(source),
        actor=actor,
        referrer_trust=referrer_trust,
        forward_count=forward_count,
        previously_unsubscribed=previously_unsubscribed,
        csv_trust_score=(
            app_config.growth.base_csv_trust_score if csv_trust_score is None else csv_trust_score
        ),
        lists=lists,
    )
    return evaluate_request(req)


__all__ = [
    "Verdict",
    "Decision",
    "DomainLists",
    "GateRequest",
    "default_domain_lists",
    "snowball_score",
    "evaluate",
    "evaluate_request",
    "POLICY",
    "SOURCE_RULES",
]
