from __future__ import annotations

from repogrowth import ledger, snowball
from repogrowth.models import Source
from repogrowth.repositories import update_growth_config
from repogrowth.snowball import ForwardOutcome

OWNER = "owner-1"


def test_threshold_is_exact(conn, repo):
    r1 = snowball.record_forward(conn, repo.id, "r1@acme.io", "target@acme.io")
    r2 = snowball.record_forward(conn, repo.id, "r2@acme.io", "target@acme.io")
    assert (r1.outcome, r1.forward_count) == (ForwardOutcome.TRACKED, 1)
    assert (r2.outcome, r2.forward_count) == (ForwardOutcome.TRACKED, 2)
    assert ledger.get_email(conn, repo.id, "target@acme.io") is None
    assert snowball.tracking_state(conn, repo.id, "target@acme.io") == "tracked"

    r3 = snowball.record_forward(conn, repo.id, "r3@acme.io", "target@acme.io")
    assert r3.outcome is ForwardOutcome.ADMITTED
    assert r3.forward_count == 3
    rec = ledger.get_email(conn, repo.id, "target@acme.io")
    assert rec.active is True
    assert rec.source is Source.SNOWBALL
    assert snowball.tracking_state(conn, repo.id, "target@acme.io") == "admitted"

    r4 = snowball.record_forward(conn, repo.id, "r4@acme.io", "target@acme.io")
    assert r4.outcome is ForwardOutcome.ALREADY_ADMITTED
    assert len(ledger.list_emails(conn, repo.id)) == 1


def test_same_referrer_counts_once(conn, repo):
    snowball.record_forward(conn, repo.id, "r1@acme.io", "target@acme.io")
    again = snowball.record_forward(conn, repo.id, "R1@ACME.io", "target@acme.io")
    assert again.outcome is ForwardOutcome.DUPLICATE_EVENT
    assert snowball.forward_count(conn, repo.id, "target@acme.io") == 1


def test_self_referral_and_disabled_are_dropped(conn, repo):
    r = snowball.record_forward(conn, repo.id, "me@acme.io", "Me@acme.io")
    assert r.outcome is ForwardOutcome.DROPPED
    assert r.reason == "self_referral"

    update_growth_config(conn, repo.id, OWNER, snowball_enabled=False)
    r = snowball.record_forward(conn, repo.id, "r1@acme.io", "target@acme.io")
    assert r.outcome is ForwardOutcome.DROPPED
    assert r.reason == "snowball_disabled"


def test_disable_resets_counts(conn, repo):
    snowball.record_forward(conn, repo.id, "r1@acme.io", "target@acme.io")
    snowball.record_forward(conn, repo.id, "r2@acme.io", "target@acme.io")
    update_growth_config(conn, repo.id, OWNER, snowball_enabled=False)
    update_growth_config(conn, repo.id, OWNER, snowball_enabled=True)

    assert snowball.forward_count(conn, repo.id, "target@acme.io") == 0
    r = snowball.record_forward(conn, repo.id, "r1@acme.io", "target@acme.io")
    assert r.outcome is ForwardOutcome.TRACKED
    assert r.forward_count == 1


def test_low_score_goes_to_review_trusted_referrers_admit(conn, repo):
    for ref in ("r1@acme.io", "r2@acme.io", "r3@acme.io"):
        last = snowball.record_forward(conn, repo.id, ref, "someone@gmail.com")
    assert last.outcome is ForwardOutcome.REVIEW
    assert last.admission.score == 0.6

    for ref in ("m1@acme.io", "m2@acme.io", "m3@acme.io"):
        ledger.admit(conn, repo, ref, Source.MANUAL, actor=OWNER, verified=True)
    for ref in ("m1@acme.io", "m2@acme.io", "m3@acme.io"):
        last = snowball.record_forward(conn, repo.id, ref, "friend@gmail.com")
    assert last.outcome is ForwardOutcome.ADMITTED
    assert last.admission.score == 0.8


def test_existing_member_marks_admitted(conn, repo):
    ledger.admit(conn, repo, "target@acme.io", Source.MANUAL, actor=OWNER)
    r = snowball.record_forward(conn, repo.id, "r1@acme.io", "target@acme.io")
    assert r.outcome is ForwardOutcome.ALREADY_ADMITTED
    assert snowball.tracking_state(conn, repo.id, "target@acme.io") == "admitted"


def test_blocked_domain_is_rejected_even_past_threshold(conn, make_repo):
    repo = make_repo("Blocked", blocked_domains=("spam.com",))
    results = [
        snowball.record_forward(conn, repo.id, f"r{i}@acme.io", "x@spam.com") for i in (1, 2, 3)
    ]
    assert [r.outcome for r in results[:2]] == [ForwardOutcome.TRACKED, ForwardOutcome.TRACKED]
    third = results[2]
    assert third.forward_count == 3
    assert third.outcome is ForwardOutcome.REJECTED
    assert third.reason == "blocked_domain"
    assert ledger.get_email(conn, repo.id, "x@spam.com") is None
    assert snowball.tracking_state(conn, repo.id, "x@spam.com") == "tracked"


def test_analytics(conn, repo):
    day1 = "2024-05-01T10:00:00Z"
    day2 = "2024-05-02T10:00:00Z"
    for ref in ("r1@acme.io", "r2@acme.io", "r3@acme.io"):
        snowball.record_forward(conn, repo.id, ref, "target@acme.io", now=day1)
    for ref in ("r1@acme.io", "r2@acme.io", "r5@acme.io"):
        snowball.record_forward(conn, repo.id, ref, "second@acme.io", now=day2)
    late = snowball.record_forward(conn, repo.id, "r4@acme.io", "target@acme.io", now=day2)
    assert late.outcome is ForwardOutcome.ALREADY_ADMITTED
    snowball.record_forward(conn, repo.id, "r1@acme.io", "lonely@acme.io", now=day2)

    a = snowball.analytics(conn, repo.id)
    assert a["since"] is None
    assert (a["tracked"], a["admitted"], a["conversion_rate"]) == (3, 2, 0.6667)
    assert a["forwards"] == 8
    assert a["forwards_after_admission"] == 1
    assert a["top_referrers"] == [
        {"referrer": "r1@acme.io", "admitted": 2},
        {"referrer": "r2@acme.io", "admitted": 2},
        {"referrer": "r3@acme.io", "admitted": 1},
        {"referrer": "r5@acme.io", "admitted": 1},
    ]
    assert a["timeline"] == [
        {"date": "2024-05-01", "admitted": 1},
        {"date": "2024-05-02", "admitted": 1},
    ]

    recent = snowball.analytics(conn, repo.id, since="2024-05-02T00:00:00+00:00", limit=2)
    assert recent["since"] == "2024-05-02T00:00:00Z"
    assert (recent["tracked"], recent["admitted"], recent["conversion_rate"]) == (2, 1, 0.5)
    assert recent["forwards"] == 5
    assert [t["referrer"] for t in recent["top_referrers"]] == ["r1@acme.io", "r2@acme.io"]
    assert recent["timeline"] == [{"date": "2024-05-02", "admitted": 1}]


def test_analytics_for_quiet_repository(conn, repo):
    a = snowball.analytics(conn, repo.id)
    assert (a["tracked"], a["admitted"], a["conversion_rate"]) == (0, 0, 0.0)
    assert a["top_referrers"] == [] and a["timeline"] == []
