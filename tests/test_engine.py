from __future__ import annotations

from repogrowth.engine import GrowthEngine
from repogrowth.models import Source

OWNER = "owner-1"


def test_stats_counts(conn, repo):
    engine = GrowthEngine(conn)
    engine.admit(repo, "a@acme.io", Source.MANUAL, OWNER, verified=True)
    engine.admit("Rustaceans", "b@acme.io", Source.SIGNUP)
    engine.admit(repo.id, "c@acme.io", Source.API, "stranger")
    engine.import_csv(repo.id, "email\nd@acme.io\n", imported_by=OWNER)
    engine.unsubscribe(repo, "b@acme.io")
    engine.record_forward(repo, "a@acme.io", "e@acme.io")

    stats = engine.stats(repo)
    assert stats["repository"] == {"id": repo.id, "name": "Rustaceans"}
    assert stats["total"] == 4
    assert stats["active"] == 2
    assert stats["verified"] == 1
    assert stats["inactive"] == 2
    assert stats["pending_review"] == 1
    assert stats["unsubscribed"] == 1
    assert stats["by_source"] == {"csv": 1, "manual": 1}
    assert stats["snowball"] == {"enabled": True, "tracked": 1, "admitted": 0}
    assert stats["imports"] == 1
    assert stats["last_import_status"] == "completed"
    assert stats["digests"] == 0
    assert stats["snowball_analytics"]["tracked"] == 1
    assert stats["snowball_analytics"]["conversion_rate"] == 0.0


def test_handle_bounce_scoped_to_repository(conn, make_repo):
    engine = GrowthEngine(conn)
    a = make_repo("A")
    b = make_repo("B")
    engine.admit(a, "x@acme.io", Source.MANUAL, OWNER)
    engine.admit(b, "x@acme.io", Source.MANUAL, OWNER)
    assert engine.handle_bounce("x@acme.io", "A") == 1
    assert engine.stats(b)["active"] == 1
