from __future__ import annotations

from repogrowth import ledger
from repogrowth.export.exporter import escape_cell, export_csv, unescape_cell
from repogrowth.ingest.csv_import import run_import
from repogrowth.models import Source

OWNER = "owner-1"
T0 = "2024-01-01T00:00:00Z"


def _seed(conn, repo):
    ledger.admit(
        conn, repo, "alice@acme.io", Source.MANUAL, actor=OWNER, verified=True,
        tags={"note": "=SUM(A1)"}, now=T0,
    )
    ledger.admit(conn, repo, "bob@acme.io", Source.MANUAL, actor=OWNER, now=T0)
    ledger.admit(conn, repo, "gone@acme.io", Source.MANUAL, actor=OWNER, now=T0)
    ledger.unsubscribe(conn, repo.id, "gone@acme.io")


def test_export_layout(conn, repo):
    _seed(conn, repo)
    assert export_csv(conn, repo.id) == (
        "email,source,addedAt,verified,active,note\n"
        "alice@acme.io,manual,2024-01-01T00:00:00Z,true,true,'=SUM(A1)\n"
        "bob@acme.io,manual,2024-01-01T00:00:00Z,false,true,\n"
    )
    everything = export_csv(conn, repo.id, include_inactive=True)
    assert "gone@acme.io,manual,2024-01-01T00:00:00Z,false,false," in everything


def test_export_import_export_is_stable(conn, repo):
    _seed(conn, repo)
    first = export_csv(conn, repo.id)
    s = run_import(conn, repo.id, first)
    assert s.duplicate_count == 2
    assert export_csv(conn, repo.id) == first


def test_import_into_new_repository_restores_tags(conn, repo, make_repo):
    _seed(conn, repo)
    other = make_repo("Copy")
    run_import(conn, other.id, export_csv(conn, repo.id))
    rec = ledger.get_email(conn, other.id, "alice@acme.io")
    assert rec.tags == {"note": "=SUM(A1)"}
    assert rec.verified is True


def test_escape_roundtrip_edge_cases():
    for raw in ["=1+1", "+x", "-x", "@x", "'=x", "''@x", "'plain", "plain", ""]:
        assert unescape_cell(escape_cell(raw)) == raw
    assert escape_cell("'=x") == "''=x"
    assert escape_cell("'plain") == "'plain"


def test_tags_named_like_export_columns_are_dropped(conn, repo, make_repo):
    ledger.admit(
        conn, repo, "alice@acme.io", Source.MANUAL, actor=OWNER,
        tags={"email": "x", "Source": "newsletter", "team": "core"}, now=T0,
    )
    assert ledger.get_email(conn, repo.id, "alice@acme.io").tags == {"team": "core"}

    out = export_csv(conn, repo.id)
    assert out == (
        "email,source,addedAt,verified,active,team\n"
        "alice@acme.io,manual,2024-01-01T00:00:00Z,false,true,core\n"
    )

    other = make_repo("Copy")
    s = run_import(conn, other.id, out)
    assert (s.success_count, s.error_count) == (1, 0)
    assert export_csv(conn, other.id).splitlines()[1].startswith("alice@acme.io,csv,")
