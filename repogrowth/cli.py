# repogrowth/cli.py
from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import sys
from contextlib import closing
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from repogrowth import digest, repositories
from repogrowth.db import apply_schema, get_connection, parse_ts
from repogrowth.engine import GrowthEngine
from repogrowth.exceptions import (
    DeliveryError,
    ImportNotFound,
    PermissionDenied,
    RepositoryExists,
    RepositoryNotFound,
)
from repogrowth.ingest.cli import import_files, resolve_repository

log = logging.getLogger(__name__)


def _section(title: str) -> None:
    print(f"=== {title} ===")


def _open(args: argparse.Namespace) -> sqlite3.Connection:
    con = get_connection(args.db)
    apply_schema(con)
    return con


def _print_stats(stats: dict[str, Any]) -> None:
    repo = stats["repository"]
    print(f"Repository #{repo['id']}: {repo['name']}")
    print()
    _section("Members")
    for key in ("total", "active", "verified", "inactive", "pending_review", "unsubscribed"):
        print(f"  {key:16} {int(stats[key]):8d}")
    print()

    _section("Active by source")
    by_source = stats.get("by_source") or {}
    if not by_source:
        print("  (no active members)")
    for source, n in sorted(by_source.items()):
        print(f"  {source:16} {int(n):8d}")
    print()

    _section("Snowball")
    sb = stats["snowball"]
    print(f"  enabled          {'yes' if sb['enabled'] else 'no'}")
    print(f"  tracked          {int(sb['tracked']):8d}")
    print(f"  admitted         {int(sb['admitted']):8d}")
    sa = stats.get("snowball_analytics") or {}
    if sa:
        print(f"  conversion       {float(sa['conversion_rate']):8.2%}")
        for top in sa["top_referrers"]:
            print(f"  top referrer     {top['referrer']} ({int(top['admitted'])})")
    print()

    _section("Activity")
    print(f"  imports          {int(stats['imports']):8d}")
    print(f"  last import      {stats['last_import_status'] or '-'}")
    print(f"  digests          {int(stats['digests']):8d}")
    print()


# -------------------- commands --------------------


def _cmd_init_db(args: argparse.Namespace) -> int:
    _open(args).close()
    print(f"Schema applied to {args.db or 'default database'}")
    return 0


def _cmd_create_repo(args: argparse.Namespace) -> int:
    with closing(_open(args)) as con:
        repo = GrowthEngine(con).create_repository(
            args.name, args.owner, description=args.description
        )
    print(json.dumps(repo.to_dict(), indent=2, sort_keys=True))
    return 0


def _cmd_add_moderator(args: argparse.Namespace) -> int:
    with closing(_open(args)) as con:
        repo = resolve_repository(con, args.repository)
        repo = repositories.add_moderator(con, repo.id, args.actor, args.user_id)
    print(f"Moderators of {repo.name}: {', '.join(sorted(repo.moderators))}")
    return 0


def _cmd_archive(args: argparse.Namespace) -> int:
    with closing(_open(args)) as con:
        repo = resolve_repository(con, args.repository)
        repo = repositories.archive_repository(con, repo.id, args.actor)
    print(f"Archived {repo.name} at {repo.archived_at}")
    return 0


def _cmd_import(args: argparse.Namespace) -> int:
    rc = 0
    with closing(_open(args)) as con:
        repo = resolve_repository(con, args.repository)
        for s in import_files(
            con, repo, [Path(p) for p in args.inputs], imported_by=args.imported_by
        ):
            print(
                f"[{s.status}] {s.filename}: {s.success_count} added, "
                f"{s.duplicate_count} duplicate, "
                f"{s.review_count} for review, {s.error_count} error(s)"
            )
            if s.status == "failed":
                rc = 1
    return rc


def _cmd_export(args: argparse.Namespace) -> int:
    with closing(_open(args)) as con:
        repo = resolve_repository(con, args.repository)
        body = GrowthEngine(con).export(
            repo, include_inactive=args.include_inactive, sources=args.source
        )
    if args.out:
        Path(args.out).write_text(body, encoding="utf-8", newline="")
        print(f"Wrote {args.out}")
    else:
        sys.stdout.write(body)
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    with closing(_open(args)) as con:
        stats = GrowthEngine(con).stats(resolve_repository(con, args.repository))
    if args.json:
        print(json.dumps(stats, indent=2, sort_keys=True))
    else:
        _print_stats(stats)
    return 0


def _cmd_forward(args: argparse.Namespace) -> int:
    with closing(_open(args)) as con:
        repo = resolve_repository(con, args.repository)
        result = GrowthEngine(con).record_forward(repo, args.referrer, args.referred)
    print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
    return 0


def _cmd_digest_build(args: argparse.Namespace) -> int:
    with closing(_open(args)) as con:
        repo = resolve_repository(con, args.repository)
        job = GrowthEngine(con).build_digest(repo, args.start, args.end)
    print(json.dumps(job.to_dict(), indent=2, sort_keys=True))
    return 0


def _cmd_digest_schedule(args: argparse.Namespace) -> int:
    now = parse_ts(args.now) if args.now else datetime.now(UTC)
    with closing(_open(args)) as con:
        if args.enqueue:
            from repogrowth.queueing.tasks import enqueue, task_build_digest

            due = digest.schedule_due_digests(
                con, now, lambda rid, s, e: enqueue(task_build_digest, rid, s, e)
            )
        else:
            engine = GrowthEngine(con)
            due = digest.schedule_due_digests(
                con, now, lambda rid, s, e: engine.build_digest(rid, s, e)
            )
    for rid, start, end in due:
        print(f"repository {rid}: [{start}, {end})")
    print(f"{len(due)} digest(s) {'enqueued' if args.enqueue else 'built'}")
    return 0


def _cmd_digest_dispatch(args: argparse.Namespace) -> int:
    with closing(_open(args)) as con:
        job = GrowthEngine(con).dispatch_digest(args.job_id)
    print(json.dumps(job.to_dict(), indent=2, sort_keys=True))
    return 0


def _cmd_bounces(args: argparse.Namespace) -> int:
    """Apply DSN (.eml) files: every bounced address found is deactivated."""
    total = 0
    with closing(_open(args)) as con:
        for p in args.inputs:
            touched = digest.handle_bounce_message(con, Path(p).read_bytes(), ignore=args.ignore)
            for addr, n in sorted(touched.items()):
                print(f"{p}: {addr} -> {n} repository(ies)")
            total += len(touched)
    print(f"{total} bounced address(es)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="repogrowth",
        description="Repository growth engine: imports, exports, snowball forwards and digests.",
    )
    parser.add_argument(
        "--db", default=None, help="SQLite path (default: DATABASE_URL/DATABASE_PATH)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sp = subparsers.add_parser("init-db", help="Create the schema.")
    sp.set_defaults(func=_cmd_init_db)

    sp = subparsers.add_parser("create-repo", help="Create a repository.")
    sp.add_argument("name")
    sp.add_argument("--owner", required=True, help="Owner user id")
    sp.add_argument("--description", default=None)
    sp.set_defaults(func=_cmd_create_repo)

    sp = subparsers.add_parser("add-moderator", help="Let a user moderate a repository.")
    sp.add_argument("repository", help="Repository name or id")
    sp.add_argument("user_id")
    sp.add_argument("--actor", required=True, help="Acting user id (must be the owner)")
    sp.set_defaults(func=_cmd_add_moderator)

    sp = subparsers.add_parser(
        "archive", help="Archive a repository; it stops admitting addresses."
    )
    sp.add_argument("repository", help="Repository name or id")
    sp.add_argument("--actor", required=True, help="Acting user id (must be the owner)")
    sp.set_defaults(func=_cmd_archive)

    sp = subparsers.add_parser("import", help="Import CSV files into a repository.")
    sp.add_argument("repository", help="Repository name or id")
    sp.add_argument("inputs", nargs="+", help="Input .csv files")
    sp.add_argument("--imported-by", default=None)
    sp.set_defaults(func=_cmd_import)

    sp = subparsers.add_parser("export", help="Export a repository as CSV.")
    sp.add_argument("repository", help="Repository name or id")
    sp.add_argument("--out", default=None, help="Output file (default: stdout)")
    sp.add_argument("--include-inactive", action="store_true")
    sp.add_argument(
        "--source", action="append", default=None, help="Limit to a source (repeatable)"
    )
    sp.set_defaults(func=_cmd_export)

    sp = subparsers.add_parser("stats", help="Show repository counters.")
    sp.add_argument("repository", help="Repository name or id")
    sp.add_argument("--json", action="store_true")
    sp.set_defaults(func=_cmd_stats)

    sp = subparsers.add_parser("forward", help="Record one snowball forward.")
    sp.add_argument("repository", help="Repository name or id")
    sp.add_argument("referrer")
    sp.add_argument("referred")
    sp.set_defaults(func=_cmd_forward)

    digest_parser = subparsers.add_parser("digest", help="Digest jobs.")
    digest_sub = digest_parser.add_subparsers(dest="digest_command", required=True)

    sp = digest_sub.add_parser("build", help="Build the digest for one window.")
    sp.add_argument("repository", help="Repository name or id")
    sp.add_argument("start", help="Period start, e.g. 2024-05-06T00:00:00Z")
    sp.add_argument("end", help="Period end (exclusive)")
    sp.set_defaults(func=_cmd_digest_build)

    sp = digest_sub.add_parser("schedule", help="Build (or enqueue) every due digest.")
    sp.add_argument("--now", default=None, help="Pretend the current time is this ISO timestamp")
    sp.add_argument(
        "--enqueue", action="store_true", help="Enqueue builds on RQ instead of running inline"
    )
    sp.set_defaults(func=_cmd_digest_schedule)

    sp = digest_sub.add_parser("dispatch", help="Send a built digest to the delivery endpoint.")
    sp.add_argument("job_id", type=int)
    sp.set_defaults(func=_cmd_digest_dispatch)

    sp = subparsers.add_parser("bounces", help="Apply DSN bounce messages.")
    sp.add_argument("inputs", nargs="+", help=".eml files")
    sp.add_argument(
        "--ignore", action="append", default=None, help="Address to ignore (e.g. our sender)"
    )
    sp.set_defaults(func=_cmd_bounces)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except (
        RepositoryNotFound,
        ImportNotFound,
        RepositoryExists,
        PermissionDenied,
        DeliveryError,
        ValueError,
    ) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    raise SystemExit(main())
