"""
Email command surface.

An inbound-email collaborator hands us the subject line (or first body
line) of a message plus the sender address. Three commands are understood,
verbs case-insensitive:

    ADD <email> to <RepositoryName>
    STATS <RepositoryName>
    EXPORT <RepositoryName>

Each maps onto one GrowthEngine call. Results are returned as values so
the collaborator can reply to the sender; nothing here raises for bad input
except parse_command(), which raises ValueError for unknown text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from repogrowth.engine import GrowthEngine
from repogrowth.exceptions import InvalidFormat, PermissionDenied, RepositoryNotFound
from repogrowth.models import Source

log = logging.getLogger(__name__)

Verb = Literal["ADD", "STATS", "EXPORT"]

_ADD_RE = re.compile(r"^\s*add\s+(?P<address>\S+)\s+to\s+(?P<repo>\S.*?)\s*$", re.IGNORECASE)
_STATS_RE = re.compile(r"^\s*stats\s+(?P<repo>\S.*?)\s*$", re.IGNORECASE)
_EXPORT_RE = re.compile(r"^\s*export\s+(?P<repo>\S.*?)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class Command:
    verb: Verb
    repository: str
    address: str | None = None


@dataclass
class CommandResult:
    command: Command
    ok: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)


def parse_command(text: str) -> Command:
    line = (text or "").strip().splitlines()[0] if (text or "").strip() else ""
    m = _ADD_RE.match(line)
    if m:
        return Command("ADD", m.group("repo"), m.group("address"))
    m = _STATS_RE.match(line)
    if m:
        return Command("STATS", m.group("repo"))
    m = _EXPORT_RE.match(line)
    if m:
        return Command("EXPORT", m.group("repo"))
    raise ValueError(f"unrecognized command: {line!r}")


def execute(engine: GrowthEngine, command: Command, actor: str | None = None) -> CommandResult:
    try:
        if command.verb == "ADD":
            result = engine.admit(command.repository, command.address or "", Source.API, actor)
            ok = result.outcome.value in (
                "created",
                "reactivated",
                "duplicate",
                "queued_for_review",
            )
            return CommandResult(
                command,
                ok,
                f"{result.address}: {result.outcome.value}"
                + (f" ({result.reason})" if result.reason else ""),
                result.to_dict(),
            )
        if command.verb == "STATS":
            stats = engine.stats(command.repository)
            return CommandResult(
                command,
                True,
                f"{stats['repository']['name']}: {stats['active']} active of {stats['total']}",
                stats,
            )
        csv_text = engine.export(command.repository)
        count = engine.stats(command.repository)["active"]
        return CommandResult(command, True, f"exported {count} address(es)", {"csv": csv_text})
    except RepositoryNotFound:
        return CommandResult(command, False, f"repository {command.repository!r} not found")
    except InvalidFormat as exc:
        return CommandResult(command, False, f"invalid address: {exc.reason}")
    except PermissionDenied as exc:
        return CommandResult(command, False, str(exc))


def handle(engine: GrowthEngine, text: str, actor: str | None = None) -> CommandResult | None:
    """Parse and execute; None when the text is not a command."""
    try:
        command = parse_command(text)
    except ValueError:
        log.debug("Ignoring non-command text from %s", actor)
        return None
    log.info("Command %s on %r from %s", command.verb, command.repository, actor)
    return execute(engine, command, actor)


__all__ = ["Command", "CommandResult", "parse_command", "execute", "handle"]
