# repogrowth/normalize.py
"""
Address normalization.

Every component calls normalize_address() before touching the ledger and
compares addresses only through dedup_key(); raw strings are never compared.

Canonical form:
  - NFKC + surrounding whitespace trimmed
  - domain lowercased (IDNA/punycode for non-ASCII domains)
  - local part case preserved (RFC 5321 allows case-sensitive mailboxes)

Dedup key:
  - lowercase of the whole canonical address, so "Bob@X.com" and
    "bob@x.com" are the same ledger entry even though the first keeps its
    display casing.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable

from repogrowth.exceptions import InvalidFormat

_MAX_LOCAL = 64
_MAX_TOTAL = 254

_WS_RE = re.compile(r"\s", re.UNICODE)


def _to_nfkc(s: str) -> str:
    return unicodedata.normalize("NFKC", s)


def norm_domain(domain: str | None) -> str | None:
    if not domain:
        return None
    d = _to_nfkc(str(domain)).strip().lower()
    if d.isascii():
        return d
    try:
        return d.encode("idna").decode("ascii")
    except UnicodeError:
        return None


def normalize_address(raw: str | None) -> str:
    """
    Return the canonical form of `raw` or raise InvalidFormat.

    Rejects:
      - anything without exactly one '@'
      - empty local part or empty domain
      - domain without a dot, or with empty labels ("a@b..com", "a@.com")
      - embedded whitespace
    """
    if raw is None:
        raise InvalidFormat("", "empty")
    s = _to_nfkc(str(raw)).strip()
    if not s:
        raise InvalidFormat(str(raw), "empty")
    if _WS_RE.search(s):
        raise InvalidFormat(s, "contains_whitespace")
    if s.count("@") != 1:
        raise InvalidFormat(s, "expected_single_at")

    local, _, domain_raw = s.partition("@")
    if not local:
        raise InvalidFormat(s, "empty_local_part")
    if not domain_raw:
        raise InvalidFormat(s, "empty_domain")
    if "." not in domain_raw:
        raise InvalidFormat(s, "domain_without_dot")
    if any(not label for label in domain_raw.split(".")):
        raise InvalidFormat(s, "empty_domain_label")

    domain = norm_domain(domain_raw)
    if not domain:
        raise InvalidFormat(s, "invalid_domain")
    if len(local) > _MAX_LOCAL:
        raise InvalidFormat(s, "local_part_too_long")

    address = f"{local}@{domain}"
    if len(address) > _MAX_TOTAL:
        raise InvalidFormat(s, "address_too_long")
    return address


def dedup_key(address: str) -> str:
    """Ledger identity for an already-normalized address."""
    return address.lower()


def domain_of(address: str) -> str:
    return address.rpartition("@")[2].lower()


def try_normalize(raw: str | None) -> tuple[str | None, str | None]:
    """
    Non-raising variant for row-level callers.

    Returns (address, None) on success or (None, reason) on failure.
    """
    try:
        return normalize_address(raw), None
    except InvalidFormat as exc:
        return None, exc.reason


def domain_matches(domain: str, patterns: Iterable[str]) -> bool:
    """
    True if `domain` equals one of `patterns` or is a subdomain of one.

    "mail.spam.com" matches "spam.com"; "notspam.com" does not.
    """
    d = domain.lower()
    for p in patterns:
        p = p.strip().lower().lstrip("@")
        if not p:
            continue
        if d == p or d.endswith("." + p):
            return True
    return False


__all__ = [
    "normalize_address",
    "dedup_key",
    "domain_of",
    "try_normalize",
    "norm_domain",
    "domain_matches",
]
