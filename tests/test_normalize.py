from __future__ import annotations

import pytest

from repogrowth.exceptions import InvalidFormat
from repogrowth.normalize import (
    dedup_key,
    domain_matches,
    domain_of,
    normalize_address,
    try_normalize,
)


def test_trims_and_lowercases_domain_only():
    assert normalize_address("  Bob.Smith@Example.COM ") == "Bob.Smith@example.com"


def test_dedup_key_is_case_insensitive():
    a = normalize_address("Bob@Acme.io")
    b = normalize_address("bob@ACME.IO")
    assert a != b
    assert dedup_key(a) == dedup_key(b) == "bob@acme.io"


def test_idna_domain():
    assert normalize_address("user@bücher.de") == "user@xn--bcher-kva.de"


@pytest.mark.parametrize(
    "raw, reason",
    [
        ("notanemail", "expected_single_at"),
        ("@incomplete.com", "empty_local_part"),
        ("user@", "empty_domain"),
        ("a@b@c.com", "expected_single_at"),
        ("user@localhost", "domain_without_dot"),
        ("user@acme..io", "empty_domain_label"),
        ("us er@acme.io", "contains_whitespace"),
        ("   ", "empty"),
        (None, "empty"),
    ],
)
def test_rejects_malformed(raw, reason):
    with pytest.raises(InvalidFormat) as exc:
        normalize_address(raw)
    assert exc.value.reason == reason


def test_local_part_length_cap():
    with pytest.raises(InvalidFormat) as exc:
        normalize_address("x" * 65 + "@acme.io")
    assert exc.value.reason == "local_part_too_long"


def test_try_normalize_never_raises():
    assert try_normalize("a@acme.io") == ("a@acme.io", None)
    assert try_normalize("nope") == (None, "expected_single_at")


def test_domain_matches_subdomains_but_not_suffixes():
    assert domain_matches("spam.com", ["spam.com"])
    assert domain_matches("mail.spam.com", ["Spam.com"])
    assert not domain_matches("notspam.com", ["spam.com"])
    assert not domain_matches("spam.com", [])
    assert domain_of("Bob@Acme.IO") == "acme.io"
