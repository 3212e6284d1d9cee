from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from repogrowth.db import parse_ts, ts_iso8601_z


def test_timestamps_are_canonicalized():
    expected = "2024-05-06T00:00:00Z"
    assert ts_iso8601_z("2024-05-06T00:00:00Z") == expected
    assert ts_iso8601_z("2024-05-06T00:00:00+00:00") == expected
    assert ts_iso8601_z("2024-05-06T02:00:00+02:00") == expected
    assert ts_iso8601_z(" 2024-05-06 ") == expected
    assert ts_iso8601_z("2024-05-06T00:00:00.750Z") == expected
    assert ts_iso8601_z(datetime(2024, 5, 6)) == expected
    assert ts_iso8601_z(datetime(2024, 5, 5, 20, tzinfo=timezone(timedelta(hours=-4)))) == expected


def test_garbage_timestamps_raise():
    for bad in ["yesterday", "2024-13-01", "06/05/2024"]:
        with pytest.raises(ValueError):
            ts_iso8601_z(bad)


def test_blank_means_now():
    before = datetime.now(UTC).replace(microsecond=0)
    assert parse_ts(ts_iso8601_z("")) >= before
    assert parse_ts(ts_iso8601_z(None)) >= before
