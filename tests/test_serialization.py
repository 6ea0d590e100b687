# tests/test_serialization.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from specfleet.schema.serialization import parse_time, to_naive_utc, utc_now


@pytest.mark.parametrize(
    "value",
    ["2024-01-01T10:00:00Z", "2024-01-01T10:00:00+00:00", "2024-01-01T19:00:00+09:00", "2024-01-01T10:00:00"],
)
def test_parse_time_yields_naive_utc(value) -> None:
    assert parse_time(value) == datetime(2024, 1, 1, 10, 0, 0)


def test_aware_datetimes_are_converted() -> None:
    aware = datetime(2024, 1, 1, 5, 0, tzinfo=timezone(timedelta(hours=-5)))

    assert to_naive_utc(aware) == datetime(2024, 1, 1, 10, 0)
    assert parse_time(aware).tzinfo is None
    assert parse_time(None) is None
    assert parse_time("") is None


def test_utc_now_is_naive() -> None:
    now = utc_now()
    assert now.tzinfo is None
    assert abs(now - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)
