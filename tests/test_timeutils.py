from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ranchmarket.common.timeutils import as_utc, is_due, utc_day
from tests.factories import NOW


@pytest.mark.parametrize(
    "raw",
    [
        datetime(2026, 3, 10, 15, 0),
        datetime(2026, 3, 10, 10, 0, tzinfo=timezone(timedelta(hours=-5))),
        "2026-03-10T15:00:00Z",
        1_773_154_800,
        1_773_154_800_000,
    ],
)
def test_as_utc_normalises_stored_shapes(raw) -> None:
    assert as_utc(raw) == NOW


@pytest.mark.parametrize("raw", [None, "", "not-a-date", True, {"seconds": 1}])
def test_as_utc_unreadable_values(raw) -> None:
    assert as_utc(raw) is None


def test_is_due_ignores_missing_deadlines() -> None:
    assert is_due(NOW - timedelta(seconds=1), NOW)
    assert is_due(NOW, NOW)
    assert not is_due(NOW + timedelta(seconds=1), NOW)
    assert not is_due(None, NOW)


def test_utc_day_uses_utc_calendar() -> None:
    late_evening_central = datetime(2026, 3, 10, 21, 30, tzinfo=timezone(timedelta(hours=-5)))
    assert utc_day(late_evening_central) == "2026-03-11"
