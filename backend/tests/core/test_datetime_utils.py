"""
Tests for datetime utilities module.
"""
from datetime import datetime, timedelta, timezone

import pytest

from psikotes.core.datetime_utils import ensure_timezone_aware, seconds_until, utc_now


class TestEnsureTimezoneAware:
    """Tests for ensure_timezone_aware function."""

    def test_naive_datetime_becomes_utc(self):
        """SQLite hands back naive datetimes; they are read as UTC."""
        naive_dt = datetime(2026, 3, 2, 9, 30, 45)

        result = ensure_timezone_aware(naive_dt)

        assert result.tzinfo == timezone.utc
        assert result.replace(tzinfo=None) == naive_dt

    def test_utc_datetime_unchanged(self):
        utc_dt = datetime(2026, 3, 2, 9, 30, 45, tzinfo=timezone.utc)

        assert ensure_timezone_aware(utc_dt) is utc_dt

    def test_non_utc_timezone_preserved(self):
        tz_plus_7 = timezone(timedelta(hours=7))
        aware_dt = datetime(2026, 3, 2, 16, 0, tzinfo=tz_plus_7)

        result = ensure_timezone_aware(aware_dt)

        assert result is aware_dt
        assert result.tzinfo == tz_plus_7

    def test_none_raises_value_error(self):
        with pytest.raises(ValueError, match="datetime cannot be None"):
            ensure_timezone_aware(None)


class TestSecondsUntil:
    NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_future_moment(self):
        assert seconds_until(self.NOW + timedelta(minutes=30), self.NOW) == 1800

    def test_fraction_is_truncated(self):
        moment = self.NOW + timedelta(seconds=59, milliseconds=900)
        assert seconds_until(moment, self.NOW) == 59

    def test_past_moment_floors_at_zero(self):
        assert seconds_until(self.NOW - timedelta(seconds=5), self.NOW) == 0

    def test_naive_moment_compared_as_utc(self):
        naive = datetime(2026, 3, 2, 9, 10)
        assert seconds_until(naive, self.NOW) == 600

    def test_mixed_offsets(self):
        """Same instant expressed in another zone is zero seconds away."""
        jakarta = timezone(timedelta(hours=7))
        assert seconds_until(self.NOW.astimezone(jakarta), self.NOW) == 0


def test_utc_now_is_aware():
    now = utc_now()
    assert now.tzinfo == timezone.utc
