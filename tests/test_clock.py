"""Tests for digest_kernel.domain.clock."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from digest_kernel.domain.clock import DeterministicClock, SystemClock


class TestDeterministicClock:
    def test_fixed_until_advanced(self):
        clock = DeterministicClock(datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc))
        assert clock.now() == clock.now()
        clock.advance(90)
        assert clock.now() == datetime(2024, 3, 1, 18, 1, 30, tzinfo=timezone.utc)

    def test_set_time_resets_advance(self):
        clock = DeterministicClock()
        clock.advance(3600)
        clock.set_time(datetime(2024, 3, 2, 9, 0, tzinfo=timezone.utc))
        assert clock.today() == date(2024, 3, 2)

    def test_today_follows_clock_zone(self):
        pacific = ZoneInfo("America/Los_Angeles")
        clock = DeterministicClock(datetime(2024, 3, 1, 20, 0, tzinfo=pacific))
        # Already March 2nd in UTC, still March 1st locally.
        assert clock.today() == date(2024, 3, 1)


class TestSystemClock:
    def test_aware_in_requested_zone(self):
        tz = ZoneInfo("Europe/Berlin")
        assert SystemClock(tz).now().tzinfo is tz

    def test_defaults_to_utc(self):
        assert SystemClock().now().tzinfo is timezone.utc
