"""
Tests for Server Clocks
=======================

Tests the time sources behind every expiry decision.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from healthchain.api.access.clock import ManualClock, SystemClock, get_clock


class TestManualClock:
    """Tests for the controllable clock."""

    def test_naive_start_is_utc(self):
        """Naive start times should be read as UTC."""
        clock = ManualClock(datetime(2026, 1, 1, 12, 0))
        assert clock.now().tzinfo == timezone.utc

    def test_advance(self):
        """Advance should move time forward by the delta."""
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        clock = ManualClock(start)

        clock.advance(timedelta(minutes=5))

        assert clock.now() == start + timedelta(minutes=5)

    def test_set_converts_to_utc(self):
        """Set should normalise other offsets to UTC."""
        clock = ManualClock()
        plus_two = timezone(timedelta(hours=2))

        clock.set(datetime(2026, 1, 1, 14, 0, tzinfo=plus_two))

        assert clock.now() == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert clock.now().utcoffset() == timedelta(0)


class TestSystemClock:
    """Tests for the wall clock."""

    def test_now_is_aware_utc(self):
        """Should return timezone-aware UTC."""
        assert SystemClock().now().tzinfo == timezone.utc

    def test_never_goes_backwards(self):
        """A host clock step back should not be visible."""
        clock = SystemClock()
        later = datetime(2026, 6, 1, 12, 0, 5, tzinfo=timezone.utc)
        earlier = datetime(2026, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

        with patch("healthchain.api.access.clock.datetime") as mock_dt:
            mock_dt.now.side_effect = [later, earlier]
            first = clock.now()
            second = clock.now()

        assert first == later
        assert second == later

    def test_default_clock_is_shared(self):
        """The dependency should hand out one process-wide clock."""
        assert get_clock() is get_clock()

    def test_services_share_default_clock(self):
        """Services built without a clock should use the process-wide one."""
        from healthchain.api.access.emergency import EmergencySessionController
        from healthchain.api.access.evaluator import AccessEvaluator
        from healthchain.api.access.grants import AccessGrantRegistry
        from healthchain.api.access.tokens import EphemeralCredentialIssuer

        shared = get_clock()

        assert EphemeralCredentialIssuer(None).clock is shared
        assert EmergencySessionController(None).clock is shared
        assert AccessGrantRegistry(None).clock is shared
        assert AccessEvaluator(None).clock is shared
        assert EphemeralCredentialIssuer(None).audit.clock is shared
