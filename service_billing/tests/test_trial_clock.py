"""
Unit tests for the trial clock.
"""

from datetime import timedelta

import pytest

from service_billing.app.trial import TrialClock


class TestTrialClock:
    """Test cases for TrialClock."""

    @pytest.fixture
    def clock(self, fixed_now):
        """Create TrialClock pinned to a fixed instant."""
        return TrialClock(trial_length_days=5, now=lambda: fixed_now)

    def test_trial_expired_after_six_days(self, clock, fixed_now):
        """Test a trial started six days ago is over."""
        status = clock.status(fixed_now - timedelta(days=6), False)

        assert status.active is False
        assert status.days_remaining == 0

    def test_fresh_trial(self, clock, fixed_now):
        """Test a trial started now has the full length."""
        status = clock.status(fixed_now, False)

        assert status.active is True
        assert status.days_remaining == 5

    def test_partial_days_round_down_elapsed(self, clock, fixed_now):
        """Test only whole elapsed days are subtracted."""
        status = clock.status(fixed_now - timedelta(days=2, hours=23), False)

        assert status.days_remaining == 3

    def test_last_day_boundary(self, clock, fixed_now):
        """Test the trial ends exactly at its length."""
        assert clock.status(fixed_now - timedelta(days=4, hours=23), False).active is True
        assert clock.status(fixed_now - timedelta(days=5), False).active is False

    def test_consumed_trial_is_inactive(self, clock, fixed_now):
        """Test consumption overrides the clock."""
        status = clock.status(fixed_now, True)

        assert status.active is False
        assert status.days_remaining == 0

    def test_not_started_trial(self, clock):
        """Test a missing start date means the trial has not begun."""
        status = clock.status(None, False)

        assert status.active is True
        assert status.days_remaining == 5

    def test_future_start_is_clamped(self, clock, fixed_now):
        """Test a start time ahead of the clock reports the full length."""
        status = clock.status(fixed_now + timedelta(hours=3), False)

        assert status.days_remaining == 5

    def test_naive_start_treated_as_utc(self, clock, fixed_now):
        """Test naive timestamps are read as UTC."""
        status = clock.status((fixed_now - timedelta(days=1)).replace(tzinfo=None), False)

        assert status.days_remaining == 4

    def test_days_remaining_non_increasing(self, fixed_now):
        """Test days remaining never goes up as time passes."""
        started = fixed_now
        previous = None
        for hours in range(0, 24 * 8, 7):
            clock = TrialClock(5, now=lambda h=hours: started + timedelta(hours=h))
            status = clock.status(started, False)
            assert 0 <= status.days_remaining <= 5
            if previous is not None:
                assert status.days_remaining <= previous
            previous = status.days_remaining
