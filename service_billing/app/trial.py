"""
Trial clock.
"""

import math
from datetime import datetime, timezone
from typing import Callable, Optional

from .models import TrialStatus, utc_now


DEFAULT_TRIAL_LENGTH_DAYS = 5
SECONDS_PER_DAY = 86400


class TrialClock:
    """Computes trial activity from a start timestamp and a fixed length."""

    def __init__(self, trial_length_days: int = DEFAULT_TRIAL_LENGTH_DAYS,
                 now: Callable[[], datetime] = utc_now):
        self.trial_length_days = trial_length_days
        self._now = now

    def status(self, trial_started_at: Optional[datetime], trial_consumed: bool) -> TrialStatus:
        """Trial status for one identity.

        Consumption is a one-way latch: once set the trial is inactive no
        matter what the clock says. A trial that has not started yet is
        active with the full length remaining.
        """
        if trial_consumed:
            return TrialStatus(active=False, days_remaining=0)

        if trial_started_at is None:
            return TrialStatus(active=True, days_remaining=self.trial_length_days)

        if trial_started_at.tzinfo is None:
            trial_started_at = trial_started_at.replace(tzinfo=timezone.utc)

        elapsed_seconds = (self._now() - trial_started_at).total_seconds()
        # A start time in the future (clock skew) counts as zero days elapsed
        elapsed_days = max(0, math.floor(elapsed_seconds / SECONDS_PER_DAY))
        days_remaining = max(0, self.trial_length_days - elapsed_days)

        return TrialStatus(active=days_remaining > 0, days_remaining=days_remaining)
