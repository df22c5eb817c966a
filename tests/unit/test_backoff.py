"""Tests for the retry backoff schedule."""
from datetime import datetime, timedelta

import pytest

from leadsync.queue.backoff import RETRY_DELAYS, hint_seconds, next_retry_delay, retry_delay
from leadsync.queue.errors import ErrorCategory, ErrorRecord


class TestRetryDelay:
    def test_schedule(self):
        assert [retry_delay(n) for n in range(5)] == [60, 300, 900, 1800, 3600]

    def test_capped_at_one_hour(self):
        assert retry_delay(5) == 3600
        assert retry_delay(10) == 3600
        assert retry_delay(1000) == 3600

    def test_monotonic(self):
        delays = [retry_delay(n) for n in range(20)]
        assert all(b >= a for a, b in zip(delays, delays[1:]))
        assert all(d == 3600 for d in delays[4:])

    def test_negative_count_rejected(self):
        with pytest.raises(ValueError):
            retry_delay(-1)

    def test_constant_matches_schedule(self):
        assert RETRY_DELAYS[-1] == 3600


class TestNextRetryDelay:
    def test_no_error_uses_schedule(self):
        assert next_retry_delay(2) == 900

    def test_error_without_hint_uses_schedule(self):
        error = ErrorRecord(ErrorCategory.SERVER_ERROR, "boom")
        assert next_retry_delay(1, error) == 300

    def test_hint_overrides_schedule(self):
        error = ErrorRecord(ErrorCategory.RATE_LIMIT, "slow down", retry_after=10)
        assert next_retry_delay(3, error) == 10

    def test_hint_can_exceed_schedule(self):
        error = ErrorRecord(ErrorCategory.RATE_LIMIT, "slow down", retry_after=7200)
        assert next_retry_delay(0, error) == 7200

    def test_consecutive_rate_limits_take_larger_delay(self):
        error = ErrorRecord(ErrorCategory.RATE_LIMIT, "slow down", retry_after=10)
        assert next_retry_delay(2, error, previous_category="rate_limit") == 900

    def test_consecutive_rate_limits_keep_larger_hint(self):
        error = ErrorRecord(ErrorCategory.RATE_LIMIT, "slow down", retry_after=5000)
        assert next_retry_delay(1, error, previous_category="rate_limit") == 5000

    def test_rate_limit_after_other_error_uses_hint(self):
        error = ErrorRecord(ErrorCategory.RATE_LIMIT, "slow down", retry_after=10)
        assert next_retry_delay(2, error, previous_category="server_error") == 10


class TestResetTimeHints:
    NOW = datetime(2025, 1, 15, 9, 0)

    def test_reset_time_measured_from_given_now(self):
        error = ErrorRecord(
            ErrorCategory.RATE_LIMIT, "slow down", retry_at=self.NOW + timedelta(seconds=45)
        )
        assert hint_seconds(error, self.NOW) == 45
        assert next_retry_delay(3, error, now=self.NOW) == 45

    def test_partial_seconds_round_up(self):
        error = ErrorRecord(
            ErrorCategory.RATE_LIMIT, "slow down", retry_at=self.NOW + timedelta(seconds=9.2)
        )
        assert hint_seconds(error, self.NOW) == 10

    def test_past_reset_time_waits_one_second(self):
        error = ErrorRecord(
            ErrorCategory.RATE_LIMIT, "slow down", retry_at=self.NOW - timedelta(minutes=5)
        )
        assert next_retry_delay(2, error, now=self.NOW) == 1

    def test_reset_time_without_now_falls_back_to_schedule(self):
        error = ErrorRecord(
            ErrorCategory.RATE_LIMIT, "slow down", retry_at=self.NOW + timedelta(seconds=45)
        )
        assert hint_seconds(error) is None
        assert next_retry_delay(1, error) == 300

    def test_retry_after_wins_over_reset_time(self):
        error = ErrorRecord(
            ErrorCategory.RATE_LIMIT, "slow down",
            retry_after=20, retry_at=self.NOW + timedelta(seconds=45),
        )
        assert hint_seconds(error, self.NOW) == 20
