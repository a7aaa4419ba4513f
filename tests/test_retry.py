"""Tests for storage/retry.py."""

from unittest.mock import Mock

import pytest

from bootstick.storage.retry import poll_until


class TestPollUntil:
    """Tests for poll_until()."""

    def test_returns_first_value_without_sleeping(self):
        sleep = Mock()
        assert poll_until(lambda attempt: "ready", max_attempts=3, interval=1.0, sleep=sleep) == "ready"
        sleep.assert_not_called()

    def test_retries_until_value(self):
        sleep = Mock()
        values = iter([None, None, "/media/user/DISK"])

        result = poll_until(lambda attempt: next(values), max_attempts=5, interval=0.5, sleep=sleep)

        assert result == "/media/user/DISK"
        assert sleep.call_count == 2
        sleep.assert_called_with(0.5)

    def test_exhausted_poll_sleeps_once_per_attempt(self):
        """An exhausted poll sleeps exactly max_attempts times."""
        sleep = Mock()
        attempts = []

        result = poll_until(lambda attempt: attempts.append(attempt), max_attempts=4, interval=1.0, sleep=sleep)

        assert result is None
        assert attempts == [1, 2, 3, 4]
        assert sleep.call_count == 4

    def test_falsy_values_other_than_none_count(self):
        assert poll_until(lambda attempt: 0, max_attempts=2, interval=1.0, sleep=Mock()) == 0

    def test_sleep_exception_propagates(self):
        """A cancellable sleep aborts the poll."""
        sleep = Mock(side_effect=KeyboardInterrupt)
        with pytest.raises(KeyboardInterrupt):
            poll_until(lambda attempt: None, max_attempts=3, interval=1.0, sleep=sleep)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            poll_until(lambda attempt: None, max_attempts=0, interval=1.0)
