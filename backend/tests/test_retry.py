from unittest.mock import MagicMock

import pytest

from app.errors import TranscriptionError, is_transient
from app.utils.retry import RetryPolicy, retry_with_backoff


def test_delay_doubles_up_to_the_cap():
    policy = RetryPolicy(max_attempts=6, base_delay=2, max_delay=10)

    assert [policy.delay_for(n) for n in range(1, 6)] == [2, 4, 8, 10, 10]


def test_succeeds_after_transient_failures():
    sleep = MagicMock()
    operation = MagicMock(side_effect=[TranscriptionError("503", transient=True), "text"])

    result = retry_with_backoff(operation, RetryPolicy(max_attempts=3, base_delay=1), retry_on=is_transient, sleep=sleep)

    assert result == "text"
    sleep.assert_called_once_with(1)


def test_non_transient_error_is_raised_immediately():
    sleep = MagicMock()
    operation = MagicMock(side_effect=TranscriptionError("400", transient=False))

    with pytest.raises(TranscriptionError):
        retry_with_backoff(operation, RetryPolicy(max_attempts=3), retry_on=is_transient, sleep=sleep)

    assert operation.call_count == 1
    sleep.assert_not_called()


def test_last_error_is_reraised_when_exhausted():
    sleep = MagicMock()
    operation = MagicMock(side_effect=TimeoutError("slow"))

    with pytest.raises(TimeoutError):
        retry_with_backoff(operation, RetryPolicy(max_attempts=3, base_delay=1), sleep=sleep)

    assert operation.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [1, 2]
