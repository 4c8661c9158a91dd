"""
Tests for the retry wrapper.
"""

import random
import threading
from unittest.mock import Mock

import pytest

from azops_discovery.arm_client import ArmClientError, NotFoundError
from azops_discovery.retry import (
    DEFAULT_MAX_ATTEMPTS,
    DiscoveryCancelled,
    RetryExhaustedError,
    compute_backoff,
    is_transient,
    with_retry,
)


def flaky(failures, result="ok", status_code=401):
    """Operation that fails ``failures`` times before returning ``result``."""
    operation = Mock()
    operation.side_effect = [ArmClientError("credential race", status_code=status_code)] * failures + [result]
    return operation


class TestWithRetry:
    """Tests for attempt counting and success handling."""

    def test_first_attempt_succeeds(self):
        operation = flaky(0)
        assert with_retry(operation, base_delay=0) == "ok"
        assert operation.call_count == 1

    @pytest.mark.parametrize("failures", [1, 5, 9])
    def test_success_after_failures(self, failures):
        """N < 10 failures followed by success yields exactly one result."""
        operation = flaky(failures, result=["rg-a"])
        assert with_retry(operation, base_delay=0) == ["rg-a"]
        assert operation.call_count == failures + 1

    def test_exhausted_after_ten_attempts(self):
        operation = Mock(side_effect=ArmClientError("boom", status_code=503))

        with pytest.raises(RetryExhaustedError) as exc_info:
            with_retry(operation, description="list_resource_groups", base_delay=0)

        assert DEFAULT_MAX_ATTEMPTS == 10
        assert operation.call_count == 10
        assert exc_info.value.attempts == 10
        assert isinstance(exc_info.value.last_error, ArmClientError)
        assert "list_resource_groups" in str(exc_info.value)

    def test_custom_attempt_ceiling(self):
        operation = Mock(side_effect=ArmClientError("boom"))
        with pytest.raises(RetryExhaustedError):
            with_retry(operation, max_attempts=3, base_delay=0)
        assert operation.call_count == 3

    def test_non_transient_error_is_not_retried(self):
        operation = Mock(side_effect=NotFoundError("/subscriptions/x"))
        with pytest.raises(NotFoundError):
            with_retry(operation, base_delay=0)
        assert operation.call_count == 1

    def test_unrelated_exception_propagates(self):
        operation = Mock(side_effect=KeyError("id"))
        with pytest.raises(KeyError):
            with_retry(operation, base_delay=0)
        assert operation.call_count == 1

    def test_on_retry_called_between_attempts(self):
        attempts = []
        with_retry(flaky(3), base_delay=0, on_retry=lambda state: attempts.append(state.attempt))
        assert attempts == [1, 2, 3]

    def test_backoff_sleeps_are_bounded(self):
        sleep = Mock()
        with_retry(flaky(4), base_delay=0.5, max_delay=1.0, sleep=sleep)

        assert sleep.call_count == 4
        for call in sleep.call_args_list:
            assert 0 <= call.args[0] <= 1.0

    def test_zero_base_delay_retries_immediately(self):
        sleep = Mock()
        with_retry(flaky(2), base_delay=0, sleep=sleep)
        sleep.assert_not_called()


class TestCancellation:
    """Tests for cancellation between attempts."""

    def test_cancelled_before_first_attempt(self):
        event = threading.Event()
        event.set()
        operation = Mock(return_value="ok")

        with pytest.raises(DiscoveryCancelled):
            with_retry(operation, cancel_event=event)
        operation.assert_not_called()

    def test_cancelled_during_retries(self):
        event = threading.Event()
        calls = []

        def operation():
            calls.append(1)
            if len(calls) == 2:
                event.set()
            raise ArmClientError("not yet", status_code=401)

        with pytest.raises(DiscoveryCancelled):
            with_retry(operation, base_delay=0, cancel_event=event)
        assert len(calls) == 2


class TestHelpers:
    """Tests for backoff and transient classification."""

    def test_compute_backoff_range(self):
        rng = random.Random(42)
        for attempt in range(1, 11):
            delay = compute_backoff(attempt, 0.5, 8.0, rng)
            assert 0 <= delay <= min(8.0, 0.5 * 2 ** (attempt - 1))

    def test_compute_backoff_disabled(self):
        assert compute_backoff(5, 0, 8.0) == 0.0

    @pytest.mark.parametrize(
        "status_code,expected",
        [(None, True), (401, True), (403, True), (429, True), (500, True), (503, True), (400, False), (404, False)],
    )
    def test_is_transient(self, status_code, expected):
        assert is_transient(ArmClientError("x", status_code=status_code)) is expected

    def test_plain_exception_is_not_transient(self):
        assert is_transient(RuntimeError("x")) is False
