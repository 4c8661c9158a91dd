"""
Retry wrapper for flaky list calls.

ARM list operations occasionally fail right after a credential has been
issued. The failure shows up as an exception, not an empty list, so the
call is repeated a bounded number of times with jittered exponential
backoff.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .arm_client import ArmClientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 10


class DiscoveryCancelled(Exception):
    """Raised when a discovery run is cancelled mid-flight."""


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retried call failed."""
    def __init__(self, description: str, attempts: int, last_error: BaseException | None):
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryState:
    """Progress of one retried call."""
    attempt: int = 0
    last_error: BaseException | None = None


def is_transient(error: BaseException) -> bool:
    """Errors that are worth repeating the call for."""
    return isinstance(error, ArmClientError) and error.is_transient


def compute_backoff(attempt: int, base_delay: float, max_delay: float, rng: random.Random | None = None) -> float:
    """Full-jitter exponential backoff for the given (1-based) attempt."""
    if base_delay <= 0:
        return 0.0
    ceiling = min(max_delay, base_delay * (2 ** (attempt - 1)))
    return (rng or random).uniform(0, ceiling)


def with_retry(
    operation: Callable[[], T],
    *,
    description: str = "operation",
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    retry_if: Callable[[BaseException], bool] = is_transient,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[RetryState], None] | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Args:
        operation: Zero-argument callable
        description: Used in log lines and the exhaustion error
        max_attempts: Attempt ceiling
        base_delay: First backoff ceiling in seconds (0 retries immediately)
        max_delay: Backoff cap in seconds
        retry_if: Predicate deciding whether an error is retried
        cancel_event: Aborts the loop between attempts when set
        sleep: Sleep function used when no cancel_event is given
        on_retry: Called with the state before each repeated attempt

    Returns:
        The first successful result

    Raises:
        RetryExhaustedError: When all attempts failed
        DiscoveryCancelled: When ``cancel_event`` is set
        Exception: Any error rejected by ``retry_if``, unchanged
    """
    state = RetryState()

    while state.attempt < max_attempts:
        if cancel_event is not None and cancel_event.is_set():
            raise DiscoveryCancelled(f"{description} cancelled")

        state.attempt += 1
        try:
            return operation()
        except Exception as e:
            if not retry_if(e):
                raise
            state.last_error = e

        if state.attempt >= max_attempts:
            break

        delay = compute_backoff(state.attempt, base_delay, max_delay)
        logger.warning(
            f"{description} failed: {state.last_error}, retrying in {delay:.1f}s "
            f"(attempt {state.attempt}/{max_attempts})",
            extra={"step": description, "attempt": state.attempt},
        )
        if on_retry is not None:
            on_retry(state)

        if delay > 0:
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise DiscoveryCancelled(f"{description} cancelled")
            else:
                sleep(delay)

    raise RetryExhaustedError(description, state.attempt, state.last_error)
