"""Generic retry loop for operations against flaky cloud APIs.

A RetryPolicy pairs a classifier (which failures are worth another try)
with a fixed backoff and an attempt and/or time budget. retry_async() runs
an operation under that policy using tenacity:

- a permanent failure is re-raised unchanged, immediately
- a retriable failure on the final attempt becomes ExhaustedRetriesError
- with retry_on_result, results can be retried too (e.g. an empty query);
  when the budget runs out on such a result, that result is returned

Example:
    >>> policy = RetryPolicy(
    ...     classifier=classify.should_retry_start,
    ...     backoff_seconds=60,
    ...     max_delay=20 * 60,
    ...     description="start VM",
    ... )
    >>> output = await retry_async(lambda: run_gcloud(settings, args), policy)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_fixed,
)

from gce_testing._logging import get_logger
from gce_testing.exceptions import ExhaustedRetriesError, HarnessError

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How to retry one kind of operation.

    Attributes:
        classifier: True for failures worth another attempt
        backoff_seconds: Fixed pause between attempts
        max_attempts: Attempt budget (None = unbounded)
        max_delay: Overall deadline in seconds, covering attempts and pauses
            (None = unbounded). An attempt still running at the deadline is
            cancelled.
        attempt_timeout: Deadline for a single attempt (None = unbounded).
            Expiry surfaces as TimeoutError and is classified like any error.
        description: Used in log lines and ExhaustedRetriesError messages
        retry_on_result: True for results that call for another attempt
    """

    classifier: Callable[[BaseException], bool]
    backoff_seconds: float
    max_attempts: int | None = None
    max_delay: float | None = None
    attempt_timeout: float | None = None
    description: str = "operation"
    retry_on_result: Callable[[Any], bool] | None = None


def _stop(policy: RetryPolicy) -> Any:
    stop: Any = stop_never
    if policy.max_attempts is not None:
        stop = stop_after_attempt(policy.max_attempts)
    if policy.max_delay is not None:
        stop = stop_after_delay(policy.max_delay) if stop is stop_never else stop | stop_after_delay(policy.max_delay)
    return stop


def _retry(policy: RetryPolicy) -> Any:
    retry: Any = retry_if_exception(lambda e: isinstance(e, Exception) and policy.classifier(e))
    if policy.retry_on_result is not None:
        retry = retry | retry_if_result(policy.retry_on_result)
    return retry


def _give_up(policy: RetryPolicy, retry_state: RetryCallState) -> Any:
    """Called by tenacity once the attempt budget is spent."""
    outcome = retry_state.outcome
    if outcome is None:
        raise HarnessError(
            f"{policy.description}: retry budget spent before any attempt finished",
            context={"attempts": retry_state.attempt_number},
        )
    if not outcome.failed:
        logger.info(
            f"{policy.description}: giving up after {retry_state.attempt_number} attempt(s)",
            extra={"attempts": retry_state.attempt_number},
        )
        return outcome.result()
    cause = outcome.exception()
    raise ExhaustedRetriesError(policy.description, retry_state.attempt_number, cause) from cause


async def retry_async(operation: Callable[[], Awaitable[T]], policy: RetryPolicy) -> T:
    """Run `operation` until it succeeds or `policy` gives up.

    Raises:
        ExhaustedRetriesError: Budget spent and the last attempt failed with
            a retriable error (attached as `cause`)
        Exception: The first permanent error, unchanged
    """
    last_error: BaseException | None = None
    attempts = 0

    async def attempt_once() -> T:
        nonlocal attempts, last_error
        attempts += 1
        try:
            async with asyncio.timeout(policy.attempt_timeout):
                return await operation()
        except Exception as e:
            last_error = e
            raise

    retrying = AsyncRetrying(
        stop=_stop(policy),
        wait=wait_fixed(policy.backoff_seconds),
        retry=_retry(policy),
        retry_error_callback=lambda retry_state: _give_up(policy, retry_state),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    deadline = asyncio.timeout(policy.max_delay)
    try:
        async with deadline:
            return await retrying(attempt_once)
    except TimeoutError as e:
        if not deadline.expired():
            raise
        cause = last_error or e
        raise ExhaustedRetriesError(
            f"{policy.description} did not succeed within {policy.max_delay}s",
            attempts,
            cause,
        ) from cause
