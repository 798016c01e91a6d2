"""
Retry policy shared by every upsert call site.

Transient failures (timeouts, connection resets, DNS failures, generic
network errors) are retried with a linear backoff; anything else is
re-raised on the first attempt so the caller can fall back.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
import requests
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_incrementing

from .errors import WriteFailure

logger = logging.getLogger(__name__)

RETRYABLE_MESSAGE = re.compile(
    r"fetch failed|timeout|timed out|ECONNRESET|connection reset|ETIMEDOUT|ENOTFOUND|"
    r"name resolution|getaddrinfo|network",
    re.IGNORECASE,
)

RETRYABLE_EXCEPTIONS = (
    TimeoutError,
    ConnectionError,
    httpx.TransportError,
    requests.exceptions.Timeout,
    requests.exceptions.ConnectionError,
)


def is_retryable_error(error: BaseException) -> bool:
    """True for transient network / timeout class errors"""
    if isinstance(error, WriteFailure):
        return error.retryable
    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return True
    return bool(RETRYABLE_MESSAGE.search(str(error) or ""))


@dataclass
class RetryPolicy:
    """
    Bounded retry with linear backoff.

    Attributes:
        max_attempts: Total attempts including the first one
        backoff_seconds: Delay unit; the wait after attempt n is backoff_seconds * n
        is_retryable: Predicate deciding whether an error is worth retrying
        sleep: Awaitable sleep, injectable so tests never wait
    """
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep)

    def backoff(self, attempt: int) -> float:
        return self.backoff_seconds * attempt

    async def call(
        self,
        operation: Callable[[], Awaitable[Any]],
        on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    ) -> Any:
        """
        Run operation under this policy.

        Args:
            operation: Zero-argument coroutine function to attempt
            on_retry: Called as (attempt, delay_seconds, error) before each retry sleep

        Returns:
            The operation's result

        Raises:
            The last error once attempts are exhausted, or the first
            non-retryable error
        """
        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(f"Attempt {retry_state.attempt_number}/{self.max_attempts} failed "
                           f"({error}); retrying in {delay:.1f}s")
            if on_retry:
                on_retry(retry_state.attempt_number, delay, error)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=_before_sleep,
            sleep=self.sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                return await operation()
