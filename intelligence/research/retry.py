"""Retry policy for model calls whose output must parse and validate.

Attempts are spaced linearly: the wait after attempt ``n`` is
``base_delay * n`` seconds.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from intelligence.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
    ):
        self.max_attempts = max_attempts or settings.reconciliation_max_attempts
        self.base_delay = (
            settings.reconciliation_retry_delay_seconds if base_delay is None else base_delay
        )
        self.retry_on = retry_on

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def run(self, attempt_fn: Callable[[int], Awaitable[T]]) -> T:
        """Call ``attempt_fn(attempt_number)`` until it succeeds or attempts run out.

        The last exception is re-raised unchanged when every attempt fails.
        """
        result: T
        async for attempt in self._retrying():
            with attempt:
                result = await attempt_fn(attempt.retry_state.attempt_number)
        return result
