"""Bounded retry with a fixed delay."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from podprov.errors import ExhaustedError


logger = logging.getLogger(__name__)


class RetryExecutor:
    """Runs fallible async operations with bounded retries and fixed backoff.

    The delay between attempts is constant. Operations are expected to be
    safe to re-run; the executor only counts attempts.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        """Initialize retry executor."""
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self._sleep = sleep
        self._retry_on = retry_on

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        description: str,
        max_attempts: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> Any:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Returns the operation's result on the first success. Raises
        ``ExhaustedError`` after the last attempt fails.
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        wait = delay if delay is not None else self.delay
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except self._retry_on as e:
                last_error = e
                if attempt < attempts:
                    logger.warning(
                        f"Attempt {attempt} of {attempts} for {description} failed: {e}. "
                        f"Retrying in {wait:g}s"
                    )
                    await self._sleep(wait)
                else:
                    logger.warning(f"Attempt {attempt} of {attempts} for {description} failed: {e}")

        logger.error(f"All attempts failed for {description}")
        raise ExhaustedError(description, attempts, last_error)
