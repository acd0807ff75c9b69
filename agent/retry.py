"""Rate-limit retry for provider requests.

Only rate-limit-class failures (HTTP 429 or a rate-limit message) are
retried.  Everything else propagates on first occurrence so non-idempotent
failures are never replayed blindly.

Usage:
    from agent.retry import RetryPolicy

    policy = RetryPolicy()
    response = await policy.run(lambda: client.chat.completions.create(**payload),
                                cancel_token=token)

The sleep between attempts races the cancel token: cancelling during a
backoff raises ``InferenceCancelled`` at once, with no further attempt.
"""

import asyncio
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from agent.cancellation import CancelToken, InferenceCancelled, raise_if_cancelled
from loaf_constants import (
    MAX_429_RETRY_ATTEMPTS,
    RETRY_BASE_DELAY_MS,
    RETRY_JITTER_MS,
    RETRY_MAX_DELAY_MS,
    RETRY_MIN_DELAY_MS,
)

logger = logging.getLogger(__name__)

# Signature: (attempt, delay_ms, error) -> None
RetryCallback = Callable[[int, int, Exception], None]

_RATE_LIMIT_PATTERNS = (
    "too many requests",
    "rate limit",
    '"status":429',
    '"code":429',
)


def summarize_error(error: BaseException) -> str:
    message = str(error).strip()
    return message or type(error).__name__


def is_rate_limit_error(error: BaseException) -> bool:
    """True for an explicit 429 status or a rate-limit message."""
    for attr in ("status_code", "status"):
        status = getattr(error, attr, None)
        if isinstance(status, int) and status == 429:
            return True
    text = summarize_error(error).lower()
    return any(pattern in text for pattern in _RATE_LIMIT_PATTERNS)


@dataclass
class RetryStats:
    attempts: int = 0
    delays_ms: List[int] = field(default_factory=list)


@dataclass
class RetryPolicy:
    max_attempts: int = MAX_429_RETRY_ATTEMPTS
    base_delay_ms: int = RETRY_BASE_DELAY_MS
    max_delay_ms: int = RETRY_MAX_DELAY_MS
    jitter_ms: int = RETRY_JITTER_MS
    min_delay_ms: int = RETRY_MIN_DELAY_MS
    random: Callable[[], float] = random.random
    # Injected for tests; must accept (seconds, cancel_token)
    sleep: Optional[Callable[[float, Optional[CancelToken]], Awaitable[None]]] = None
    classifier: Callable[[BaseException], bool] = is_rate_limit_error
    stats: RetryStats = field(default_factory=RetryStats)

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, config.retry_attempts),
            base_delay_ms=max(0, config.retry_base_delay_ms),
            max_delay_ms=max(0, config.retry_max_delay_ms),
        )

    def compute_delay_ms(self, attempt: int) -> int:
        exponential = self.base_delay_ms * math.pow(2, max(0, attempt - 1))
        capped = min(self.max_delay_ms, exponential)
        jitter = math.floor(self.random() * self.jitter_ms)
        return max(self.min_delay_ms, math.floor(capped + jitter))

    def is_retryable(self, error: BaseException) -> bool:
        return self.classifier(error)

    async def _sleep(self, seconds: float, cancel_token: Optional[CancelToken]) -> None:
        if self.sleep is not None:
            await self.sleep(seconds, cancel_token)
            raise_if_cancelled(cancel_token)
            return
        if cancel_token is None:
            await asyncio.sleep(seconds)
            return
        await cancel_token.sleep(seconds)

    async def run(
        self,
        fn: Callable[[], Awaitable[Any]],
        *,
        cancel_token: Optional[CancelToken] = None,
        on_retry: Optional[RetryCallback] = None,
        context: str = "provider request",
    ) -> Any:
        """Await ``fn()`` until it succeeds, retrying rate-limit failures.

        Raises:
            InferenceCancelled: the token fired before an attempt or during a sleep.
            Exception: the first non-retryable error, or the last rate-limit
                error once ``max_attempts`` is reached.
        """
        attempt = 0
        self.stats = RetryStats()
        while True:
            raise_if_cancelled(cancel_token)
            attempt += 1
            self.stats.attempts = attempt
            try:
                return await fn()
            except InferenceCancelled:
                raise
            except Exception as e:
                if not self.is_retryable(e) or attempt >= self.max_attempts:
                    raise
                delay_ms = self.compute_delay_ms(attempt)
                self.stats.delays_ms.append(delay_ms)
                logger.warning(
                    "%s rate limited (attempt %d/%d), retrying in %d ms: %s",
                    context, attempt, self.max_attempts, delay_ms, summarize_error(e),
                )
                if on_retry is not None:
                    on_retry(attempt, delay_ms, e)
                await self._sleep(delay_ms / 1000.0, cancel_token)
