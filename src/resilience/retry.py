"""Retry with exponential backoff.

Runs a fallible async operation a bounded number of times, logging each
failed attempt as a classified error and suspending (non-blocking)
between attempts.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

from .config import DEFAULT_RETRY_CONFIG, JITTER_RATIO, RetryConfig
from .errors import DeliveryError, ErrorKind, ErrorLog

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_delay(
    attempt: int,
    config: RetryConfig,
    rand: Callable[[], float] = random.random,
) -> float:
    """Compute the wait after a failed attempt.

    Args:
        attempt: One-based number of the attempt that just failed.
        config: Retry configuration.
        rand: Source of uniform values in [0, 1), for jitter.

    Returns:
        Delay in seconds: the capped exponential delay plus up to 10%
        jitter.
    """
    delay = min(
        config.base_delay * config.backoff_multiplier ** (attempt - 1),
        config.max_delay,
    )
    return delay + delay * JITTER_RATIO * rand()


class RetryPolicy:
    """Bounded-attempt executor with exponential backoff and jitter."""

    def __init__(
        self,
        error_log: ErrorLog,
        config: RetryConfig = DEFAULT_RETRY_CONFIG,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self._error_log = error_log
        self._config = config
        self._sleep = sleep
        self._rand = rand

    @property
    def config(self) -> RetryConfig:
        return self._config

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        kind: ErrorKind,
        context: Optional[Mapping[str, Any]] = None,
        config: Optional[RetryConfig] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or attempts run out.

        Raises:
            DeliveryError: terminal (non-retryable) error of ``kind``
                wrapping the last failure.
        """
        cfg = config or self._config
        ctx = dict(context or {})
        last_exc: Optional[BaseException] = None
        attempts_made = 0

        for attempt in range(1, cfg.max_attempts + 1):
            attempts_made = attempt
            try:
                if cfg.timeout is not None:
                    return await asyncio.wait_for(operation(), timeout=cfg.timeout)
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_exc = exc
                more = attempt < cfg.max_attempts and self._should_retry(exc, cfg)

                self._error_log.log(
                    DeliveryError(
                        kind,
                        f"Attempt {attempt}/{cfg.max_attempts} failed: {exc}",
                        retryable=more,
                        context={**ctx, "attempt": attempt},
                        caused_by=exc,
                    )
                )

                if not more:
                    break

                delay = compute_delay(attempt, cfg, self._rand)
                logger.warning(
                    "Retry %d/%d for %s after %.2fs: %s",
                    attempt,
                    cfg.max_attempts,
                    kind.value,
                    delay,
                    exc,
                )
                await self._sleep(delay)

        logger.error(
            "Giving up on %s after %d attempt(s): %s",
            kind.value,
            attempts_made,
            last_exc,
        )
        raise DeliveryError(
            kind,
            f"Operation failed after {attempts_made} attempts",
            retryable=False,
            context={**ctx, "attempts": attempts_made},
            caused_by=last_exc,
        ) from last_exc

    @staticmethod
    def _should_retry(exc: BaseException, cfg: RetryConfig) -> bool:
        if isinstance(exc, DeliveryError) and not exc.retryable:
            return False
        return isinstance(exc, cfg.retryable_exceptions)
