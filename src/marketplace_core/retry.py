"""Bounded exponential-backoff retry for operations that hit transient storage errors."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import RetryExhausted, TransientIOFailure
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 200
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 5_000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got: {self.base_delay_ms}")
        if self.backoff_multiplier < 1:
            raise ValueError(f"backoff_multiplier must be >= 1, got: {self.backoff_multiplier}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay_ms=settings.retry_max_delay_ms,
        )


def run_with_retry(
    policy: RetryPolicy,
    operation: Callable[[], T],
    *,
    name: str,
    retryable: tuple[type[BaseException], ...] = (TransientIOFailure,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run *operation* until it succeeds or *policy* runs out of attempts.

    Only exceptions in *retryable* are retried; anything else propagates on
    the first occurrence.

    Raises:
        RetryExhausted: After ``policy.max_attempts`` retryable failures. It
            carries the attempt count and the last error.
    """
    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.base_delay_ms / 1000.0,
            exp_base=policy.backoff_multiplier,
            max=policy.max_delay_ms / 1000.0,
        ),
        retry=retry_if_exception_type(retryable),
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    try:
        return retrying(operation)
    except RetryError as exc:
        attempt = exc.last_attempt
        last_error = attempt.exception()
        logger.error("%s failed after %d attempt(s): %s", name, attempt.attempt_number, last_error)
        raise RetryExhausted(name, attempt.attempt_number, last_error) from last_error
