"""Bounded exponential backoff for transient backend failures."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ..config import MergeSettings
from ..errors import TransientBackendError


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: MergeSettings) -> "RetryPolicy":
        return cls(
            attempts=max(settings.retry_attempts, 1),
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def call_with_retries(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    description: str,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run *operation*, retrying only :class:`TransientBackendError`.

    Every other exception propagates on the first occurrence. After the last
    attempt the final transient error is re-raised unchanged.
    """

    sleep = sleep or time.sleep
    attempts = max(policy.attempts, 1)
    for attempt in range(attempts):
        try:
            return operation()
        except TransientBackendError as error:
            if attempt >= attempts - 1:
                LOGGER.error("%s failed after %s attempts: %s", description, attempts, error)
                raise
            delay = policy.delay_for(attempt)
            LOGGER.warning(
                "%s failed (attempt %s/%s), retrying in %.1fs: %s",
                description,
                attempt + 1,
                attempts,
                delay,
                error,
            )
            if delay > 0:
                sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RetryPolicy", "call_with_retries"]
