from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..contracts import RetryPolicy
    from ..scheduling import Scheduler


def compute_backoff(attempt: int, delay: float) -> float:
    """Compute linear backoff: ``delay`` seconds times the retry number."""
    return max(0.0, delay) * attempt


def max_attempts(policy: Optional["RetryPolicy"]) -> int:
    """Total executions allowed by ``policy`` (initial try plus retries)."""
    return 1 + (policy.max_retries if policy else 0)


async def schedule_retry(
    scheduler: "Scheduler", attempt: int, policy: "RetryPolicy"
) -> None:
    """Sleep for computed backoff delay before retry number ``attempt``."""
    delay = compute_backoff(attempt, policy.retry_delay_seconds)
    await scheduler.sleep(delay)
