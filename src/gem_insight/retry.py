"""Bounded retry with a per-attempt timeout, shared by every external call site."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "retry"})

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how long an external call may be attempted.

    ``attempts`` counts the first call, so ``attempts=2`` allows one retry.
    ``timeout_s=None`` disables the per-attempt timeout. Backoff doubles after
    each failed attempt.
    """

    attempts: int = 2
    timeout_s: float | None = 30.0
    backoff_s: float = 0.0
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def delay_after(self, attempt: int) -> float:
        if self.backoff_s <= 0:
            return 0.0
        return self.backoff_s * (2 ** (attempt - 1))


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str,
    on_timeout: Callable[[float], BaseException] | None = None,
    on_attempt: Callable[[int], None] | None = None,
    log_extra: dict[str, Any] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``policy`` is exhausted.

    A timed-out attempt is converted through ``on_timeout`` (when given) so
    callers see their own timeout type. Exceptions outside ``policy.retry_on``
    propagate immediately; the last failure is re-raised once attempts run out.
    """

    attempts = max(1, policy.attempts)
    last_error: BaseException | None = None
    context = dict(log_extra or {})

    for attempt in range(1, attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            if policy.timeout_s is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=policy.timeout_s)
        except asyncio.TimeoutError as exc:
            error: BaseException = on_timeout(policy.timeout_s or 0.0) if on_timeout is not None else exc
            if not isinstance(error, policy.retry_on):
                raise error from exc
            last_error = error
        except policy.retry_on as exc:
            last_error = exc

        LOGGER.warning(
            "retry_attempt_failed",
            extra={
                **context,
                "operation": label,
                "attempt": attempt,
                "max_attempts": attempts,
                "error_type": type(last_error).__name__,
                "error": str(last_error),
            },
        )
        if attempt < attempts:
            delay = policy.delay_after(attempt)
            if delay > 0:
                await asyncio.sleep(delay)

    if last_error is None:
        raise RuntimeError(f"{label}: no attempt was made")
    raise last_error


__all__ = ["RetryPolicy", "call_with_retry"]
