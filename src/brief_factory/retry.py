from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import MalformedOutputError, PermanentError, RetryExhaustedError
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]

PERMANENT_ERROR_MARKERS: tuple[str, ...] = (
    "401",
    "unauthorized",
    "403",
    "forbidden",
    "404",
    "not found",
    "invalid api key",
    "invalid_api_key",
)

TRANSIENT_ERROR_MARKERS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "econnrefused",
    "connection refused",
    "socket hang up",
    "network error",
    "rate limit",
    "429",
    "500",
    "502",
    "503",
    "504",
    "overloaded",
    "temporarily unavailable",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``max_attempts`` counts every call, including the first."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got: {self.initial_delay}")
        if self.backoff_multiplier < 1:
            raise ValueError(f"backoff_multiplier must be >= 1, got: {self.backoff_multiplier}")

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait between attempt ``attempt`` and ``attempt + 1``."""
        return self.initial_delay * self.backoff_multiplier ** (attempt - 1)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )

    @classmethod
    def for_evaluators(cls, settings: RuntimeSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.evaluator_max_attempts,
            initial_delay=settings.evaluator_retry_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )


def is_retryable_error(exc: BaseException) -> bool:
    """Classify an error as retryable (True) or permanent (False).

    Explicit permanent types win, then HTTP status codes exposed by client
    libraries, then message markers. Anything unrecognized is retryable.
    """
    if isinstance(exc, (PermanentError, MalformedOutputError)):
        return False
    if isinstance(exc, RetryExhaustedError):
        return not exc.permanent
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        if status_code in {401, 403, 404}:
            return False
        if status_code == 429 or status_code >= 500:
            return True

    message = str(exc).lower()
    if any(marker in message for marker in PERMANENT_ERROR_MARKERS):
        return False
    if any(marker in message for marker in TRANSIENT_ERROR_MARKERS):
        return True
    return True


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    name: str = "operation",
    sleep: Sleep = asyncio.sleep,
    classify: Callable[[BaseException], bool] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy runs out of attempts.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt budget and backoff. Defaults to ``RetryPolicy()``.
        name: Operation name carried by the aggregated error and log lines.
        sleep: Awaitable sleep used between attempts (injectable for tests).
        classify: Optional predicate; when it returns False for an error the
            loop stops immediately without consuming the remaining budget.

    Returns:
        The operation's result.

    Raises:
        RetryExhaustedError: With every attempt's error, once no attempts remain
            or a permanent error was classified.
    """
    active = policy or RetryPolicy()
    errors: list[BaseException] = []
    for attempt in range(1, active.max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001 - collected into the aggregated error.
            errors.append(exc)
            if classify is not None and not classify(exc):
                logger.warning("%s failed with permanent error, not retrying: %s", name, exc)
                raise RetryExhaustedError(name, errors, permanent=True) from exc
            if attempt == active.max_attempts:
                break
            delay = active.delay_after(attempt)
            logger.warning(
                "%s attempt %d/%d failed: %s; retrying in %.2fs",
                name,
                attempt,
                active.max_attempts,
                exc,
                delay,
            )
            await sleep(delay)

    logger.error("%s exhausted %d attempt(s)", name, len(errors))
    raise RetryExhaustedError(name, errors) from errors[-1]


async def with_smart_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """``with_retry`` that fails fast on errors ``is_retryable_error`` marks permanent."""
    return await with_retry(operation, policy=policy, name=name, sleep=sleep, classify=is_retryable_error)


def retrying(
    *, policy: RetryPolicy | None = None, name: str | None = None, smart: bool = True
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form: wrap a coroutine function so every call is retried."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        label = name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args: object, **kwargs: object) -> T:
            return await with_retry(
                lambda: func(*args, **kwargs),
                policy=policy,
                name=label,
                classify=is_retryable_error if smart else None,
            )

        return wrapper

    return decorator
