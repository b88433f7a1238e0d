from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from src.config.settings import settings
from src.core.errors import TRANSIENT_CATEGORIES, ErrorCategory, ProviderError, TransientProviderError

T = TypeVar("T")


def is_retryable(exc: BaseException, categories: Iterable[ErrorCategory] = TRANSIENT_CATEGORIES) -> bool:
    """Only categorized transient failures are retried; everything else fails fast."""
    if isinstance(exc, TransientProviderError):
        return True
    return isinstance(exc, ProviderError) and exc.category in set(categories)


def default_wait() -> wait_base:
    return wait_exponential_jitter(
        initial=settings.RETRY_BASE_DELAY_SECONDS,
        max=settings.RETRY_MAX_DELAY_SECONDS,
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    op_name: str,
    max_attempts: int | None = None,
    wait: wait_base | None = None,
    retryable_categories: Iterable[ErrorCategory] = TRANSIENT_CATEGORIES,
) -> T:
    """Runs an awaitable factory under the shared backoff policy.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        op_name: Label used in retry log lines.
        max_attempts: Total attempts including the first; defaults to RETRY_MAX_ATTEMPTS.
        wait: Tenacity wait strategy; defaults to exponential backoff with jitter.
        retryable_categories: Error categories that trigger another attempt.

    Returns:
        The result of the first successful attempt.

    Raises:
        ProviderError: The last categorized failure once attempts are exhausted.
        RoleSystemError: Any non-retryable error, immediately.
    """
    categories = frozenset(retryable_categories)
    attempts = max_attempts or settings.RETRY_MAX_ATTEMPTS

    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"{op_name} failed (attempt {retry_state.attempt_number}/{attempts}): {exc!s}. "
            f"Retrying in {delay:.2f}s"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait or default_wait(),
        retry=retry_if_exception(lambda e: is_retryable(e, categories)),
        before_sleep=_log_retry,
        reraise=True,
    )

    # Tenacity only awaits coroutine functions; a lambda returning an awaitable is not one
    async def _call() -> T:
        return await operation()

    return await retrying(_call)
