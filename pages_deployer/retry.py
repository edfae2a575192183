import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import RetryError
from .logs import logger

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def _log_attempt(label: str, attempt: int, max_attempts: int):
    logger.info(f"[RETRY] {label}: attempt {attempt}/{max_attempts}")


def _log_failure(label: str, attempt: int, max_attempts: int, exc: BaseException):
    logger.warning(f"[RETRY] {label}: attempt {attempt}/{max_attempts} failed: {exc}")


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 5,
    initial_delay: float = 1,
    *,
    label: str = "request",
    sleep: Sleep = asyncio.sleep,
    on_attempt: Optional[Callable[[str, int, int], None]] = _log_attempt,
    on_failure: Optional[Callable[[str, int, int, BaseException], None]] = _log_failure,
) -> T:
    """Await ``operation()`` until it succeeds or ``max_attempts`` is used up.

    After a failed attempt ``k`` the retrier waits ``initial_delay * 2 ** (k - 1)``
    seconds. Every exception counts as retryable. When the last attempt fails a
    :class:`RetryError` carrying the attempt count and the last error is raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        if on_attempt:
            on_attempt(label, attempt, max_attempts)
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            if on_failure:
                on_failure(label, attempt, max_attempts, exc)
        if attempt < max_attempts:
            delay = initial_delay * (2 ** (attempt - 1))
            logger.info(f"[RETRY] {label}: waiting {delay}s before retry")
            await sleep(delay)
    logger.error(f"[RETRY] {label}: all {max_attempts} attempts failed")
    raise RetryError(max_attempts, last_error) from last_error
