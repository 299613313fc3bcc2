import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def _backoff_delays(max_retries: int, base_delay: float, max_backoff: float):
    """Delays to sleep before each retry: doubling, capped, plus up to 0.5s jitter."""
    backoff = base_delay
    for _ in range(max_retries):
        yield backoff
        backoff = min(backoff * 2, max_backoff) + random.uniform(0, 0.5)


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
    **kwargs: Any,
) -> Any:
    """
    Await `func(*args, **kwargs)`, retrying transient errors.

    Only exceptions in `transient_errors` are retried (all non-logic errors
    when None). The last error is re-raised once `max_retries` retries are
    used up.
    """
    delays = _backoff_delays(max_retries, base_delay, max_backoff)
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            is_transient = not isinstance(e, (ValueError, TypeError, SyntaxError))
            if transient_errors is not None:
                is_transient = isinstance(e, transient_errors)
            if not is_transient:
                raise

            delay = next(delays, None)
            if delay is None:
                logger.warning(
                    f"Max retries ({max_retries}) exhausted for {func.__name__}",
                    error=str(e),
                )
                raise

            attempt += 1
            logger.warning(
                f"Transient error in {func.__name__}, retrying ({attempt}/{max_retries})",
                error=str(e),
                error_type=type(e).__name__,
                wait=f"{delay:.2f}s",
            )
            await asyncio.sleep(delay)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
):
    """Decorator form of call_with_retry, for client methods that always retry the same errors."""
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await call_with_retry(
                func,
                *args,
                max_retries=max_retries,
                base_delay=base_delay,
                max_backoff=max_backoff,
                transient_errors=transient_errors,
                **kwargs,
            )
        return wrapper
    return decorator
