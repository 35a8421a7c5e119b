"""Bounded retry decorator for external calls.

Wraps a sync or async callable with tenacity: a fixed number of attempts and
exponential backoff from `initial_backoff` seconds, capped at `max_backoff`.
When the budget is spent, `on_exhausted(error)` runs exactly once and the
caller receives `RetryExhaustedError`.
"""
from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from typing import Any, Callable, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

ExhaustedCallback = Callable[[BaseException], Any]


def bounded_retry(
    max_attempts: int = 3,
    initial_backoff: float = 0.5,
    max_backoff: float = 10.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_exhausted: Optional[ExhaustedCallback] = None,
):
    """Decorate `fn` so it is retried up to `max_attempts` times.

    Exceptions outside `retry_on` stop retrying immediately and are treated
    as terminal as well. `on_exhausted` may be a plain function or a
    coroutine function.
    """
    max_attempts = max(1, int(max_attempts))

    def _policy() -> dict:
        return dict(
            reraise=True,
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=max(0.0, initial_backoff), max=max(0.0, max_backoff)),
            retry=retry_if_exception_type(retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        name = getattr(fn, "__qualname__", repr(fn))
        if asyncio.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                retrying = AsyncRetrying(**_policy())
                try:
                    return await retrying(fn, *args, **kwargs)
                except Exception as exc:
                    attempts = retrying.statistics.get("attempt_number", 1)
                    logger.error("%s failed after %d attempt(s): %s", name, attempts, exc)
                    if on_exhausted is not None:
                        result = on_exhausted(exc)
                        if inspect.isawaitable(result):
                            await result
                    raise RetryExhaustedError(attempts, exc) from exc

            return async_wrapper

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            retrying = Retrying(**_policy())
            try:
                return retrying(fn, *args, **kwargs)
            except Exception as exc:
                attempts = retrying.statistics.get("attempt_number", 1)
                logger.error("%s failed after %d attempt(s): %s", name, attempts, exc)
                if on_exhausted is not None:
                    on_exhausted(exc)
                raise RetryExhaustedError(attempts, exc) from exc

        return sync_wrapper

    return decorator
