"""Utility functions for mailbox cleanup."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Mapping
from functools import wraps
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])


def retry_on_failure(
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[F], F]:
    """Decorator to retry a function on failure with exponential backoff.

    Works for both plain functions and coroutine functions; coroutines sleep
    with ``asyncio.sleep`` so the event loop keeps running between attempts.

    Args:
        max_retries: Maximum number of retry attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each retry.
        retry_on: Exception types that trigger a retry. Anything else propagates
            immediately.

    Returns:
        Decorated function with retry logic.
    """

    def _log_failure(
        func: Callable[..., Any], attempt: int, current_delay: float, exc: BaseException
    ) -> None:
        if attempt < max_retries:
            logger.warning(
                "function_retry",
                function=func.__name__,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=current_delay,
                error=str(exc),
            )
        else:
            logger.error(
                "function_retry_exhausted",
                function=func.__name__,
                attempts=max_retries + 1,
                error=str(exc),
            )

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                current_delay = delay
                for attempt in range(max_retries + 1):
                    try:
                        return await func(*args, **kwargs)
                    except retry_on as e:
                        _log_failure(func, attempt, current_delay, e)
                        if attempt >= max_retries:
                            raise
                        await asyncio.sleep(current_delay)
                        current_delay *= backoff

            return async_wrapper  # type: ignore

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            current_delay = delay
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    _log_failure(func, attempt, current_delay, e)
                    if attempt >= max_retries:
                        raise
                    time.sleep(current_delay)
                    current_delay *= backoff

        return wrapper  # type: ignore

    return decorator


def chunked(items: list[Any], size: int) -> list[list[Any]]:
    """Split a list into consecutive chunks of at most ``size`` items."""

    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


def deep_merge(base: Mapping[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``updates`` into a copy of ``base``."""

    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
