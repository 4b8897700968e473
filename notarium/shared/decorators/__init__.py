"""Shared decorators."""
from __future__ import annotations

import functools
import time
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def timed(event: str, *, slow_ms: float = 1000.0) -> Callable[[F], F]:
    """Log the duration of an async call under ``event``.

    Calls slower than ``slow_ms`` are logged at warning level, failures
    with the exception type; the exception itself propagates.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
                logger.info(f"{event}_failed", elapsed_ms=elapsed_ms, error_type=type(e).__name__)
                raise
            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
            if elapsed_ms > slow_ms:
                logger.warning(f"{event}_slow", elapsed_ms=elapsed_ms, threshold_ms=slow_ms)
            else:
                logger.debug(event, elapsed_ms=elapsed_ms)
            return result

        return wrapper  # type: ignore[return-value]

    return decorator


__all__ = ["timed"]
