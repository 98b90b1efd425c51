"""
Span timing for pipeline stages.

`@traced(name)` wraps an async function, measures wall time and logs one
line per call. Pipeline errors are logged with their error code at WARNING
(expected operational failures such as a provider 429); anything else is
logged at ERROR with a traceback.

    @traced("embedding_run")
    async def run(self, document_id): ...
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Coroutine, TypeVar

from docembed.core.exceptions import PipelineError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


def traced(name: str | None = None) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except PipelineError as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.warning(
                    "trace | span=%s elapsed_ms=%.1f error_code=%s retryable=%s",
                    span_name, elapsed_ms, exc.error_code, exc.retryable,
                )
                raise
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.error(
                    "trace | span=%s elapsed_ms=%.1f error=%s",
                    span_name, elapsed_ms, exc, exc_info=True,
                )
                raise
            elapsed_ms = (time.perf_counter() - t0) * 1000
            logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
