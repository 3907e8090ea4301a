"""Uniform wrapper around backend calls.

Every adapter call made by a view goes through :func:`call_backend`, which
applies the configured timeout, logs the elapsed time and converts failures
into a :class:`Result` so the caller decides whether to display or log.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

from taskflow.app.core.errors import BackendError, BackendTimeout, QueryFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[BackendError] = None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None

    @property
    def kind(self) -> Optional[str]:
        return self.error.kind if self.error else None


async def call_backend(
    op: str,
    awaitable: Awaitable[T],
    *,
    timeout: Optional[float] = None,
    session: Any = None,
) -> Result[T]:
    """Await ``awaitable`` with a timeout and return a Result.

    A timeout cancels the underlying call and is reported as ``BackendTimeout``.
    Unexpected exceptions are wrapped as ``QueryFailure`` and logged with a
    traceback; they never escape into the view layer.
    """
    extra = {"op": op, "session": session or "-"}
    start = time.perf_counter()
    try:
        if timeout:
            value = await asyncio.wait_for(awaitable, timeout=timeout)
        else:
            value = await awaitable
    except asyncio.TimeoutError as exc:
        extra["elapsed_ms"] = int((time.perf_counter() - start) * 1000)
        logger.warning("backend call timed out after %ss", timeout, extra=extra)
        return Result(ok=False, error=BackendTimeout(f"{op} timed out after {timeout:g}s", cause=exc))
    except BackendError as exc:
        extra["elapsed_ms"] = int((time.perf_counter() - start) * 1000)
        logger.info("backend call failed kind=%s: %s", exc.kind, exc.message, extra=extra)
        return Result(ok=False, error=exc)
    except Exception as exc:
        extra["elapsed_ms"] = int((time.perf_counter() - start) * 1000)
        logger.exception("backend call raised unexpectedly", extra=extra)
        return Result(ok=False, error=QueryFailure(str(exc) or exc.__class__.__name__, cause=exc))

    extra["elapsed_ms"] = int((time.perf_counter() - start) * 1000)
    logger.debug("backend call ok", extra=extra)
    return Result(ok=True, value=value)
