"""
Bounded retry with exponential backoff, plus cancellation helpers.

Only failures the classifier confirms as transient are retried.  The delay
before attempt ``n + 1`` is ``base_delay * multiplier ** (n - 1)`` capped at
``max_delay``, so delays never decrease.  A cancel signal (an
``asyncio.Event``) aborts an in-flight attempt or a backoff sleep and is
reported as ``RequestCancelled``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import httpx

from modelbridge.types import (
    AuthError,
    ModelBridgeError,
    RequestCancelled,
    RequestRejectedError,
    RetryExhaustedError,
    Stage,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 529 is Anthropic's "overloaded".
_TRANSIENT_STATUSES = {408, 409, 425, 429, 500, 502, 503, 504, 529}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_status(
    status_code: int,
    body: str = "",
    *,
    backend: str | None = None,
    stage: Stage = Stage.REQUEST,
) -> ModelBridgeError:
    """Map an HTTP error status to the matching taxonomy exception."""
    detail = f"HTTP {status_code}"
    if body:
        detail += f": {body[:300]}"
    if status_code in (401, 403):
        return AuthError(detail, backend=backend, stage=stage)
    if status_code in _TRANSIENT_STATUSES or status_code >= 500:
        return TransientNetworkError(detail, status_code=status_code, backend=backend, stage=stage)
    return RequestRejectedError(detail, status_code=status_code, backend=backend, stage=stage)


def classify_exception(
    exc: BaseException,
    *,
    backend: str | None = None,
    stage: Stage = Stage.REQUEST,
) -> ModelBridgeError | None:
    """Translate an httpx exception, or return ``None`` if it is not one."""
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code, backend=backend, stage=stage)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientNetworkError(
            f"{type(exc).__name__}: {exc}", backend=backend, stage=stage
        )
    return None


def is_retryable(exc: BaseException) -> bool:
    """Default classifier: transient taxonomy errors and httpx transport errors."""
    if isinstance(exc, ModelBridgeError):
        return exc.retryable
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


# ---------------------------------------------------------------------------
# Cancellation helpers
# ---------------------------------------------------------------------------


async def await_or_cancel(aw: Awaitable[T], cancel: asyncio.Event | None) -> T:
    """
    Await *aw* unless *cancel* fires first.

    Raises ``RequestCancelled`` (after cancelling *aw*) when the signal wins.
    """
    if cancel is None:
        return await aw
    if cancel.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise RequestCancelled("cancelled before start")

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Cancelled attempt finished with %r", task.exception())
    raise RequestCancelled("cancelled during request")


async def next_or_cancel(iterator: AsyncIterator[T], cancel: asyncio.Event | None) -> T:
    """``anext(iterator)`` that honours *cancel*."""
    return await await_or_cancel(iterator.__anext__(), cancel)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class RetryExecutor:
    """
    Runs a request callable with bounded retries.

    Parameters
    ----------
    max_attempts:
        Total attempts including the first.  Must be >= 1.
    base_delay:
        Seconds to wait before the second attempt.
    multiplier:
        Growth factor applied to each subsequent delay.  Must be >= 1.
    max_delay:
        Cap on any single delay.
    sleep:
        Injected sleep coroutine, replaced in tests.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self._sleep = sleep

    def delay_for(self, attempt: int, base_delay: float | None = None) -> float:
        """Delay after the *attempt*-th failure (1-based)."""
        base = self.base_delay if base_delay is None else base_delay
        return min(self.max_delay, base * self.multiplier ** (attempt - 1))

    async def execute(
        self,
        request_fn: Callable[[], Awaitable[T]],
        *,
        is_retryable: Callable[[BaseException], bool] = is_retryable,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        cancel: asyncio.Event | None = None,
        backend: str | None = None,
    ) -> T:
        """
        Call *request_fn* until it succeeds, fails permanently, or the
        attempt cap is reached.

        Raises
        ------
        RequestCancelled
            *cancel* was set.
        RetryExhaustedError
            Every attempt failed with a retryable error.
        ModelBridgeError
            The first non-retryable failure, unchanged.
        """
        attempts_cap = max_attempts or self.max_attempts

        for attempt in range(1, attempts_cap + 1):
            try:
                return await await_or_cancel(request_fn(), cancel)
            except RequestCancelled as exc:
                exc.backend = exc.backend or backend
                exc.attempts = attempt
                raise
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                if attempt == attempts_cap:
                    raise RetryExhaustedError(
                        f"giving up: {exc}",
                        backend=backend or getattr(exc, "backend", None),
                        stage=Stage.RETRY,
                        attempts=attempt,
                    ) from exc
                delay = self.delay_for(attempt, base_delay)
                logger.warning(
                    "Attempt %d/%d failed for %s (%s); retrying in %.2fs",
                    attempt,
                    attempts_cap,
                    backend or "?",
                    exc,
                    delay,
                )

            try:
                await await_or_cancel(self._sleep(delay), cancel)
            except RequestCancelled as exc:
                exc.backend = exc.backend or backend
                exc.attempts = attempt
                raise

        raise RuntimeError("unreachable")  # pragma: no cover
