"""
Retry policy for remote and database calls.

Only failures recognised as transient at the transport layer are retried:
host-not-found / connection errors, timeouts, HTTP 504 and lost database
connections. Definite rejections (4xx, unique-constraint violations,
business errors) fail fast on the first attempt.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
import structlog
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.config import get_settings
from core.errors import AppError, TransientTransportError

logger = structlog.get_logger()

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TransientTransportError):
        return True
    if isinstance(exc, AppError):
        return False
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 504
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return False


def _transient_reason(exc: BaseException) -> str:
    if isinstance(exc, httpx.ConnectError):
        return "remote_host_unreachable"
    if isinstance(exc, httpx.TimeoutException):
        return "connection_timeout"
    if isinstance(exc, httpx.HTTPStatusError):
        return "gateway_timeout"
    if isinstance(exc, (OperationalError, InterfaceError)):
        return "db_unavailable"
    return "transient"


class RetryPolicy:
    """Bounded, classified retries. Count and backoff come from settings."""

    def __init__(
        self,
        retries: int | None = None,
        backoff_min: float | None = None,
        backoff_max: float | None = None,
    ):
        settings = get_settings()
        self.retries = settings.service_retry_count if retries is None else retries
        self.backoff_min = settings.retry_backoff_min_seconds if backoff_min is None else backoff_min
        self.backoff_max = settings.retry_backoff_max_seconds if backoff_max is None else backoff_max

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "retry.transient_failure",
            reason=_transient_reason(exc) if exc else "unknown",
            attempt=state.attempt_number,
            retries_left=self.retries + 1 - state.attempt_number,
            error=str(exc),
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(min=self.backoff_min, max=self.backoff_max),
            before_sleep=self._log_retry,
            reraise=False,
        )
        try:
            return await retrying(fn, *args, **kwargs)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            if isinstance(last, AppError):
                raise last from None
            raise TransientTransportError(
                f"Remote call failed after {self.retries + 1} attempts: {last}",
            ) from last


def remote_call(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Decorator form for client methods; uses the client's ``retry_policy``."""

    @functools.wraps(fn)
    async def wrapper(self, *args: Any, **kwargs: Any) -> T:
        policy = getattr(self, "retry_policy", None) or RetryPolicy()
        return await policy.call(fn, self, *args, **kwargs)

    return wrapper
