"""Bounded-timeout, single-retry wrapper for outbound calls."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError

from irisvision.errors import SchemaValidationError
from irisvision.metrics import outbound_timeout_total

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 2


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


def _status_class(status: int) -> ErrorClass:
    if status >= 500 or status == 429:
        return ErrorClass.RETRYABLE
    return ErrorClass.TERMINAL


def classify_error(exc: BaseException) -> ErrorClass:
    """Transient network trouble and 5xx/429 are retryable; the rest is terminal."""
    if isinstance(exc, SchemaValidationError):
        return ErrorClass.TERMINAL
    if isinstance(exc, httpx.HTTPStatusError):
        return _status_class(exc.response.status_code)
    if isinstance(exc, APIStatusError):
        return _status_class(exc.status_code)
    if isinstance(exc, (TimeoutError, httpx.TransportError, APITimeoutError, APIConnectionError)):
        return ErrorClass.RETRYABLE
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorClass.RETRYABLE
    return ErrorClass.TERMINAL


@dataclass
class CallResult(Generic[T]):
    value: T | None = None
    error: BaseException | None = None
    error_class: ErrorClass | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class RetryPolicy:
    """Run a thunk with a timeout and at most one retry.

    The policy never decides on fallbacks; a failed result is handed back to
    the caller as-is.
    """

    def __init__(self, timeout: float = 15.0, *, name: str = "call"):
        self.timeout = timeout
        self.name = name

    async def invoke(
        self,
        thunk: Callable[[], Awaitable[T]],
        classify: Callable[[BaseException], ErrorClass] = classify_error,
    ) -> CallResult[T]:
        result: CallResult[T] = CallResult()
        while result.attempts < MAX_ATTEMPTS:
            result.attempts += 1
            try:
                result.value = await asyncio.wait_for(thunk(), timeout=self.timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # classified below
                if isinstance(exc, TimeoutError):
                    outbound_timeout_total.labels(call=self.name).inc()
                result.error = exc
                result.error_class = classify(exc)
                logger.warning(
                    "%s attempt %s failed (%s): %r",
                    self.name,
                    result.attempts,
                    result.error_class.value,
                    exc,
                )
                if result.error_class is ErrorClass.TERMINAL:
                    return result
                continue
            result.error = None
            result.error_class = None
            return result
        return result


__all__ = ["CallResult", "ErrorClass", "RetryPolicy", "classify_error"]
