"""Failure taxonomy shared by the email and SMS dispatch channels."""

from __future__ import annotations

import asyncio
import random
from typing import Optional, Tuple

import aiohttp


class DispatchError(RuntimeError):
    """Base class for every error raised by the dispatch engine."""

    code = "dispatch_error"
    retryable = False

    def __init__(self, message: str = "", *, status: Optional[int] = None, details: Optional[str] = None):
        super().__init__(message or self.code)
        self.status = status
        self.details = details

    def describe(self) -> str:
        """Return a compact representation suitable for the ``last_error`` column."""
        parts = [str(self)]
        if self.status is not None:
            parts.append(f"(HTTP {self.status})")
        if self.details and self.details != str(self):
            parts.append(f"- {self.details}")
        return " ".join(parts)


class ConfigurationError(DispatchError):
    """Raised when credentials or required settings are missing."""

    code = "configuration_error"


class ThrottledError(DispatchError):
    """Raised when the provider explicitly signals throttling."""

    code = "rate_limited"
    retryable = True


class TransientProviderError(DispatchError):
    """Raised for timeouts, connection resets and 5xx responses."""

    code = "transient_provider_error"
    retryable = True


class ValidationError(DispatchError):
    """Raised for 4xx responses and malformed input, fatal for one item only."""

    code = "validation_error"


class PersistenceError(DispatchError):
    """Raised when the datastore fails; never handled by the worker."""

    code = "persistence_error"


TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",
)


def error_for_status(status: int, detail: Optional[str] = None) -> DispatchError:
    """Translate a provider HTTP status into the matching taxonomy error."""
    if status == 429:
        return ThrottledError("Too Many Requests", status=status, details=detail)
    if status >= 500:
        return TransientProviderError("Server Error", status=status, details=detail)
    return ValidationError(f"Provider error {status}", status=status, details=detail)


def classify_error(exc: BaseException) -> Tuple[bool, str]:
    """Classify an exception as retryable or fatal.

    Returns:
        tuple: (retryable, code)
    """
    if isinstance(exc, DispatchError):
        return exc.retryable, exc.code
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, aiohttp.ClientConnectionError)):
        return True, TransientProviderError.code
    if isinstance(exc, aiohttp.ClientResponseError):
        mapped = error_for_status(exc.status, exc.message)
        return mapped.retryable, mapped.code
    if isinstance(exc, OSError):
        return True, TransientProviderError.code

    error_msg = str(exc).lower()
    for pattern in TRANSIENT_PATTERNS:
        if pattern in error_msg:
            return True, TransientProviderError.code
    return False, ValidationError.code


def is_throttle(exc: BaseException) -> bool:
    """Return ``True`` when the provider asked us to slow down."""
    if isinstance(exc, ThrottledError):
        return True
    return isinstance(exc, aiohttp.ClientResponseError) and exc.status == 429


def compute_retry_delay(
    attempt: int,
    base_seconds: float = 60.0,
    max_jitter_seconds: float = 30.0,
    rng: Optional[random.Random] = None,
) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based).

    ``base * 2**(attempt - 1)`` plus a uniform jitter in ``[0, max_jitter_seconds]``.
    """
    attempt = max(1, int(attempt))
    deterministic = float(base_seconds) * (2 ** (attempt - 1))
    if max_jitter_seconds <= 0:
        return deterministic
    source = rng or random
    return deterministic + source.uniform(0, float(max_jitter_seconds))
