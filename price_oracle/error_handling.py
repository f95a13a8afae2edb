"""
Error taxonomy and the shared retry policy for upstream calls
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import structlog
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
)

logger = structlog.get_logger()


class FailureKind(str, Enum):
    """How an upstream failure should be treated by callers"""
    TRANSIENT = "transient"          # timeout, 5xx, connection reset
    RATE_LIMITED = "rate_limited"    # 429, endpoint goes into cooldown
    UNAUTHORIZED = "unauthorized"    # 401/403, credential needs operator attention
    DATA_INTEGRITY = "data_integrity"  # malformed or implausible price
    UNAVAILABLE = "unavailable"      # provider has no data for the asset


class OracleError(Exception):
    """Base class for price oracle errors"""
    pass


class ProviderError(OracleError):
    """Raised by provider adapters and upstream clients"""
    kind = FailureKind.TRANSIENT

    def __init__(self, message: str, provider: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "provider": self.provider,
            "status_code": self.status_code,
            "message": str(self),
        }


class TransientUpstreamError(ProviderError):
    kind = FailureKind.TRANSIENT


class RateLimitError(ProviderError):
    kind = FailureKind.RATE_LIMITED


class AuthorizationError(ProviderError):
    kind = FailureKind.UNAUTHORIZED


class DataIntegrityError(ProviderError):
    kind = FailureKind.DATA_INTEGRITY


class PriceUnavailableError(ProviderError):
    kind = FailureKind.UNAVAILABLE


class InvalidAssetListError(OracleError):
    """Raised when none of the requested asset ids is valid"""

    def __init__(self, message: str, invalid_ids: Optional[list] = None):
        super().__init__(message)
        self.invalid_ids = invalid_ids or []


class ConfigurationError(OracleError):
    """Raised when configuration is invalid"""
    pass


class CircuitBreakerTrippedError(OracleError):
    """Raised when new risk-taking is blocked by the protocol circuit breaker"""

    def __init__(self, reason: Optional[str]):
        super().__init__(f"Protocol paused: {reason}")
        self.reason = reason


class DatabaseError(OracleError):
    """Raised when database operations fail"""
    pass


def error_for_status(status_code: int, message: str,
                     provider: Optional[str] = None) -> ProviderError:
    """Map an HTTP status code onto the provider error taxonomy"""
    if status_code == 429:
        error_class: Type[ProviderError] = RateLimitError
    elif status_code in (401, 403):
        error_class = AuthorizationError
    elif status_code == 404:
        error_class = PriceUnavailableError
    else:
        error_class = TransientUpstreamError
    return error_class(message, provider=provider, status_code=status_code)


def _log_retry(retry_state) -> None:
    outcome = retry_state.outcome
    logger.warning(
        "Retrying upstream call",
        attempt=retry_state.attempt_number,
        error=str(outcome.exception()) if outcome else None,
    )


@dataclass
class RetryPolicy:
    """Exponential backoff with a cap, shared by provider calls and stream reconnects.

    ``delay_for(n)`` is the wait before retry ``n`` (1-based):
    ``min(base_delay * 2 ** (n - 1), max_delay)``.
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    retry_on: Tuple[Type[BaseException], ...] = field(
        default=(TransientUpstreamError,)
    )

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=_log_retry,
            sleep=asyncio.sleep,
            reraise=True,
        )

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` retrying only the configured transient error types"""
        async for attempt in self.retrying():
            with attempt:
                return await func(*args, **kwargs)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )

    @classmethod
    def for_stream(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.STREAM_MAX_RECONNECT_ATTEMPTS,
            base_delay=settings.STREAM_RECONNECT_BASE_SECONDS,
            max_delay=settings.STREAM_RECONNECT_MAX_SECONDS,
        )
