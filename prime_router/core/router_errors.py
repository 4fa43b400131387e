"""
Router Errors - Error Taxonomy and Classification
=================================================

Every failure the router can surface maps onto one of four terminal kinds:

    InvalidRequest       malformed input, never retried
    ProviderError        adapter-level failure, drives fallback/escalation
    NoEligibleProvider   routing found nothing usable, terminal
    QualityUnattainable  escalation budget exhausted, terminal

ErrorClassifier translates native exceptions (asyncio timeouts, aiohttp
client errors, HTTP statuses, message patterns) into ProviderErrorKind so
that adapters report one shared vocabulary.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

import aiohttp

if TYPE_CHECKING:
    from prime_router.core.router_models import InferenceAttempt


# =============================================================================
# ERROR KINDS
# =============================================================================

class ProviderErrorKind(Enum):
    """Categories of provider failure."""

    # Transient (fallback/escalation worthwhile)
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    UPSTREAM = "upstream"           # 5xx, overloaded
    NETWORK = "network"

    # Request/credential problems on this provider
    REJECTED = "rejected"           # 4xx other than auth/rate limit
    AUTH = "auth"
    MALFORMED = "malformed"         # unparseable response body

    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    ProviderErrorKind.TIMEOUT,
    ProviderErrorKind.RATE_LIMITED,
    ProviderErrorKind.UPSTREAM,
    ProviderErrorKind.NETWORK,
    ProviderErrorKind.MALFORMED,
    ProviderErrorKind.UNKNOWN,
})


# =============================================================================
# EXCEPTIONS
# =============================================================================

class RouterError(Exception):
    """Base class for router failures surfaced to callers."""

    error_type = "RouterError"

    def __init__(self, message: str, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        return f"[{self.error_type}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.error_type,
            "message": self.message,
            "details": self.details,
        }


class InvalidRequest(RouterError):
    """Malformed input. Returned to the caller immediately."""

    error_type = "InvalidRequest"

    def __init__(self, problems: List[str]):
        super().__init__("; ".join(problems) or "invalid request", {"problems": list(problems)})
        self.problems = list(problems)


class ProviderError(RouterError):
    """Failure of one provider call."""

    error_type = "ProviderError"

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        provider_id: str = "",
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, {"kind": kind.value, "provider_id": provider_id, "status": status})
        self.kind = kind
        self.provider_id = provider_id
        self.status = status
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __str__(self) -> str:
        where = f" from {self.provider_id}" if self.provider_id else ""
        return f"[{self.error_type}:{self.kind.value}{where}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retryable"] = self.retryable
        data["retry_after"] = self.retry_after
        return data


class NoEligibleProvider(RouterError):
    """Routing found no usable provider. Terminal for the request."""

    error_type = "NoEligibleProvider"

    def __init__(self, message: str, excluded: Optional[Mapping[str, str]] = None):
        super().__init__(message, {"excluded": dict(excluded or {})})
        self.excluded: Dict[str, str] = dict(excluded or {})


class QualityUnattainable(RouterError):
    """Escalation budget exhausted without an accepted verdict."""

    error_type = "QualityUnattainable"

    def __init__(
        self,
        message: str,
        best_attempt: Optional["InferenceAttempt"] = None,
        best_score: Optional[float] = None,
    ):
        super().__init__(message, {
            "best_provider_id": best_attempt.provider_id if best_attempt else None,
            "best_score": best_score,
        })
        self.best_attempt = best_attempt
        self.best_score = best_score


class ConfigError(RouterError):
    """Invalid router or provider configuration."""

    error_type = "ConfigError"


# =============================================================================
# ERROR CLASSIFIER
# =============================================================================

class ErrorClassifier:
    """Classifies native exceptions and HTTP statuses into ProviderErrorKind."""

    # Exception to kind mapping (checked with isinstance, most specific first)
    EXCEPTION_MAP: List[tuple] = [
        (asyncio.TimeoutError, ProviderErrorKind.TIMEOUT),
        (TimeoutError, ProviderErrorKind.TIMEOUT),
        (aiohttp.ServerTimeoutError, ProviderErrorKind.TIMEOUT),
        (aiohttp.ContentTypeError, ProviderErrorKind.MALFORMED),
        (aiohttp.ClientConnectionError, ProviderErrorKind.NETWORK),
        (aiohttp.ClientPayloadError, ProviderErrorKind.MALFORMED),
        (aiohttp.ClientError, ProviderErrorKind.NETWORK),
        (ConnectionError, ProviderErrorKind.NETWORK),
        (ValueError, ProviderErrorKind.MALFORMED),
        (KeyError, ProviderErrorKind.MALFORMED),
        (PermissionError, ProviderErrorKind.AUTH),
    ]

    # Message pattern to kind
    MESSAGE_PATTERNS: Dict[str, ProviderErrorKind] = {
        "timeout": ProviderErrorKind.TIMEOUT,
        "timed out": ProviderErrorKind.TIMEOUT,
        "rate limit": ProviderErrorKind.RATE_LIMITED,
        "too many requests": ProviderErrorKind.RATE_LIMITED,
        "overloaded": ProviderErrorKind.UPSTREAM,
        "unauthorized": ProviderErrorKind.AUTH,
        "invalid api key": ProviderErrorKind.AUTH,
    }

    @classmethod
    def from_status(cls, status: int) -> ProviderErrorKind:
        """Map an HTTP status to an error kind."""
        if status == 429:
            return ProviderErrorKind.RATE_LIMITED
        if status in (401, 403):
            return ProviderErrorKind.AUTH
        if status == 408:
            return ProviderErrorKind.TIMEOUT
        if status >= 500:
            return ProviderErrorKind.UPSTREAM
        if status >= 400:
            return ProviderErrorKind.REJECTED
        return ProviderErrorKind.UNKNOWN

    @classmethod
    def kind_for_exception(cls, error: BaseException) -> ProviderErrorKind:
        if isinstance(error, ProviderError):
            return error.kind

        if isinstance(error, asyncio.CancelledError):
            return ProviderErrorKind.CANCELLED

        if isinstance(error, aiohttp.ClientResponseError) and not isinstance(error, aiohttp.ContentTypeError):
            return cls.from_status(error.status)

        kind = ProviderErrorKind.UNKNOWN
        for exc_type, mapped in cls.EXCEPTION_MAP:
            if isinstance(error, exc_type):
                kind = mapped
                break

        if kind == ProviderErrorKind.UNKNOWN:
            message = str(error).lower()
            for pattern, mapped in cls.MESSAGE_PATTERNS.items():
                if pattern in message:
                    kind = mapped
                    break

        return kind

    @classmethod
    def classify(cls, error: BaseException, provider_id: str = "") -> ProviderError:
        """Classify an exception into a ProviderError."""
        if isinstance(error, ProviderError):
            if not error.provider_id and provider_id:
                error.provider_id = provider_id
                error.details["provider_id"] = provider_id
            return error

        kind = cls.kind_for_exception(error)
        status = error.status if isinstance(error, aiohttp.ClientResponseError) else None

        message = str(error) or type(error).__name__
        if kind == ProviderErrorKind.TIMEOUT and not str(error):
            message = "request timed out"

        return ProviderError(
            kind=kind,
            message=message,
            provider_id=provider_id,
            status=status,
            retry_after=1.0 if kind in (ProviderErrorKind.RATE_LIMITED, ProviderErrorKind.UPSTREAM) else None,
        )
