"""Failure taxonomy for generation backends.

Every failure that leaves a backend adapter is one of the classes below.
The retry scheduler and the adapter chain only look at `kind` and
`retryable`; they never inspect SDK exception types directly.

Classification order for foreign exceptions:
1. Already a GenerationError -> returned unchanged
2. Known SDK / httpx exception types -> mapped by type
3. Anything else -> deterministic message-pattern match
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """Base class for all backend failures."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str, *, backend: str = "", model: str = ""):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.model = model


class ConfigurationError(GenerationError):
    """Unknown backend, unknown model, or a request that can never succeed."""

    kind = "configuration"


class AuthenticationError(GenerationError):
    """Credentials rejected by the backend."""

    kind = "authentication"


class RateLimitError(GenerationError):
    """Backend signalled throttling or quota exhaustion."""

    kind = "rate_limit"
    retryable = True


class BackendTimeoutError(GenerationError):
    """Attempt exceeded its deadline."""

    kind = "timeout"
    retryable = True


class TransportError(GenerationError):
    """Connection failure or 5xx from the backend."""

    kind = "transport"
    retryable = True


class EmptyOutputError(GenerationError):
    """Backend answered but produced no usable text."""

    kind = "empty_output"


class BackendError(GenerationError):
    """Backend failure that matched no known category. Retried."""

    kind = "backend_error"
    retryable = True


# Message patterns, checked in order. First match wins.
_AUTH_PATTERNS = (
    "invalid_api_key",
    "invalid api key",
    "api key not valid",
    "authentication",
    "unauthorized",
    "permission denied",
    "permission_denied",
    "401",
    "403",
)
_RATE_LIMIT_PATTERNS = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "resource_exhausted",
    "resource exhausted",
    "quota",
    "too many requests",
    "429",
)
_TIMEOUT_PATTERNS = (
    "timed out",
    "timeout",
    "deadline exceeded",
    "deadline_exceeded",
)
_CONFIG_PATTERNS = (
    "model not found",
    "not_found",
    "does not exist",
    "unknown model",
    "unsupported model",
    "context_length_exceeded",
    "prompt is too long",
    "too many tokens",
)
_BLOCKED_PATTERNS = (
    "safety settings",
    "blocked by safety",
    "finish_reason: safety",
    "recitation",
)
_TRANSPORT_PATTERNS = (
    "connection",
    "network",
    "unavailable",
    "overloaded",
    "bad gateway",
    "service unavailable",
    "internal server error",
    "500",
    "502",
    "503",
    "504",
)

_PATTERN_TABLE: tuple[tuple[type[GenerationError], tuple[str, ...]], ...] = (
    (AuthenticationError, _AUTH_PATTERNS),
    (RateLimitError, _RATE_LIMIT_PATTERNS),
    (BackendTimeoutError, _TIMEOUT_PATTERNS),
    (ConfigurationError, _CONFIG_PATTERNS),
    (EmptyOutputError, _BLOCKED_PATTERNS),
    (TransportError, _TRANSPORT_PATTERNS),
)


def _first_match(text: str) -> Optional[type[GenerationError]]:
    for error_cls, patterns in _PATTERN_TABLE:
        if any(p in text for p in patterns):
            return error_cls
    return None


def _from_status_code(status: Optional[int]) -> Optional[type[GenerationError]]:
    if status is None:
        return None
    if status in (401, 403):
        return AuthenticationError
    if status == 429:
        return RateLimitError
    if status in (408, 504):
        return BackendTimeoutError
    if status in (400, 404, 422):
        return ConfigurationError
    if status >= 500:
        return TransportError
    return None


def _status_code_of(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP status extraction from SDK exceptions.

    anthropic/openai expose `status_code`, google-genai exposes `code`.
    """
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_exception(
    exc: BaseException,
    *,
    backend: str = "",
    model: str = "",
) -> GenerationError:
    """Map any exception raised by a backend call onto the taxonomy.

    Args:
        exc: The raised exception
        backend: Backend identifier, attached to the result
        model: Model identifier, attached to the result

    Returns:
        A GenerationError subclass instance. The original exception is
        kept as __cause__ by callers using `raise ... from exc`.
    """
    if isinstance(exc, GenerationError):
        if not exc.backend:
            exc.backend = backend
        if not exc.model:
            exc.model = model
        return exc

    import httpx

    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return BackendTimeoutError(message, backend=backend, model=model)

    error_cls = _from_status_code(_status_code_of(exc))
    if error_cls is None and isinstance(exc, (httpx.TransportError, ConnectionError)):
        error_cls = TransportError
    if error_cls is None:
        error_cls = _first_match(f"{exc.__class__.__name__} {message}".lower())
    if error_cls is None:
        logger.debug(f"Unclassified backend error ({exc.__class__.__name__}): {message}")
        error_cls = BackendError

    return error_cls(message, backend=backend, model=model)
