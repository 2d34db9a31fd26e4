import asyncio

import httpx
import pytest

from src.llm.errors import (
    AuthenticationError,
    BackendError,
    BackendTimeoutError,
    ConfigurationError,
    EmptyOutputError,
    RateLimitError,
    TransportError,
    classify_exception,
)


class SDKStatusError(Exception):
    """Looks like an anthropic/openai APIStatusError."""

    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class GenaiAPIError(Exception):
    """Looks like a google-genai APIError, which exposes `code`."""

    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


@pytest.mark.parametrize(
    "exc, expected",
    [
        (httpx.ReadTimeout("read timed out"), BackendTimeoutError),
        (asyncio.TimeoutError(), BackendTimeoutError),
        (httpx.ConnectError("connection refused"), TransportError),
        (ConnectionResetError("peer reset"), TransportError),
        (SDKStatusError("bad key", 401), AuthenticationError),
        (SDKStatusError("slow down", 429), RateLimitError),
        (SDKStatusError("upstream", 503), TransportError),
        (SDKStatusError("no such model", 404), ConfigurationError),
        (GenaiAPIError("quota", 429), RateLimitError),
        (RuntimeError("429 RESOURCE_EXHAUSTED: quota exceeded"), RateLimitError),
        (RuntimeError("API key not valid. Please pass a valid API key."), AuthenticationError),
        (RuntimeError("Response was blocked due to safety settings"), EmptyOutputError),
        (RuntimeError("The model is overloaded"), TransportError),
    ],
)
def test_classification(exc, expected):
    assert type(classify_exception(exc)) is expected


def test_status_code_wins_over_message():
    exc = SDKStatusError("connection looked fine, but the key is wrong", 401)

    assert isinstance(classify_exception(exc), AuthenticationError)


def test_unknown_failure_is_retryable_backend_error():
    error = classify_exception(ValueError("something odd happened"), backend="openai", model="gpt-4.1")

    assert type(error) is BackendError
    assert error.kind == "backend_error"
    assert error.retryable
    assert (error.backend, error.model) == ("openai", "gpt-4.1")


def test_generation_errors_pass_through_and_gain_identity():
    original = RateLimitError("throttled")

    error = classify_exception(original, backend="gemini", model="gemini-2.5-pro")

    assert error is original
    assert error.backend == "gemini"


def test_existing_identity_is_not_overwritten():
    original = TransportError("reset", backend="xai", model="grok-3")

    error = classify_exception(original, backend="gemini", model="gemini-2.5-pro")

    assert (error.backend, error.model) == ("xai", "grok-3")


@pytest.mark.parametrize(
    "error_cls, retryable",
    [
        (AuthenticationError, False),
        (ConfigurationError, False),
        (EmptyOutputError, False),
        (RateLimitError, True),
        (BackendTimeoutError, True),
        (TransportError, True),
    ],
)
def test_retryability(error_cls, retryable):
    assert error_cls("x").retryable is retryable
