"""Shared LLM backend layer.

Provides provider adapters (Gemini, Anthropic, OpenAI, xAI), the model
catalog with per-backend fallback chains, and the failure taxonomy used by
the executor's retry and fallback logic.
"""

from src.llm.backends import (
    LLMCallResult,
    ModelBackend,
    AnthropicBackend,
    GeminiBackend,
    OpenAIBackend,
    XAIBackend,
)
from src.llm.catalog import get_model_catalog
from src.llm.factory import get_backend

__all__ = [
    "LLMCallResult",
    "ModelBackend",
    "AnthropicBackend",
    "GeminiBackend",
    "OpenAIBackend",
    "XAIBackend",
    "get_model_catalog",
    "get_backend",
]
