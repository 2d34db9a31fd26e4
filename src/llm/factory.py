"""Model backend factory.

Resolves (backend, model) pairs to the appropriate backend implementation.
"""

import logging
from typing import Optional

from src.llm.backends import (
    AnthropicBackend,
    GeminiBackend,
    ModelBackend,
    OpenAIBackend,
    XAIBackend,
)
from src.llm.catalog import ModelCatalog, get_model_catalog
from src.llm.errors import ConfigurationError

logger = logging.getLogger(__name__)

BACKEND_CLASSES = {
    "gemini": GeminiBackend,
    "anthropic": AnthropicBackend,
    "openai": OpenAIBackend,
    "xai": XAIBackend,
}


def get_backend(
    backend_id: str,
    model_id: str,
    catalog: Optional[ModelCatalog] = None,
) -> ModelBackend:
    """Get the backend instance for a (backend, model) pair.

    Args:
        backend_id: Provider identifier ('gemini', 'anthropic', 'openai', 'xai')
        model_id: Model identifier listed in the catalog for that backend

    Returns:
        Backend instance bound to the model

    Raises:
        ConfigurationError: If the backend or model is not recognized
    """
    backend_cls = BACKEND_CLASSES.get(backend_id)
    if backend_cls is None:
        raise ConfigurationError(
            f"Unknown backend: '{backend_id}'. "
            f"Expected one of: {', '.join(sorted(BACKEND_CLASSES))}.",
            backend=backend_id,
            model=model_id,
        )

    entry = (catalog or get_model_catalog()).get(backend_id)
    model = entry.get_model(model_id) if entry else None
    if model is None:
        raise ConfigurationError(
            f"Unknown model '{model_id}' for backend '{backend_id}'.",
            backend=backend_id,
            model=model_id,
        )

    if issubclass(backend_cls, OpenAIBackend):
        return backend_cls(model_id=model_id, reasoning=model.reasoning)
    return backend_cls(model_id=model_id)
