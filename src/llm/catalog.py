"""Model catalog: which models each backend offers and its default fallback chain.

Loaded once from catalog.yaml (lazy singleton, same pattern as the other
registries). The catalog is static per process; there is no CRUD.
"""

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

CATALOG_PATH = Path(__file__).parent / "catalog.yaml"


class ModelInfo(BaseModel):
    """A single model offered by a backend."""

    id: str
    name: str = ""
    max_tokens: int = Field(default=8192, description="Output token ceiling sent with each call")
    context_window: int = 0
    reasoning: bool = Field(
        default=False,
        description="Reasoning models take max_completion_tokens instead of max_tokens",
    )


class BackendCatalog(BaseModel):
    """Models and default chain for one backend."""

    backend: str
    display_name: str = ""
    default_chain: list[str] = Field(default_factory=list)
    models: list[ModelInfo] = Field(default_factory=list)

    @model_validator(mode="after")
    def _chain_models_exist(self) -> "BackendCatalog":
        known = {m.id for m in self.models}
        missing = [m for m in self.default_chain if m not in known]
        if missing:
            raise ValueError(
                f"default_chain for '{self.backend}' references unknown models: {missing}"
            )
        if not self.default_chain:
            raise ValueError(f"Backend '{self.backend}' has an empty default_chain")
        return self

    def get_model(self, model_id: str) -> Optional[ModelInfo]:
        for model in self.models:
            if model.id == model_id:
                return model
        return None


class ModelCatalog:
    """Registry of backend catalogs, loaded from YAML."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or CATALOG_PATH
        self._backends: dict[str, BackendCatalog] = {}
        self._loaded = False

    def load(self) -> None:
        """Load catalog definitions. Malformed files fail loudly."""
        if self._loaded:
            return

        with open(self.path, "r") as f:
            data = yaml.safe_load(f) or {}

        for backend_id, entry in data.items():
            self._backends[backend_id] = BackendCatalog.model_validate(
                {"backend": backend_id, **entry}
            )

        logger.info(
            f"Loaded model catalog: {len(self._backends)} backends, "
            f"{sum(len(b.models) for b in self._backends.values())} models"
        )
        self._loaded = True

    def backends(self) -> list[str]:
        self.load()
        return list(self._backends)

    def get(self, backend_id: str) -> Optional[BackendCatalog]:
        self.load()
        return self._backends.get(backend_id)

    def list_all(self) -> list[BackendCatalog]:
        self.load()
        return list(self._backends.values())


# Global catalog instance
_catalog: Optional[ModelCatalog] = None


def get_model_catalog() -> ModelCatalog:
    """Get the global model catalog instance."""
    global _catalog
    if _catalog is None:
        _catalog = ModelCatalog()
    return _catalog
