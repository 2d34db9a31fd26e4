"""Shared fixtures: scripted fake backends, in-memory store, fast retry policy."""

import asyncio
from typing import Any, Optional, Union

import pytest

from src.executor.engine_runner import RetryPolicy
from src.executor.result_store import MemoryResultStore
from src.executor.schemas import DocumentSelection, GenerationRequest, ProjectDetails
from src.llm.backends import LLMCallResult
from src.llm.catalog import get_model_catalog

GENERATED_DOC = (
    "# Requirements Document\n"
    "The system lets users plan weekly meals and export shopping lists.\n"
    "## Functional requirements\n"
    "- Users can create meal plans\n"
    "# Backend Structure\n"
    "A FastAPI service backed by PostgreSQL stores plans and recipes.\n"
)

HANG = "hang"

Step = Union[str, BaseException]


# Force anyio to use asyncio
@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeBackend:
    """Backend whose behaviour on each call comes from a script.

    A script entry is either generated text, an exception instance to
    raise, or HANG to block until cancelled. The last entry repeats.
    """

    def __init__(self, backend_id: str, model_id: str, script: list[Step], calls: list):
        self.backend_id = backend_id
        self._model_id = model_id
        self._script = script
        self._calls = calls

    @property
    def model_id(self) -> str:
        return self._model_id

    async def complete(self, system_prompt, user_message, *, api_key, max_tokens, label=""):
        self._calls.append((self.backend_id, self._model_id, api_key))
        index = sum(1 for c in self._calls if c[:2] == (self.backend_id, self._model_id)) - 1
        step = self._script[min(index, len(self._script) - 1)]
        if isinstance(step, BaseException):
            raise step
        if step == HANG:
            await asyncio.sleep(3600)
        return LLMCallResult(
            content=step,
            model_id=self._model_id,
            input_tokens=120,
            output_tokens=80,
            duration_ms=5,
        )


class FakeBackendFactory:
    """(backend, model) -> FakeBackend, scripted per model.

    Models without a script succeed with GENERATED_DOC.
    """

    def __init__(self, scripts: Optional[dict[tuple[str, str], list[Step]]] = None):
        self.scripts = scripts or {}
        self.calls: list[tuple[str, str, str]] = []

    def __call__(self, backend_id: str, model_id: str) -> FakeBackend:
        script = self.scripts.get((backend_id, model_id), [GENERATED_DOC])
        return FakeBackend(backend_id, model_id, script, self.calls)

    def call_count(self, model_id: Optional[str] = None) -> int:
        if model_id is None:
            return len(self.calls)
        return sum(1 for _, model, _ in self.calls if model == model_id)


class RecordingSleep:
    """Stands in for asyncio.sleep; records requested delays, never waits."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FixedRng:
    """Jitter source returning a fixed factor."""

    def __init__(self, factor: float = 1.0):
        self.factor = factor

    def uniform(self, low: float, high: float) -> float:
        assert low <= self.factor <= high
        return self.factor


@pytest.fixture
def fast_policy():
    return RetryPolicy(
        max_attempts=3,
        base_delay_seconds=0.0,
        max_delay_seconds=0.0,
        attempt_timeout_seconds=1.0,
    )


@pytest.fixture
def store():
    return MemoryResultStore()


@pytest.fixture
def catalog():
    return get_model_catalog()


def make_request(**overrides: Any) -> GenerationRequest:
    fields: dict[str, Any] = {
        "project_details": ProjectDetails(
            project_name="MealPlanner",
            project_type="web app",
            project_goal="Plan meals",
            features="plans, shopping lists",
            tech_stack="FastAPI, React",
        ),
        "selected_docs": DocumentSelection(requirements=True, backend_structure=True),
        "backend": "gemini",
        "credentials": "sk-test-secret-key",
    }
    fields.update(overrides)
    return GenerationRequest(**fields)


@pytest.fixture
def request_factory():
    return make_request
