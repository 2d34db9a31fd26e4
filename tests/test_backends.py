from pathlib import Path
from types import SimpleNamespace

import pytest

from src.llm.backends import (
    AnthropicBackend,
    GeminiBackend,
    ModelBackend,
    OpenAIBackend,
    XAIBackend,
    GEMINI_SAFETY_CATEGORIES,
    GEMINI_SAFETY_THRESHOLD,
    XAI_BASE_URL,
    _BaseBackend,
)
from src.llm.catalog import ModelCatalog
from src.llm.errors import ConfigurationError, EmptyOutputError, RateLimitError
from src.llm.factory import get_backend


class StubBackend(_BaseBackend):
    backend_id = "stub"

    def __init__(self, reply):
        super().__init__("stub-model")
        self.reply = reply

    async def _generate(self, system_prompt, user_message, *, api_key, max_tokens):
        if isinstance(self.reply, BaseException):
            raise self.reply
        return self.reply


class QuotaExceeded(Exception):
    status_code = 429


@pytest.mark.anyio
async def test_complete_normalizes_result():
    backend = StubBackend(("  " + "word " * 20 + "  ", 11, 22))

    result = await backend.complete("system", "user", api_key="k", max_tokens=100)

    assert result.content == ("word " * 20).strip()
    assert (result.input_tokens, result.output_tokens) == (11, 22)
    assert result.model_id == "stub-model"


@pytest.mark.anyio
async def test_missing_token_counts_are_estimated():
    backend = StubBackend(("x" * 400, 0, 0))

    result = await backend.complete("s" * 40, "u" * 40, api_key="k", max_tokens=100)

    assert result.input_tokens == 20
    assert result.output_tokens == 100


@pytest.mark.anyio
@pytest.mark.parametrize("text", ["", "   ", "too short"])
async def test_short_output_is_empty_output_error(text):
    backend = StubBackend((text, 1, 1))

    with pytest.raises(EmptyOutputError) as exc_info:
        await backend.complete("system", "user", api_key="k", max_tokens=100)

    assert exc_info.value.backend == "stub"
    assert not exc_info.value.retryable


@pytest.mark.anyio
async def test_sdk_exceptions_are_classified_and_chained():
    original = QuotaExceeded("quota exceeded for project")
    backend = StubBackend(original)

    with pytest.raises(RateLimitError) as exc_info:
        await backend.complete("system", "user", api_key="k", max_tokens=100)

    assert exc_info.value.__cause__ is original
    assert exc_info.value.model == "stub-model"


@pytest.mark.parametrize(
    "backend_id, model_id, expected_cls",
    [
        ("gemini", "gemini-2.5-flash", GeminiBackend),
        ("anthropic", "claude-3-5-haiku-20241022", AnthropicBackend),
        ("openai", "gpt-4o", OpenAIBackend),
        ("xai", "grok-3", XAIBackend),
    ],
)
def test_factory_builds_backend_for_pair(catalog, backend_id, model_id, expected_cls):
    backend = get_backend(backend_id, model_id, catalog)

    assert type(backend) is expected_cls
    assert backend.model_id == model_id
    assert isinstance(backend, ModelBackend)


def test_factory_sets_reasoning_flag(catalog):
    assert get_backend("openai", "o4-mini", catalog).reasoning is True
    assert get_backend("openai", "gpt-4.1", catalog).reasoning is False


def test_xai_uses_its_own_endpoint():
    assert XAIBackend().base_url == XAI_BASE_URL
    assert OpenAIBackend().base_url is None


@pytest.mark.parametrize("backend_id, model_id", [("mystery", "gpt-4.1"), ("openai", "gemini-2.5-pro")])
def test_factory_rejects_unknown_pairs(catalog, backend_id, model_id):
    with pytest.raises(ConfigurationError):
        get_backend(backend_id, model_id, catalog)


def test_catalog_loads_all_backends(catalog):
    assert set(catalog.backends()) == {"gemini", "openai", "anthropic", "xai"}
    for entry in catalog.list_all():
        assert entry.default_chain
        assert all(entry.get_model(m) for m in entry.default_chain)


def test_catalog_rejects_chain_with_unknown_model(tmp_path: Path):
    path = tmp_path / "catalog.yaml"
    path.write_text(
        "gemini:\n"
        "  default_chain: [gemini-9]\n"
        "  models:\n"
        "    - id: gemini-2.5-pro\n"
    )

    with pytest.raises(ValueError, match="gemini-9"):
        ModelCatalog(path).load()


class FakeGenaiClient:
    """Stands in for google.genai.Client; records the request config."""

    last_config = None

    def __init__(self, api_key):
        self.aio = SimpleNamespace(models=SimpleNamespace(generate_content=self._generate))

    async def _generate(self, model, contents, config):
        FakeGenaiClient.last_config = config
        parts = [
            SimpleNamespace(text="thinking about it", thought=True),
            SimpleNamespace(text="# Requirements Document\n" + "The planner stores meals. " * 4, thought=False),
        ]
        return SimpleNamespace(
            candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))],
            usage_metadata=SimpleNamespace(prompt_token_count=30, candidates_token_count=40),
        )


@pytest.mark.anyio
async def test_gemini_sends_safety_settings_and_skips_thoughts(monkeypatch):
    monkeypatch.setattr("google.genai.Client", FakeGenaiClient)

    result = await GeminiBackend("gemini-2.5-flash").complete(
        "system", "user", api_key="k", max_tokens=1024
    )

    config = FakeGenaiClient.last_config
    assert config.max_output_tokens == 1024
    assert {s.category.value for s in config.safety_settings} == set(GEMINI_SAFETY_CATEGORIES)
    assert {s.threshold.value for s in config.safety_settings} == {GEMINI_SAFETY_THRESHOLD}
    assert "thinking" not in result.content
    assert (result.input_tokens, result.output_tokens) == (30, 40)
