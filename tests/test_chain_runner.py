import pytest

from conftest import GENERATED_DOC, FakeBackendFactory, RecordingSleep
from src.executor.chain_runner import resolve_chain, run_chain
from src.llm.errors import (
    AuthenticationError,
    ConfigurationError,
    EmptyOutputError,
    RateLimitError,
    TransportError,
)


def test_resolve_chain_uses_catalog_defaults(catalog):
    links = resolve_chain("gemini", catalog=catalog)

    assert [link.model for link in links] == ["gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.0-flash"]
    assert all(link.backend == "gemini" for link in links)
    assert links[0].max_tokens == 65536


def test_resolve_chain_puts_override_first_without_duplicates(catalog):
    links = resolve_chain("gemini", "gemini-2.5-flash", catalog=catalog)

    assert [link.model for link in links] == ["gemini-2.5-flash", "gemini-2.5-pro", "gemini-2.0-flash"]


def test_resolve_chain_truncates_to_max_length(catalog):
    links = resolve_chain("anthropic", "claude-opus-4-20250514", catalog=catalog, max_length=2)

    assert [link.model for link in links] == ["claude-opus-4-20250514", "claude-sonnet-4-20250514"]


def test_unknown_backend_is_configuration_error(catalog):
    with pytest.raises(ConfigurationError, match="unknown-backend"):
        resolve_chain("unknown-backend", catalog=catalog)


def test_model_from_another_backend_is_configuration_error(catalog):
    with pytest.raises(ConfigurationError):
        resolve_chain("openai", "gemini-2.5-pro", catalog=catalog)


async def _run(links, factory, policy, **kwargs):
    return await run_chain(
        links,
        system_prompt="system",
        user_message="user",
        api_key="key",
        policy=policy,
        backend_factory=factory,
        sleep=RecordingSleep(),
        **kwargs,
    )


@pytest.mark.anyio
async def test_falls_back_to_second_model_after_exhausting_first(catalog, fast_policy):
    links = resolve_chain("gemini", catalog=catalog)
    factory = FakeBackendFactory({
        ("gemini", "gemini-2.5-pro"): [TransportError("503 unavailable")],
    })

    result = await _run(links, factory, fast_policy)

    assert result.model == "gemini-2.5-flash"
    assert result.backend == "gemini"
    assert result.content == GENERATED_DOC
    assert factory.call_count("gemini-2.5-pro") == fast_policy.max_attempts
    assert factory.call_count("gemini-2.5-flash") == 1
    assert result.attempts == fast_policy.max_attempts + 1


@pytest.mark.anyio
async def test_authentication_error_advances_without_retrying(catalog, fast_policy):
    links = resolve_chain("gemini", catalog=catalog)
    factory = FakeBackendFactory({
        ("gemini", "gemini-2.5-pro"): [AuthenticationError("invalid api key")],
    })

    result = await _run(links, factory, fast_policy)

    assert factory.call_count("gemini-2.5-pro") == 1
    assert result.model == "gemini-2.5-flash"


@pytest.mark.anyio
async def test_empty_output_is_not_retried(catalog, fast_policy):
    links = resolve_chain("openai", catalog=catalog)
    factory = FakeBackendFactory({
        ("openai", "gpt-4.1"): [EmptyOutputError("0 chars")],
    })

    result = await _run(links, factory, fast_policy)

    assert factory.call_count("gpt-4.1") == 1
    assert result.model == "gpt-4.1-mini"


@pytest.mark.anyio
async def test_exhausted_chain_raises_cause_from_last_link(catalog, fast_policy):
    links = resolve_chain("xai", catalog=catalog)
    factory = FakeBackendFactory({
        ("xai", "grok-4-0709"): [AuthenticationError("bad key")],
        ("xai", "grok-3"): [TransportError("reset")],
        ("xai", "grok-3-mini"): [RateLimitError("429")],
    })
    outcomes = []

    with pytest.raises(RateLimitError):
        await _run(links, factory, fast_policy, outcomes=outcomes)

    assert len(outcomes) == 1 + fast_policy.max_attempts * 2
    assert factory.call_count() == len(outcomes)


@pytest.mark.anyio
async def test_progress_hook_receives_link_and_attempt(catalog, fast_policy):
    links = resolve_chain("gemini", catalog=catalog)
    factory = FakeBackendFactory({
        ("gemini", "gemini-2.5-pro"): [TransportError("reset"), GENERATED_DOC],
    })
    seen = []

    await _run(
        links, factory, fast_policy,
        on_attempt_failed=lambda link, attempt, cause: seen.append((link.model, attempt, cause.kind)),
    )

    assert seen == [("gemini-2.5-pro", 1, "transport")]


@pytest.mark.anyio
async def test_backend_factory_config_error_moves_to_next_link(catalog, fast_policy):
    links = resolve_chain("gemini", catalog=catalog)
    inner = FakeBackendFactory()

    def factory(backend_id, model_id):
        if model_id == "gemini-2.5-pro":
            raise ConfigurationError("model retired")
        return inner(backend_id, model_id)

    result = await _run(links, factory, fast_policy)

    assert result.model == "gemini-2.5-flash"


@pytest.mark.anyio
async def test_api_key_reaches_backend(catalog, fast_policy):
    links = resolve_chain("gemini", catalog=catalog)
    factory = FakeBackendFactory()

    await _run(links, factory, fast_policy)

    assert factory.calls == [("gemini", "gemini-2.5-pro", "key")]
