"""Backend fallback chain execution.

A chain is an ordered list of (backend, model) links: the caller's model
override first (when given), then the backend's catalog default chain.
Each link gets a full retry budget; the chain advances only after a link
is exhausted. Links are strictly sequential, never raced.
"""

import asyncio
import logging
import os
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from src.executor.engine_runner import AttemptOutcome, RetryPolicy, retry_with_backoff
from src.llm.backends import LLMCallResult, ModelBackend
from src.llm.catalog import ModelCatalog, get_model_catalog
from src.llm.errors import ConfigurationError, GenerationError
from src.llm.factory import BACKEND_CLASSES, get_backend

logger = logging.getLogger(__name__)

MAX_CHAIN_LENGTH = int(os.environ.get("GENERATION_MAX_CHAIN_LENGTH", "3"))

BackendFactory = Callable[[str, str], ModelBackend]


@dataclass
class ChainLink:
    """One (backend, model) pair in a fallback chain."""

    backend: str
    model: str
    max_tokens: int


@dataclass
class ChainResult:
    """Successful chain outcome, with the identifiers actually used."""

    content: str
    backend: str
    model: str
    input_tokens: int
    output_tokens: int
    outcomes: list[AttemptOutcome] = field(default_factory=list)

    @property
    def attempts(self) -> int:
        return len(self.outcomes)


def resolve_chain(
    backend_id: str,
    model_override: Optional[str] = None,
    *,
    catalog: Optional[ModelCatalog] = None,
    max_length: int = MAX_CHAIN_LENGTH,
) -> list[ChainLink]:
    """Build the ordered fallback chain for a request.

    Args:
        backend_id: Backend hint from the request
        model_override: Optional model to try first
        catalog: Model catalog (defaults to the global one)
        max_length: Upper bound on the number of links

    Returns:
        Non-empty list of ChainLink, override first, no duplicates

    Raises:
        ConfigurationError: Unknown backend, or an override the backend
            does not list. Raised before any backend call.
    """
    catalog = catalog or get_model_catalog()
    entry = catalog.get(backend_id)
    if entry is None or backend_id not in BACKEND_CLASSES:
        raise ConfigurationError(
            f"Unsupported backend: '{backend_id}'. "
            f"Available: {', '.join(sorted(catalog.backends()))}.",
            backend=backend_id,
            model=model_override or "",
        )

    model_ids: list[str] = []
    if model_override:
        if entry.get_model(model_override) is None:
            raise ConfigurationError(
                f"Model '{model_override}' is not available for backend '{backend_id}'.",
                backend=backend_id,
                model=model_override,
            )
        model_ids.append(model_override)

    for model_id in entry.default_chain:
        if model_id not in model_ids:
            model_ids.append(model_id)

    model_ids = model_ids[: max(1, max_length)]
    return [
        ChainLink(
            backend=backend_id,
            model=model_id,
            max_tokens=entry.get_model(model_id).max_tokens,
        )
        for model_id in model_ids
    ]


async def run_chain(
    links: list[ChainLink],
    *,
    system_prompt: str,
    user_message: str,
    api_key: str,
    policy: Optional[RetryPolicy] = None,
    backend_factory: BackendFactory = get_backend,
    on_attempt_failed: Optional[Callable[[ChainLink, int, GenerationError], Any]] = None,
    outcomes: Optional[list[AttemptOutcome]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Any = random,
    label: str = "",
) -> ChainResult:
    """Run the chain until one link succeeds.

    Args:
        links: Output of resolve_chain()
        system_prompt: System prompt sent with every call
        user_message: User message sent with every call
        api_key: Caller credential, passed straight to the backend
        policy: Retry budget applied to each link
        backend_factory: (backend_id, model_id) -> backend instance
        on_attempt_failed: Progress hook, called as (link, attempt, cause)
        outcomes: Optional list collecting every attempt across all links
        sleep, rng: Forwarded to the retry scheduler

    Returns:
        ChainResult for the first link that succeeded

    Raises:
        GenerationError: Cause from the last link attempted
    """
    if not links:
        raise ConfigurationError("Empty backend chain")

    if outcomes is None:
        outcomes = []
    last_error: Optional[GenerationError] = None

    for index, link in enumerate(links, start=1):
        link_label = f"{label} {link.backend}/{link.model}".strip()
        if index > 1:
            logger.warning(
                f"[{link_label}] Falling back to link {index}/{len(links)} "
                f"after {last_error.kind if last_error else 'error'}"
            )

        try:
            backend = backend_factory(link.backend, link.model)
        except GenerationError as e:
            last_error = e
            logger.error(f"[{link_label}] Could not build backend ({e.kind}): {e}")
            continue

        async def _call(backend=backend, link=link, link_label=link_label) -> LLMCallResult:
            return await backend.complete(
                system_prompt,
                user_message,
                api_key=api_key,
                max_tokens=link.max_tokens,
                label=link_label,
            )

        on_failure = None
        if on_attempt_failed is not None:
            def on_failure(attempt, cause, link=link):
                return on_attempt_failed(link, attempt, cause)

        try:
            result, _ = await retry_with_backoff(
                _call,
                policy=policy,
                on_failure=on_failure,
                label=link_label,
                backend=link.backend,
                model=link.model,
                sleep=sleep,
                rng=rng,
                outcomes=outcomes,
            )
        except GenerationError as e:
            last_error = e
            logger.error(f"[{link_label}] Link exhausted ({e.kind}): {e}")
            continue

        logger.info(
            f"[{link_label}] Chain succeeded on link {index}/{len(links)} "
            f"after {len(outcomes)} total attempts"
        )
        return ChainResult(
            content=result.content,
            backend=link.backend,
            model=result.model_id or link.model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            outcomes=outcomes,
        )

    raise last_error
