"""LLM backend abstraction for multi-provider document generation.

Provides a unified async interface for calling different LLM providers
(Google Gemini, Anthropic Claude, OpenAI, xAI Grok) with a consistent
response format.

Each backend handles provider-specific concerns:
- Client creation with the caller's API key and timeout configuration
- Request shaping (system prompt placement, output token parameter name)
- Response parsing and token counting
- Normalizing SDK exceptions into the failure taxonomy (src.llm.errors)

The executor handles provider-agnostic concerns:
- Per-attempt deadlines and retry with exponential backoff
- Fallback across the (backend, model) chain
- Persisting the outcome
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from src.llm.errors import EmptyOutputError, GenerationError, classify_exception

logger = logging.getLogger(__name__)


@dataclass
class LLMCallResult:
    """Normalized response from any LLM backend."""

    content: str
    model_id: str
    input_tokens: int
    output_tokens: int
    duration_ms: int


# Constants shared across backends
MIN_CONTENT_CHARS = 50  # Shorter output is treated as an empty response
XAI_BASE_URL = "https://api.x.ai/v1"

# Gemini content filters, all at BLOCK_MEDIUM_AND_ABOVE. Blocked responses
# surface as "safety settings" errors and are not retried.
GEMINI_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
GEMINI_SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"


def _client_timeout():
    """HTTP timeouts for SDK clients.

    The read timeout sits above the executor's per-attempt deadline,
    which is what bounds a call.
    """
    import httpx

    return httpx.Timeout(
        connect=30.0,
        read=900.0,
        write=60.0,
        pool=30.0,
    )


def _check_content(text: str, backend_id: str, model_id: str, label: str) -> str:
    content = (text or "").strip()
    if len(content) < MIN_CONTENT_CHARS:
        raise EmptyOutputError(
            f"[{label}] {backend_id}/{model_id} returned {len(content)} chars "
            f"(minimum {MIN_CONTENT_CHARS})",
            backend=backend_id,
            model=model_id,
        )
    return content


@runtime_checkable
class ModelBackend(Protocol):
    """Protocol for LLM backend implementations."""

    backend_id: str

    @property
    def model_id(self) -> str: ...

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        api_key: str,
        max_tokens: int,
        label: str = "",
    ) -> LLMCallResult: ...


class _BaseBackend:
    """Shared plumbing: timing, logging, and exception normalization."""

    backend_id = ""

    def __init__(self, model_id: str):
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        api_key: str,
        max_tokens: int,
        label: str = "",
    ) -> LLMCallResult:
        """Run one generation call and return the normalized result.

        Raises:
            GenerationError: Any failure, already classified. The SDK
                exception is chained as __cause__.
        """
        label = label or f"{self.backend_id}/{self._model_id}"
        estimated_input_tokens = (len(system_prompt) + len(user_message)) // 4
        logger.info(
            f"[{label}] {self.backend_id} call: ~{estimated_input_tokens:,} input tokens, "
            f"max_tokens={max_tokens}"
        )

        start_time = time.time()
        try:
            text, input_tokens, output_tokens = await self._generate(
                system_prompt, user_message, api_key=api_key, max_tokens=max_tokens
            )
        except GenerationError:
            raise
        except Exception as e:
            raise classify_exception(e, backend=self.backend_id, model=self._model_id) from e
        duration_ms = int((time.time() - start_time) * 1000)

        content = _check_content(text, self.backend_id, self._model_id, label)
        if not input_tokens:
            input_tokens = estimated_input_tokens
        if not output_tokens:
            output_tokens = len(content) // 4

        logger.info(
            f"[{label}] Completed: {input_tokens}+{output_tokens} tokens, "
            f"{duration_ms}ms, {len(content):,} chars"
        )

        return LLMCallResult(
            content=content,
            model_id=self._model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
        )

    async def _generate(
        self,
        system_prompt: str,
        user_message: str,
        *,
        api_key: str,
        max_tokens: int,
    ) -> tuple[str, int, int]:
        raise NotImplementedError


class AnthropicBackend(_BaseBackend):
    """Anthropic Claude backend (messages API, non-streaming)."""

    backend_id = "anthropic"

    def __init__(self, model_id: str = "claude-sonnet-4-20250514"):
        super().__init__(model_id)

    async def _generate(self, system_prompt, user_message, *, api_key, max_tokens):
        from anthropic import AsyncAnthropic

        async with AsyncAnthropic(
            api_key=api_key,
            timeout=_client_timeout(),
            max_retries=0,  # retries are owned by the executor
        ) as client:
            response = await client.messages.create(
                model=self._model_id,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            )

        raw_text = ""
        for block in response.content:
            if getattr(block, "type", "") == "text":
                raw_text += block.text

        usage = getattr(response, "usage", None)
        return (
            raw_text,
            getattr(usage, "input_tokens", 0) or 0,
            getattr(usage, "output_tokens", 0) or 0,
        )


class GeminiBackend(_BaseBackend):
    """Google Gemini backend via the google-genai async client.

    Thinking parts (part.thought == True) are excluded from the output.
    """

    backend_id = "gemini"

    def __init__(self, model_id: str = "gemini-2.5-pro"):
        super().__init__(model_id)

    async def _generate(self, system_prompt, user_message, *, api_key, max_tokens):
        from google import genai

        client = genai.Client(api_key=api_key)
        config = genai.types.GenerateContentConfig(
            system_instruction=system_prompt,
            max_output_tokens=max_tokens,
            safety_settings=[
                genai.types.SafetySetting(
                    category=genai.types.HarmCategory(category),
                    threshold=genai.types.HarmBlockThreshold(GEMINI_SAFETY_THRESHOLD),
                )
                for category in GEMINI_SAFETY_CATEGORIES
            ],
        )
        response = await client.aio.models.generate_content(
            model=self._model_id,
            contents=user_message,
            config=config,
        )

        raw_text = ""
        if response.candidates and response.candidates[0].content:
            for part in response.candidates[0].content.parts or []:
                text = getattr(part, "text", "") or ""
                if not getattr(part, "thought", False):
                    raw_text += text

        usage = getattr(response, "usage_metadata", None)
        return (
            raw_text,
            getattr(usage, "prompt_token_count", 0) or 0,
            getattr(usage, "candidates_token_count", 0) or 0,
        )


class OpenAIBackend(_BaseBackend):
    """OpenAI chat-completions backend.

    Reasoning models (o-series) reject `max_tokens` and take
    `max_completion_tokens` instead.
    """

    backend_id = "openai"
    base_url = None

    def __init__(self, model_id: str = "gpt-4.1", *, reasoning: bool = False):
        super().__init__(model_id)
        self.reasoning = reasoning

    async def _generate(self, system_prompt, user_message, *, api_key, max_tokens):
        from openai import AsyncOpenAI

        kwargs: dict[str, Any] = {
            "model": self._model_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
        }
        if self.reasoning:
            kwargs["max_completion_tokens"] = max_tokens
        else:
            kwargs["max_tokens"] = max_tokens

        async with AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=_client_timeout(),
            max_retries=0,
        ) as client:
            response = await client.chat.completions.create(**kwargs)

        raw_text = ""
        if response.choices:
            raw_text = response.choices[0].message.content or ""

        usage = response.usage
        return (
            raw_text,
            getattr(usage, "prompt_tokens", 0) or 0,
            getattr(usage, "completion_tokens", 0) or 0,
        )


class XAIBackend(OpenAIBackend):
    """xAI Grok backend. Speaks the OpenAI chat-completions protocol."""

    backend_id = "xai"
    base_url = XAI_BASE_URL

    def __init__(self, model_id: str = "grok-4-0709", *, reasoning: bool = False):
        super().__init__(model_id, reasoning=reasoning)
