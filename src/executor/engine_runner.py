"""Single backend call execution with a deadline and retry.

This is the atomic unit of execution. Every backend call in the executor
flows through `retry_with_backoff()`, which runs each attempt under
`run_with_deadline()`.

Key features:
- Hard per-attempt deadline; the in-flight call is cancelled on expiry
- Exponential backoff with jitter between attempts, capped
- Non-retryable failures (authentication, empty output, configuration)
  stop the loop immediately
- The last observed cause is re-raised on exhaustion, so the failure
  kind survives up to the job record
- Failure callback for progress reporting; its errors never abort a retry
"""

import asyncio
import inspect
import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from src.llm.errors import (
    BackendTimeoutError,
    GenerationError,
    RateLimitError,
    classify_exception,
)

logger = logging.getLogger(__name__)

# Retry settings
ATTEMPT_TIMEOUT_SECONDS = float(os.environ.get("GENERATION_ATTEMPT_TIMEOUT_SECONDS", "840"))
MAX_ATTEMPTS = int(os.environ.get("GENERATION_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY_SECONDS = float(os.environ.get("GENERATION_RETRY_BASE_DELAY_SECONDS", "1.5"))
RETRY_MAX_DELAY_SECONDS = float(os.environ.get("GENERATION_RETRY_MAX_DELAY_SECONDS", "10"))

JITTER_LOW = 0.75
JITTER_HIGH = 1.25
# Throttled backends get twice the usual wait
RATE_LIMIT_BACKOFF_FACTOR = 2


class RetryPolicy(BaseModel):
    """Retry budget for one (backend, model) pair."""

    max_attempts: int = Field(default=MAX_ATTEMPTS, ge=1)
    base_delay_seconds: float = Field(default=RETRY_BASE_DELAY_SECONDS, ge=0)
    max_delay_seconds: float = Field(default=RETRY_MAX_DELAY_SECONDS, ge=0)
    attempt_timeout_seconds: float = Field(default=ATTEMPT_TIMEOUT_SECONDS, gt=0)

    def delay_before_retry(
        self,
        retry_number: int,
        rng: Any = random,
        *,
        rate_limited: bool = False,
    ) -> float:
        """Backoff before retry `retry_number` (1 = before the second attempt).

        d * 2^(k-1), doubled after a rate-limit failure, capped, then scaled
        by a jitter factor in [0.75, 1.25].
        """
        base = self.base_delay_seconds * (2 ** (retry_number - 1))
        if rate_limited:
            base *= RATE_LIMIT_BACKOFF_FACTOR
        return min(base, self.max_delay_seconds) * rng.uniform(JITTER_LOW, JITTER_HIGH)


@dataclass
class AttemptOutcome:
    """What happened on one invocation of the operation."""

    attempt: int
    ok: bool
    duration_ms: int
    backend: str = ""
    model: str = ""
    error: Optional[GenerationError] = None


OnFailure = Callable[[int, GenerationError], Any]


async def run_with_deadline(
    operation: Callable[[], Awaitable[Any]],
    deadline_seconds: float,
    *,
    label: str = "",
) -> Any:
    """Await `operation()` but give up after `deadline_seconds`.

    On expiry the underlying task is cancelled, so the pending network
    request is aborted rather than left running.

    Raises:
        BackendTimeoutError: The deadline elapsed first.
    """
    try:
        return await asyncio.wait_for(operation(), timeout=deadline_seconds)
    except asyncio.TimeoutError as e:
        logger.warning(f"[{label}] Deadline of {deadline_seconds}s exceeded, call cancelled")
        raise BackendTimeoutError(
            f"[{label}] No response within {deadline_seconds}s"
        ) from e


async def _notify(on_failure: Optional[OnFailure], attempt: int, cause: GenerationError, label: str):
    """Invoke the failure callback. Its exceptions are logged and dropped."""
    if on_failure is None:
        return
    try:
        result = on_failure(attempt, cause)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"[{label}] Failure callback raised (ignored): {e}")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    *,
    policy: Optional[RetryPolicy] = None,
    on_failure: Optional[OnFailure] = None,
    label: str = "",
    backend: str = "",
    model: str = "",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Any = random,
    outcomes: Optional[list[AttemptOutcome]] = None,
) -> tuple[Any, list[AttemptOutcome]]:
    """Invoke `operation` up to `policy.max_attempts` times.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Attempt budget, delays and per-attempt deadline
        on_failure: Called as on_failure(attempt, cause) after each failed
            attempt. May be sync or async.
        label: Log prefix
        backend, model: Identifiers attached to outcomes and classified errors
        sleep: Backoff sleep (injectable for tests)
        rng: Source of jitter, anything with .uniform()
        outcomes: Optional list to append attempt outcomes to, so callers
            can count attempts even when this raises

    Returns:
        (result, outcomes) where outcomes has one entry per invocation

    Raises:
        GenerationError: The last observed cause. Non-retryable causes are
            raised after the first occurrence.
    """
    policy = policy or RetryPolicy()
    if outcomes is None:
        outcomes = []
    last_error: Optional[GenerationError] = None

    for attempt in range(1, policy.max_attempts + 1):
        if attempt > 1:
            delay = policy.delay_before_retry(
                attempt - 1, rng, rate_limited=isinstance(last_error, RateLimitError)
            )
            logger.warning(
                f"[{label}] Retry {attempt - 1}/{policy.max_attempts - 1} after {delay:.2f}s "
                f"(previous error: {last_error.kind}: {last_error})"
            )
            await sleep(delay)

        start_time = time.time()
        try:
            result = await run_with_deadline(
                operation, policy.attempt_timeout_seconds, label=label
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = classify_exception(e, backend=backend, model=model)
            if last_error is not e:
                last_error.__cause__ = e
            outcomes.append(
                AttemptOutcome(
                    attempt=attempt,
                    ok=False,
                    duration_ms=int((time.time() - start_time) * 1000),
                    backend=backend,
                    model=model,
                    error=last_error,
                )
            )
            logger.error(f"[{label}] Attempt {attempt} failed ({last_error.kind}): {last_error}")
            await _notify(on_failure, attempt, last_error, label)

            if not last_error.retryable:
                logger.warning(f"[{label}] {last_error.kind} is not retryable, giving up on this pair")
                raise last_error
            continue

        outcomes.append(
            AttemptOutcome(
                attempt=attempt,
                ok=True,
                duration_ms=int((time.time() - start_time) * 1000),
                backend=backend,
                model=model,
            )
        )
        return result, outcomes

    logger.error(f"[{label}] Failed after {policy.max_attempts} attempts. Last error: {last_error}")
    raise last_error
