"""Job lifecycle management for document generation.

Handles:
- Submission: rate limiting, chain validation, placeholder write, and
  returning the request_id before any backend call starts
- Background execution on a bounded pool of asyncio tasks
- Progress lines written onto the placeholder after failed attempts
- Exactly one terminal write per job (completed or failed), including when
  the job crashes or is cancelled at shutdown

The result store is the only state shared with readers. The in-memory
claim set only blocks a second run of the same request_id in this process.
"""

import asyncio
import logging
import os
import random
import time
from typing import Any, Awaitable, Callable, Optional

from src.executor.chain_runner import (
    BackendFactory,
    ChainLink,
    resolve_chain,
    run_chain,
)
from src.executor.engine_runner import AttemptOutcome, RetryPolicy
from src.executor.prompt_builder import build_prompt
from src.executor.rate_limiter import FixedWindowRateLimiter, SubmissionRateLimited
from src.executor.result_store import ResultStore
from src.executor.schemas import (
    GenerationRequest,
    JobError,
    JobProgress,
    JobRecord,
    JobStatus,
    SubmissionResponse,
    TokenUsage,
    new_request_id,
    utc_now,
)
from src.executor.section_splitter import split_sections
from src.llm.catalog import ModelCatalog
from src.llm.errors import GenerationError
from src.llm.factory import get_backend

logger = logging.getLogger(__name__)

MAX_CONCURRENT_JOBS = int(os.environ.get("GENERATION_MAX_CONCURRENT_JOBS", "4"))
MAX_PENDING_JOBS = int(os.environ.get("GENERATION_MAX_PENDING_JOBS", "64"))
SECONDS_PER_CATEGORY = int(os.environ.get("GENERATION_SECONDS_PER_CATEGORY", "45"))

STATUS_URL_TEMPLATE = "/v1/status/{request_id}"

PromptBuilder = Callable[[GenerationRequest], tuple[str, str]]


class CapacityExceededError(Exception):
    """Too many jobs outstanding in this process."""


class GenerationOrchestrator:
    """Owns the write path of every job it accepts.

    Args:
        store: Result store shared with status readers
        policy: Retry budget per (backend, model) link
        backend_factory: (backend_id, model_id) -> backend instance
        prompt_builder: request -> (system_prompt, user_message)
        rate_limiter: Optional per-caller submission limiter
        catalog: Model catalog used to resolve chains
        max_concurrent_jobs: Jobs allowed to call backends at once
        max_pending_jobs: Accepted-but-unfinished jobs before refusing
        sleep, rng: Forwarded to the retry scheduler (tests inject these)
    """

    def __init__(
        self,
        store: ResultStore,
        *,
        policy: Optional[RetryPolicy] = None,
        backend_factory: BackendFactory = get_backend,
        prompt_builder: PromptBuilder = build_prompt,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        catalog: Optional[ModelCatalog] = None,
        max_concurrent_jobs: int = MAX_CONCURRENT_JOBS,
        max_pending_jobs: int = MAX_PENDING_JOBS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Any = random,
    ):
        self.store = store
        self.policy = policy or RetryPolicy()
        self.backend_factory = backend_factory
        self.prompt_builder = prompt_builder
        self.rate_limiter = rate_limiter
        self.catalog = catalog
        self.max_pending_jobs = max_pending_jobs
        self._semaphore = asyncio.Semaphore(max_concurrent_jobs)
        self._sleep = sleep
        self._rng = rng

        self._tasks: dict[str, asyncio.Task] = {}
        # request_ids accepted and not yet finished; the only duplicate-run guard
        self._claimed: set[str] = set()

    # --- Submission ---

    def _submission_response(
        self,
        request_id: str,
        status: JobStatus,
        category_count: int,
        message: str,
    ) -> SubmissionResponse:
        return SubmissionResponse(
            request_id=request_id,
            status=status,
            message=message,
            estimated_time_seconds=max(1, category_count) * SECONDS_PER_CATEGORY,
            status_check_url=STATUS_URL_TEMPLATE.format(request_id=request_id),
        )

    async def submit(
        self,
        request: GenerationRequest,
        *,
        caller_id: str = "anonymous",
    ) -> SubmissionResponse:
        """Accept a job and start it in the background.

        Returns as soon as the placeholder record is stored. No backend call
        has started at that point.

        Raises:
            SubmissionRateLimited: Caller exceeded its window
            ConfigurationError: Unknown backend or model; nothing is stored
            CapacityExceededError: Too many outstanding jobs
        """
        if self.rate_limiter is not None:
            decision = self.rate_limiter.check(caller_id)
            if not decision.allowed:
                raise SubmissionRateLimited(decision)

        links = resolve_chain(request.backend, request.model, catalog=self.catalog)
        categories = request.selected_docs.selected()

        if request.request_id:
            duplicate = await self._find_duplicate(request.request_id)
            if duplicate is not None:
                logger.warning(
                    f"IDEMPOTENCY: Returning existing job {request.request_id} "
                    f"({duplicate.value}) for duplicate submission"
                )
                return self._submission_response(
                    request.request_id,
                    duplicate,
                    len(categories),
                    "Generation already started (duplicate request detected).",
                )

        if len(self._claimed) >= self.max_pending_jobs:
            raise CapacityExceededError(
                f"{len(self._claimed)} jobs outstanding (limit {self.max_pending_jobs})"
            )

        request_id = request.request_id or new_request_id()
        self._claimed.add(request_id)

        placeholder = JobRecord(
            request_id=request_id,
            status=JobStatus.PROCESSING,
            project_name=request.project_details.project_name,
            categories=categories,
            progress=JobProgress(
                message="Queued",
                backend=links[0].backend,
                model=links[0].model,
            ),
        )
        try:
            await self.store.put(placeholder)
        except BaseException:
            self._claimed.discard(request_id)
            raise

        task = asyncio.create_task(
            self._run_job(request, placeholder, links),
            name=f"generation-{request_id}",
        )
        self._tasks[request_id] = task
        task.add_done_callback(lambda _t, rid=request_id: self._release(rid))

        logger.info(
            f"Accepted job {request_id}: {len(categories)} categories, "
            f"chain={[f'{link.backend}/{link.model}' for link in links]}"
        )
        return self._submission_response(
            request_id,
            JobStatus.PROCESSING,
            len(categories),
            "Document generation started in background.",
        )

    async def _find_duplicate(self, request_id: str) -> Optional[JobStatus]:
        if request_id in self._claimed:
            return JobStatus.PROCESSING
        existing = await self.store.get(request_id)
        if request_id in self._claimed:
            return JobStatus.PROCESSING
        return existing.status if existing is not None else None

    def _release(self, request_id: str) -> None:
        self._tasks.pop(request_id, None)
        self._claimed.discard(request_id)

    # --- Execution ---

    async def _run_job(
        self,
        request: GenerationRequest,
        placeholder: JobRecord,
        links: list[ChainLink],
    ) -> None:
        """Background task body. Always ends with a terminal write attempt."""
        request_id = placeholder.request_id
        start_time = time.time()
        outcomes: list[AttemptOutcome] = []
        try:
            async with self._semaphore:
                record = await self._generate(request, placeholder, links, outcomes, start_time)
            await self._write_terminal(record)
        except asyncio.CancelledError:
            logger.warning(f"Job {request_id} cancelled after {len(outcomes)} attempts")
            await self._write_failure(
                placeholder, "cancelled", "Job was cancelled before completion",
                links, outcomes, start_time,
            )
            raise
        except GenerationError as e:
            logger.error(f"Job {request_id} failed ({e.kind}) after {len(outcomes)} attempts: {e}")
            await self._write_failure(placeholder, e.kind, str(e), links, outcomes, start_time, e)
        except Exception as e:
            logger.exception(f"Job {request_id} crashed: {e}")
            await self._write_failure(
                placeholder, "internal", f"{e.__class__.__name__}: {e}",
                links, outcomes, start_time,
            )

    async def _generate(
        self,
        request: GenerationRequest,
        placeholder: JobRecord,
        links: list[ChainLink],
        outcomes: list[AttemptOutcome],
        start_time: float,
    ) -> JobRecord:
        request_id = placeholder.request_id
        system_prompt, user_message = self.prompt_builder(request)

        async def on_attempt_failed(link: ChainLink, attempt: int, cause: GenerationError):
            progress = placeholder.model_copy(
                update={
                    "updated_at": utc_now(),
                    "attempts": len(outcomes),
                    "progress": JobProgress(
                        message=(
                            f"Attempt {attempt} on {link.backend}/{link.model} failed "
                            f"({cause.kind}), continuing"
                        ),
                        attempt=attempt,
                        backend=link.backend,
                        model=link.model,
                    ),
                }
            )
            await self.store.put(progress)

        chain_result = await run_chain(
            links,
            system_prompt=system_prompt,
            user_message=user_message,
            api_key=request.credentials.get_secret_value(),
            policy=self.policy,
            backend_factory=self.backend_factory,
            on_attempt_failed=on_attempt_failed,
            outcomes=outcomes,
            sleep=self._sleep,
            rng=self._rng,
            label=request_id,
        )

        sections = split_sections(chain_result.content)
        logger.info(
            f"Job {request_id} generated {len(chain_result.content):,} chars, "
            f"{len(sections)} sections via {chain_result.backend}/{chain_result.model}"
        )

        return JobRecord(
            request_id=request_id,
            status=JobStatus.COMPLETED,
            created_at=placeholder.created_at,
            updated_at=utc_now(),
            project_name=placeholder.project_name,
            categories=placeholder.categories,
            backend_used=chain_result.backend,
            model_used=chain_result.model,
            raw_content=chain_result.content,
            sections=sections,
            tokens_used=TokenUsage(
                input=chain_result.input_tokens,
                output=chain_result.output_tokens,
                total=chain_result.input_tokens + chain_result.output_tokens,
            ),
            processing_time_ms=int((time.time() - start_time) * 1000),
            attempts=len(outcomes),
        )

    async def _write_terminal(self, record: JobRecord) -> bool:
        """Store a terminal record unless the job is already terminal."""
        existing = await self.store.get(record.request_id)
        if existing is not None and existing.is_terminal:
            logger.warning(
                f"Job {record.request_id} already {existing.status.value}, "
                f"dropping late {record.status.value} write"
            )
            return False
        written = await self.store.put(record)
        if written:
            logger.info(f"Job {record.request_id} status → {record.status.value}")
        return written

    async def _write_failure(
        self,
        placeholder: JobRecord,
        kind: str,
        message: str,
        links: list[ChainLink],
        outcomes: list[AttemptOutcome],
        start_time: float,
        cause: Optional[GenerationError] = None,
    ) -> None:
        last = outcomes[-1] if outcomes else None
        backend = (cause.backend if cause else "") or (last.backend if last else links[0].backend)
        model = (cause.model if cause else "") or (last.model if last else links[0].model)
        record = JobRecord(
            request_id=placeholder.request_id,
            status=JobStatus.FAILED,
            created_at=placeholder.created_at,
            updated_at=utc_now(),
            project_name=placeholder.project_name,
            categories=placeholder.categories,
            backend_used=backend,
            model_used=model,
            error=JobError(
                kind=kind,
                message=message,
                backend=backend,
                model=model,
                attempts=len(outcomes),
            ),
            processing_time_ms=int((time.time() - start_time) * 1000),
            attempts=len(outcomes),
        )
        try:
            await self._write_terminal(record)
        except Exception as e:
            logger.exception(f"Could not store failure for job {placeholder.request_id}: {e}")

    # --- Lifecycle ---

    @property
    def outstanding(self) -> int:
        return len(self._claimed)

    async def join(self) -> None:
        """Wait until every accepted job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding jobs. Each still records a failed terminal state."""
        tasks = list(self._tasks.values())
        if tasks:
            logger.info(f"Cancelling {len(tasks)} outstanding generation jobs")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
