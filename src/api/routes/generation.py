"""Generation API routes: submit, poll, and list models.

Endpoints:
    POST /v1/generate                 Start a generation job (202)
    GET  /v1/status/{request_id}      Poll status (202 processing, 200 terminal)
    GET  /v1/models                   Backends, models and default chains
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field, SecretStr, ValidationError

from src.executor.job_manager import CapacityExceededError, GenerationOrchestrator
from src.executor.rate_limiter import SubmissionRateLimited
from src.executor.result_store import ResultStore
from src.executor.schemas import (
    DEFAULT_BACKEND,
    DocumentSelection,
    GenerationRequest,
    JobStatus,
    ProjectDetails,
    StatusResponse,
    SubmissionResponse,
)
from src.executor.status_reader import read_status
from src.llm.catalog import get_model_catalog
from src.llm.errors import ConfigurationError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["generation"])


class GenerateBody(BaseModel):
    """Wire format for POST /v1/generate."""

    project_details: ProjectDetails
    selected_docs: DocumentSelection
    backend: str = DEFAULT_BACKEND
    model: Optional[str] = None
    api_key: SecretStr = Field(..., description="Backend API key; never stored")
    request_id: Optional[str] = None


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_result_store(request: Request) -> ResultStore:
    return request.app.state.result_store


def _caller_id(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "anonymous"


@router.post("/generate", status_code=202, response_model=SubmissionResponse)
async def submit_generation(
    body: GenerateBody,
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Start a generation job.

    Returns immediately with a request_id to poll. The job runs in the
    background; no backend call has started when this responds.
    """
    try:
        generation_request = GenerationRequest(
            project_details=body.project_details,
            selected_docs=body.selected_docs,
            backend=body.backend,
            model=body.model,
            credentials=body.api_key,
            request_id=body.request_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    try:
        return await orchestrator.submit(generation_request, caller_id=_caller_id(request))
    except SubmissionRateLimited as e:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={
                "X-RateLimit-Limit": str(e.decision.limit),
                "X-RateLimit-Remaining": "0",
                "Retry-After": str(int(e.decision.reset_after_seconds) + 1),
            },
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CapacityExceededError as e:
        logger.warning(f"Refusing submission: {e}")
        raise HTTPException(status_code=503, detail="Server is at capacity, try again shortly")


@router.get("/status/{request_id}", response_model=StatusResponse)
async def check_status(
    request_id: str,
    response: Response,
    store: ResultStore = Depends(get_result_store),
):
    """Poll a job. 202 while processing, 200 once completed or failed."""
    try:
        status = await read_status(store, request_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    response.status_code = 202 if status.status == JobStatus.PROCESSING else 200
    return status


@router.get("/models")
async def list_models():
    """List backends with their models and default fallback chains."""
    catalog = get_model_catalog()
    return {
        "default_backend": DEFAULT_BACKEND,
        "backends": [entry.model_dump() for entry in catalog.list_all()],
    }
