"""Read-only status view over the result store.

Absence of a record is a normal state right after submission and reads as
"processing". Terminal responses are built only from the stored record
(timestamp included), so repeated reads are identical.
"""

import logging

from src.executor.result_store import ResultStore
from src.executor.schemas import (
    JobProgress,
    JobStatus,
    StatusResponse,
    utc_now,
    validate_request_id,
)

logger = logging.getLogger(__name__)

STILL_RUNNING_MESSAGE = "Document generation is still in progress..."
COMPLETED_MESSAGE = "Documentation generated successfully"
FAILED_MESSAGE = "Document generation failed"


async def read_status(store: ResultStore, request_id: str) -> StatusResponse:
    """Report the state of one job.

    Raises:
        ValueError: request_id is malformed. Unknown ids do not raise.
    """
    validate_request_id(request_id)
    record = await store.get(request_id)

    if record is None:
        return StatusResponse(
            request_id=request_id,
            status=JobStatus.PROCESSING,
            message=STILL_RUNNING_MESSAGE,
            progress=JobProgress(message="Waiting for the job to start"),
            timestamp=utc_now(),
        )

    if record.status == JobStatus.PROCESSING:
        return StatusResponse(
            request_id=request_id,
            status=JobStatus.PROCESSING,
            message=STILL_RUNNING_MESSAGE,
            progress=record.progress,
            backend_used=record.backend_used,
            model_used=record.model_used,
            timestamp=record.updated_at,
        )

    result = None
    if record.status == JobStatus.COMPLETED:
        result = {
            "raw_content": record.raw_content,
            "sections": [section.model_dump() for section in record.sections or []],
        }

    return StatusResponse(
        request_id=request_id,
        status=record.status,
        message=COMPLETED_MESSAGE if record.status == JobStatus.COMPLETED else FAILED_MESSAGE,
        result=result,
        error=record.error,
        tokens_used=record.tokens_used,
        processing_time_ms=record.processing_time_ms,
        backend_used=record.backend_used,
        model_used=record.model_used,
        timestamp=record.updated_at,
    )
