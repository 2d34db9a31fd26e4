import pytest

from src.executor.schemas import JobError, JobProgress, JobRecord, JobStatus, Section, TokenUsage
from src.executor.status_reader import STILL_RUNNING_MESSAGE, read_status


@pytest.mark.anyio
async def test_unknown_id_reads_as_processing(store):
    status = await read_status(store, "req-not-yet-written")

    assert status.status == JobStatus.PROCESSING
    assert status.message == STILL_RUNNING_MESSAGE
    assert status.result is None
    assert status.error is None
    assert status.progress is not None


@pytest.mark.anyio
async def test_placeholder_reports_progress(store):
    await store.put(JobRecord(
        request_id="req-1",
        progress=JobProgress(message="Attempt 1 failed (transport), continuing", attempt=1),
    ))

    status = await read_status(store, "req-1")

    assert status.status == JobStatus.PROCESSING
    assert status.progress.attempt == 1
    assert status.result is None


@pytest.mark.anyio
async def test_completed_reads_are_identical(store):
    await store.put(JobRecord(
        request_id="req-1",
        status=JobStatus.COMPLETED,
        raw_content="# A\nbody",
        sections=[Section(title="A", content="body")],
        backend_used="gemini",
        model_used="gemini-2.5-flash",
        tokens_used=TokenUsage(input=10, output=20, total=30),
        processing_time_ms=1200,
    ))

    first = await read_status(store, "req-1")
    second = await read_status(store, "req-1")

    assert first == second
    assert first.status == JobStatus.COMPLETED
    assert first.result == {"raw_content": "# A\nbody", "sections": [{"title": "A", "content": "body"}]}
    assert first.tokens_used.total == 30
    assert first.model_used == "gemini-2.5-flash"
    assert first.error is None


@pytest.mark.anyio
async def test_failed_job_carries_error_and_no_result(store):
    await store.put(JobRecord(
        request_id="req-1",
        status=JobStatus.FAILED,
        error=JobError(kind="authentication", message="invalid api key", backend="openai", attempts=1),
    ))

    status = await read_status(store, "req-1")

    assert status.status == JobStatus.FAILED
    assert status.result is None
    assert status.error.kind == "authentication"


@pytest.mark.anyio
@pytest.mark.parametrize("bad_id", ["bad.id", "", "../etc/passwd"])
async def test_malformed_id_is_rejected(store, bad_id):
    with pytest.raises(ValueError):
        await read_status(store, bad_id)
