"""Result store: durable job records keyed by request_id.

Three implementations of one contract:
- PostgresResultStore: production, one JSONB row per job
- FileResultStore: fallback / dev, one JSON file per job
- MemoryResultStore: tests and single-process use

Contract:
- get() returns None for unknown ids (never raises for absence)
- put() is last-writer-wins per key, except that a terminal record is
  never replaced. It returns False when the write was refused.
- No scan over all records is needed to read one job.
"""

import asyncio
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from src.executor import db
from src.executor.schemas import JobRecord, validate_request_id

logger = logging.getLogger(__name__)

_SERVERLESS = bool(os.environ.get("NETLIFY") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME"))
RESULTS_DIR = os.environ.get("GENERATION_RESULTS_DIR") or ("/tmp" if _SERVERLESS else "./tmp")


@runtime_checkable
class ResultStore(Protocol):
    """Persistence contract for job records."""

    async def get(self, request_id: str) -> Optional[JobRecord]: ...

    async def put(self, record: JobRecord) -> bool: ...

    async def delete(self, request_id: str) -> bool: ...


def _refuse_overwrite(existing: Optional[JobRecord], record: JobRecord) -> bool:
    if existing is not None and existing.is_terminal:
        logger.warning(
            f"Refusing to overwrite terminal record {record.request_id} "
            f"({existing.status.value}) with {record.status.value}"
        )
        return True
    return False


class MemoryResultStore:
    """In-process store. Records are kept serialized so callers never share objects."""

    def __init__(self):
        self._records: dict[str, str] = {}
        self._lock = threading.Lock()

    async def get(self, request_id: str) -> Optional[JobRecord]:
        with self._lock:
            raw = self._records.get(request_id)
        return JobRecord.model_validate_json(raw) if raw is not None else None

    async def put(self, record: JobRecord) -> bool:
        with self._lock:
            raw = self._records.get(record.request_id)
            existing = JobRecord.model_validate_json(raw) if raw is not None else None
            if _refuse_overwrite(existing, record):
                return False
            self._records[record.request_id] = record.model_dump_json()
        return True

    async def delete(self, request_id: str) -> bool:
        with self._lock:
            return self._records.pop(request_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class FileResultStore:
    """One JSON file per job at <root>/<request_id>.json.

    Writes go to a temp file in the same directory followed by os.replace,
    so readers see either the old record or the new one, never a torn file.
    Blocking I/O runs in a worker thread.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or RESULTS_DIR)
        self._lock = threading.Lock()

    def _path(self, request_id: str) -> Path:
        return self.root / f"{validate_request_id(request_id)}.json"

    def _read(self, request_id: str) -> Optional[JobRecord]:
        path = self._path(request_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return JobRecord.model_validate_json(text)

    def _write(self, record: JobRecord) -> bool:
        path = self._path(record.request_id)
        with self._lock:
            if _refuse_overwrite(self._read(record.request_id), record):
                return False
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{record.request_id}.", suffix=".tmp", dir=str(self.root)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(record.model_dump_json(indent=2))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        logger.debug(f"Saved {record.request_id} ({record.status.value}) to {path}")
        return True

    def _delete(self, request_id: str) -> bool:
        with self._lock:
            try:
                self._path(request_id).unlink()
            except FileNotFoundError:
                return False
        return True

    async def get(self, request_id: str) -> Optional[JobRecord]:
        return await asyncio.to_thread(self._read, request_id)

    async def put(self, record: JobRecord) -> bool:
        return await asyncio.to_thread(self._write, record)

    async def delete(self, request_id: str) -> bool:
        return await asyncio.to_thread(self._delete, request_id)


class PostgresResultStore:
    """generation_results table, one row per job.

    The terminal guard is enforced in SQL: the upsert only updates rows that
    are still 'processing'.
    """

    _UPSERT = """
        INSERT INTO generation_results (request_id, status, record, created_at, updated_at)
        VALUES (%s, %s, %s, NOW(), NOW())
        ON CONFLICT (request_id) DO UPDATE
            SET status = EXCLUDED.status,
                record = EXCLUDED.record,
                updated_at = NOW()
            WHERE generation_results.status = 'processing'
        RETURNING request_id
    """

    def __init__(self):
        db.init_db()

    def _read(self, request_id: str) -> Optional[JobRecord]:
        row = db.execute(
            "SELECT record FROM generation_results WHERE request_id = %s",
            (request_id,),
            fetch="one",
        )
        if row is None:
            return None
        return JobRecord.model_validate(db._json_loads(row["record"]))

    def _write(self, record: JobRecord) -> bool:
        row = db.execute(
            self._UPSERT,
            (record.request_id, record.status.value, record.model_dump_json()),
            fetch="one",
        )
        if row is None:
            logger.warning(f"Refusing to overwrite terminal record {record.request_id}")
            return False
        return True

    def _delete(self, request_id: str) -> bool:
        row = db.execute(
            "DELETE FROM generation_results WHERE request_id = %s RETURNING request_id",
            (request_id,),
            fetch="one",
        )
        return row is not None

    async def get(self, request_id: str) -> Optional[JobRecord]:
        validate_request_id(request_id)
        return await asyncio.to_thread(self._read, request_id)

    async def put(self, record: JobRecord) -> bool:
        return await asyncio.to_thread(self._write, record)

    async def delete(self, request_id: str) -> bool:
        validate_request_id(request_id)
        return await asyncio.to_thread(self._delete, request_id)


def create_result_store() -> ResultStore:
    """Pick the store for this process.

    Postgres when GENERATION_DATABASE_URL is set and reachable, otherwise
    the filesystem store.
    """
    if db.is_configured():
        try:
            store = PostgresResultStore()
            logger.info("Result store: PostgreSQL")
            return store
        except Exception as e:
            logger.warning(f"PostgreSQL unavailable, falling back to filesystem store: {e}")

    store = FileResultStore()
    logger.info(f"Result store: filesystem ({store.root.resolve()})")
    return store
