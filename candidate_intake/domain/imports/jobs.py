"""
Persistent tracking for upload ingestion jobs and their error entries.

A job's progress counters and error list have a single writer: the ingestion
run that claimed the job. Status transitions are guarded in SQL so terminal
states can never be left again.
"""
from __future__ import annotations

import logging
import threading
import uuid
import weakref
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from candidate_intake.core.exceptions import JobNotFoundException, JobStateException, JobStoreUnavailableException
from candidate_intake.db.models import UploadJob, UploadJobError, utcnow, create_tables
from candidate_intake.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

_jobs = UploadJob.__table__
_errors = UploadJobError.__table__

_initialized_engines: "weakref.WeakSet[Engine]" = weakref.WeakSet()
_table_init_lock = threading.Lock()


def ensure_ingestion_tables(engine: Engine) -> None:
    """Create the ingestion tables on-demand, once per engine."""
    if engine in _initialized_engines:
        return
    with _table_init_lock:
        if engine in _initialized_engines:
            return
        create_tables(engine)
        _initialized_engines.add(engine)


@contextmanager
def _job_store() -> Iterator[None]:
    try:
        yield
    except OperationalError as e:
        raise JobStoreUnavailableException(f"Job store unavailable: {e}") from e


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "source_file_name": row["source_file_name"],
        "storage_path": row["storage_path"],
        "file_hash": row["file_hash"],
        "file_size": row["file_size"],
        "status": row["status"],
        "total_rows": row["total_rows"] or 0,
        "processed_rows": row["processed_rows"] or 0,
        "header_signature": row["header_signature"],
        "error_message": row["error_message"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "completed_at": row["completed_at"],
    }


def _row_to_error(row: Any) -> Dict[str, Any]:
    return {
        "row_number": row["row_number"],
        "message": row["message"],
        "raw_row": row["raw_row"],
        "created_at": row["created_at"],
    }


def create_upload_job(
    engine: Engine,
    *,
    source_file_name: str,
    storage_path: str,
    file_hash: Optional[str] = None,
    file_size: Optional[int] = None,
    header_signature: Optional[str] = None,
) -> Dict[str, Any]:
    """Create and persist a new job in the pending state."""
    job_id = str(uuid.uuid4())
    now = utcnow()
    values = {
        "id": job_id,
        "source_file_name": source_file_name,
        "storage_path": storage_path,
        "file_hash": file_hash,
        "file_size": file_size,
        "status": "pending",
        "total_rows": 0,
        "processed_rows": 0,
        "header_signature": header_signature,
        "created_at": now,
        "updated_at": now,
    }
    with _job_store(), engine.begin() as conn:
        conn.execute(_jobs.insert().values(**values))
        row = conn.execute(select(_jobs).where(_jobs.c.id == job_id)).mappings().first()
    logger.info("Created upload job %s for '%s'", job_id, source_file_name)
    return _row_to_job(row)


def get_upload_job(engine: Engine, job_id: str) -> Optional[Dict[str, Any]]:
    """Fetch a single job by ID."""
    with _job_store(), engine.connect() as conn:
        row = conn.execute(select(_jobs).where(_jobs.c.id == job_id)).mappings().first()
    return _row_to_job(row) if row else None


def require_upload_job(engine: Engine, job_id: str) -> Dict[str, Any]:
    job = get_upload_job(engine, job_id)
    if job is None:
        raise JobNotFoundException(job_id)
    return job


def find_job_by_file_hash(engine: Engine, file_hash: str) -> Optional[Dict[str, Any]]:
    """Return the most recent job for identical file content that has not failed."""
    query = (
        select(_jobs)
        .where(_jobs.c.file_hash == file_hash, _jobs.c.status != "failed")
        .order_by(_jobs.c.created_at.desc())
        .limit(1)
    )
    with _job_store(), engine.connect() as conn:
        row = conn.execute(query).mappings().first()
    return _row_to_job(row) if row else None


def set_header_signature(engine: Engine, job_id: str, header_signature: str) -> None:
    with _job_store(), engine.begin() as conn:
        conn.execute(
            update(_jobs)
            .where(_jobs.c.id == job_id)
            .values(header_signature=header_signature, updated_at=utcnow())
        )


def claim_job_for_processing(engine: Engine, job_id: str) -> Dict[str, Any]:
    """
    Move a job from pending to processing.

    The transition is a compare-and-set, so a job that is already processing
    or finished is rejected instead of being run a second time.
    """
    with _job_store(), engine.begin() as conn:
        result = conn.execute(
            update(_jobs)
            .where(_jobs.c.id == job_id, _jobs.c.status == "pending")
            .values(status="processing", total_rows=0, processed_rows=0, updated_at=utcnow())
        )
        row = conn.execute(select(_jobs).where(_jobs.c.id == job_id)).mappings().first()

    if row is None:
        raise JobNotFoundException(job_id)
    if result.rowcount != 1:
        raise JobStateException(job_id, row["status"])
    logger.info("Upload job %s is now processing", job_id)
    return _row_to_job(row)


def update_job_progress(engine: Engine, job_id: str, *, total_rows: int, processed_rows: int) -> None:
    """Persist live counters for polling clients while the job is processing."""
    with _job_store(), engine.begin() as conn:
        conn.execute(
            update(_jobs)
            .where(_jobs.c.id == job_id, _jobs.c.status == "processing")
            .values(total_rows=total_rows, processed_rows=processed_rows, updated_at=utcnow())
        )


def append_job_errors(engine: Engine, job_id: str, errors: Sequence[Dict[str, Any]]) -> int:
    """Append error entries to a job, preserving their order within this flush."""
    if not errors:
        return 0
    now = utcnow()
    rows = [
        {
            "job_id": job_id,
            "row_number": entry.get("row_number"),
            "message": str(entry.get("message") or "Unknown error"),
            "raw_row": make_json_safe(entry.get("raw_row")),
            "created_at": now,
        }
        for entry in errors
    ]
    with _job_store(), engine.begin() as conn:
        conn.execute(_errors.insert(), rows)
    return len(rows)


def finish_upload_job(
    engine: Engine,
    job_id: str,
    *,
    success: bool,
    total_rows: Optional[int] = None,
    processed_rows: Optional[int] = None,
    error_message: Optional[str] = None,
    allowed_from: Sequence[str] = ("processing",),
) -> bool:
    """
    Move a job to completed/failed. Returns False when the job was not in an allowed state.
    """
    values: Dict[str, Any] = {
        "status": "completed" if success else "failed",
        "updated_at": utcnow(),
        "completed_at": utcnow(),
    }
    if total_rows is not None:
        values["total_rows"] = total_rows
    if processed_rows is not None:
        values["processed_rows"] = processed_rows
    if error_message is not None:
        values["error_message"] = error_message

    with _job_store(), engine.begin() as conn:
        result = conn.execute(
            update(_jobs)
            .where(_jobs.c.id == job_id, _jobs.c.status.in_(list(allowed_from)))
            .values(**values)
        )
    if result.rowcount != 1:
        logger.warning("Upload job %s was not in %s; final status not written", job_id, list(allowed_from))
        return False
    logger.info(
        "Upload job %s %s (%s/%s rows)",
        job_id,
        values["status"],
        processed_rows,
        total_rows,
    )
    return True


def fail_job_before_processing(engine: Engine, job_id: str, message: str) -> None:
    """Fail a pending job that never started ingesting (e.g. unreadable headers)."""
    append_job_errors(engine, job_id, [{"message": message}])
    finish_upload_job(engine, job_id, success=False, error_message=message, allowed_from=("pending",))


def count_job_errors(engine: Engine, job_id: str) -> int:
    with _job_store(), engine.connect() as conn:
        return conn.execute(
            select(func.count()).select_from(_errors).where(_errors.c.job_id == job_id)
        ).scalar() or 0


def list_job_errors(engine: Engine, job_id: str, *, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    """Return error entries in the order they were recorded."""
    query = (
        select(_errors)
        .where(_errors.c.job_id == job_id)
        .order_by(_errors.c.id)
        .limit(limit)
        .offset(offset)
    )
    with _job_store(), engine.connect() as conn:
        return [_row_to_error(row) for row in conn.execute(query).mappings().all()]


def list_upload_jobs(
    engine: Engine,
    *,
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Tuple[List[Dict[str, Any]], int, Dict[str, int]]:
    """
    List recent jobs newest first.

    Returns (jobs, total matching, counts by status over the same filters).
    """
    conditions = []
    if status:
        conditions.append(_jobs.c.status == status)
    if start_date:
        conditions.append(_jobs.c.created_at >= start_date)
    if end_date:
        conditions.append(_jobs.c.created_at <= end_date)

    offset = (max(page, 1) - 1) * limit
    query = select(_jobs).where(*conditions).order_by(_jobs.c.created_at.desc()).limit(limit).offset(offset)
    count_query = select(func.count()).select_from(_jobs).where(*conditions)
    stats_query = select(_jobs.c.status, func.count()).where(*conditions).group_by(_jobs.c.status)

    with _job_store(), engine.connect() as conn:
        jobs = [_row_to_job(row) for row in conn.execute(query).mappings().all()]
        total = conn.execute(count_query).scalar() or 0
        by_status = {row[0]: row[1] for row in conn.execute(stats_query).all()}

    return jobs, total, by_status


def list_jobs_with_status(engine: Engine, status: str) -> List[Dict[str, Any]]:
    """Return every job currently in ``status``, oldest first."""
    query = select(_jobs).where(_jobs.c.status == status).order_by(_jobs.c.created_at)
    with _job_store(), engine.connect() as conn:
        return [_row_to_job(row) for row in conn.execute(query).mappings().all()]


def fail_interrupted_jobs(engine: Engine, message: str = "Ingestion was interrupted by a service restart.") -> int:
    """Fail jobs left in processing by a previous process that stopped mid-run."""
    failed = 0
    for job in list_jobs_with_status(engine, "processing"):
        append_job_errors(engine, job["id"], [{"message": message}])
        if finish_upload_job(engine, job["id"], success=False, error_message=message):
            failed += 1
    if failed:
        logger.warning("Marked %d interrupted upload job(s) as failed", failed)
    return failed
