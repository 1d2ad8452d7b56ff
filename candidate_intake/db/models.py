"""
Persistent tables for candidates, upload jobs and header-mapping cache entries,
plus the partial-failure tolerant batch insert used by ingestion.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    insert,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DataError, IntegrityError

from candidate_intake.db.session import Base

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class UploadJob(Base):
    """One ingestion attempt for one uploaded spreadsheet."""
    __tablename__ = "upload_jobs"

    id = Column(String(36), primary_key=True)
    source_file_name = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    file_hash = Column(String(64), index=True)
    file_size = Column(Integer)
    status = Column(String(20), nullable=False, default="pending", index=True)
    total_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    header_signature = Column(String(64), index=True)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True))


class UploadJobError(Base):
    """A per-row (or job-level, when row_number is NULL) ingestion error."""
    __tablename__ = "upload_job_errors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("upload_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    row_number = Column(Integer)
    message = Column(Text, nullable=False)
    raw_row = Column(JSON(none_as_null=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)


class HeaderMapping(Base):
    """Cached header -> canonical field resolution keyed by header signature."""
    __tablename__ = "header_mappings"

    header_signature = Column(String(64), primary_key=True)
    original_headers = Column(JSON, nullable=False)
    mapped_headers = Column(JSON, nullable=False)
    source = Column(String(20), nullable=False, default="heuristic")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Candidate(Base):
    """A normalized candidate row with its untouched source snapshot."""
    __tablename__ = "candidates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String)
    last_name = Column(String)
    full_name = Column(String)
    email = Column(String, unique=True, index=True)
    phone = Column(String(32), index=True)
    experience_years = Column(Float)
    skills = Column(JSON(none_as_null=True))
    location = Column(String)
    job_location = Column(String)
    current_company = Column(String)
    designation = Column(String)
    highest_qualification = Column(String)
    recruiter_name = Column(String)
    client_name = Column(String)
    industry = Column(String)
    submission_date = Column(String)
    candidate_status = Column(String)
    raw_data = Column(JSON(none_as_null=True))
    source_file = Column(String)
    source_row_number = Column(Integer)
    upload_job_id = Column(String(36), ForeignKey("upload_jobs.id", ondelete="SET NULL"), index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# Columns callers may supply; id and created_at come from the table defaults.
CANDIDATE_INSERT_COLUMNS = tuple(
    column.name
    for column in Candidate.__table__.columns
    if column.name not in ("id", "created_at")
)


def create_tables(engine: Engine) -> None:
    """Create all ingestion tables if they do not exist."""
    Base.metadata.create_all(engine)


@dataclass
class BatchFailure:
    """A document in a write batch that the store refused."""
    index: int
    message: str


@dataclass
class BatchInsertResult:
    """Outcome of a best-effort batch insert, independent of the store's error shapes."""
    succeeded_count: int
    failures: List[BatchFailure] = field(default_factory=list)


def _describe_write_error(error: Exception) -> str:
    origin = getattr(error, "orig", None)
    detail = str(origin) if origin is not None else str(error)
    detail = detail.strip().splitlines()[0] if detail.strip() else type(error).__name__
    if isinstance(error, IntegrityError):
        return f"Duplicate or invalid candidate: {detail}"
    return f"Invalid candidate data: {detail}"


def _candidate_params(record: Dict[str, Any]) -> Dict[str, Any]:
    return {name: record.get(name) for name in CANDIDATE_INSERT_COLUMNS}


def insert_candidates_batch(engine: Engine, records: List[Dict[str, Any]]) -> BatchInsertResult:
    """
    Insert candidate documents, tolerating per-document failures.

    The whole batch is attempted in one transaction first. If the store rejects
    any document (uniqueness or data errors) the batch is replayed one document
    per transaction so each failure is attributed to its index while every
    acceptable document is still written. Connection-level errors propagate.
    """
    if not records:
        return BatchInsertResult(succeeded_count=0)

    statement = insert(Candidate.__table__)
    params = [_candidate_params(record) for record in records]

    try:
        with engine.begin() as conn:
            conn.execute(statement, params)
        return BatchInsertResult(succeeded_count=len(params))
    except (IntegrityError, DataError) as exc:
        logger.info(
            "Batch insert of %d candidates rejected (%s); retrying one by one",
            len(params),
            type(exc).__name__,
        )

    succeeded = 0
    failures: List[BatchFailure] = []
    for index, row in enumerate(params):
        try:
            with engine.begin() as conn:
                conn.execute(statement, row)
            succeeded += 1
        except (IntegrityError, DataError) as exc:
            failures.append(BatchFailure(index=index, message=_describe_write_error(exc)))

    logger.info(
        "Row-by-row insert finished: %d succeeded, %d failed",
        succeeded,
        len(failures),
    )
    return BatchInsertResult(succeeded_count=succeeded, failures=failures)
