"""
Batch ingestion engine.

Streams one stored spreadsheet into the candidate store for a claimed upload
job: rows are normalized, validated and buffered, then written in batches that
tolerate per-row store rejections. Progress counters and error entries are
persisted while the run goes so polling clients can follow along.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from sqlalchemy.engine import Engine

from candidate_intake.core.config import Settings, settings as default_settings
from candidate_intake.core.exceptions import InvalidMappingException
from candidate_intake.db.models import BatchInsertResult, insert_candidates_batch
from candidate_intake.domain.imports.jobs import (
    append_job_errors,
    claim_job_for_processing,
    finish_upload_job,
    get_upload_job,
    update_job_progress,
)
from candidate_intake.domain.imports.mapper import normalize_row, validate_candidate
from candidate_intake.domain.imports.processors.excel_processor import (
    SheetRow,
    read_excel_header_row,
    stream_excel_rows,
)
from candidate_intake.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

MISSING_MAPPING_MESSAGE = "Missing header mapping for this upload."


@dataclass
class IngestionResult:
    """Final counters of one ingestion run."""
    job_id: str
    status: str
    total_rows: int = 0
    processed_rows: int = 0
    error_count: int = 0
    error_message: Optional[str] = None


@dataclass
class _RunState:
    job_id: str
    source_file: str
    total_rows: int = 0
    processed_rows: int = 0
    error_count: int = 0
    records: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    seen_emails: Set[str] = field(default_factory=set)


def build_raw_row(headers: List[str], values: List[Any]) -> Dict[str, Any]:
    """Pair positional cell values with header names; the first of duplicate headers wins."""
    raw: Dict[str, Any] = {}
    for position, header in enumerate(headers):
        if not header or header in raw:
            continue
        raw[header] = values[position] if position < len(values) else None
    return raw


class IngestionEngine:
    """Runs upload jobs against one database engine."""

    def __init__(
        self,
        engine: Engine,
        config: Settings = default_settings,
        *,
        header_reader: Callable[[str], List[str]] = read_excel_header_row,
        row_reader: Callable[[str], Iterable[SheetRow]] = stream_excel_rows,
        insert_batch: Callable[[Engine, List[Dict[str, Any]]], BatchInsertResult] = insert_candidates_batch,
    ):
        self.engine = engine
        self.batch_size = max(1, config.ingest_batch_size)
        self.error_flush_size = max(1, config.ingest_error_flush_size)
        self.progress_interval = max(1, config.ingest_progress_interval)
        self.require_contact = config.ingest_require_contact
        self.dedup_max_entries = max(0, config.ingest_dedup_max_entries)
        self._read_headers = header_reader
        self._read_rows = row_reader
        self._insert_batch = insert_batch

    def run(self, storage_path: str, mapping: Optional[Mapping[str, Optional[str]]], job_id: str) -> IngestionResult:
        """
        Ingest ``storage_path`` for ``job_id`` using a resolved header mapping.

        Raises JobNotFoundException / JobStateException when the job cannot be
        claimed. Every failure after the claim is recorded on the job, which is
        then marked failed; the result is returned instead of raising.
        """
        job = claim_job_for_processing(self.engine, job_id)
        state = _RunState(job_id=job_id, source_file=job["source_file_name"])
        started = time.time()

        try:
            if not mapping or not any(mapping.values()):
                raise InvalidMappingException(MISSING_MAPPING_MESSAGE)
            self._ingest(state, storage_path, mapping)
        except Exception as exc:
            return self._fail(state, exc)

        result = self._complete(state)
        logger.info(
            "Upload job %s finished in %.2fs: %d/%d rows inserted, %d errors",
            job_id,
            time.time() - started,
            result.processed_rows,
            result.total_rows,
            result.error_count,
        )
        return result

    def _ingest(self, state: _RunState, storage_path: str, mapping: Mapping[str, Optional[str]]) -> None:
        headers = self._read_headers(storage_path)
        logger.info("Upload job %s: streaming rows for %d headers", state.job_id, len(headers))

        for sheet_row in self._read_rows(storage_path):
            state.total_rows += 1
            self._accept_row(state, headers, mapping, sheet_row)

            if len(state.records) >= self.batch_size:
                self._flush_records(state)
            if len(state.errors) >= self.error_flush_size:
                self._flush_errors(state)
            if state.total_rows % self.progress_interval == 0:
                update_job_progress(
                    self.engine,
                    state.job_id,
                    total_rows=state.total_rows,
                    processed_rows=state.processed_rows,
                )

        self._flush_records(state)
        self._flush_errors(state)

    def _accept_row(
        self,
        state: _RunState,
        headers: List[str],
        mapping: Mapping[str, Optional[str]],
        sheet_row: SheetRow,
    ) -> None:
        raw_row = build_raw_row(headers, sheet_row.values)
        snapshot = make_json_safe(raw_row)
        fields = normalize_row(raw_row, mapping)

        problem = validate_candidate(fields, require_contact=self.require_contact)
        if problem is None:
            problem = self._check_in_file_duplicate(state, fields)
        if problem is not None:
            self._record_error(state, sheet_row.row_number, problem, snapshot)
            return

        fields.update(
            {
                "raw_data": snapshot,
                "source_file": state.source_file,
                "source_row_number": sheet_row.row_number,
                "upload_job_id": state.job_id,
            }
        )
        state.records.append(fields)

    def _check_in_file_duplicate(self, state: _RunState, fields: Mapping[str, Any]) -> Optional[str]:
        """
        Reject a repeated email within the file. Phones are shared by agencies
        and offices, so they are not deduplicated.

        At most ``dedup_max_entries`` emails are remembered; repeats beyond
        that are still rejected by the store's unique email constraint.
        """
        email = fields.get("email")
        if not email:
            return None
        if email in state.seen_emails:
            return "Duplicate email in file"
        if len(state.seen_emails) < self.dedup_max_entries:
            state.seen_emails.add(email)
        return None

    @staticmethod
    def _record_error(state: _RunState, row_number: Optional[int], message: str, raw_row: Any = None) -> None:
        state.errors.append({"row_number": row_number, "message": message, "raw_row": raw_row})
        state.error_count += 1

    def _flush_records(self, state: _RunState) -> None:
        if not state.records:
            return
        batch, state.records = state.records, []
        result = self._insert_batch(self.engine, batch)
        state.processed_rows += result.succeeded_count
        for failure in result.failures:
            record = batch[failure.index]
            self._record_error(state, record.get("source_row_number"), failure.message, record.get("raw_data"))
        logger.info(
            "Upload job %s: flushed %d candidates (%d inserted, %d rejected)",
            state.job_id,
            len(batch),
            result.succeeded_count,
            len(result.failures),
        )

    def _flush_errors(self, state: _RunState) -> None:
        if not state.errors:
            return
        pending, state.errors = state.errors, []
        append_job_errors(self.engine, state.job_id, pending)

    def _complete(self, state: _RunState) -> IngestionResult:
        if finish_upload_job(
            self.engine,
            state.job_id,
            success=True,
            total_rows=state.total_rows,
            processed_rows=state.processed_rows,
        ):
            status = "completed"
        else:
            current = get_upload_job(self.engine, state.job_id)
            status = current["status"] if current else "failed"
        return IngestionResult(
            job_id=state.job_id,
            status=status,
            total_rows=state.total_rows,
            processed_rows=state.processed_rows,
            error_count=state.error_count,
        )

    def _fail(self, state: _RunState, exc: Exception) -> IngestionResult:
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        logger.error("Upload job %s failed after %d rows: %s", state.job_id, state.total_rows, message, exc_info=True)

        # Buffered records that never reached the store are dropped.
        state.records = []
        self._record_error(state, None, message)
        try:
            self._flush_errors(state)
        except Exception as flush_error:
            logger.error("Upload job %s: could not persist error entries: %s", state.job_id, flush_error)

        try:
            finish_upload_job(
                self.engine,
                state.job_id,
                success=False,
                total_rows=state.total_rows,
                processed_rows=state.processed_rows,
                error_message=message,
            )
        except Exception as finish_error:
            logger.error("Upload job %s: could not mark job failed: %s", state.job_id, finish_error)

        return IngestionResult(
            job_id=state.job_id,
            status="failed",
            total_rows=state.total_rows,
            processed_rows=state.processed_rows,
            error_count=state.error_count,
            error_message=message,
        )
