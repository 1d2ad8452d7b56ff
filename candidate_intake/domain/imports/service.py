"""
Ingestion service facade used by the API layer.

Owns the background queue and ties together upload storage, header mapping
resolution (cache, heuristics, oracle, manual confirmation) and job tracking.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine

from candidate_intake.core.config import Settings, settings as default_settings
from candidate_intake.core.exceptions import (
    FileAlreadyImportedException,
    InputRejectedException,
    InvalidMappingException,
    JobStateException,
    SpreadsheetReadException,
)
from candidate_intake.domain.imports.fingerprinting import (
    calculate_header_signature,
    get_header_mapping,
    upsert_header_mapping,
)
from candidate_intake.domain.imports.jobs import (
    count_job_errors,
    create_upload_job,
    ensure_ingestion_tables,
    fail_interrupted_jobs,
    fail_job_before_processing,
    find_job_by_file_hash,
    list_job_errors,
    list_jobs_with_status,
    list_upload_jobs,
    require_upload_job,
    set_header_signature,
)
from candidate_intake.domain.imports.oracle import build_mapping_oracle
from candidate_intake.domain.imports.orchestrator import IngestionEngine, IngestionResult
from candidate_intake.domain.imports.processors.excel_processor import read_excel_headers
from candidate_intake.domain.imports.queue import IngestionQueue, IngestionTask
from candidate_intake.domain.imports.schema_mapper import (
    NeedsManualMapping,
    canonicalize_manual_mapping,
    resolve_headers,
)
from candidate_intake.domain.uploads.uploaded_files import (
    remove_stored_upload,
    store_upload,
    validate_extension,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
_DEFAULT_ORACLE = object()


@dataclass
class SubmissionResult:
    """Outcome of accepting one uploaded file."""
    job_id: str
    status: str
    needs_mapping: bool = False
    headers: List[str] = field(default_factory=list)
    mapping: Dict[str, Optional[str]] = field(default_factory=dict)
    mapping_source: Optional[str] = None


def align_mapping(mapping: Mapping[str, Optional[str]], headers: Sequence[str]) -> Dict[str, Optional[str]]:
    """
    Re-key a cached mapping onto this file's header spelling.

    Signatures ignore case and surrounding whitespace, so a cache entry may
    have been stored for "Email" while this file says "EMAIL ".
    """
    lookup = {str(key).strip().lower(): value for key, value in mapping.items()}
    return {header: lookup.get(header.strip().lower()) for header in headers}


class IngestionService:
    def __init__(
        self,
        engine: Engine,
        config: Settings = default_settings,
        *,
        oracle: Any = _DEFAULT_ORACLE,
        ingestion_engine: Optional[IngestionEngine] = None,
    ):
        self.engine = engine
        self.config = config
        self.oracle = build_mapping_oracle(config) if oracle is _DEFAULT_ORACLE else oracle
        self.ingestion = ingestion_engine or IngestionEngine(engine, config)
        self.queue = IngestionQueue(self._run_task, max_workers=config.ingest_max_workers)

    # Lifecycle

    def start(self) -> None:
        ensure_ingestion_tables(self.engine)
        fail_interrupted_jobs(self.engine)
        self.queue.start()
        self._resume_pending_jobs()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self.queue.stop(timeout)

    def _resume_pending_jobs(self) -> None:
        """Re-queue pending jobs whose header mapping was already resolved before a restart."""
        for job in list_jobs_with_status(self.engine, "pending"):
            if not job["header_signature"]:
                continue
            cached = get_header_mapping(self.engine, job["header_signature"])
            if cached is None:
                continue
            try:
                headers = read_excel_headers(job["storage_path"])
            except SpreadsheetReadException as e:
                fail_job_before_processing(self.engine, job["id"], e.message)
                continue
            self._enqueue(job["id"], job["storage_path"], align_mapping(cached["mapped_headers"], headers))

    def _run_task(self, task: IngestionTask) -> IngestionResult:
        return self.ingestion.run(task.storage_path, task.mapping, task.job_id)

    def _enqueue(self, job_id: str, storage_path: str, mapping: Dict[str, Optional[str]]) -> bool:
        return self.queue.enqueue(IngestionTask(job_id=job_id, storage_path=storage_path, mapping=mapping))

    # Submission

    def submit_upload(
        self,
        source: BinaryIO,
        file_name: Optional[str],
        *,
        allow_duplicate: bool = False,
    ) -> SubmissionResult:
        """
        Store an uploaded spreadsheet, create its job and resolve its headers.

        Input rejections are raised before any job exists. When the headers
        cannot be mapped automatically the job stays pending and the result
        asks the caller to confirm a mapping.
        """
        if source is None or not file_name:
            raise InputRejectedException("No file was uploaded.")
        validate_extension(file_name, self.config.allowed_extensions)

        stored = store_upload(
            source,
            file_name,
            upload_dir=self.config.upload_dir,
            limit_mb=self.config.upload_max_file_size_mb,
        )

        if not allow_duplicate:
            existing = find_job_by_file_hash(self.engine, stored.file_hash)
            if existing is not None:
                remove_stored_upload(stored.storage_path)
                raise FileAlreadyImportedException(stored.file_hash, existing["id"])

        job = create_upload_job(
            self.engine,
            source_file_name=stored.file_name,
            storage_path=stored.storage_path,
            file_hash=stored.file_hash,
            file_size=stored.file_size,
        )
        return self._prepare_job(job["id"], stored.storage_path)

    def submit_bulk(self, uploads: Iterable[Tuple[BinaryIO, Optional[str]]], *, allow_duplicate: bool = False) -> List[Dict[str, Any]]:
        """Submit several files independently; a rejected file does not stop the others."""
        results: List[Dict[str, Any]] = []
        for source, file_name in uploads:
            try:
                submission = self.submit_upload(source, file_name, allow_duplicate=allow_duplicate)
            except (InputRejectedException, SpreadsheetReadException) as e:
                logger.info("Bulk upload rejected '%s': %s", file_name, e.message)
                results.append({"file_name": file_name, "error": e.message})
                continue
            results.append({"file_name": file_name, **submission_payload(submission)})
        return results

    def _prepare_job(self, job_id: str, storage_path: str) -> SubmissionResult:
        try:
            headers = read_excel_headers(storage_path)
        except SpreadsheetReadException as e:
            fail_job_before_processing(self.engine, job_id, e.message)
            raise
        except Exception as e:
            logger.exception("Upload job %s: unexpected error reading headers", job_id)
            fail_job_before_processing(self.engine, job_id, f"Could not read spreadsheet headers: {e}")
            raise
        if not headers:
            message = "Spreadsheet has no header row."
            fail_job_before_processing(self.engine, job_id, message)
            raise SpreadsheetReadException(message)

        header_signature = calculate_header_signature(headers)
        set_header_signature(self.engine, job_id, header_signature)

        cached = get_header_mapping(self.engine, header_signature)
        if cached is not None:
            mapping = align_mapping(cached["mapped_headers"], headers)
            source = "cache"
        else:
            resolution = resolve_headers(
                headers,
                oracle=self.oracle,
                max_retries=self.config.llm_max_retries,
                retry_delay=self.config.llm_retry_delay_seconds,
            )
            if isinstance(resolution, NeedsManualMapping):
                logger.info("Upload job %s needs a manual header mapping", job_id)
                return SubmissionResult(
                    job_id=job_id,
                    status="pending",
                    needs_mapping=True,
                    headers=resolution.headers,
                    mapping=resolution.suggestions,
                )
            upsert_header_mapping(self.engine, headers, resolution.per_header, source=resolution.source)
            mapping = resolution.per_header
            source = resolution.source

        status = "processing" if self._enqueue(job_id, storage_path, mapping) else "pending"
        return SubmissionResult(
            job_id=job_id,
            status=status,
            headers=headers,
            mapping=mapping,
            mapping_source=source,
        )

    def confirm_mapping(self, job_id: str, mapping: Mapping[str, Any]) -> SubmissionResult:
        """Store a user-confirmed mapping for a pending job and queue it."""
        job = require_upload_job(self.engine, job_id)
        if job["status"] != "pending":
            raise JobStateException(job_id, job["status"])

        headers = read_excel_headers(job["storage_path"])
        canonical = canonicalize_manual_mapping(dict(mapping or {}), headers)
        mapping_for_file = align_mapping(canonical, headers)
        if not any(mapping_for_file.values()):
            raise InvalidMappingException("Mapping does not reference any header in this file.")

        upsert_header_mapping(self.engine, headers, mapping_for_file, source="manual")
        if not self._enqueue(job_id, job["storage_path"], mapping_for_file):
            raise JobStateException(job_id, "processing")
        return SubmissionResult(
            job_id=job_id,
            status="processing",
            headers=headers,
            mapping=mapping_for_file,
            mapping_source="manual",
        )

    # Mapping without an upload

    def resolve_mapping(self, headers: Sequence[Any]) -> Dict[str, Any]:
        clean = [str(h).strip() for h in headers or [] if h is not None and str(h).strip()]
        if not clean:
            raise InvalidMappingException("At least one header is required.")

        cached = get_header_mapping(self.engine, calculate_header_signature(clean))
        if cached is not None:
            return {"mapping": align_mapping(cached["mapped_headers"], clean), "source": "cache", "needs_mapping": False}

        resolution = resolve_headers(
            clean,
            oracle=self.oracle,
            max_retries=self.config.llm_max_retries,
            retry_delay=self.config.llm_retry_delay_seconds,
        )
        if isinstance(resolution, NeedsManualMapping):
            return {"mapping": resolution.suggestions, "source": None, "needs_mapping": True}

        upsert_header_mapping(self.engine, clean, resolution.per_header, source=resolution.source)
        return {"mapping": resolution.per_header, "source": resolution.source, "needs_mapping": False}

    # Polling

    def get_status(self, job_id: str) -> Dict[str, Any]:
        job = require_upload_job(self.engine, job_id)
        return {
            "job_id": job_id,
            "status": job["status"],
            "total_rows": job["total_rows"],
            "processed_rows": job["processed_rows"],
            "error_count": count_job_errors(self.engine, job_id),
            "error_message": job["error_message"],
            "errors": list_job_errors(self.engine, job_id, limit=self.config.status_error_preview_limit),
        }

    def get_errors(self, job_id: str, *, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        require_upload_job(self.engine, job_id)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        offset = max(offset, 0)
        return {
            "job_id": job_id,
            "total": count_job_errors(self.engine, job_id),
            "limit": limit,
            "offset": offset,
            "errors": list_job_errors(self.engine, job_id, limit=limit, offset=offset),
        }

    def list_jobs(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        jobs, total, by_status = list_upload_jobs(
            self.engine,
            page=page,
            limit=limit,
            status=status,
            start_date=start_date,
            end_date=end_date,
        )
        return {
            "data": jobs,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
            "stats": {"by_status": by_status},
        }

    def health(self) -> Dict[str, Any]:
        return {"status": "ok", "queue": self.queue.snapshot()}


def submission_payload(result: SubmissionResult) -> Dict[str, Any]:
    """Shape a submission for API responses."""
    if result.needs_mapping:
        return {
            "job_id": result.job_id,
            "needs_mapping": True,
            "headers": result.headers,
            "suggested_mapping": result.mapping,
        }
    return {
        "job_id": result.job_id,
        "status": result.status,
        "needs_mapping": False,
        "mapping_source": result.mapping_source,
    }
