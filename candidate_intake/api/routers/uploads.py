"""
Upload endpoints: submit spreadsheets, confirm header mappings and poll jobs.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from candidate_intake.api.dependencies import get_ingestion_service
from candidate_intake.api.schemas.shared import (
    BulkUploadResponse,
    ConfirmMappingRequest,
    UploadErrorsResponse,
    UploadJobListResponse,
    UploadStatusResponse,
    UploadSubmissionResponse,
)
from candidate_intake.domain.imports.service import IngestionService, submission_payload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["uploads"])


@router.post("/uploads", response_model=UploadSubmissionResponse, response_model_exclude_none=True)
def upload_spreadsheet_endpoint(
    file: Optional[UploadFile] = File(None),
    allow_duplicate: bool = Form(False),
    service: IngestionService = Depends(get_ingestion_service),
):
    """
    Accept one `.xlsx`/`.xls` file and start ingesting it.

    Returns the job id with `status: processing` when the headers could be
    mapped, or `needs_mapping: true` with the headers when the caller must
    confirm a mapping first.
    """
    file_name = file.filename if file is not None else None
    source = file.file if file is not None else None
    logger.info("Received upload '%s'", file_name)
    result = service.submit_upload(source, file_name, allow_duplicate=allow_duplicate)
    return submission_payload(result)


@router.post("/uploads/bulk", response_model=BulkUploadResponse, response_model_exclude_none=True)
def bulk_upload_endpoint(
    files: List[UploadFile] = File(...),
    allow_duplicate: bool = Form(False),
    service: IngestionService = Depends(get_ingestion_service),
):
    """Submit several files at once. Each file is accepted or rejected on its own."""
    results = service.submit_bulk(
        ((upload.file, upload.filename) for upload in files),
        allow_duplicate=allow_duplicate,
    )
    rejected = sum(1 for entry in results if entry.get("error"))
    return {"results": results, "accepted": len(results) - rejected, "rejected": rejected}


@router.post("/uploads/{job_id}/confirm-mapping", response_model=UploadSubmissionResponse, response_model_exclude_none=True)
def confirm_mapping_endpoint(
    job_id: str,
    request: ConfirmMappingRequest,
    service: IngestionService = Depends(get_ingestion_service),
):
    result = service.confirm_mapping(job_id, request.mapping)
    return submission_payload(result)


@router.get("/uploads/{job_id}/status", response_model=UploadStatusResponse)
def upload_status_endpoint(job_id: str, service: IngestionService = Depends(get_ingestion_service)):
    return service.get_status(job_id)


@router.get("/uploads/{job_id}/errors", response_model=UploadErrorsResponse)
def upload_errors_endpoint(
    job_id: str,
    limit: int = 50,
    offset: int = 0,
    service: IngestionService = Depends(get_ingestion_service),
):
    return service.get_errors(job_id, limit=limit, offset=offset)


@router.get("/uploads", response_model=UploadJobListResponse)
def list_uploads_endpoint(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    service: IngestionService = Depends(get_ingestion_service),
):
    """List upload jobs newest first, with per-status counts for the same filters."""
    return service.list_jobs(
        page=page,
        limit=limit,
        status=status,
        start_date=start_date,
        end_date=end_date,
    )
