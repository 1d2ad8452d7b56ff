from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class UploadJobInfo(BaseModel):
    """Metadata about one upload ingestion job."""
    id: str
    source_file_name: str
    status: str
    total_rows: int = 0
    processed_rows: int = 0
    file_size: Optional[int] = None
    header_signature: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class UploadJobError(BaseModel):
    row_number: Optional[int] = None
    message: str
    raw_row: Optional[Any] = None
    created_at: Optional[datetime] = None


class UploadSubmissionResponse(BaseModel):
    """Response for an accepted upload: either queued or waiting for a mapping."""
    job_id: str
    status: Optional[str] = None
    needs_mapping: bool = False
    headers: Optional[List[str]] = None
    suggested_mapping: Optional[Dict[str, Optional[str]]] = None
    mapping_source: Optional[str] = None


class BulkUploadResult(BaseModel):
    file_name: Optional[str] = None
    job_id: Optional[str] = None
    status: Optional[str] = None
    needs_mapping: bool = False
    headers: Optional[List[str]] = None
    suggested_mapping: Optional[Dict[str, Optional[str]]] = None
    mapping_source: Optional[str] = None
    error: Optional[str] = None


class BulkUploadResponse(BaseModel):
    results: List[BulkUploadResult]
    accepted: int
    rejected: int


class ConfirmMappingRequest(BaseModel):
    """Header -> canonical field choices; null leaves a header unmapped."""
    mapping: Dict[str, Optional[str]]

    @field_validator("mapping")
    @classmethod
    def validate_mapping(cls, value: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        if not value:
            raise ValueError("mapping must not be empty")
        return value


class UploadStatusResponse(BaseModel):
    job_id: str
    status: str
    total_rows: int
    processed_rows: int
    error_count: int
    error_message: Optional[str] = None
    errors: List[UploadJobError] = Field(default_factory=list)


class UploadErrorsResponse(BaseModel):
    job_id: str
    total: int
    limit: int
    offset: int
    errors: List[UploadJobError]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class UploadJobStats(BaseModel):
    by_status: Dict[str, int] = Field(default_factory=dict)


class UploadJobListResponse(BaseModel):
    data: List[UploadJobInfo]
    pagination: Pagination
    stats: UploadJobStats


class ResolveMappingRequest(BaseModel):
    headers: List[str]


class ResolveMappingResponse(BaseModel):
    mapping: Dict[str, Optional[str]]
    source: Optional[str] = None
    needs_mapping: bool


class HealthResponse(BaseModel):
    status: str
    queue: Dict[str, Any]
