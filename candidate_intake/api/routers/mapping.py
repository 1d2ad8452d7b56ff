"""
Header mapping endpoint usable without uploading a file.
"""
from fastapi import APIRouter, Depends

from candidate_intake.api.dependencies import get_ingestion_service
from candidate_intake.api.schemas.shared import ResolveMappingRequest, ResolveMappingResponse
from candidate_intake.domain.imports.service import IngestionService

router = APIRouter(tags=["mapping"])


@router.post("/mappings/resolve", response_model=ResolveMappingResponse)
def resolve_mapping_endpoint(
    request: ResolveMappingRequest,
    service: IngestionService = Depends(get_ingestion_service),
):
    """
    Map a list of headers onto candidate fields.

    Uses the cached mapping for this header set when one exists, otherwise
    heuristics and (when configured) the mapping oracle. New resolutions are
    cached for later uploads.
    """
    return service.resolve_mapping(request.headers)
