from fastapi import APIRouter, Depends

from candidate_intake.api.dependencies import get_ingestion_service
from candidate_intake.api.schemas.shared import HealthResponse
from candidate_intake.domain.imports.service import IngestionService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(service: IngestionService = Depends(get_ingestion_service)):
    """Health check including the ingestion queue state."""
    return service.health()
