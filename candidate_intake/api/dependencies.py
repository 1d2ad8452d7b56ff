"""
Shared dependencies for the API routers.
"""
from fastapi import HTTPException, Request

from candidate_intake.domain.imports.service import IngestionService


def get_ingestion_service(request: Request) -> IngestionService:
    """Return the service created by the application lifespan."""
    service = getattr(request.app.state, "ingestion_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ingestion service is not running")
    return service
