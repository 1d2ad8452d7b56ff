"""
FastAPI routers, one module per area of the ingestion API.
"""
from . import health, mapping, uploads

__all__ = ["health", "mapping", "uploads"]
