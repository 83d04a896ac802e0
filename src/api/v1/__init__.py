"""
API v1 Router Module - Background Remover & Cartoonizer

All v1 endpoints are prefixed with /api/v1/

- /api/v1/sessions/* - Session lifecycle, pipeline control, downloads
- /api/v1/metrics    - Prometheus metrics
"""

from fastapi import APIRouter

from src.api.v1.sessions import router as sessions_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(sessions_router, prefix="/sessions", tags=["sessions"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
