"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /api/v1/conversions/* - Submit images and read conversion state
- /api/v1/metrics - Prometheus scraping
"""

from fastapi import APIRouter

from tilescale.api.v1.conversions import router as conversions_router
from tilescale.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(conversions_router, prefix="/conversions", tags=["conversions"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
