"""
API Router Configuration
"""
from fastapi import APIRouter

# Import all endpoint routers
from apiforge.api.v1.endpoints import health, generator, dynamic

# Create main API router
api_router = APIRouter()

# Paths are mounted at the root; the dynamic router goes last so its
# catch-all does not shadow anything
api_router.include_router(health.router, prefix="", tags=["Health"])
api_router.include_router(generator.router, prefix="", tags=["Generator"])
api_router.include_router(dynamic.router, prefix="", tags=["Generated APIs"])
