from fastapi import APIRouter

from intake_api.api.routes import applications, health, maintenance

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(applications.router, prefix="/jobs-board", tags=["public"])
api_router.include_router(maintenance.router, prefix="/maintenance", tags=["maintenance"])
