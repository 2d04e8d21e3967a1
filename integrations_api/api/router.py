from fastapi import APIRouter

from integrations_api.api.routes import health, jobs, metrics, packages

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(metrics.router, tags=["metrics"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(packages.router, prefix="/packages", tags=["packages"])
