from fastapi import APIRouter

from policy_api.api.routes import catalog_policies, health, ingest, jobs

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(catalog_policies.router, prefix="/admin/catalog-policies", tags=["admin"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["worker"])
api_router.include_router(ingest.router, prefix="/internal/runs", tags=["worker"])
