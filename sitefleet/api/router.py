from fastapi import APIRouter

from sitefleet.api.routes import admin, articles, health, jobs, qa

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["worker"])
api_router.include_router(articles.router, prefix="/articles", tags=["editorial"])
api_router.include_router(qa.router, prefix="/articles", tags=["qa"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
