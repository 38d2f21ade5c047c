from fastapi import APIRouter

from app.api.routes import health, village_links

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(village_links.router, prefix="/village-links", tags=["village-links"])
