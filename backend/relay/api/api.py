"""API router aggregation."""
from fastapi import APIRouter

from relay.api.endpoints import admin, auth, files, users

# Unciv client protocol lives at the root; management API under /api
unciv_router = APIRouter()
unciv_router.include_router(auth.router)
unciv_router.include_router(files.router)

api_router = APIRouter(prefix="/api")
api_router.include_router(users.router)
api_router.include_router(admin.router)
