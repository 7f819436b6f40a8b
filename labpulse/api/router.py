from fastapi import APIRouter

from labpulse.api.v1 import gitlab, webhooks

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(gitlab.router)
api_router.include_router(webhooks.router)
