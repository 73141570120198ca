from fastapi import APIRouter

from app.api.routes import completion_release, health, wallet, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(completion_release.router, prefix="/completion-release", tags=["completion-release"])
api_router.include_router(wallet.router, prefix="/wallet", tags=["wallet"])
