from fastapi import APIRouter

from jobboard.api.routes import admin, health, payments, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(payments.router, tags=["payments"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
