from fastapi import APIRouter

from billing_sync.api.v1 import admin, internal, webhooks

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(admin.router)
api_router.include_router(internal.router)

# Processor-facing endpoint lives outside the versioned prefix
webhook_router = webhooks.router
