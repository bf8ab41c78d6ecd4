"""
API Routes
"""
from fastapi import APIRouter

from payhook.api.routes.admin_webhooks import router as admin_webhooks_router
from payhook.api.webhooks.payments import router as payments_router

router = APIRouter()

router.include_router(payments_router, prefix="/billing", tags=["webhooks"])
router.include_router(admin_webhooks_router, prefix="/admin/webhooks", tags=["admin"])
