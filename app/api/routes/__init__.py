"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.routes.cron import router as cron_router
from app.api.webhooks.easypost import router as easypost_router

router = APIRouter()

router.include_router(easypost_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(cron_router, prefix="/cron", tags=["cron"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
