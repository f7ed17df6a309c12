"""
Health check and status endpoints
"""
from fastapi import APIRouter

from app import __version__
from app.config import get_settings
from app.scheduler import get_schedule
from app.services.reconciliation_service import is_sync_running
from app.models.entities import SyncType
from app.utils.helpers import utcnow_iso

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow_iso(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    settings = get_settings()
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "providers": {
            "payments": {
                "mode": settings.payments_mode,
                "configured": bool(settings.payments_api_key_live if settings.payments_mode == "live" else settings.payments_api_key_test),
            },
            "commerce": {
                "configured": bool(settings.commerce_shop_domain and settings.commerce_access_token),
            },
        },
        "sync": {
            "full_sync_running": is_sync_running(SyncType.FULL_SYNC.value),
            "customer_sync_running": is_sync_running(SyncType.PARTIAL_SYNC.value),
            "schedule": get_schedule(),
        },
        "timestamp": utcnow_iso()
    }
