"""
Health check and status endpoints
"""
from fastapi import APIRouter
from datetime import datetime
from app.config import get_settings
from app import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "vendors": {
            "shopify_api_version": settings.shopify_api_version,
            "meta_api_version": settings.meta_api_version,
        },
        "sync": {
            "quick_sync_days": settings.quick_sync_days,
            "quick_sync_timeout_seconds": settings.quick_sync_timeout_seconds,
            "max_in_flight_per_credential": settings.max_in_flight_per_credential,
            "scheduler_enabled": settings.enable_scheduler,
        },
        "timestamp": datetime.utcnow().isoformat()
    }
