"""
Health check and status endpoints
"""
from fastapi import APIRouter
from datetime import datetime
from restock.config import get_settings
from restock import __version__

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
        "replenishment": {
            "default_window_days": settings.default_window_days,
            "allowed_window_days": settings.allowed_windows,
            "projection_horizon_days": settings.projection_horizon_days,
            "sales_source": settings.sales_source,
            "scheduler_enabled": settings.enable_scheduler,
            "recompute_schedule": settings.recompute_schedule,
        },
        "timestamp": datetime.utcnow().isoformat()
    }
