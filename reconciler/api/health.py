"""
Health check and status endpoints
"""
from fastapi import APIRouter
from reconciler.config import get_settings
from reconciler.utils.helpers import utcnow
from reconciler import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    from reconciler.scheduler import get_scheduled_jobs

    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "scheduler_enabled": settings.scheduler_enabled,
        "jobs": get_scheduled_jobs(),
        "timestamp": utcnow().isoformat()
    }
