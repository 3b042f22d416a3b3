from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.config import settings
from app.services.billing.repositories import (
    SubscriptionRepository,
    get_subscription_repository,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "gateway": settings.resolved_gateway,
    }


@router.get("/ready")
async def readiness_check(
    repository: SubscriptionRepository = Depends(get_subscription_repository),
):
    """Readiness check endpoint that includes database connectivity."""
    if not repository.ping():
        logger.warning("health.database_unavailable")
        raise HTTPException(status_code=503, detail="Database is not available")

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if settings.database_url else "not configured",
    }
