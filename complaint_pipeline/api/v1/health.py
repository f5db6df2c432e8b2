"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from complaint_pipeline.config import settings

router = APIRouter()

# Set by main.py during lifespan
_registry = None


def set_registry(registry):
    global _registry
    _registry = registry


@router.get("/health")
async def health_check():
    """Service health, store backend and queue state."""
    dispatcher = _registry.dispatcher if _registry is not None else None
    return {
        "status": "healthy" if _registry is not None else "starting",
        "store_backend": settings.store_backend,
        "stages": _registry.stages() if _registry is not None else [],
        "queued_jobs": dispatcher.pending_count() if dispatcher is not None else 0,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
