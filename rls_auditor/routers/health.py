"""Health check router."""

from fastapi import APIRouter

from rls_auditor import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Check API health."""
    return {
        "status": "healthy",
        "version": __version__,
    }


@router.get("/ready")
async def readiness_check():
    """Check if the API is ready to receive traffic."""
    return {"ready": True}
