# /talkflow/routes/public.py

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from talkflow.config.settings import settings
from talkflow.models.talk import utcnow

# Unauthenticated endpoints for load balancers and Prometheus.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "TalkFlow conversation engine",
        "version": settings.api_version,
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": utcnow()}


@router.get("/metrics", tags=["Monitoring"])
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
