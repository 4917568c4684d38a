from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
import time
import structlog

from ..core.config import settings
from ..core.exceptions import ServiceUnavailableError
from ..models.database import get_db
from ..models.schemas import HealthCheckResponse
from ..utils.monitoring import get_prometheus_metrics, METRICS_CONTENT_TYPE

logger = structlog.get_logger()
router = APIRouter(prefix="/health", tags=["health"])

# Store service start time for uptime calculation
SERVICE_START_TIME = time.time()


async def _check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return "healthy"
    except SQLAlchemyError as e:
        logger.error("Database health check failed", error=str(e))
        return "unhealthy"


@router.get("/", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Comprehensive health check endpoint.

    Checks:
    - Service status
    - Database connectivity
    - Service uptime
    """
    database_status = await _check_database(db)

    return HealthCheckResponse(
        status="healthy" if database_status == "healthy" else "degraded",
        version=settings.APP_VERSION,
        database_status=database_status,
        uptime_seconds=time.time() - SERVICE_START_TIME
    )


@router.get("/live")
async def liveness_probe():
    """
    Kubernetes liveness probe endpoint.
    Simple check to verify the service is running.
    """
    return {"status": "alive", "timestamp": datetime.now().isoformat()}


@router.get("/ready")
async def readiness_probe(db: AsyncSession = Depends(get_db)):
    """
    Kubernetes readiness probe endpoint.
    Checks if the service is ready to handle requests.
    """
    if await _check_database(db) != "healthy":
        raise ServiceUnavailableError()
    return {"status": "ready", "timestamp": datetime.now().isoformat()}


@router.get("/metrics")
async def get_metrics():
    """Prometheus metrics in text exposition format."""
    return Response(content=get_prometheus_metrics(), media_type=METRICS_CONTENT_TYPE)


@router.get("/version")
async def get_version():
    """Get service version information."""
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "api_version": settings.API_V1_STR,
        "build_time": datetime.now().isoformat()
    }
