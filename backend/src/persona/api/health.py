"""Health check API endpoints.

Overall health (database, memory, disk, vector extension), plus liveness and
readiness probes for orchestrators.
"""

import os
import time

import psutil
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings_instance
from ..core.logging import get_logger
from ..core.response import PersonaResponse
from .dependencies import get_db

logger = get_logger(__name__)
router = APIRouter(prefix="/health", tags=["health"])

settings = get_settings_instance()


@router.get("", summary="Health check", description="Health of the database and the host.")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Check database connectivity, the pgvector extension, memory and disk.

    Returns 200 for healthy or warning, 503 when a required check fails.
    """
    health_data = {
        "status": "healthy",
        "timestamp": time.time(),
        "version": settings.version,
        "environment": settings.environment,
        "checks": {},
    }

    try:
        await db.execute(text("SELECT 1"))
        health_data["checks"]["database"] = {"status": "healthy"}
    except Exception as e:
        logger.error("Database health check failed", extra={"error": str(e)})
        health_data["checks"]["database"] = {"status": "unhealthy", "error": str(e)}
        health_data["status"] = "unhealthy"

    if health_data["checks"]["database"]["status"] == "healthy":
        try:
            result = await db.execute(text("SELECT extversion FROM pg_extension WHERE extname = 'vector'"))
            version = result.scalar_one_or_none()
            if version:
                health_data["checks"]["vector"] = {"status": "healthy", "version": version}
            else:
                health_data["checks"]["vector"] = {"status": "unhealthy", "error": "pgvector extension missing"}
                health_data["status"] = "unhealthy"
        except Exception as e:
            logger.error("Vector extension check failed", extra={"error": str(e)})
            health_data["checks"]["vector"] = {"status": "unknown", "error": str(e)}

    try:
        memory = psutil.virtual_memory()
        health_data["checks"]["memory"] = {
            "status": "healthy" if memory.percent < 90 else "warning",
            "usage_percent": memory.percent,
            "available_mb": memory.available // (1024 * 1024),
        }
        if memory.percent >= 90 and health_data["status"] == "healthy":
            health_data["status"] = "warning"
    except Exception as e:
        logger.error("Memory health check failed", extra={"error": str(e)})
        health_data["checks"]["memory"] = {"status": "unknown", "error": str(e)}

    try:
        disk = psutil.disk_usage(settings.blob_storage_dir if os.path.isdir(settings.blob_storage_dir) else "/")
        health_data["checks"]["disk"] = {
            "status": "healthy" if disk.percent < 90 else "warning",
            "usage_percent": disk.percent,
            "free_gb": disk.free // (1024 * 1024 * 1024),
        }
        if disk.percent >= 90 and health_data["status"] == "healthy":
            health_data["status"] = "warning"
    except Exception as e:
        logger.error("Disk health check failed", extra={"error": str(e)})
        health_data["checks"]["disk"] = {"status": "unknown", "error": str(e)}

    overall_status = 200 if health_data["status"] in ("healthy", "warning") else 503
    logger.info("Health check completed", extra={"status": health_data["status"]})
    return PersonaResponse.success(data=health_data, status_code=overall_status)


@router.get("/readiness", summary="Readiness probe")
async def readiness_probe(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Readiness check failed", extra={"error": str(e)})
        return PersonaResponse.error(
            message="Application not ready",
            code="READINESS_CHECK_FAILED",
            details={"database": "not_ready", "error": str(e)},
            status_code=503,
        )
    return PersonaResponse.success({"ready": True, "timestamp": time.time()})


@router.get("/liveness", summary="Liveness probe")
async def liveness_probe():
    return PersonaResponse.success(
        {"alive": True, "timestamp": time.time(), "pid": os.getpid(), "version": settings.version}
    )
