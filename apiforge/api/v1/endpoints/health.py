"""
Health Check and System Status API
"""
from fastapi import APIRouter, Depends, HTTPException
from typing import Dict, Any
from datetime import datetime
from loguru import logger
import psutil

from apiforge.core.config import settings
from apiforge.core.container import ServiceContainer, get_container
from apiforge.core.metrics import usage_tracker

router = APIRouter()

# Track application start time
start_time = datetime.now()


@router.get("/health")
async def health_check(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """
    Liveness check with database, SQL executor and process status
    """
    checked_at = datetime.now()
    health_status = {
        "status": "healthy",
        "timestamp": checked_at.isoformat(),
        "version": settings.APP_VERSION,
        "checks": {}
    }

    # Check database connectivity
    try:
        await container.db.fetchval("SELECT 1")
        executor_ready = await container.db.has_sql_executor()

        health_status["checks"]["database"] = {
            "status": "healthy",
            "connected": True,
            "sql_executor": executor_ready,
            "pool": container.db.get_pool_stats()
        }
        if not executor_ready:
            health_status["status"] = "degraded"
    except Exception as e:
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        health_status["status"] = "degraded"

    health_status["checks"]["registry"] = {
        "status": "healthy",
        "published_apis": len(container.registry)
    }

    health_status["pipeline"] = usage_tracker.get_stats()

    # System metrics
    memory = psutil.virtual_memory()
    health_status["metrics"] = {
        "cpu_percent": psutil.cpu_percent(interval=0.1),
        "memory": {
            "percent": memory.percent,
            "available_mb": memory.available / 1024 / 1024,
        },
        "uptime_seconds": (checked_at - start_time).total_seconds()
    }

    response_time_ms = (datetime.now() - checked_at).total_seconds() * 1000
    health_status["response_time_ms"] = round(response_time_ms, 2)

    return health_status


@router.get("/ready")
async def readiness_check(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """
    Readiness probe: the database must answer
    """
    try:
        await container.db.fetchval("SELECT 1")

        return {
            "ready": True,
            "timestamp": datetime.now().isoformat()
        }
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        raise HTTPException(status_code=503, detail="Service not ready")
