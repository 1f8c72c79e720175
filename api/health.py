"""
Netyora Chat - Health Check API
Monitors service health and dependencies
"""
from fastapi import APIRouter, Depends
from typing import Dict, Any
from datetime import datetime
import asyncio
import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from core.database import get_db
from core.config import settings
from core.security import get_current_user
from services.presence_service import presence_registry
from services.realtime_gateway import realtime_gateway

router = APIRouter(tags=["Health"])


async def check_database(db: AsyncSession) -> Dict[str, Any]:
    """Check chat store connectivity"""
    try:
        start = datetime.utcnow()
        await db.execute(text("SELECT 1"))
        latency = (datetime.utcnow() - start).total_seconds() * 1000
        return {
            "status": "healthy",
            "latency_ms": round(latency, 2),
            "message": "Database connection OK"
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "latency_ms": None,
            "message": str(e)
        }


async def check_http_service(name: str, url: str) -> Dict[str, Any]:
    """Check that a collaborator answers on its /health endpoint"""
    if not url:
        return {
            "status": "unconfigured",
            "latency_ms": None,
            "message": f"{name} URL not configured"
        }

    try:
        start = datetime.utcnow()
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{url.rstrip('/')}/health")
        latency = (datetime.utcnow() - start).total_seconds() * 1000

        if response.status_code == 200:
            return {
                "status": "healthy",
                "latency_ms": round(latency, 2),
                "message": f"{name} connection OK"
            }
        return {
            "status": "degraded",
            "latency_ms": round(latency, 2),
            "message": f"{name} returned status {response.status_code}"
        }
    except httpx.TimeoutException:
        return {
            "status": "unhealthy",
            "latency_ms": None,
            "message": f"{name} connection timeout"
        }
    except httpx.HTTPError as e:
        return {
            "status": "unhealthy",
            "latency_ms": None,
            "message": str(e)
        }


async def check_blob_store() -> Dict[str, Any]:
    """Check the blob store endpoint is reachable"""
    if not settings.S3_ENDPOINT:
        return {
            "status": "unconfigured",
            "latency_ms": None,
            "message": "Blob store not configured"
        }

    try:
        start = datetime.utcnow()
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.head(settings.S3_ENDPOINT)
        latency = (datetime.utcnow() - start).total_seconds() * 1000
        return {
            "status": "healthy",
            "latency_ms": round(latency, 2),
            "message": "Blob store endpoint reachable"
        }
    except httpx.HTTPError as e:
        return {
            "status": "unhealthy",
            "latency_ms": None,
            "message": str(e)
        }


@router.get("/health")
async def health_check():
    """Basic health check endpoint"""
    return {
        "status": "healthy",
        "service": "netyora-chat",
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check - verifies service is ready to handle requests"""
    db_check = await check_database(db)

    return {
        "ready": db_check["status"] == "healthy",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "checks": {
            "database": db_check
        }
    }


@router.get("/health/live")
async def liveness_check():
    """Liveness check - verifies service is running"""
    return {
        "alive": True,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


@router.get("/health/detailed")
async def detailed_health_check(
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user)
):
    """Status of the chat store, collaborators and the realtime gateway"""
    results = await asyncio.gather(
        check_database(db),
        check_blob_store(),
        check_http_service("Identity", settings.IDENTITY_SERVICE_URL),
        check_http_service("Notify", settings.NOTIFY_SERVICE_URL),
        return_exceptions=True
    )
    names = ("database", "blob_store", "identity", "notify")
    services = {
        name: result if not isinstance(result, Exception) else {"status": "error", "message": str(result)}
        for name, result in zip(names, results)
    }

    statuses = [s.get("status", "unknown") for s in services.values()]
    if all(s in ["healthy", "unconfigured"] for s in statuses):
        overall_status = "healthy"
    elif any(s == "unhealthy" for s in statuses):
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return {
        "status": overall_status,
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "services": services,
        "realtime": {
            "connections": len(realtime_gateway.connections),
            "rooms": len(realtime_gateway.rooms),
            "online_users": len(presence_registry.get_online_users()),
        },
    }
