"""
Health check endpoints.
"""

from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


def _missing_configuration() -> List[str]:
    missing = []
    if not (settings.OPENAI_API_KEY or "").strip():
        missing.append("OPENAI_API_KEY")
    return missing


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1 FROM credit_accounts LIMIT 1"))
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


async def _redis_status() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        await client.ping()
        await client.aclose()
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.

    The ledger database is required. Redis only backs rate limiting, which
    falls back to in-process counters, so a Redis outage does not degrade.
    """
    database = await _database_status()
    return {
        "status": "healthy" if database == "up" else "degraded",
        "api": "up",
        "ledger_database": database,
        "redis": await _redis_status(),
        "generation_provider": "missing" if _missing_configuration() else "configured",
        "image_search": "configured" if (settings.PIXABAY_API_KEY or "").strip() else "disabled",
    }


@router.get("/health/ready")
async def readiness_check():
    """Readiness probe: generation needs a provider key."""
    missing = _missing_configuration()
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
