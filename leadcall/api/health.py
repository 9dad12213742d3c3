"""
Liveness and readiness checks for the orchestrator.

/health answers as long as the process serves requests. /health/ready also
needs the database and Redis; sweep heartbeats are reported for dashboards
but a stale sweep does not take the API out of rotation.
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from leadcall.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
SWEEP_WORKERS = ("retry_sweep", "channel_prompt")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now_iso(), "version": VERSION}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    checks = {"database": False, "redis": False}
    workers: dict[str, str | None] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Readiness: database unreachable: %s", str(e))

    try:
        from leadcall.utils.locks import get_redis, read_heartbeat
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        for name in SWEEP_WORKERS:
            workers[name] = await read_heartbeat(redis, name)
    except Exception as e:
        logger.warning("Readiness: redis unreachable: %s", str(e))

    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "workers": workers,
        "timestamp": _now_iso(),
    }
