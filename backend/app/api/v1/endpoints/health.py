from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, text
from sqlalchemy.orm import Session
import logging
import time

from ....core.cache import cache
from ....core.database import get_db
from ....models.proctor_session import ProctorSession
from ....schemas.proctoring import SessionStatus

logger = logging.getLogger(__name__)

router = APIRouter()

DB_SLOW_MS = 200
CPU_ALERT_PERCENT = 80
MEMORY_ALERT_PERCENT = 85


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000, 2)


@router.get("")
async def get_basic_health():
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "service": "exam-proctor-api"
    }


@router.get("/system")
async def get_system_health(request: Request, db: Session = Depends(get_db)):
    """Cache, database and relay status, host load, and the number of live exam sessions"""
    report = {
        "timestamp": time.time(),
        "overall_status": "healthy",
        "services": {},
        "sessions": {},
        "performance": {},
        "alerts": []
    }

    start = time.time()
    cache_ok = await cache.ahealth_check()
    report["services"]["cache"] = {"status": "healthy" if cache_ok else "unhealthy", "response_time": _elapsed_ms(start)}
    if not cache_ok:
        report["overall_status"] = "degraded"
        report["alerts"].append("Cache unreachable: progress snapshots are not being kept")

    start = time.time()
    try:
        db.execute(text("SELECT 1"))
        report["services"]["database"] = {"status": "healthy", "response_time": _elapsed_ms(start)}
        if report["services"]["database"]["response_time"] > DB_SLOW_MS:
            report["alerts"].append("Database response time is high")

        report["sessions"]["active"] = db.query(func.count(ProctorSession.id)).filter(
            ProctorSession.status == SessionStatus.ACTIVE.value
        ).scalar()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        report["services"]["database"] = {"status": "error", "error": str(e)}
        report["overall_status"] = "unhealthy"

    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        report["services"]["relay"] = {"status": "error", "error": "not running"}
        report["overall_status"] = "unhealthy"
    else:
        report["services"]["relay"] = {"status": "healthy", **relay.stats()}

    try:
        import psutil

        cpu_percent = psutil.cpu_percent(interval=0)
        memory = psutil.virtual_memory()
        report["performance"] = {
            "cpu_usage_percent": cpu_percent,
            "memory_usage_percent": memory.percent,
            "available_memory_gb": round(memory.available / (1024**3), 2)
        }
        if cpu_percent > CPU_ALERT_PERCENT:
            report["alerts"].append(f"High CPU usage: {cpu_percent}%")
        if memory.percent > MEMORY_ALERT_PERCENT:
            report["alerts"].append(f"High memory usage: {memory.percent}%")
    except Exception as e:
        report["performance"] = {"error": str(e)}

    return report
