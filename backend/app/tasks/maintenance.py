from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.core.cache import cache, SYSTEM_HEALTH_KEY
from app.services.session_service import ProctorSessionService
from app.utils.timezone import get_utc_now
from sqlalchemy import text
import logging

logger = logging.getLogger(__name__)


def run_expiry_sweep(db, now=None):
    service = ProctorSessionService(db)
    expired = service.expire_overdue_sessions(now=now)
    return {'expired_sessions': expired, 'total_expired': len(expired)}


@celery_app.task(name="expire_overdue_sessions")
def expire_overdue_sessions():
    """Auto-submit sessions whose clients never submitted after time ran out"""
    db = SessionLocal()
    try:
        return run_expiry_sweep(db)
    except Exception as exc:
        logger.error(f"Error in expire_overdue_sessions: {exc}")
        raise
    finally:
        db.close()


@celery_app.task(name="health_check")
def health_check():
    """Task to perform system health checks"""
    health_status = {
        'timestamp': get_utc_now().isoformat(),
        'cache': False,
        'database': False,
        'memory_usage': None
    }

    try:
        health_status['cache'] = cache.health_check()
    except Exception as e:
        logger.error(f"Cache health check failed: {e}")

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        health_status['database'] = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
    finally:
        db.close()

    try:
        import psutil
        memory = psutil.virtual_memory()
        health_status['memory_usage'] = {
            'total_gb': round(memory.total / (1024**3), 2),
            'available_gb': round(memory.available / (1024**3), 2),
            'usage_percent': memory.percent
        }
    except Exception as e:
        logger.error(f"Memory usage check failed: {e}")

    cache.set(SYSTEM_HEALTH_KEY, health_status, ttl=300)
    return health_status
