from celery import Celery
from app.core.config import settings
import warnings
import logging

warnings.filterwarnings("ignore", message=".*register_connect_callback.*")
logging.getLogger('celery.backends.redis').setLevel(logging.ERROR)

MAINTENANCE_QUEUE = "maintenance"

celery_app = Celery(
    "exam_proctor_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=['app.tasks.maintenance']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # both tasks are registered under short names
    task_routes={
        'expire_overdue_sessions': {'queue': MAINTENANCE_QUEUE},
        'health_check': {'queue': MAINTENANCE_QUEUE},
    },

    # sweeps touch every active session, so one at a time per worker
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_soft_time_limit=settings.expiry_sweep_interval_seconds,
    task_time_limit=settings.expiry_sweep_interval_seconds * 2,
    result_expires=3600,
    broker_connection_retry_on_startup=True,

    beat_schedule={
        'expire-overdue-sessions': {
            'task': 'expire_overdue_sessions',
            'schedule': settings.expiry_sweep_interval_seconds,
        },
        'health-check': {
            'task': 'health_check',
            'schedule': settings.health_check_interval_seconds,
        },
    },
)
