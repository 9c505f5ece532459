"""
Celery configuration for background tasks
"""
from celery import Celery
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# Create Celery instance
celery_app = Celery(
    "caja_conciliacion",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.modules.settlements.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # una corrida de conciliación por lote
    task_soft_time_limit=8 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Task routes for different queues
    task_routes={
        "app.modules.settlements.tasks.*": {"queue": "settlements"},
    },

    # Beat schedule for periodic tasks
    beat_schedule={
        "rematch-pending-settlement-batches": {
            "task": "app.modules.settlements.tasks.rematch_pending_batches",
            "schedule": 3600.0,  # Run every hour
        },
    }
)

if __name__ == "__main__":
    celery_app.start()
