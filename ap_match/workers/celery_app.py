"""
Celery application configuration for match recomputation and escalation sweeps.
"""

import logging

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Queue

from ap_match.core.config import settings
from ap_match.core.logging import setup_logging

logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "ap_match",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "ap_match.workers.match_tasks",
    ]
)

beat_schedule = {}
if settings.ESCALATION_SWEEP_ENABLED:
    beat_schedule["escalation-sweep"] = {
        "task": "ap_match.workers.match_tasks.escalation_sweep_all_task",
        "schedule": float(settings.ESCALATION_SWEEP_INTERVAL_SECONDS),
    }

# Celery configuration
celery_app.conf.update(
    # Task configuration
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Worker configuration
    worker_concurrency=settings.WORKER_CONCURRENCY,
    worker_prefetch_multiplier=settings.WORKER_PREFETCH_MULTIPLIER,
    task_soft_time_limit=settings.WORKER_TASK_SOFT_TIME_LIMIT,
    task_time_limit=settings.WORKER_TASK_TIME_LIMIT,
    worker_max_tasks_per_child=1000,

    # Task routing
    task_routes={
        "ap_match.workers.match_tasks.recompute_match_task": {"queue": "matching"},
        "ap_match.workers.match_tasks.escalation_sweep_task": {"queue": "escalation"},
        "ap_match.workers.match_tasks.escalation_sweep_all_task": {"queue": "escalation"},
    },

    # Queue configuration
    task_queues=(
        Queue("matching", routing_key="matching"),
        Queue("escalation", routing_key="escalation"),
        Queue("celery", routing_key="celery"),  # Default queue
    ),

    result_expires=3600,  # 1 hour

    # Beat scheduler configuration
    beat_schedule=beat_schedule,

    # Error handling
    task_reject_on_worker_lost=True,
    task_acks_late=True,
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Route worker logging through loguru instead of Celery's handlers."""
    setup_logging()


@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **kwds):
    """Handle task pre-run signal."""
    logger.info(f"Task {sender.name} started (ID: {task_id})")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **kwds):
    """Handle task post-run signal."""
    logger.info(f"Task {sender.name} finished (ID: {task_id}, state: {state})")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, traceback=None, einfo=None, **kwds):
    """Handle task failure signal."""
    logger.error(f"Task {sender.name} failed (ID: {task_id}): {exception}")
