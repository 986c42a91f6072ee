"""
Celery application for finscan maintenance work

The extraction pipeline itself runs in-process (JobRunner); Celery carries
only maintenance work that must happen even when no API process is alive:

  maintenance.jobs   — orphaned-job recovery, driven by Celery beat

Broker and backend URLs come from Settings (CELERY_BROKER_URL /
CELERY_RESULT_BACKEND).
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from finscan.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------

MAINTENANCE_EXCHANGE = Exchange("maintenance", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "maintenance.jobs",
        exchange=MAINTENANCE_EXCHANGE,
        routing_key="maintenance.jobs",
        durable=True,
    ),
)

TASK_ROUTES = {
    "finscan.workers.tasks.recover_orphaned_jobs": {"queue": "maintenance.jobs"},
}

# Recovery cadence; jobs are only touched once older than orphaned_job_after_seconds
ORPHAN_SCAN_INTERVAL_SECONDS = 120


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("finscan")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="maintenance.jobs",
        task_default_exchange="maintenance",
        task_default_routing_key="maintenance.jobs",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=60,
        task_time_limit=90,

        # --- Result TTL ---
        result_expires=3600,   # job state lives in PostgreSQL, not Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (orphan scanner) ---
        beat_schedule={
            "recover-orphaned-jobs": {
                "task":     "finscan.workers.tasks.recover_orphaned_jobs",
                "schedule": ORPHAN_SCAN_INTERVAL_SECONDS,
                "options":  {"queue": "maintenance.jobs"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["finscan.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s result=%s", task_id, task.name, state, retval)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s error=%s",
        task_id, exception,
        exc_info=True,
    )
