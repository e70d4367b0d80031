"""
Celery application hosting the scheduled billing jobs.

Renewal sweeps and webhook dedup retention run on the beat schedule;
intervals come from settings.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from telehealth.settings import settings

logger = structlog.get_logger(__name__)

celery_app = Celery(
    settings.app_name,
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["telehealth.billing.tasks"],
)

celery_app.conf.update(
    task_routes={
        "billing.*": {"queue": "billing"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=1800,  # 30 minutes, one sweep may charge many subscriptions
    task_soft_time_limit=1700,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the renewal sweep and webhook retention jobs."""
    from telehealth.billing.tasks import process_due_renewals_task, purge_webhook_events_task

    renewal_interval = max(60, settings.celery.renewal_interval_minutes * 60)
    sender.add_periodic_task(
        float(renewal_interval),
        process_due_renewals_task.s(),
        name="billing-process-due-renewals",
    )

    purge_interval = max(3600, settings.celery.purge_interval_hours * 3600)
    sender.add_periodic_task(
        float(purge_interval),
        purge_webhook_events_task.s(),
        name="billing-purge-webhook-events",
    )

    logger.info(
        "Billing periodic tasks registered",
        renewal_interval_seconds=renewal_interval,
        purge_interval_seconds=purge_interval,
    )
