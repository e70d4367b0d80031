"""
Celery tasks for billing background jobs.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from telehealth.billing.models import utcnow
from telehealth.billing.service import get_engine
from telehealth.billing.webhooks.reconciler import purge_processed_events
from telehealth.celery_app import celery_app
from telehealth.db import dispose_engine

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _run(job: Callable[[], Awaitable[T]]) -> T:
    """Run ``job`` in a fresh event loop, releasing pooled connections afterwards."""

    async def runner() -> T:
        try:
            return await job()
        finally:
            await dispose_engine()

    return asyncio.run(runner())


async def _process_due_renewals() -> dict[str, int]:
    engine = get_engine()
    summary = await engine.orchestrator.process_due_renewals()
    return summary.to_dict()


async def _purge_webhook_events() -> int:
    engine = get_engine()
    return await purge_processed_events(
        engine.webhook_store, engine.config.webhook.retention_days, utcnow()
    )


@celery_app.task(name="billing.process_due_renewals")  # type: ignore[misc]
def process_due_renewals_task() -> dict[str, Any]:
    """Charge every subscription whose billing date has passed."""
    summary = _run(_process_due_renewals)
    logger.info("Renewal sweep finished", **summary)
    return {"status": "ok", **summary}


@celery_app.task(name="billing.purge_webhook_events")  # type: ignore[misc]
def purge_webhook_events_task() -> dict[str, Any]:
    """Drop processed webhook dedup entries past the retention window."""
    purged = _run(_purge_webhook_events)
    return {"status": "ok", "purged": purged}


__all__ = ["process_due_renewals_task", "purge_webhook_events_task"]
