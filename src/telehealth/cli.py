#!/usr/bin/env python
"""
CLI management commands for the telehealth subscription engine.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import click

from telehealth.billing.config import get_billing_config
from telehealth.billing.models import utcnow
from telehealth.billing.orchestrator import CLAIM_LEASE_MARGIN_SECONDS, list_unsettled_charges
from telehealth.billing.repositories import (
    SqlAlchemySubscriptionRepository,
    SqlAlchemyWebhookEventStore,
    SubscriptionRepository,
    WebhookEventStore,
)
from telehealth.billing.webhooks.reconciler import purge_processed_events
from telehealth.db import create_all_tables, dispose_engine, get_session_maker
from telehealth.logging import setup_logging


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    create_tables: Callable[[], Awaitable[None]]
    repository_factory: Callable[[], SubscriptionRepository]
    webhook_store_factory: Callable[[], WebhookEventStore]
    dispose: Callable[[], Awaitable[None]]
    clock: Callable[[], datetime]
    retention_days: int
    claim_lease_seconds: float


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    config = get_billing_config()
    return CLIDependencies(
        repository_factory=lambda: SqlAlchemySubscriptionRepository(get_session_maker()),
        create_tables=create_all_tables,
        webhook_store_factory=lambda: SqlAlchemyWebhookEventStore(get_session_maker()),
        dispose=dispose_engine,
        clock=utcnow,
        retention_days=config.webhook.retention_days,
        claim_lease_seconds=config.renewal.charge_timeout_seconds + CLAIM_LEASE_MARGIN_SECONDS,
    )


def _run(deps: CLIDependencies, job: Callable[[], Awaitable[Any]]) -> Any:
    async def runner() -> Any:
        try:
            return await job()
        finally:
            await deps.dispose()

    return asyncio.run(runner())


@click.group()
def cli() -> None:
    """Telehealth subscription engine CLI."""
    setup_logging()


@cli.command("init-db")
def init_db() -> None:
    """Create the subscription billing tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    _run(deps, deps.create_tables)
    click.echo("Database initialized successfully!")


@cli.command("failed-webhooks")
def failed_webhooks() -> None:
    """List webhook events that exhausted their attempts."""
    deps = _get_cli_dependencies()

    async def _list() -> list[Any]:
        return await deps.webhook_store_factory().list_failed()

    events = _run(deps, _list)
    if not events:
        click.echo("No failed webhook events.")
        return

    for event in events:
        last_attempt = event.last_attempt_at.isoformat() if event.last_attempt_at else "-"
        click.echo(
            f"{event.event_id}\t{event.event_type}\tattempts={event.attempts}\t"
            f"last_attempt={last_attempt}\terror={event.last_error or '-'}"
        )
    click.echo(f"{len(events)} failed webhook event(s)")


@cli.command("unsettled-charges")
def unsettled_charges() -> None:
    """List charges that never received a payment processor answer."""
    deps = _get_cli_dependencies()

    async def _list() -> list[Any]:
        return await list_unsettled_charges(
            deps.repository_factory(), deps.claim_lease_seconds, deps.clock()
        )

    records = _run(deps, _list)
    if not records:
        click.echo("No unsettled charges.")
        return

    for record in records:
        claimed = (record.claimed_at or record.created_at).isoformat()
        click.echo(
            f"{record.id}\tsubscription={record.subscription_id}\t{record.status.value}\t"
            f"key={record.idempotency_key}\tclaimed={claimed}\treason={record.failure_reason or '-'}"
        )
    click.echo(f"{len(records)} unsettled charge(s)")


@cli.command("purge-webhooks")
@click.option(
    "--days",
    type=click.IntRange(min=1),
    default=None,
    help="Retention window in days (defaults to the configured retention)",
)
def purge_webhooks(days: int | None) -> None:
    """Delete processed webhook dedup entries older than the retention window."""
    deps = _get_cli_dependencies()
    retention = days or deps.retention_days

    async def _purge() -> int:
        return await purge_processed_events(deps.webhook_store_factory(), retention, deps.clock())

    purged = _run(deps, _purge)
    click.echo(f"Purged {purged} processed webhook event(s) older than {retention} days")


if __name__ == "__main__":
    cli()
