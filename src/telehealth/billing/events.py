"""
Billing notification kinds, audit actions and dispatch helpers.

Notifications and audit entries are side effects of committed state
changes: a delivery failure is logged and never undoes the change.
"""

from typing import Any

import structlog

from telehealth.billing.interfaces import AuditRecorder, NotificationSender, UserDirectory
from telehealth.logging import get_audit_logger

logger = structlog.get_logger(__name__)


# ============================================================================
# Notification kinds
# ============================================================================


class NotificationKind:
    """Notification kind constants."""

    SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
    WELCOME = "welcome"
    CANCELLED = "subscription_cancelled"
    PAUSED = "subscription_paused"
    RESUMED = "subscription_resumed"
    EXPIRED = "subscription_expired"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


# ============================================================================
# Audit actions
# ============================================================================


class AuditAction:
    """Audit action constants."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"
    SUBSCRIPTION_REACTIVATED = "subscription.reactivated"

    PLAN_CREATED = "plan.created"
    PLAN_UPDATED = "plan.updated"
    PLAN_ACTIVATED = "plan.activated"
    PLAN_DEACTIVATED = "plan.deactivated"

    BULK_CANCEL = "admin.bulk_cancel"
    BULK_CHANGE_PLAN = "admin.bulk_change_plan"


class EntityType:
    SUBSCRIPTION = "subscription"
    PLAN = "plan"


# ============================================================================
# Dispatch helpers
# ============================================================================


class LoggingAuditRecorder:
    """Audit recorder writing structured entries to the audit logger."""

    def __init__(self) -> None:
        self._logger = get_audit_logger()

    async def record(
        self,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self._logger.info(
            action,
            audit_actor_id=actor_id,
            audit_entity_type=entity_type,
            audit_entity_id=entity_id,
            **(detail or {}),
        )


class NotificationDispatcher:
    """Resolves the recipient and sends one notification, never raising."""

    def __init__(self, sender: NotificationSender, users: UserDirectory) -> None:
        self.sender = sender
        self.users = users

    async def notify(self, user_id: str, kind: str, payload: dict[str, Any]) -> bool:
        try:
            contact = await self.users.get_contact(user_id)
        except Exception as e:
            logger.warning("User lookup failed for notification", user_id=user_id, kind=kind, error=str(e))
            return False

        if contact is None:
            logger.warning("No contact for notification recipient", user_id=user_id, kind=kind)
            return False

        try:
            result = await self.sender.send(kind, contact.email, contact.display_name, payload)
        except Exception as e:
            logger.warning("Notification dispatch raised", user_id=user_id, kind=kind, error=str(e))
            return False

        if result.is_failure:
            logger.warning(
                "Notification dispatch failed", user_id=user_id, kind=kind, error=str(result.error)
            )
            return False

        logger.debug("Notification sent", user_id=user_id, kind=kind)
        return True


async def record_audit(
    audit: AuditRecorder,
    actor_id: str | None,
    action: str,
    entity_type: str,
    entity_id: str,
    detail: dict[str, Any] | None = None,
) -> None:
    """Write an audit entry; sink failures are logged, not propagated."""
    try:
        await audit.record(actor_id, action, entity_type, entity_id, detail or {})
    except Exception as e:
        logger.error(
            "Audit record failed",
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            error=str(e),
        )
