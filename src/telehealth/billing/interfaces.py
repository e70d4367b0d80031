"""
Collaborator contracts consumed by the billing engine.

The engine depends on these protocols only; concrete payment processors,
notification channels, user stores and audit sinks are injected.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from telehealth.core.result import Result


class ChargeStatus(str, Enum):
    """Outcome reported by the payment processor."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class ChargeResult:
    """Result of a single charge call."""

    status: ChargeStatus
    error_message: str | None = None
    transaction_id: str | None = None
    retryable: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is ChargeStatus.SUCCEEDED

    @classmethod
    def ok(cls, transaction_id: str | None = None) -> "ChargeResult":
        return cls(status=ChargeStatus.SUCCEEDED, transaction_id=transaction_id)

    @classmethod
    def declined(cls, message: str, retryable: bool = False) -> "ChargeResult":
        return cls(status=ChargeStatus.FAILED, error_message=message, retryable=retryable)


@dataclass(slots=True)
class PaymentMethod:
    """Stored payment method summary."""

    id: str
    type: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None
    is_default: bool = False


@dataclass(slots=True)
class UserContact:
    """Where notifications for a user are delivered."""

    user_id: str
    email: str
    display_name: str
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PaymentGateway(Protocol):
    """Payment processor the orchestrator charges through."""

    async def charge(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        *,
        idempotency_key: str,
        description: str | None = None,
    ) -> ChargeResult:
        """Charge ``amount``; may raise on network or processor errors."""
        ...

    async def list_payment_methods(self, user_id: str) -> list[PaymentMethod]: ...


@runtime_checkable
class NotificationSender(Protocol):
    """Outbound user notification channel."""

    async def send(
        self,
        kind: str,
        recipient_email: str,
        recipient_name: str,
        payload: dict[str, Any],
    ) -> Result[None]: ...


@runtime_checkable
class UserDirectory(Protocol):
    """Resolves user ids to contact details."""

    async def get_contact(self, user_id: str) -> UserContact | None: ...


@runtime_checkable
class AuditRecorder(Protocol):
    """Append-only audit sink."""

    async def record(
        self,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str,
        detail: dict[str, Any] | None = None,
    ) -> None: ...


@runtime_checkable
class WebhookVerifier(Protocol):
    """Authenticates raw webhook payloads; raises ``WebhookSignatureError``."""

    def verify(self, payload: bytes | str, signature_header: str | None) -> None: ...
