"""Shared Pydantic data models for the Snippet Factory billing service."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# --- Enums ---


class PlanType(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class WebhookEventType(str, Enum):
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    ORDER_PAID = "order.paid"


COINS_PURCHASE = "coins_purchase"


# --- Gateway entities ---


class PaymentNotes(BaseModel):
    """Application context echoed back by the gateway in ``notes``.

    Orders created by older checkout code used camelCase keys and
    ``plan``/``billing`` instead of ``plan_type``/``duration_type``; both
    spellings are accepted.
    """

    model_config = ConfigDict(extra="allow")

    user_id: str | None = None
    userId: str | None = None  # noqa: N815
    plan_type: str | None = None
    plan: str | None = None
    duration_type: str | None = None
    billing: str | None = None
    type: str | None = None
    # Coin orders
    coins: int | None = None
    packageType: str | None = None  # noqa: N815
    package_type: str | None = None

    @property
    def resolved_user_id(self) -> str | None:
        return self.user_id or self.userId

    @property
    def resolved_package(self) -> str | None:
        return self.packageType or self.package_type

    @property
    def resolved_plan(self) -> str | None:
        return self.plan_type or self.plan

    @property
    def resolved_cycle(self) -> str | None:
        return self.duration_type or self.billing

    @property
    def is_coin_purchase(self) -> bool:
        return self.type == COINS_PURCHASE


class GatewayEntity(BaseModel):
    """Payment or order entity nested in a webhook payload."""

    model_config = ConfigDict(extra="allow")

    id: str
    amount: int = 0
    status: str | None = None
    order_id: str | None = None
    notes: PaymentNotes = Field(default_factory=PaymentNotes)

    @field_validator("notes", mode="before")
    @classmethod
    def _empty_notes(cls, value: Any) -> Any:
        # The gateway serializes empty notes as [] and sometimes null.
        if value is None or isinstance(value, list):
            return {}
        return value


class EntityWrapper(BaseModel):
    model_config = ConfigDict(extra="allow")

    entity: GatewayEntity


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    payment: EntityWrapper | None = None
    order: EntityWrapper | None = None


class WebhookEvent(BaseModel):
    """A signed payment-lifecycle notification from the gateway."""

    model_config = ConfigDict(extra="allow")

    event: str
    payload: WebhookPayload = Field(default_factory=WebhookPayload)

    @property
    def payment(self) -> GatewayEntity | None:
        return self.payload.payment.entity if self.payload.payment else None

    @property
    def order(self) -> GatewayEntity | None:
        return self.payload.order.entity if self.payload.order else None


# --- Store records ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class PaymentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    payment_id: str | None
    order_id: str | None
    amount: float = Field(ge=0)  # major currency units
    plan_type: str | None
    duration_type: str | None = None
    status: PaymentStatus
    payment_method: str = "razorpay"


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    user_id: str
    action: str
    resource_type: str
    resource_id: str | None = None
    metadata: dict[str, Any] | None = None


class UserAccount(BaseModel):
    id: str
    plan: str = PlanType.FREE.value
    plan_expires_at: str | None = None
    coin_balance: int = 0
    updated_at: str | None = None


# --- Results ---


class DispatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    duplicate: bool = False
