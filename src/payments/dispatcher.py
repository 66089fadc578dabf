"""Payment webhook verification and dispatch.

Flow for one delivery:
1. Verify the HMAC signature over the raw body (reject before parsing)
2. Parse the JSON payload
3. Route on the event type
4. Apply the plan or coin mutation, its history row, its audit row and
   its idempotency ledger entry in one store transaction

The gateway delivers at least once. Repeat deliveries of an already
applied event are acknowledged without applying anything again.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import ValidationError

from src.models import (
    AuditEvent,
    DispatchResult,
    GatewayEntity,
    PaymentRecord,
    PaymentStatus,
    PlanType,
    WebhookEvent,
    WebhookEventType,
)
from src.payments.billing import compute_expiry, to_major_units
from src.payments.signature import verify_signature
from src.payments.store import BillingStore, CoinPurchaseError

logger = logging.getLogger(__name__)

_PAID_PLANS = frozenset(p.value for p in PlanType if p is not PlanType.FREE)


class WebhookUnauthorizedError(Exception):
    """Signature missing or not matching the webhook secret."""


class WebhookValidationError(Exception):
    """Authentic event that lacks the fields needed to act on it."""


def utc_now() -> datetime:
    return datetime.now(UTC)


def success_event_key(order_id: str | None, payment_id: str) -> str:
    """Ledger key shared by every success path of one purchase.

    ``payment.authorized``, ``payment.captured``, ``order.paid`` and the
    checkout confirmation for the same order all map to one key.
    """
    return f"order:{order_id}" if order_id else f"payment:{payment_id}"


def apply_plan_upgrade(
    store: BillingStore,
    *,
    user_id: str,
    plan: str,
    cycle: str | None,
    order_id: str | None,
    payment_id: str | None,
    amount: int | None,
    event_key: str,
    event_type: str,
    action: str,
    now: datetime,
) -> bool:
    """Move ``user_id`` to ``plan`` and record the payment.

    Returns False if the event was already applied.
    """
    if plan not in _PAID_PLANS:
        raise WebhookValidationError(f"Unknown plan type: {plan}")
    expires_at = compute_expiry(now, cycle)
    major_amount = to_major_units(amount)
    record = PaymentRecord(
        user_id=user_id,
        payment_id=payment_id,
        order_id=order_id,
        amount=major_amount,
        plan_type=plan,
        duration_type=cycle,
        status=PaymentStatus.SUCCESS,
    )
    audit = AuditEvent(
        timestamp=now.isoformat(),
        user_id=user_id,
        action=action,
        resource_type="payment",
        resource_id=payment_id or order_id,
        metadata={
            "event": event_type,
            "order_id": order_id,
            "payment_id": payment_id,
            "plan": plan,
            "billing": cycle,
            "amount": major_amount,
            "plan_expires_at": expires_at.isoformat(),
        },
    )
    applied = store.apply_plan_payment(
        event_key=event_key,
        event_type=event_type,
        plan=plan,
        expires_at=expires_at,
        record=record,
        audit=audit,
        now=now,
    )
    if applied:
        logger.info(
            "Upgraded user %s to %s plan until %s", user_id, plan, expires_at.isoformat(),
        )
    return applied


class PaymentEventDispatcher:
    """Authenticates gateway webhooks and applies their effects."""

    def __init__(
        self,
        store: BillingStore,
        webhook_secret: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._secret = webhook_secret
        self._clock = clock
        self._handlers: dict[str, Callable[[WebhookEvent], DispatchResult]] = {
            WebhookEventType.PAYMENT_CAPTURED.value: self._handle_payment_success,
            WebhookEventType.PAYMENT_AUTHORIZED.value: self._handle_payment_success,
            WebhookEventType.PAYMENT_FAILED.value: self._handle_payment_failed,
            WebhookEventType.ORDER_PAID.value: self._handle_order_paid,
        }

    def handle(self, raw_body: bytes, signature: str | None) -> DispatchResult:
        """Verify and dispatch one delivery."""
        if not signature:
            logger.warning("Webhook rejected: missing signature")
            raise WebhookUnauthorizedError("Missing signature")
        if not verify_signature(raw_body, signature, self._secret):
            logger.warning("Webhook rejected: invalid signature")
            raise WebhookUnauthorizedError("Invalid signature")

        try:
            data = json.loads(raw_body)
        except ValueError as exc:
            raise WebhookValidationError("Malformed webhook payload") from exc
        event_type = data.get("event") if isinstance(data, dict) else None
        if not isinstance(event_type, str):
            raise WebhookValidationError("Malformed webhook payload")

        # Events we do not act on are acknowledged whatever their payload looks like.
        if event_type not in self._handlers:
            logger.info("Unhandled webhook event: %s", event_type)
            return DispatchResult(message="Webhook received")

        try:
            event = WebhookEvent.model_validate(data)
        except ValidationError as exc:
            raise WebhookValidationError("Malformed webhook payload") from exc

        return self.dispatch(event)

    def dispatch(self, event: WebhookEvent) -> DispatchResult:
        """Route a verified event to its handler."""
        logger.info("Payment webhook event: %s", event.event)
        handler = self._handlers.get(event.event)
        if handler is None:
            logger.info("Unhandled webhook event: %s", event.event)
            return DispatchResult(message="Webhook received")
        return handler(event)

    # --- Handlers ---

    def _handle_payment_success(self, event: WebhookEvent) -> DispatchResult:
        payment = self._require_entity(event.payment, event.event)
        notes = payment.notes
        user_id = notes.resolved_user_id
        if not user_id:
            logger.error("Missing user_id in payment notes for %s", payment.id)
            raise WebhookValidationError("Invalid payment data: missing user_id")

        now = self._clock()
        event_key = success_event_key(payment.order_id, payment.id)

        if notes.is_coin_purchase:
            if not payment.order_id:
                raise WebhookValidationError("Invalid payment data: missing order_id")
            try:
                coins = self._store.complete_coin_purchase(
                    event_key=event_key,
                    event_type=event.event,
                    order_id=payment.order_id,
                    payment_id=payment.id,
                    user_id=user_id,
                    coins=notes.coins,
                    package_type=notes.resolved_package,
                    price_paid=payment.amount,
                    audit=self._coin_audit(payment, user_id, now),
                    now=now,
                )
            except CoinPurchaseError as exc:
                logger.error("Coin purchase rejected for %s: %s", payment.id, exc)
                raise WebhookValidationError(f"Invalid coin purchase: {exc}") from exc
            if coins is None:
                return self._duplicate(event_key)
            logger.info("Credited %d coins to user %s", coins, user_id)
            return DispatchResult(message="Coins added successfully")

        plan = notes.resolved_plan
        if not plan:
            logger.error("Missing plan_type in payment notes for %s", payment.id)
            raise WebhookValidationError("Invalid payment data: missing plan_type")

        applied = apply_plan_upgrade(
            self._store,
            user_id=user_id,
            plan=plan,
            cycle=notes.resolved_cycle,
            order_id=payment.order_id,
            payment_id=payment.id,
            amount=payment.amount,
            event_key=event_key,
            event_type=event.event,
            action="payment_webhook_received",
            now=now,
        )
        if not applied:
            return self._duplicate(event_key)
        return DispatchResult(message="Plan upgraded successfully")

    def _handle_payment_failed(self, event: WebhookEvent) -> DispatchResult:
        payment = self._require_entity(event.payment, event.event)
        notes = payment.notes
        user_id = notes.resolved_user_id
        if not user_id:
            logger.warning("Payment %s failed with no user_id in notes", payment.id)
            return DispatchResult(message="Payment failure received")

        now = self._clock()
        event_key = f"payment:{payment.id}:failed"
        recorded = self._store.record_payment_failure(
            event_key=event_key,
            event_type=event.event,
            record=PaymentRecord(
                user_id=user_id,
                payment_id=payment.id,
                order_id=payment.order_id,
                amount=0,
                plan_type=notes.resolved_plan,
                duration_type=notes.resolved_cycle,
                status=PaymentStatus.FAILED,
            ),
            audit=AuditEvent(
                timestamp=now.isoformat(),
                user_id=user_id,
                action="payment_failed",
                resource_type="payment",
                resource_id=payment.id,
                metadata={
                    "event": event.event,
                    "order_id": payment.order_id,
                    "payment_id": payment.id,
                    "error_code": getattr(payment, "error_code", None),
                    "error_description": getattr(payment, "error_description", None),
                },
            ),
            now=now,
        )
        if not recorded:
            return self._duplicate(event_key)
        logger.info("Payment failed for user %s", user_id)
        return DispatchResult(message="Payment failure recorded")

    def _handle_order_paid(self, event: WebhookEvent) -> DispatchResult:
        order = self._require_entity(event.order, event.event)
        notes = order.notes
        user_id = notes.resolved_user_id
        plan = notes.resolved_plan
        if not user_id or not plan:
            logger.error("Missing order information in webhook for %s", order.id)
            raise WebhookValidationError("Invalid order data: missing user_id or plan")

        event_key = success_event_key(order.id, order.id)
        applied = apply_plan_upgrade(
            self._store,
            user_id=user_id,
            plan=plan,
            cycle=notes.resolved_cycle,
            order_id=order.id,
            payment_id=None,
            amount=order.amount,
            event_key=event_key,
            event_type=event.event,
            action="payment_completed_webhook",
            now=self._clock(),
        )
        if not applied:
            return self._duplicate(event_key)
        return DispatchResult(message="Plan upgraded successfully")

    # --- Helpers ---

    @staticmethod
    def _require_entity(entity: GatewayEntity | None, event_type: str) -> GatewayEntity:
        if entity is None:
            raise WebhookValidationError(f"Missing entity in {event_type} payload")
        return entity

    @staticmethod
    def _coin_audit(payment: GatewayEntity, user_id: str, now: datetime) -> AuditEvent:
        return AuditEvent(
            timestamp=now.isoformat(),
            user_id=user_id,
            action="coin_purchase_completed",
            resource_type="coins",
            resource_id=payment.order_id,
            metadata={
                "payment_id": payment.id,
                "amount": to_major_units(payment.amount),
                "coins": payment.notes.coins,
                "package_type": payment.notes.resolved_package,
            },
        )

    @staticmethod
    def _duplicate(event_key: str) -> DispatchResult:
        logger.warning("Duplicate webhook delivery ignored: %s", event_key)
        return DispatchResult(message="Duplicate event, already processed", duplicate=True)
