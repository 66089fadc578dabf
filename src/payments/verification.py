"""Checkout confirmation submitted by the browser after a successful payment."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from starlette.concurrency import run_in_threadpool

from src.models import DispatchResult
from src.payments.dispatcher import (
    WebhookValidationError,
    apply_plan_upgrade,
    success_event_key,
    utc_now,
)
from src.payments.gateway import RazorpayClient
from src.payments.signature import verify_payment_signature
from src.payments.store import BillingStore

logger = logging.getLogger(__name__)

_SETTLED_STATUSES = frozenset({"authorized", "captured"})


class PaymentVerificationError(Exception):
    """Confirmation rejected; ``status_code`` is the HTTP status to return."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class PaymentVerifier:
    """Verifies ``order_id|payment_id`` signatures and applies the paid plan."""

    def __init__(
        self,
        store: BillingStore,
        gateway: RazorpayClient,
        key_secret: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._key_secret = key_secret
        self._clock = clock

    async def verify(
        self,
        order_id: str | None,
        payment_id: str | None,
        signature: str | None,
    ) -> tuple[str, DispatchResult]:
        """Return the confirmed plan and the outcome of applying it."""
        if not order_id or not payment_id or not signature:
            raise PaymentVerificationError("Missing payment details")

        if not verify_payment_signature(order_id, payment_id, signature, self._key_secret):
            logger.warning("Invalid payment signature for order %s", order_id)
            raise PaymentVerificationError("Invalid payment signature")

        order = await self._gateway.fetch_order(order_id)
        if order is None:
            raise PaymentVerificationError("Order not found", status_code=404)

        user_id = order.notes.resolved_user_id
        plan = order.notes.resolved_plan
        if not user_id or not plan:
            raise PaymentVerificationError("Invalid order data")

        payment = await self._gateway.fetch_payment(payment_id)
        if payment is None:
            raise PaymentVerificationError("Payment not found", status_code=404)
        if payment.order_id != order_id:
            logger.warning("Payment %s does not belong to order %s", payment_id, order_id)
            raise PaymentVerificationError("Payment does not match order")
        if payment.status not in _SETTLED_STATUSES:
            logger.warning("Payment %s is %s, not settled", payment_id, payment.status)
            raise PaymentVerificationError("Payment not completed")

        try:
            applied = await run_in_threadpool(
                apply_plan_upgrade,
                self._store,
                user_id=user_id,
                plan=plan,
                cycle=order.notes.resolved_cycle,
                order_id=order_id,
                payment_id=payment_id,
                amount=order.amount,
                event_key=success_event_key(order_id, payment_id),
                event_type="checkout.verified",
                action="payment_success",
                now=self._clock(),
            )
        except WebhookValidationError as exc:
            raise PaymentVerificationError(str(exc)) from exc

        if not applied:
            logger.info("Order %s was already applied", order_id)
            return plan, DispatchResult(
                message="Payment already verified", duplicate=True,
            )
        return plan, DispatchResult(message="Payment verified successfully")
