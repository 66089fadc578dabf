"""FastAPI application for the billing edge of Snippet Factory."""

from __future__ import annotations

import hmac
import json
import logging
from collections.abc import Callable
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from src.api.rate_limit_middleware import RateLimitMiddleware
from src.config import Settings
from src.payments.dispatcher import (
    PaymentEventDispatcher,
    WebhookUnauthorizedError,
    WebhookValidationError,
    utc_now,
)
from src.payments.gateway import GatewayError, RazorpayClient
from src.payments.signature import SIGNATURE_HEADER
from src.payments.store import BillingStore, StoreError
from src.payments.verification import PaymentVerificationError, PaymentVerifier
from src.ratelimit import RateLimiter, SlidingWindowRateLimiter, SqliteRateLimiter

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/razorpay"
VERIFY_PAYMENT_PATH = "/api/razorpay/verify-payment"
SUBSCRIPTION_CHECK_PATH = "/api/cron/subscription-check"


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return create_app(settings)


def build_limiter(settings: Settings) -> RateLimiter:
    if settings.rate_limit_backend == "sqlite":
        return SqliteRateLimiter(
            settings.rate_limit_db_path,
            max_requests=settings.rate_limit_max_requests,
            window_ms=settings.rate_limit_window_ms,
        )
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_ms=settings.rate_limit_window_ms,
        max_identifiers=settings.rate_limit_max_identifiers,
    )


def create_app(
    settings: Settings,
    store: BillingStore | None = None,
    limiter: RateLimiter | None = None,
    gateway: RazorpayClient | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """Create the billing app with rate limiting, webhook and checkout routes."""
    app = FastAPI(docs_url=None, redoc_url=None)

    store = store or BillingStore(settings.billing_db_path)
    limiter = limiter or build_limiter(settings)
    if gateway is None and settings.key_id and settings.key_secret:
        gateway = RazorpayClient(
            settings.key_id,
            settings.key_secret,
            base_url=settings.gateway_base_url,
            timeout=settings.gateway_timeout_seconds,
        )

    dispatcher = (
        PaymentEventDispatcher(store, settings.webhook_secret, clock=clock)
        if settings.webhook_secret else None
    )
    verifier = (
        PaymentVerifier(store, gateway, settings.key_secret, clock=clock)
        if gateway is not None and settings.key_secret else None
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(WEBHOOK_PATH)
    async def razorpay_webhook(request: Request) -> JSONResponse:
        if dispatcher is None:
            logger.error("RAZORPAY_WEBHOOK_SECRET not configured")
            return JSONResponse({"error": "Server configuration error"}, status_code=500)

        body = await request.body()
        try:
            result = await run_in_threadpool(
                dispatcher.handle, body, request.headers.get(SIGNATURE_HEADER),
            )
        except WebhookUnauthorizedError as exc:
            return JSONResponse({"error": str(exc)}, status_code=401)
        except WebhookValidationError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        except StoreError:
            logger.exception("Billing store rejected webhook mutation")
            return JSONResponse({"error": "Webhook processing failed"}, status_code=500)
        except Exception:
            logger.exception("Webhook error")
            return JSONResponse({"error": "Webhook processing failed"}, status_code=500)

        return JSONResponse(result.model_dump())

    @app.post(VERIFY_PAYMENT_PATH)
    async def verify_payment(request: Request) -> JSONResponse:
        if verifier is None:
            logger.error("Razorpay API keys not configured")
            return JSONResponse(
                {"success": False, "error": "Server configuration error"}, status_code=500,
            )

        try:
            body = json.loads(await request.body() or b"{}")
        except json.JSONDecodeError:
            return JSONResponse(
                {"success": False, "error": "Invalid JSON body"}, status_code=400,
            )
        if not isinstance(body, dict):
            body = {}

        try:
            plan, result = await verifier.verify(
                body.get("razorpay_order_id"),
                body.get("razorpay_payment_id"),
                body.get("razorpay_signature"),
            )
        except PaymentVerificationError as exc:
            return JSONResponse(
                {"success": False, "error": str(exc)}, status_code=exc.status_code,
            )
        except GatewayError:
            logger.exception("Gateway lookup failed during payment verification")
            return JSONResponse(
                {"success": False, "error": "Payment gateway unavailable"}, status_code=502,
            )
        except StoreError:
            logger.exception("Error updating user plan")
            return JSONResponse(
                {"success": False, "error": "Failed to update user plan"}, status_code=500,
            )
        except Exception:
            logger.exception("Error verifying payment")
            return JSONResponse(
                {"success": False, "error": "Payment verification failed"}, status_code=500,
            )

        return JSONResponse({
            "success": True,
            "message": result.message,
            "duplicate": result.duplicate,
            "plan": plan,
        })

    @app.api_route(SUBSCRIPTION_CHECK_PATH, methods=["GET", "POST"])
    async def subscription_check(request: Request) -> JSONResponse:
        if not settings.cron_secret:
            logger.error("CRON_SECRET environment variable not set")
            return JSONResponse({"error": "Server configuration error"}, status_code=500)

        auth_header = request.headers.get("authorization", "")
        expected = f"Bearer {settings.cron_secret}"
        if not hmac.compare_digest(auth_header.encode(), expected.encode()):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        now = clock()
        try:
            downgraded = await run_in_threadpool(store.downgrade_expired, now)
        except StoreError:
            logger.exception("Error running subscription check")
            return JSONResponse(
                {"error": "Error running subscription check"}, status_code=500,
            )

        return JSONResponse({
            "success": True,
            "message": "Subscription expiry check completed",
            "downgraded": downgraded,
            "timestamp": now.isoformat(),
        })

    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        trust_forwarded=settings.rate_limit_trust_forwarded,
    )

    return app
