"""Razorpay REST client for fetching orders and payments.

Uses HTTP basic auth with the API key pair, TLS verification, an explicit
per-request timeout and bounded retries on 429/5xx.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from src.models import GatewayEntity

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.razorpay.com/v1"
_MAX_RETRIES = 3
_BACKOFF_CAP_SECONDS = 30


class GatewayError(Exception):
    """Raised when the payment gateway cannot be reached or rejects a call."""


class RazorpayClient:
    """Read-only access to gateway orders and payments."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth = httpx.BasicAuth(key_id, key_secret)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def fetch_order(self, order_id: str) -> GatewayEntity | None:
        data = await self._get(f"/orders/{order_id}")
        return GatewayEntity.model_validate(data) if data is not None else None

    async def fetch_payment(self, payment_id: str) -> GatewayEntity | None:
        data = await self._get(f"/payments/{payment_id}")
        return GatewayEntity.model_validate(data) if data is not None else None

    async def _get(self, path: str) -> dict[str, Any] | None:
        """GET a gateway resource; None on 404.

        Retries 429 and 5xx responses and transport errors with exponential
        backoff capped at 30s.
        """
        url = f"{self._base_url}{path}"
        async with httpx.AsyncClient(
            auth=self._auth, timeout=self._timeout, verify=True, transport=self._transport,
        ) as client:
            for attempt in range(_MAX_RETRIES + 1):
                try:
                    resp = await client.get(url)
                except (httpx.ConnectError, httpx.TimeoutException) as exc:
                    if attempt >= _MAX_RETRIES:
                        raise GatewayError(f"Gateway unavailable: {exc}") from exc
                    logger.warning("Gateway request to %s failed: %s", path, exc)
                else:
                    if resp.status_code == 404:
                        return None
                    if resp.status_code < 400:
                        return resp.json()
                    if not self._should_retry(resp.status_code) or attempt >= _MAX_RETRIES:
                        raise GatewayError(
                            f"Gateway returned {resp.status_code} for {path}",
                        )
                    logger.warning("Gateway returned %d for %s, retrying", resp.status_code, path)
                await asyncio.sleep(min(2 ** attempt, _BACKOFF_CAP_SECONDS))
        raise GatewayError(f"Gateway request to {path} exhausted retries")

    @staticmethod
    def _should_retry(status_code: int) -> bool:
        return status_code == 429 or status_code >= 500
