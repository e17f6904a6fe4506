"""
Order Service — リーフサービスのクライアント

Saga はメニュー・在庫・決済と下の狭いインターフェースを通して話す。
httpx 実装は呼び出しの失敗（タイムアウト、接続拒否、2xx 以外の応答、
想定外の JSON）をすべて LeafCallFailed 1 種類に変換するので、
オーケストレーターの失敗経路は各ステップ 1 本で済む。
"""

import logging
from decimal import Decimal
from typing import Protocol

import httpx
from pydantic import ValidationError

from services.common.context import trace_headers
from services.common.money import Money, format_money
from services.common.schemas import CamelModel

logger = logging.getLogger(__name__)


class LeafCallFailed(Exception):
    def __init__(
        self,
        service: str,
        operation: str,
        reason: str,
        *,
        status_code: int | None = None,
        error: dict | None = None,
    ) -> None:
        super().__init__(f"{service}.{operation} failed: {reason}")
        self.service = service
        self.operation = operation
        self.reason = reason
        self.status_code = status_code
        self.error = error

    def to_dict(self) -> dict:
        return {
            "service": self.service,
            "operation": self.operation,
            "statusCode": self.status_code,
            "error": self.error or {"message": self.reason},
        }


# ── 応答モデル ───────────────────────────────────


class MenuValidation(CamelModel):
    valid: bool
    validated_items: list[dict]


class Reservation(CamelModel):
    reservation_id: str
    status: str
    expires_at: str | None = None


class PaymentIntent(CamelModel):
    payment_intent_id: str
    status: str
    amount: Money | None = None
    client_secret: str | None = None


class Refund(CamelModel):
    refund_id: str
    status: str
    amount: Money | None = None


# ── インターフェース ─────────────────────────────


class MenuClient(Protocol):
    async def validate(
        self, items: list[dict], idempotency_key: str | None
    ) -> MenuValidation: ...


class InventoryClient(Protocol):
    async def reserve(
        self, order_id: str, items: list[dict], idempotency_key: str | None
    ) -> Reservation: ...

    async def commit(self, reservation_id: str) -> Reservation: ...

    async def release(self, reservation_id: str) -> Reservation: ...


class BillingClient(Protocol):
    async def create_payment_intent(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str | None,
    ) -> PaymentIntent: ...

    async def capture(self, payment_intent_id: str) -> PaymentIntent: ...

    async def create_refund(
        self,
        order_id: str,
        payment_intent_id: str,
        amount: Decimal | None,
        idempotency_key: str | None,
    ) -> Refund: ...


# ── httpx 実装 ──────────────────────────────────


class _HttpLeafClient:
    service = "leaf"

    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _call(self, operation: str, method: str, path: str, model, payload=None):
        try:
            resp = await self.client.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=trace_headers(),
            )
        except httpx.HTTPError as e:
            raise LeafCallFailed(self.service, operation, str(e) or type(e).__name__) from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.is_error:
            error = body.get("error") if isinstance(body, dict) else None
            raise LeafCallFailed(
                self.service,
                operation,
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                error=error if isinstance(error, dict) else None,
            )

        try:
            return model.model_validate(body)
        except ValidationError as e:
            logger.warning("%s.%s returned a malformed body: %s", self.service, operation, e)
            raise LeafCallFailed(
                self.service,
                operation,
                "malformed response body",
                status_code=resp.status_code,
            ) from e


class HttpMenuClient(_HttpLeafClient):
    service = "menu"

    async def validate(self, items, idempotency_key):
        payload = {"items": items}
        if idempotency_key:
            payload["idempotencyKey"] = idempotency_key
        return await self._call(
            "validate", "POST", "/v1/menu/validation", MenuValidation, payload
        )


class HttpInventoryClient(_HttpLeafClient):
    service = "inventory"

    async def reserve(self, order_id, items, idempotency_key):
        payload = {"orderId": order_id, "items": items}
        if idempotency_key:
            payload["idempotencyKey"] = idempotency_key
        return await self._call(
            "reserve", "POST", "/v1/inventory/reservations", Reservation, payload
        )

    async def commit(self, reservation_id):
        return await self._call(
            "commit",
            "POST",
            f"/v1/inventory/reservations/{reservation_id}/commit",
            Reservation,
        )

    async def release(self, reservation_id):
        return await self._call(
            "release",
            "POST",
            f"/v1/inventory/reservations/{reservation_id}/release",
            Reservation,
        )


class HttpBillingClient(_HttpLeafClient):
    service = "billing"

    async def create_payment_intent(self, order_id, amount, currency, idempotency_key):
        payload = {
            "orderId": order_id,
            "amount": format_money(amount),
            "currency": currency,
        }
        if idempotency_key:
            payload["idempotencyKey"] = idempotency_key
        return await self._call(
            "create_payment_intent",
            "POST",
            "/v1/billing/payment-intents",
            PaymentIntent,
            payload,
        )

    async def capture(self, payment_intent_id):
        return await self._call(
            "capture",
            "POST",
            f"/v1/billing/payments/{payment_intent_id}/capture",
            PaymentIntent,
        )

    async def create_refund(self, order_id, payment_intent_id, amount, idempotency_key):
        payload = {"orderId": order_id, "paymentIntentId": payment_intent_id}
        if amount is not None:
            payload["amount"] = format_money(amount)
        if idempotency_key:
            payload["idempotencyKey"] = idempotency_key
        return await self._call(
            "create_refund", "POST", "/v1/billing/refunds", Refund, payload
        )
