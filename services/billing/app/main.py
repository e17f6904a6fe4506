"""
Billing Service — FastAPI エントリーポイント

注文 Saga 向けの Payment Intent と返金。

  ┌──────────────┐  payment-intents   ┌─────────────────┐
  │ Order Service │ ────────────────▶ │ Billing Service │
  │              │ ◀──────────────── │                 │
  └──────────────┘  webhooks          └─────────────────┘
                    (payment-captured, refunded)
"""

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, Request, Response
from pydantic import Field

from services.common.app import create_service_app
from services.common.errors import NotFound, with_trace
from services.common.money import Money
from services.common.schemas import CamelModel

from . import commands, notifications, queries
from .config import BillingSettings
from .schema import metadata

router = APIRouter(prefix="/v1/billing")


# ── Request Models ───────────────────────────────


class CreatePaymentIntentRequest(CamelModel):
    order_id: str = Field(min_length=1)
    amount: Money = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    idempotency_key: str | None = None


class CreateRefundRequest(CamelModel):
    order_id: str = Field(min_length=1)
    payment_intent_id: str = Field(min_length=1)
    amount: Money | None = Field(default=None, ge=0)
    idempotency_key: str | None = None


# ── Payment Intents ──────────────────────────────


@router.post("/payment-intents", status_code=201)
async def cmd_create_payment_intent(
    req: CreatePaymentIntentRequest, request: Request, response: Response
):
    state = request.app.state
    async with state.async_session() as session:
        intent, created = await commands.create_payment_intent(
            session,
            state.redis,
            req.order_id,
            req.amount,
            req.currency,
            req.idempotency_key,
        )
    if not created:
        response.status_code = 200
    return with_trace(intent)


@router.get("/payment-intents/{intent_id}")
async def query_payment_intent(intent_id: str, request: Request):
    async with request.app.state.async_session() as session:
        intent = await queries.get_payment_intent(session, intent_id)
    if intent is None:
        raise NotFound(
            f"Payment intent {intent_id} not found", code="PAYMENT_INTENT_NOT_FOUND"
        )
    return with_trace(intent)


@router.post("/payments/{intent_id}/capture")
async def cmd_capture(intent_id: str, request: Request):
    """決済を確定し、注文サービスへ通知する"""
    state = request.app.state
    async with state.async_session() as session:
        intent, captured_now = await commands.capture_payment(
            session, state.redis, intent_id
        )
    if captured_now:
        await notifications.notify_order(
            state.http_client,
            state.settings.orders_service_url,
            intent["orderId"],
            notifications.PAYMENT_CAPTURED,
            {
                "paymentIntentId": intent["paymentIntentId"],
                "amount": intent["amount"],
                "currency": intent["currency"],
            },
        )
    return with_trace(intent)


# ── Refunds ──────────────────────────────────────


@router.post("/refunds", status_code=201)
async def cmd_create_refund(req: CreateRefundRequest, request: Request, response: Response):
    state = request.app.state
    async with state.async_session() as session:
        refund, created = await commands.create_refund(
            session,
            state.redis,
            req.order_id,
            req.payment_intent_id,
            req.amount,
            req.idempotency_key,
        )
    if created:
        await notifications.notify_order(
            state.http_client,
            state.settings.orders_service_url,
            refund["orderId"],
            notifications.REFUNDED,
            {
                "refundId": refund["refundId"],
                "paymentIntentId": refund["paymentIntentId"],
                "amount": refund["amount"],
            },
        )
    else:
        response.status_code = 200
    return with_trace(refund)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "billing"}


def create_app(
    settings: BillingSettings | None = None,
    *,
    redis: aioredis.Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    app = create_service_app(
        settings or BillingSettings.from_env(),
        metadata,
        title="Billing Service",
        redis=redis,
        http_client=http_client,
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
