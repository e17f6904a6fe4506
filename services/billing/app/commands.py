"""
Billing Service — コマンドハンドラ (Write 側)

Payment Intent のライフサイクル:

    requires_payment_method ─┐
    processing ──────────────┴─capture──▶ captured ──refund──▶ refunded

capture は冪等（captured の intent を再度 capture してもそのまま返す）。
返金は captured の intent に対してのみ受け付ける。
"""

import secrets
from decimal import Decimal
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.database import utcnow
from services.common.errors import Conflict, NotFound, ValidationFailed
from services.common.events import publish_event
from services.common.money import format_money, to_money

from . import queries

CHANNEL = "billing_events"

REQUIRES_PAYMENT_METHOD = "requires_payment_method"
PROCESSING = "processing"
CAPTURED = "captured"
REFUNDED = "refunded"
FAILED = "failed"

CAPTURABLE = (REQUIRES_PAYMENT_METHOD, PROCESSING)


async def _require_intent(session: AsyncSession, intent_id: str) -> dict:
    intent = await queries.get_payment_intent(session, intent_id)
    if intent is None:
        raise NotFound(
            f"Payment intent {intent_id} not found", code="PAYMENT_INTENT_NOT_FOUND"
        )
    return intent


async def create_payment_intent(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    amount: Decimal,
    currency: str,
    idempotency_key: str | None,
) -> tuple[dict, bool]:
    if idempotency_key:
        existing = await queries.find_payment_intent_by_key(session, idempotency_key)
        if existing:
            return existing, False

    intent_id = str(uuid4())
    now = utcnow()
    await session.execute(
        text("""
            INSERT INTO payment_intents
                (id, order_id, amount, currency, status, client_secret,
                 idempotency_key, created_at, updated_at)
            VALUES
                (:id, :order_id, :amount, :currency, :status, :secret,
                 :key, :now, :now)
        """),
        {
            "id": intent_id,
            "order_id": order_id,
            "amount": format_money(amount),
            "currency": currency.upper(),
            "status": REQUIRES_PAYMENT_METHOD,
            "secret": f"secret_{secrets.token_hex(16)}",
            "key": idempotency_key,
            "now": now,
        },
    )
    await session.commit()

    intent = await queries.get_payment_intent(session, intent_id)
    await publish_event(redis, CHANNEL, "PaymentIntentCreated", intent)
    return intent, True


async def capture_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    intent_id: str,
) -> tuple[dict, bool]:
    """
    決済を確定 (capture) する。(intent, captured_now) を返す。
    2 回目以降の capture は現在の intent を captured_now=False で返す。
    """
    intent = await _require_intent(session, intent_id)
    if intent["status"] == CAPTURED:
        return intent, False
    if intent["status"] not in CAPTURABLE:
        raise Conflict(
            f"Cannot capture payment in {intent['status']} status",
            code="PAYMENT_INVALID_STATE",
            details={"paymentIntentId": intent_id, "status": intent["status"]},
        )

    result = await session.execute(
        text("""
            UPDATE payment_intents SET status = :captured, updated_at = :now
            WHERE id = :id AND status IN (:rpm, :processing)
        """),
        {
            "id": intent_id,
            "captured": CAPTURED,
            "rpm": REQUIRES_PAYMENT_METHOD,
            "processing": PROCESSING,
            "now": utcnow(),
        },
    )
    await session.commit()
    intent = await queries.get_payment_intent(session, intent_id)
    if result.rowcount != 1:
        # 同時に走った capture に先を越された
        return intent, False

    await publish_event(redis, CHANNEL, "PaymentCaptured", intent)
    return intent, True


async def create_refund(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    intent_id: str,
    amount: Decimal | None,
    idempotency_key: str | None,
) -> tuple[dict, bool]:
    """captured の intent を返金し、`refunded` に遷移させる"""
    if idempotency_key:
        existing = await queries.find_refund_by_key(session, idempotency_key)
        if existing:
            return existing, False

    intent = await _require_intent(session, intent_id)
    if intent["status"] != CAPTURED:
        raise ValidationFailed(
            f"Cannot refund payment in {intent['status']} status",
            code="REFUND_FAILED",
            details={"paymentIntentId": intent_id, "status": intent["status"]},
        )
    if intent["orderId"] != order_id:
        raise ValidationFailed(
            f"Payment intent {intent_id} does not belong to order {order_id}",
            code="REFUND_FAILED",
        )
    refund_amount = to_money(intent["amount"]) if amount is None else amount
    if refund_amount > to_money(intent["amount"]):
        raise ValidationFailed(
            f"Refund of {format_money(refund_amount)} exceeds captured amount {intent['amount']}",
            code="REFUND_FAILED",
        )

    now = utcnow()
    result = await session.execute(
        text("""
            UPDATE payment_intents SET status = :refunded, updated_at = :now
            WHERE id = :id AND status = :captured
        """),
        {"id": intent_id, "refunded": REFUNDED, "captured": CAPTURED, "now": now},
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ValidationFailed(
            "Payment was refunded concurrently", code="REFUND_FAILED"
        )

    refund_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO refunds
                (id, order_id, payment_intent_id, amount, status, idempotency_key, created_at)
            VALUES
                (:id, :order_id, :intent_id, :amount, 'completed', :key, :now)
        """),
        {
            "id": refund_id,
            "order_id": order_id,
            "intent_id": intent_id,
            "amount": format_money(refund_amount),
            "key": idempotency_key,
            "now": now,
        },
    )
    await session.commit()

    refund = await queries.get_refund(session, refund_id)
    await publish_event(redis, CHANNEL, "PaymentRefunded", refund)
    return refund, True
