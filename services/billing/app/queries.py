"""
Billing Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def _intent_row(row) -> dict:
    return {
        "paymentIntentId": row.id,
        "orderId": row.order_id,
        "amount": row.amount,
        "currency": row.currency,
        "status": row.status,
        "clientSecret": row.client_secret,
        "createdAt": row.created_at,
        "updatedAt": row.updated_at,
    }


def _refund_row(row) -> dict:
    return {
        "refundId": row.id,
        "orderId": row.order_id,
        "paymentIntentId": row.payment_intent_id,
        "amount": row.amount,
        "status": row.status,
        "createdAt": row.created_at,
    }


async def get_payment_intent(session: AsyncSession, intent_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM payment_intents WHERE id = :id"),
        {"id": intent_id},
    )
    row = result.fetchone()
    return _intent_row(row) if row else None


async def find_payment_intent_by_key(
    session: AsyncSession, idempotency_key: str
) -> dict | None:
    result = await session.execute(
        text("""
            SELECT * FROM payment_intents
            WHERE idempotency_key = :key
            ORDER BY created_at ASC
            LIMIT 1
        """),
        {"key": idempotency_key},
    )
    row = result.fetchone()
    return _intent_row(row) if row else None


async def get_refund(session: AsyncSession, refund_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM refunds WHERE id = :id"),
        {"id": refund_id},
    )
    row = result.fetchone()
    return _refund_row(row) if row else None


async def find_refund_by_key(session: AsyncSession, idempotency_key: str) -> dict | None:
    result = await session.execute(
        text("""
            SELECT * FROM refunds
            WHERE idempotency_key = :key
            ORDER BY created_at ASC
            LIMIT 1
        """),
        {"key": idempotency_key},
    )
    row = result.fetchone()
    return _refund_row(row) if row else None
