"""
Order Service — クエリハンドラ (Read 側)

読み取りは `orders` テーブルから直接行う。
このテーブルはコマンドハンドラがイベントログと同期させている。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.database import load_json


def _order_row(row) -> dict:
    return {
        "orderId": row.id,
        "customerId": row.customer_id,
        "customerName": row.customer_name,
        "items": load_json(row.items),
        "totalAmount": row.total_amount,
        "status": row.status,
        "reservationId": row.reservation_id,
        "paymentIntentId": row.payment_intent_id,
        "idempotencyKey": row.idempotency_key,
        "version": row.version,
        "createdAt": row.created_at,
        "updatedAt": row.updated_at,
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    return _order_row(row) if row else None


async def find_order_by_key(session: AsyncSession, idempotency_key: str) -> dict | None:
    """このキーで最初に作られた注文（同時再送で複数できている場合がある）"""
    result = await session.execute(
        text("""
            SELECT * FROM orders
            WHERE idempotency_key = :key
            ORDER BY created_at ASC
            LIMIT 1
        """),
        {"key": idempotency_key},
    )
    row = result.fetchone()
    return _order_row(row) if row else None


async def list_orders(
    session: AsyncSession,
    status: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """新しい順"""
    if status:
        result = await session.execute(
            text("""
                SELECT * FROM orders WHERE status = :status
                ORDER BY created_at DESC LIMIT :limit
            """),
            {"status": status, "limit": limit},
        )
    else:
        result = await session.execute(
            text("SELECT * FROM orders ORDER BY created_at DESC LIMIT :limit"),
            {"limit": limit},
        )
    return [_order_row(row) for row in result.fetchall()]
