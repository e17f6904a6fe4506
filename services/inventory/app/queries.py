"""
Inventory Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.database import load_json


def _stock_row(row) -> dict:
    return {
        "itemId": row.item_id,
        "itemName": row.item_name,
        "quantity": row.quantity,
        "reservedQuantity": row.reserved_quantity,
        "availableQuantity": row.quantity - row.reserved_quantity,
        "updatedAt": row.updated_at,
    }


def _reservation_row(row) -> dict:
    return {
        "reservationId": row.id,
        "orderId": row.order_id,
        "items": load_json(row.items),
        "status": row.status,
        "createdAt": row.created_at,
        "expiresAt": row.expires_at,
    }


async def get_stock(session: AsyncSession, item_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM stock WHERE item_id = :id"),
        {"id": item_id},
    )
    row = result.fetchone()
    return _stock_row(row) if row else None


async def list_stock(session: AsyncSession) -> list[dict]:
    result = await session.execute(text("SELECT * FROM stock ORDER BY item_id"))
    return [_stock_row(row) for row in result.fetchall()]


async def get_reservation(session: AsyncSession, reservation_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM reservations WHERE id = :id"),
        {"id": reservation_id},
    )
    row = result.fetchone()
    return _reservation_row(row) if row else None


async def find_reservation_by_key(
    session: AsyncSession, idempotency_key: str
) -> dict | None:
    result = await session.execute(
        text("""
            SELECT * FROM reservations
            WHERE idempotency_key = :key
            ORDER BY created_at ASC
            LIMIT 1
        """),
        {"key": idempotency_key},
    )
    row = result.fetchone()
    return _reservation_row(row) if row else None


async def list_overdue_reservations(session: AsyncSession, now: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM reservations
            WHERE status = 'reserved' AND expires_at < :now
            ORDER BY expires_at ASC
        """),
        {"now": now},
    )
    return [_reservation_row(row) for row in result.fetchall()]
