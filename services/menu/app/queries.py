"""
Menu Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.database import load_json


def _item_row(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "price": row.price,
        "category": row.category,
        "available": bool(row.available),
        "ingredients": load_json(row.ingredients),
        "createdAt": row.created_at,
        "updatedAt": row.updated_at,
    }


async def get_item(session: AsyncSession, item_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM menu_items WHERE id = :id"),
        {"id": item_id},
    )
    row = result.fetchone()
    return _item_row(row) if row else None


async def list_available_items(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM menu_items
            WHERE available = :available
            ORDER BY category, name
        """),
        {"available": True},
    )
    return [_item_row(row) for row in result.fetchall()]


async def find_items(session: AsyncSession, item_ids: list[str]) -> dict[str, dict]:
    """id をキーにした一括取得。未知の id は結果に含まれない"""
    if not item_ids:
        return {}
    stmt = text("SELECT * FROM menu_items WHERE id IN :ids").bindparams(
        bindparam("ids", expanding=True)
    )
    result = await session.execute(stmt, {"ids": list(set(item_ids))})
    return {row.id: _item_row(row) for row in result.fetchall()}
