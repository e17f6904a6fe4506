"""
Menu Service — コマンドハンドラ (Write 側)

メニュー項目は更新可能なカタログ行。サービス間のルールは validate_items() だけで、
注文サービスが「クライアントが見た価格でこのカゴを販売できるか」を問い合わせる。
"""

from decimal import Decimal
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.database import dump_json, utcnow
from services.common.errors import Conflict, NotFound
from services.common.events import publish_event
from services.common.money import CENT, format_money, to_money

from . import queries

CHANNEL = "menu_events"

ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
ITEM_UNAVAILABLE = "ITEM_UNAVAILABLE"
PRICE_MISMATCH = "PRICE_MISMATCH"

# 価格差が 1 セント未満なら一致とみなす
PRICE_TOLERANCE = CENT

_UPDATABLE = ("name", "description", "price", "category", "available", "ingredients")


async def _require_item(session: AsyncSession, item_id: str) -> dict:
    item = await queries.get_item(session, item_id)
    if item is None:
        raise NotFound(f"Menu item {item_id} not found", code=ITEM_NOT_FOUND)
    return item


async def create_item(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    *,
    name: str,
    price: Decimal,
    description: str | None = None,
    category: str = "main",
    available: bool = True,
    ingredients: list[str] | None = None,
    item_id: str | None = None,
) -> dict:
    item_id = item_id or str(uuid4())
    if await queries.get_item(session, item_id):
        raise Conflict(f"Menu item {item_id} already exists", code="ITEM_EXISTS")

    now = utcnow()
    await session.execute(
        text("""
            INSERT INTO menu_items
                (id, name, description, price, category, available,
                 ingredients, created_at, updated_at)
            VALUES
                (:id, :name, :description, :price, :category, :available,
                 :ingredients, :now, :now)
        """),
        {
            "id": item_id,
            "name": name,
            "description": description,
            "price": format_money(price),
            "category": category,
            "available": available,
            "ingredients": dump_json(ingredients) if ingredients is not None else None,
            "now": now,
        },
    )
    await session.commit()

    item = await queries.get_item(session, item_id)
    await publish_event(redis, CHANNEL, "MenuItemCreated", item)
    return item


async def update_item(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    item_id: str,
    changes: dict,
) -> dict:
    """部分更新。`changes` に無いキーは変更しない"""
    await _require_item(session, item_id)

    params = {"id": item_id, "now": utcnow()}
    assignments = ["updated_at = :now"]
    for field in _UPDATABLE:
        if field not in changes:
            continue
        value = changes[field]
        if field == "price":
            value = format_money(value)
        elif field == "ingredients":
            value = dump_json(value) if value is not None else None
        params[field] = value
        assignments.append(f"{field} = :{field}")

    await session.execute(
        text(f"UPDATE menu_items SET {', '.join(assignments)} WHERE id = :id"),
        params,
    )
    await session.commit()

    item = await queries.get_item(session, item_id)
    await publish_event(redis, CHANNEL, "MenuItemUpdated", item)
    return item


async def set_availability(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    item_id: str,
    available: bool,
) -> dict:
    await _require_item(session, item_id)
    await session.execute(
        text("""
            UPDATE menu_items SET available = :available, updated_at = :now
            WHERE id = :id
        """),
        {"id": item_id, "available": available, "now": utcnow()},
    )
    await session.commit()

    item = await queries.get_item(session, item_id)
    await publish_event(
        redis,
        CHANNEL,
        "MenuItemAvailabilityChanged",
        {"itemId": item_id, "available": available},
    )
    return item


async def validate_items(session: AsyncSession, requested: list[dict]) -> dict:
    """
    要求された明細をカタログと照合する。

    明細ごとに判定し、全明細が有効なときだけカゴ全体を有効とする。
    未知の商品はエラーだけを載せた短いエントリになる。
    """
    catalogue = await queries.find_items(session, [line["itemId"] for line in requested])

    validated = []
    for line in requested:
        item = catalogue.get(line["itemId"])
        if item is None:
            validated.append(
                {"itemId": line["itemId"], "valid": False, "error": ITEM_NOT_FOUND}
            )
            continue

        requested_price = to_money(line.get("unitPrice", 0))
        current_price = to_money(item["price"])
        price_matches = abs(current_price - requested_price) < PRICE_TOLERANCE

        if not item["available"]:
            error = ITEM_UNAVAILABLE
        elif not price_matches:
            error = PRICE_MISMATCH
        else:
            error = None

        validated.append(
            {
                "itemId": line["itemId"],
                "qty": line.get("qty", 1),
                "unitPrice": format_money(requested_price),
                "currentPrice": format_money(current_price),
                "available": item["available"],
                "valid": error is None,
                "error": error,
            }
        )

    return {
        "valid": all(entry["valid"] for entry in validated),
        "validatedItems": validated,
    }
