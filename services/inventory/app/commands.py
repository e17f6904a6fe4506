"""
Inventory Service — コマンドハンドラ (Write 側)

引き当て (Reservation) のライフサイクル:

    reserved ──commit──▶ committed   (在庫から出庫)
        │
        ├──release──▶ released       (引き当て数を戻す)
        └──expire───▶ expired        (release と同じ。期限切れスイープで発生)

在庫チェックは楽観的: reserved_quantity を増やす UPDATE は
quantity - reserved_quantity が要求数を満たす間だけマッチするので、
同時に引き当てても有効在庫がマイナスになることはない。
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.database import dump_json, to_iso, utcnow
from services.common.errors import Conflict, NotFound
from services.common.events import publish_event

from . import queries

logger = logging.getLogger(__name__)

CHANNEL = "inventory_events"

RESERVED = "reserved"
COMMITTED = "committed"
RELEASED = "released"
EXPIRED = "expired"


class InsufficientStock(Conflict):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, item_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for item {item_id}",
            details={"itemId": item_id, "requested": requested, "available": available},
        )


def _totals(items: list[dict]) -> dict[str, int]:
    """商品ごとに数量を合計する（同じ商品が複数明細に出ることがある）"""
    totals: dict[str, int] = {}
    for item in items:
        totals[item["itemId"]] = totals.get(item["itemId"], 0) + item["qty"]
    return totals


async def _require_reservation(session: AsyncSession, reservation_id: str) -> dict:
    reservation = await queries.get_reservation(session, reservation_id)
    if reservation is None:
        raise NotFound(
            f"Reservation {reservation_id} not found", code="RESERVATION_NOT_FOUND"
        )
    return reservation


async def _move_status(
    session: AsyncSession, reservation_id: str, to_status: str
) -> bool:
    """reserved → to_status。先に他の処理が遷移させていれば False"""
    result = await session.execute(
        text("""
            UPDATE reservations SET status = :to_status
            WHERE id = :id AND status = 'reserved'
        """),
        {"id": reservation_id, "to_status": to_status},
    )
    return result.rowcount == 1


async def _return_reserved_stock(session: AsyncSession, items: list[dict], now: str) -> None:
    for item_id, qty in _totals(items).items():
        await session.execute(
            text("""
                UPDATE stock
                SET reserved_quantity = CASE
                        WHEN reserved_quantity > :qty THEN reserved_quantity - :qty
                        ELSE 0
                    END,
                    updated_at = :now
                WHERE item_id = :id
            """),
            {"qty": qty, "now": now, "id": item_id},
        )


async def _provision_stock(
    session: AsyncSession, item_id: str, name: str, quantity: int, now: str
) -> None:
    """
    デフォルトの在庫行を独立したトランザクションで作成する。
    同時に走った引き当てが先に挿入していれば、その行をそのまま使う。
    """
    try:
        await session.execute(
            text("""
                INSERT INTO stock (item_id, item_name, quantity, reserved_quantity, updated_at)
                VALUES (:id, :name, :qty, 0, :now)
            """),
            {"id": item_id, "name": name, "qty": quantity, "now": now},
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info("Stock row for %s was provisioned concurrently", item_id)


async def reserve_inventory(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    items: list[dict],
    idempotency_key: str | None,
    *,
    ttl_minutes: int = 15,
    default_quantity: int = 100,
) -> tuple[dict, bool]:
    """
    注文の全明細について在庫を引き当てる。

    (reservation, created) を返す。冪等キーの再送時は
    最初に作られた引き当てを created=False で返す。
    """
    if idempotency_key:
        existing = await queries.find_reservation_by_key(session, idempotency_key)
        if existing:
            return existing, False

    created_at = datetime.now(timezone.utc)
    now = to_iso(created_at)
    names = {item["itemId"]: item.get("name") or item["itemId"] for item in items}
    totals = _totals(items)

    # 未知の商品にはデフォルトの在庫行を作る
    for item_id, qty in totals.items():
        current = await queries.get_stock(session, item_id)
        if current is None:
            await _provision_stock(session, item_id, names[item_id], default_quantity, now)
            current = await queries.get_stock(session, item_id)
        available = current["availableQuantity"]
        if available < qty:
            await session.rollback()
            raise InsufficientStock(item_id, qty, available)

    for item_id, qty in totals.items():
        result = await session.execute(
            text("""
                UPDATE stock
                SET reserved_quantity = reserved_quantity + :qty, updated_at = :now
                WHERE item_id = :id AND quantity - reserved_quantity >= :qty
            """),
            {"qty": qty, "now": now, "id": item_id},
        )
        if result.rowcount != 1:
            await session.rollback()
            current = await queries.get_stock(session, item_id)
            raise InsufficientStock(
                item_id, qty, current["availableQuantity"] if current else 0
            )

    reservation_id = str(uuid4())
    stored_items = [
        {"itemId": item["itemId"], "qty": item["qty"], "name": item.get("name")}
        for item in items
    ]
    await session.execute(
        text("""
            INSERT INTO reservations
                (id, order_id, items, status, idempotency_key, created_at, expires_at)
            VALUES
                (:id, :order_id, :items, 'reserved', :key, :now, :expires_at)
        """),
        {
            "id": reservation_id,
            "order_id": order_id,
            "items": dump_json(stored_items),
            "key": idempotency_key,
            "now": now,
            "expires_at": to_iso(created_at + timedelta(minutes=ttl_minutes)),
        },
    )
    await session.commit()

    reservation = await queries.get_reservation(session, reservation_id)
    await publish_event(redis, CHANNEL, "InventoryReserved", reservation)
    return reservation, True


async def commit_reservation(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    reservation_id: str,
) -> dict:
    """引き当てを確定して在庫から差し引く（`reserved` からのみ）"""
    reservation = await _require_reservation(session, reservation_id)
    if reservation["status"] != RESERVED or not await _move_status(
        session, reservation_id, COMMITTED
    ):
        await session.rollback()
        current = await _require_reservation(session, reservation_id)
        raise Conflict(
            f"Reservation is in {current['status']} state",
            code="RESERVATION_INVALID_STATE",
            details={"reservationId": reservation_id, "status": current["status"]},
        )

    now = utcnow()
    for item_id, qty in _totals(reservation["items"]).items():
        await session.execute(
            text("""
                UPDATE stock
                SET quantity = quantity - :qty,
                    reserved_quantity = reserved_quantity - :qty,
                    updated_at = :now
                WHERE item_id = :id
            """),
            {"qty": qty, "now": now, "id": item_id},
        )
    await session.commit()

    reservation["status"] = COMMITTED
    await publish_event(redis, CHANNEL, "InventoryCommitted", reservation)
    return reservation


async def release_reservation(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    reservation_id: str,
) -> dict:
    """
    引き当てた在庫を戻す。すでに `reserved` でない引き当ては
    失敗にせず現在の状態を返す。
    """
    reservation = await _require_reservation(session, reservation_id)
    if reservation["status"] != RESERVED:
        return reservation
    if not await _move_status(session, reservation_id, RELEASED):
        await session.rollback()
        return await _require_reservation(session, reservation_id)

    await _return_reserved_stock(session, reservation["items"], utcnow())
    await session.commit()

    reservation["status"] = RELEASED
    await publish_event(redis, CHANNEL, "InventoryReleased", reservation)
    return reservation


async def expire_reservations(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    now: datetime | None = None,
) -> list[str]:
    """期限を過ぎた `reserved` の引き当てをすべて expired にする"""
    cutoff = to_iso(now or datetime.now(timezone.utc))
    expired = []
    for reservation in await queries.list_overdue_reservations(session, cutoff):
        if not await _move_status(session, reservation["reservationId"], EXPIRED):
            continue
        await _return_reserved_stock(session, reservation["items"], cutoff)
        expired.append(reservation)
    await session.commit()

    for reservation in expired:
        reservation["status"] = EXPIRED
        await publish_event(redis, CHANNEL, "InventoryExpired", reservation)
    return [r["reservationId"] for r in expired]


async def update_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    item_id: str,
    quantity: int | None,
    item_name: str | None,
) -> dict:
    now = utcnow()
    current = await queries.get_stock(session, item_id)
    if current is None:
        await session.execute(
            text("""
                INSERT INTO stock (item_id, item_name, quantity, reserved_quantity, updated_at)
                VALUES (:id, :name, :qty, 0, :now)
            """),
            {"id": item_id, "name": item_name or item_id, "qty": quantity or 0, "now": now},
        )
    else:
        if quantity is not None and quantity < current["reservedQuantity"]:
            raise Conflict(
                f"Stock for item {item_id} cannot drop below its reserved quantity",
                code="STOCK_BELOW_RESERVED",
                details={
                    "itemId": item_id,
                    "requested": quantity,
                    "reserved": current["reservedQuantity"],
                },
            )
        await session.execute(
            text("""
                UPDATE stock
                SET quantity = COALESCE(:qty, quantity),
                    item_name = COALESCE(:name, item_name),
                    updated_at = :now
                WHERE item_id = :id
            """),
            {"qty": quantity, "name": item_name, "now": now, "id": item_id},
        )
    await session.commit()

    stock = await queries.get_stock(session, item_id)
    await publish_event(redis, CHANNEL, "StockUpdated", stock)
    return stock


async def reconcile_item(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    item_id: str,
    available: bool,
    default_quantity: int = 100,
) -> dict:
    """
    メニューの販売可否フラグに在庫を合わせる。
    販売不可になった商品は引き当て済みの数だけを残す。未知の商品は新規作成する。
    """
    now = utcnow()
    current = await queries.get_stock(session, item_id)
    if current is None:
        await _provision_stock(
            session, item_id, item_id, default_quantity if available else 0, now
        )
    elif not available:
        # 引き当て済みの数は、その引き当てが決着するまで残す
        await session.execute(
            text("""
                UPDATE stock SET quantity = reserved_quantity, updated_at = :now
                WHERE item_id = :id
            """),
            {"id": item_id, "now": now},
        )
    await session.commit()

    stock = await queries.get_stock(session, item_id)
    await publish_event(redis, CHANNEL, "StockReconciled", stock)
    return stock
