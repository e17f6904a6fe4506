"""
Order Service — コマンドハンドラ (Write 側)

各コマンドは 1 トランザクションでイベントログに追記し `orders` 行を更新して、
その後 Redis で変更を通知する。

行の更新は `WHERE version = :expected` 付き。間に他のリクエストが
注文を変更していれば何も書かずに OrderConcurrentModification を送出する。
再読み込みして判断するのは呼び出し側。
"""

import logging

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.database import dump_json, utcnow
from services.common.errors import Conflict
from services.common.events import publish_event

from . import event_store
from .aggregate import (
    INVENTORY_RESERVED,
    ORDER_CANCELED,
    ORDER_CREATED,
    ORDER_PAID,
    PAYMENT_INTENT_CREATED,
    OrderAggregate,
)

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


class OrderConcurrentModification(Conflict):
    code = "ORDER_CONCURRENT_MODIFICATION"


async def place_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    event_data: dict,
) -> OrderAggregate:
    """新しい注文を `validating` で OrderCreated イベントと一緒に保存する"""
    now = utcnow()
    version = await event_store.append_event(
        session, agg.id, ORDER_CREATED, event_data, 0, now
    )
    await session.execute(
        text("""
            INSERT INTO orders
                (id, customer_id, customer_name, items, total_amount, status,
                 reservation_id, payment_intent_id, idempotency_key, version,
                 created_at, updated_at)
            VALUES
                (:id, :customer_id, :customer_name, :items, :total, :status,
                 NULL, NULL, :key, :version, :now, :now)
        """),
        {
            "id": agg.id,
            "customer_id": agg.customer_id,
            "customer_name": agg.customer_name,
            "items": dump_json(agg.items),
            "total": event_data["totalAmount"],
            "status": agg.status,
            "key": agg.idempotency_key,
            "version": version,
            "now": now,
        },
    )
    await session.commit()

    agg.version = version
    agg.created_at = agg.updated_at = now
    logger.info("Order %s created (total %s)", agg.id, event_data["totalAmount"])
    await publish_event(redis, CHANNEL, ORDER_CREATED, agg.to_dict())
    return agg


async def _record(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    event_type: str,
    event_data: dict,
) -> OrderAggregate:
    expected = agg.version
    agg.apply_event(event_type, event_data)
    now = utcnow()

    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :status,
                reservation_id = :reservation_id,
                payment_intent_id = :payment_intent_id,
                version = :new_version,
                updated_at = :now
            WHERE id = :id AND version = :expected
        """),
        {
            "id": agg.id,
            "status": agg.status,
            "reservation_id": agg.reservation_id,
            "payment_intent_id": agg.payment_intent_id,
            "new_version": expected + 1,
            "expected": expected,
            "now": now,
        },
    )
    if result.rowcount != 1:
        await session.rollback()
        raise OrderConcurrentModification(
            f"Order {agg.id} was modified concurrently",
            details={"orderId": agg.id},
        )
    agg.version = await event_store.append_event(
        session, agg.id, event_type, event_data, expected, now
    )
    await session.commit()

    agg.updated_at = now
    logger.info("Order %s: %s -> %s", agg.id, event_type, agg.status)
    await publish_event(redis, CHANNEL, event_type, agg.to_dict())
    return agg


async def record_inventory_reserved(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    reservation_id: str,
) -> OrderAggregate:
    agg.check_reserve()
    return await _record(
        session, redis, agg, INVENTORY_RESERVED, {"reservationId": reservation_id}
    )


async def record_payment_intent(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    payment_intent_id: str,
) -> OrderAggregate:
    agg.check_attach_payment()
    return await _record(
        session,
        redis,
        agg,
        PAYMENT_INTENT_CREATED,
        {"paymentIntentId": payment_intent_id},
    )


async def record_paid(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    payment_intent_id: str | None,
) -> OrderAggregate:
    agg.check_pay()
    return await _record(
        session, redis, agg, ORDER_PAID, {"paymentIntentId": payment_intent_id}
    )


async def record_canceled(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    reason: str,
    *,
    unconditional: bool = False,
) -> OrderAggregate:
    """注文をキャンセルする。`unconditional` は状態ガードを省略する（返金 Webhook 用）"""
    if not unconditional:
        agg.check_cancel()
    return await _record(
        session, redis, agg, ORDER_CANCELED, {"reason": reason, "previousStatus": agg.status}
    )
