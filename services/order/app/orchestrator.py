"""
Order Service — 注文 Saga オーケストレーター

Saga パターン（オーケストレーション型）:
  このクラスが決まった順序でリーフサービスを呼び出し、
  ステップが失敗したら補償トランザクション(Compensating Transaction)を実行する。

  create_order
  ┌──────────────────────────────────────────────────────────────┐
  │  1. Menu: 明細を検証          ── 失敗 → 400 / 503、注文なし   │
  │  2. 注文を保存 (validating)                                   │
  │  3. Inventory: 在庫引き当て   ── 失敗 → 注文キャンセル、503   │
  │  4. Billing: Payment Intent   ── 失敗 → 引き当て解放、        │
  │                                        注文キャンセル、503    │
  └──────────────────────────────────────────────────────────────┘

  create_order がリーフの応答待ちの間に届いたキャンセルが優先される。
  Saga は自分が引き当てた分を戻し、注文 id 付きの 409 を返す。

  cancel_order: 返金 (paid のみ、必ず成功が必要) → 解放 → canceled
  webhooks:     payment-captured → 引き当て確定 → paid
                refunded         → canceled

リーフサービスの呼び出し中は DB セッションを開いたままにしない。
実行ごとにステップログを残し、`saga_events` チャネルに発行する。
"""

import logging
from datetime import datetime, timezone
from typing import NoReturn

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from services.common.errors import (
    Conflict,
    NotFound,
    UpstreamUnavailable,
    ValidationFailed,
)
from services.common.events import publish_event

from . import commands, queries
from .aggregate import CANCELED, COMPLETED, PAID, RESERVED, OrderAggregate
from .clients import BillingClient, InventoryClient, LeafCallFailed, MenuClient

logger = logging.getLogger(__name__)

SAGA_CHANNEL = "saga_events"

PAYMENT_CAPTURED = "payment-captured"
REFUNDED = "refunded"


def derive_key(idempotency_key: str | None, step: str) -> str | None:
    """ステップごとの下流キー（クライアントのキーが無ければ下流にも送らない）"""
    if not idempotency_key:
        return None
    return f"{idempotency_key}_{step}"


def _reservation_line(item: dict) -> dict:
    line = {"itemId": item["itemId"], "qty": item["qty"]}
    if item.get("name"):
        line["name"] = item["name"]
    return line


def refund_key(order_id: str) -> str:
    return f"{order_id}_refund"


class SagaLog:
    """Saga 1 回分のステップログ"""

    def __init__(self) -> None:
        self.steps: list[dict] = []

    def begin(self, action: str) -> None:
        self.steps.append(
            {
                "step": len(self.steps) + 1,
                "action": action,
                "status": "EXECUTING",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    def complete(self) -> None:
        self.steps[-1]["status"] = "COMPLETED"

    def fail(self, error) -> None:
        self.steps[-1]["status"] = "FAILED"
        self.steps[-1]["error"] = str(error)


class OrderSagaOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis | None,
        menu: MenuClient,
        inventory: InventoryClient,
        billing: BillingClient,
        *,
        currency: str = "USD",
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.menu = menu
        self.inventory = inventory
        self.billing = billing
        self.currency = currency

    # ── 読み込み ──────────────────────────────────

    async def _load(self, order_id: str) -> OrderAggregate:
        async with self.session_factory() as session:
            record = await queries.get_order(session, order_id)
        if record is None:
            raise NotFound(f"Order {order_id} not found", code="ORDER_NOT_FOUND")
        return OrderAggregate.from_record(record)

    async def get_order(self, order_id: str) -> dict:
        return (await self._load(order_id)).to_dict()

    # ── 注文作成 ──────────────────────────────────

    async def create_order(
        self,
        items: list[dict],
        *,
        customer_id: str = "anonymous",
        customer_name: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[dict, bool]:
        """
        注文作成 Saga を実行する。(order, created) を返す。
        冪等キーの再送時は元の注文を created=False で返し、他サービスには触れない。
        """
        if idempotency_key:
            async with self.session_factory() as session:
                existing = await queries.find_order_by_key(session, idempotency_key)
            if existing:
                logger.info("Replay of %s returns order %s", idempotency_key, existing["orderId"])
                return OrderAggregate.from_record(existing).to_dict(), False

        agg, created_event = OrderAggregate.new(
            items,
            customer_id=customer_id,
            customer_name=customer_name,
            idempotency_key=idempotency_key,
        )
        saga = SagaLog()
        lines = [
            {"itemId": i["itemId"], "qty": i["qty"], "unitPrice": i["unitPrice"]}
            for i in agg.items
        ]

        # ── Step 1: メニューで検証 ─────────────────
        saga.begin("ValidateMenu")
        try:
            validation = await self.menu.validate(
                lines, derive_key(idempotency_key, "validation")
            )
        except LeafCallFailed as e:
            saga.fail(e)
            await self._publish_saga_event("SagaFailed", agg.id, saga)
            raise UpstreamUnavailable(
                "Could not validate items with menu service",
                code="MENU_SERVICE_UNAVAILABLE",
                details={"upstream": e.to_dict()},
            ) from e
        if not validation.valid:
            saga.fail("menu validation failed")
            await self._publish_saga_event("SagaFailed", agg.id, saga)
            raise ValidationFailed(
                "One or more items failed validation",
                code="MENU_VALIDATION_FAILED",
                details={"validatedItems": validation.validated_items},
            )
        saga.complete()

        # ── Step 2: 注文を保存 ─────────────────────
        saga.begin("CreateOrder")
        async with self.session_factory() as session:
            await commands.place_order(session, self.redis, agg, created_event)
        saga.complete()

        # ── Step 3: 在庫を引き当て ─────────────────
        saga.begin("ReserveInventory")
        try:
            reservation = await self.inventory.reserve(
                agg.id,
                [_reservation_line(i) for i in agg.items],
                derive_key(idempotency_key, "reservation"),
            )
        except LeafCallFailed as e:
            saga.fail(e)
            await self._cancel(agg, saga, f"Inventory reservation failed: {e.reason}")
            await self._publish_saga_event("SagaCompensated", agg.id, saga)
            raise UpstreamUnavailable(
                "Could not reserve inventory",
                code="INVENTORY_RESERVE_FAILED",
                details={"orderId": agg.id, "upstream": e.to_dict()},
            ) from e
        try:
            async with self.session_factory() as session:
                await commands.record_inventory_reserved(
                    session, self.redis, agg, reservation.reservation_id
                )
        except commands.OrderConcurrentModification:
            await self._abandon(agg.id, reservation.reservation_id, saga)
        saga.complete()

        # ── Step 4: Payment Intent 作成 ────────────
        saga.begin("CreatePaymentIntent")
        try:
            intent = await self.billing.create_payment_intent(
                agg.id,
                agg.total_amount,
                self.currency,
                derive_key(idempotency_key, "payment"),
            )
        except LeafCallFailed as e:
            saga.fail(e)
            await self._release(agg.id, agg.reservation_id, saga)
            await self._cancel(agg, saga, f"Payment intent failed: {e.reason}")
            await self._publish_saga_event("SagaCompensated", agg.id, saga)
            raise UpstreamUnavailable(
                "Could not create payment intent",
                code="PAYMENT_INTENT_FAILED",
                details={"orderId": agg.id, "upstream": e.to_dict()},
            ) from e
        try:
            async with self.session_factory() as session:
                await commands.record_payment_intent(
                    session, self.redis, agg, intent.payment_intent_id
                )
        except commands.OrderConcurrentModification:
            logger.warning(
                "Order %s: payment intent %s abandoned", agg.id, intent.payment_intent_id
            )
            await self._abandon(agg.id, agg.reservation_id, saga)
        saga.complete()

        await self._publish_saga_event("SagaCompleted", agg.id, saga)
        return agg.to_dict(), True

    # ── キャンセル ────────────────────────────────

    async def cancel_order(self, order_id: str) -> dict:
        """
        注文をキャンセルする。paid の注文は先に返金し、返金に失敗したら
        paid のまま何も解放しない。canceled の注文はそのまま返す。
        """
        agg = await self._load(order_id)
        if agg.status == CANCELED:
            return agg.to_dict()
        if agg.status == COMPLETED:
            agg.check_cancel()

        saga = SagaLog()
        if agg.status == PAID and agg.payment_intent_id:
            saga.begin("RefundPayment")
            try:
                await self.billing.create_refund(
                    agg.id, agg.payment_intent_id, agg.total_amount, refund_key(agg.id)
                )
            except LeafCallFailed as e:
                saga.fail(e)
                await self._publish_saga_event("SagaFailed", agg.id, saga)
                raise UpstreamUnavailable(
                    "Could not process refund",
                    code="REFUND_FAILED",
                    details={"orderId": agg.id, "status": agg.status, "upstream": e.to_dict()},
                ) from e
            saga.complete()

        await self._release(agg.id, agg.reservation_id, saga)
        agg = await self._cancel(agg, saga, "Canceled by customer")
        await self._publish_saga_event("SagaCompensated", agg.id, saga)
        return agg.to_dict()

    # ── Webhooks ──────────────────────────────────

    async def handle_event(self, order_id: str, event_type: str, payload: dict) -> dict:
        handler = {
            PAYMENT_CAPTURED: self._on_payment_captured,
            REFUNDED: self._on_refunded,
        }.get(event_type)
        if handler is None:
            raise NotFound(
                f"Event type {event_type} is not supported",
                code="EVENT_NOT_SUPPORTED",
                details={"eventType": event_type},
            )
        return await handler(order_id, payload)

    async def _on_payment_captured(self, order_id: str, payload: dict) -> dict:
        agg = await self._load(order_id)
        intent_id = payload.get("paymentIntentId")
        if intent_id and agg.payment_intent_id and intent_id != agg.payment_intent_id:
            raise Conflict(
                "Payment intent does not belong to this order",
                code="PAYMENT_INTENT_MISMATCH",
                details={
                    "orderId": agg.id,
                    "expected": agg.payment_intent_id,
                    "received": intent_id,
                },
            )
        if agg.status != RESERVED:
            agg.check_pay()

        if agg.reservation_id:
            try:
                await self.inventory.commit(agg.reservation_id)
            except LeafCallFailed as e:
                logger.warning("Order %s: reservation commit failed: %s", agg.id, e)

        async with self.session_factory() as session:
            await commands.record_paid(session, self.redis, agg, intent_id)
        return agg.to_dict()

    async def _on_refunded(self, order_id: str, payload: dict) -> dict:
        agg = await self._load(order_id)
        if agg.status == CANCELED:
            return agg.to_dict()
        try:
            async with self.session_factory() as session:
                await commands.record_canceled(
                    session, self.redis, agg, "Payment refunded", unconditional=True
                )
        except commands.OrderConcurrentModification:
            agg = await self._load(order_id)
            if agg.status != CANCELED:
                raise
        return agg.to_dict()

    # ── 補償トランザクション ──────────────────────

    async def _release(
        self, order_id: str, reservation_id: str | None, saga: SagaLog
    ) -> None:
        """ベストエフォート。解放できなかった引き当ては期限切れで戻る"""
        if not reservation_id:
            return
        saga.begin("ReleaseInventory (COMPENSATING)")
        try:
            await self.inventory.release(reservation_id)
            saga.complete()
        except LeafCallFailed as e:
            saga.fail(e)
            logger.warning("Order %s: reservation release failed: %s", order_id, e)

    async def _abandon(
        self, order_id: str, reservation_id: str | None, saga: SagaLog
    ) -> NoReturn:
        """
        作成 Saga がリーフの応答を待つ間に注文が変更された。
        キャンセルされていれば、この実行で引き当てた分を戻す。
        常に注文 id を details に載せて例外を送出する。
        """
        current = await self._load(order_id)
        saga.fail(f"order became {current.status} during the saga")
        if current.status == CANCELED:
            await self._release(order_id, reservation_id, saga)
            await self._publish_saga_event("SagaCompensated", order_id, saga)
            message = f"Order {order_id} was canceled while it was being placed"
        else:
            await self._publish_saga_event("SagaFailed", order_id, saga)
            message = f"Order {order_id} was modified concurrently"
        raise commands.OrderConcurrentModification(
            message, details={"orderId": order_id, "status": current.status}
        )

    async def _cancel(self, agg: OrderAggregate, saga: SagaLog, reason: str) -> OrderAggregate:
        """注文を canceled にする。同時に走ったキャンセルも成功とみなす"""
        saga.begin("CancelOrder (COMPENSATING)")
        try:
            async with self.session_factory() as session:
                await commands.record_canceled(session, self.redis, agg, reason)
        except commands.OrderConcurrentModification:
            agg = await self._load(agg.id)
            if agg.status != CANCELED:
                saga.fail("order modified concurrently")
                raise
        saga.complete()
        return agg

    async def _publish_saga_event(
        self, event_type: str, order_id: str, saga: SagaLog
    ) -> None:
        await publish_event(
            self.redis,
            SAGA_CHANNEL,
            event_type,
            {"orderId": order_id, "sagaLog": saga.steps},
        )
