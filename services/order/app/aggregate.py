"""
Order Service — 注文集約 (Order Aggregate)

注文は Saga の集約ルート。状態はイベントを通してのみ変わる。
apply_xxx メソッドが状態を進め、下のガードメソッドが
そのイベントがそもそも起きてよいかを判定する。

状態遷移:
    VALIDATING → RESERVED   (在庫引き当て)
    RESERVED   → RESERVED   (Payment Intent 紐付け)
    RESERVED   → PAID       (決済確定)
    any        → CANCELED   (補償・キャンセル・返金)

COMPLETED は API 互換のためだけに存在し、そこへ遷移する処理はない。
"""

from decimal import Decimal
from uuid import uuid4

from services.common.errors import Conflict
from services.common.money import format_money, to_money

VALIDATING = "validating"
RESERVED = "reserved"
PAID = "paid"
COMPLETED = "completed"
CANCELED = "canceled"

STATUSES = (VALIDATING, RESERVED, PAID, COMPLETED, CANCELED)
CANCELABLE = (VALIDATING, RESERVED, PAID)

ORDER_CREATED = "OrderCreated"
INVENTORY_RESERVED = "InventoryReserved"
PAYMENT_INTENT_CREATED = "PaymentIntentCreated"
ORDER_PAID = "OrderPaid"
ORDER_CANCELED = "OrderCanceled"


def order_total(items: list[dict]) -> Decimal:
    """qty × unitPrice の合計（セント単位で厳密）"""
    return to_money(sum((to_money(i["unitPrice"]) * i["qty"] for i in items), Decimal(0)))


class OrderAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.customer_id: str = "anonymous"
        self.customer_name: str | None = None
        self.items: list[dict] = []
        self.total_amount: Decimal = Decimal("0.00")
        self.status: str = "unknown"
        self.reservation_id: str | None = None
        self.payment_intent_id: str | None = None
        self.idempotency_key: str | None = None
        self.version: int = 0
        self.created_at: str | None = None
        self.updated_at: str | None = None

    @classmethod
    def new(
        cls,
        items: list[dict],
        *,
        customer_id: str = "anonymous",
        customer_name: str | None = None,
        idempotency_key: str | None = None,
        order_id: str | None = None,
    ) -> tuple["OrderAggregate", dict]:
        """
        新しい注文と OrderCreated イベントのデータを作る。

        合計金額はここで一度だけ計算し、以降のイベントでは変わらない。
        """
        lines = [
            {**item, "unitPrice": format_money(to_money(item["unitPrice"]))}
            for item in items
        ]
        data = {
            "orderId": order_id or str(uuid4()),
            "customerId": customer_id or "anonymous",
            "customerName": customer_name,
            "items": lines,
            "totalAmount": format_money(order_total(lines)),
            "idempotencyKey": idempotency_key,
        }
        agg = cls()
        agg.apply_order_created(data)
        return agg, data

    # ── イベント適用メソッド ──────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = data["orderId"]
        self.customer_id = data["customerId"]
        self.customer_name = data.get("customerName")
        self.items = data["items"]
        self.total_amount = to_money(data["totalAmount"])
        self.idempotency_key = data.get("idempotencyKey")
        self.status = VALIDATING

    def apply_inventory_reserved(self, data: dict) -> None:
        self.reservation_id = data["reservationId"]
        self.status = RESERVED

    def apply_payment_intent_created(self, data: dict) -> None:
        self.payment_intent_id = data["paymentIntentId"]

    def apply_order_paid(self, _data: dict) -> None:
        self.status = PAID

    def apply_order_canceled(self, _data: dict) -> None:
        self.status = CANCELED

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            ORDER_CREATED: self.apply_order_created,
            INVENTORY_RESERVED: self.apply_inventory_reserved,
            PAYMENT_INTENT_CREATED: self.apply_payment_intent_created,
            ORDER_PAID: self.apply_order_paid,
            ORDER_CANCELED: self.apply_order_canceled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
            agg.created_at = agg.created_at or e["created_at"]
            agg.updated_at = e["created_at"]
        return agg

    @classmethod
    def from_record(cls, record: dict) -> "OrderAggregate":
        """`orders` 行のワイヤ形式から復元する（queries 参照）"""
        agg = cls()
        agg.id = record["orderId"]
        agg.customer_id = record["customerId"]
        agg.customer_name = record["customerName"]
        agg.items = record["items"]
        agg.total_amount = to_money(record["totalAmount"])
        agg.status = record["status"]
        agg.reservation_id = record["reservationId"]
        agg.payment_intent_id = record["paymentIntentId"]
        agg.idempotency_key = record.get("idempotencyKey")
        agg.version = record["version"]
        agg.created_at = record["createdAt"]
        agg.updated_at = record["updatedAt"]
        return agg

    # ── 状態ガード ────────────────────────────────

    def _require(self, *allowed: str) -> None:
        if self.status not in allowed:
            raise Conflict(
                f"Order is in {self.status} state, expected {' or '.join(allowed)}",
                code="ORDER_INVALID_STATE",
                details={"orderId": self.id, "status": self.status},
            )

    def check_reserve(self) -> None:
        self._require(VALIDATING)

    def check_attach_payment(self) -> None:
        self._require(RESERVED)

    def check_pay(self) -> None:
        self._require(RESERVED)

    def check_cancel(self) -> None:
        self._require(*CANCELABLE)

    def to_dict(self) -> dict:
        return {
            "orderId": self.id,
            "customerId": self.customer_id,
            "customerName": self.customer_name,
            "items": self.items,
            "totalAmount": format_money(self.total_amount),
            "status": self.status,
            "reservationId": self.reservation_id,
            "paymentIntentId": self.payment_intent_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
