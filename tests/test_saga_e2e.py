"""
End-to-end saga tests: all four services wired in-process.
"""

from decimal import Decimal

import pytest

from conftest import BILLING_URL, INVENTORY_URL, ORDERS_URL


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_fresh_key_creates_one_order_with_exact_total(self, stack):
        await stack.add_menu_item("fries", "0.10")
        await stack.add_menu_item("burger", "19.99")

        resp = await stack.create_order(
            [
                {"itemId": "fries", "qty": 3, "unitPrice": "0.10"},
                {"itemId": "burger", "qty": 1, "unitPrice": 19.99},
            ],
            idempotencyKey="k-1",
            customer={"id": "c-1", "name": "Ada"},
        )

        assert resp.status_code == 201, resp.text
        order = resp.json()
        assert order["totalAmount"] == "20.29"
        assert Decimal(order["totalAmount"]) == Decimal("0.30") + Decimal("19.99")
        assert order["status"] == "reserved"
        assert order["customerId"] == "c-1"
        assert order["customerName"] == "Ada"
        assert order["reservationId"]
        assert order["paymentIntentId"]
        assert order["traceId"]

        listing = (await stack.client.get(f"{ORDERS_URL}/v1/orders")).json()
        assert [o["orderId"] for o in listing["orders"]] == [order["orderId"]]

    @pytest.mark.asyncio
    async def test_replay_returns_same_order_without_new_side_effects(self, stack):
        await stack.add_menu_item("X", "5.00")
        items = [{"itemId": "X", "qty": 2, "unitPrice": "5.00"}]

        first = await stack.create_order(items, idempotencyKey="replay-key")
        second = await stack.create_order(items, idempotencyKey="replay-key")

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["orderId"] == first.json()["orderId"]
        assert second.json()["paymentIntentId"] == first.json()["paymentIntentId"]

        stock = await stack.get_stock("X")
        assert stock["reservedQuantity"] == 2
        assert len(stack.redis.events("inventory_events", "InventoryReserved")) == 1
        assert len(stack.redis.events("billing_events", "PaymentIntentCreated")) == 1

    @pytest.mark.asyncio
    async def test_sub_cent_unit_price_is_rejected_before_anything_runs(self, stack):
        await stack.add_menu_item("X", "5.00")

        resp = await stack.create_order([{"itemId": "X", "qty": 50, "unitPrice": "5.004"}])

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_REQUEST"
        listing = (await stack.client.get(f"{ORDERS_URL}/v1/orders")).json()
        assert listing["orders"] == []
        assert stack.redis.events("inventory_events", "InventoryReserved") == []

    @pytest.mark.asyncio
    async def test_without_key_every_request_is_a_new_order(self, stack):
        await stack.add_menu_item("X", "5.00")
        items = [{"itemId": "X", "qty": 1, "unitPrice": "5.00"}]

        first = await stack.create_order(items)
        second = await stack.create_order(items)

        assert first.json()["orderId"] != second.json()["orderId"]

    @pytest.mark.asyncio
    async def test_menu_rejection_persists_nothing(self, stack):
        await stack.add_menu_item("X", "5.00")

        resp = await stack.create_order(
            [{"itemId": "X", "qty": 1, "unitPrice": "4.00"}, {"itemId": "ghost", "qty": 1, "unitPrice": "1.00"}],
            idempotencyKey="bad",
        )

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "MENU_VALIDATION_FAILED"
        by_item = {v["itemId"]: v for v in error["details"]["validatedItems"]}
        assert by_item["X"]["error"] == "PRICE_MISMATCH"
        assert by_item["ghost"] == {"itemId": "ghost", "valid": False, "error": "ITEM_NOT_FOUND"}

        listing = (await stack.client.get(f"{ORDERS_URL}/v1/orders")).json()
        assert listing["orders"] == []
        assert stack.redis.events("inventory_events") == []
        saga = stack.redis.events("saga_events", "SagaFailed")
        assert saga and saga[-1]["data"]["sagaLog"][0]["action"] == "ValidateMenu"

    @pytest.mark.asyncio
    async def test_reservation_failure_cancels_without_payment_intent(self, stack):
        await stack.add_menu_item("X", "5.00")
        resp = await stack.client.put(
            f"{INVENTORY_URL}/v1/inventory/stock/X", json={"quantity": 1}
        )
        assert resp.status_code == 200

        resp = await stack.create_order([{"itemId": "X", "qty": 2, "unitPrice": "5.00"}])

        assert resp.status_code == 503
        error = resp.json()["error"]
        assert error["code"] == "INVENTORY_RESERVE_FAILED"
        assert error["details"]["upstream"]["statusCode"] == 409
        assert error["details"]["upstream"]["error"]["code"] == "INSUFFICIENT_STOCK"

        order = await stack.get_order(error["details"]["orderId"])
        assert order["status"] == "canceled"
        assert order["paymentIntentId"] is None
        assert stack.redis.events("billing_events") == []

    @pytest.mark.asyncio
    async def test_payment_intent_failure_releases_reservation(self, make_stack):
        stack = await make_stack({BILLING_URL: {"/v1/billing/payment-intents": 500}})
        await stack.add_menu_item("X", "5.00")

        resp = await stack.create_order([{"itemId": "X", "qty": 2, "unitPrice": "5.00"}])

        assert resp.status_code == 503
        error = resp.json()["error"]
        assert error["code"] == "PAYMENT_INTENT_FAILED"

        order = await stack.get_order(error["details"]["orderId"])
        assert order["status"] == "canceled"
        reservation = await stack.get_reservation(order["reservationId"])
        assert reservation["status"] == "released"
        stock = await stack.get_stock("X")
        assert stock["reservedQuantity"] == 0
        assert stock["availableQuantity"] == 100
        assert stack.redis.events("saga_events", "SagaCompensated")

    @pytest.mark.asyncio
    async def test_menu_outage_is_service_unavailable(self, make_stack):
        stack = await make_stack({"http://menu.test": {"/v1/menu/validation": 502}})

        resp = await stack.create_order([{"itemId": "X", "qty": 1, "unitPrice": "5.00"}])

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "MENU_SERVICE_UNAVAILABLE"
        listing = (await stack.client.get(f"{ORDERS_URL}/v1/orders")).json()
        assert listing["orders"] == []


class TestOrderLifecycle:
    @pytest.mark.asyncio
    async def test_end_to_end_capture_then_cancel(self, stack):
        await stack.add_menu_item("X", "5.00")

        created = await stack.create_order(
            [{"itemId": "X", "qty": 2, "unitPrice": "5.00"}], idempotencyKey="e2e"
        )
        assert created.status_code == 201
        order = created.json()
        assert order["totalAmount"] == "10.00"
        assert order["status"] == "reserved"
        assert order["paymentIntentId"]

        captured = await stack.capture(order["paymentIntentId"])
        assert captured.status_code == 200
        assert captured.json()["status"] == "captured"

        paid = await stack.get_order(order["orderId"])
        assert paid["status"] == "paid"
        reservation = await stack.get_reservation(order["reservationId"])
        assert reservation["status"] == "committed"
        stock = await stack.get_stock("X")
        assert stock["quantity"] == 98
        assert stock["reservedQuantity"] == 0

        canceled = await stack.client.post(
            f"{ORDERS_URL}/v1/orders/{order['orderId']}/cancel"
        )
        assert canceled.status_code == 200, canceled.text
        assert canceled.json()["status"] == "canceled"

        intent = await stack.client.get(
            f"{BILLING_URL}/v1/billing/payment-intents/{order['paymentIntentId']}"
        )
        assert intent.json()["status"] == "refunded"
        refunds = stack.redis.events("billing_events", "PaymentRefunded")
        assert len(refunds) == 1
        assert refunds[0]["data"]["amount"] == "10.00"

        log = await stack.client.get(f"{ORDERS_URL}/v1/orders/{order['orderId']}/events")
        assert [e["eventType"] for e in log.json()["events"]] == [
            "OrderCreated",
            "InventoryReserved",
            "PaymentIntentCreated",
            "OrderPaid",
            "OrderCanceled",
        ]
        assert [e["version"] for e in log.json()["events"]] == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_refund_failure_keeps_order_paid(self, make_stack):
        stack = await make_stack({BILLING_URL: {"/v1/billing/refunds": 500}})
        await stack.add_menu_item("X", "5.00")
        order = (
            await stack.create_order([{"itemId": "X", "qty": 2, "unitPrice": "5.00"}])
        ).json()
        await stack.capture(order["paymentIntentId"])

        resp = await stack.client.post(f"{ORDERS_URL}/v1/orders/{order['orderId']}/cancel")

        assert resp.status_code == 503
        error = resp.json()["error"]
        assert error["code"] == "REFUND_FAILED"
        assert error["details"]["orderId"] == order["orderId"]
        assert (await stack.get_order(order["orderId"]))["status"] == "paid"
        reservation = await stack.get_reservation(order["reservationId"])
        assert reservation["status"] == "committed"
        assert stack.redis.events("inventory_events", "InventoryReleased") == []

    @pytest.mark.asyncio
    async def test_cancel_reserved_order_releases_and_is_repeatable(self, stack):
        await stack.add_menu_item("X", "5.00")
        order = (
            await stack.create_order([{"itemId": "X", "qty": 3, "unitPrice": "5.00"}])
        ).json()
        url = f"{ORDERS_URL}/v1/orders/{order['orderId']}/cancel"

        first = await stack.client.post(url)
        second = await stack.client.post(url)

        assert first.json()["status"] == "canceled"
        assert second.status_code == 200
        assert second.json()["status"] == "canceled"
        assert second.json()["updatedAt"] == first.json()["updatedAt"]
        reservation = await stack.get_reservation(order["reservationId"])
        assert reservation["status"] == "released"
        assert stack.redis.events("billing_events", "PaymentRefunded") == []

    @pytest.mark.asyncio
    async def test_capture_webhook_rejected_after_cancel(self, stack):
        await stack.add_menu_item("X", "5.00")
        order = (
            await stack.create_order([{"itemId": "X", "qty": 1, "unitPrice": "5.00"}])
        ).json()
        await stack.client.post(f"{ORDERS_URL}/v1/orders/{order['orderId']}/cancel")

        resp = await stack.client.post(
            f"{ORDERS_URL}/v1/orders/{order['orderId']}/events/payment-captured",
            json={"paymentIntentId": order["paymentIntentId"]},
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "ORDER_INVALID_STATE"

    @pytest.mark.asyncio
    async def test_capture_webhook_with_foreign_intent(self, stack):
        await stack.add_menu_item("X", "5.00")
        order = (
            await stack.create_order([{"itemId": "X", "qty": 1, "unitPrice": "5.00"}])
        ).json()

        resp = await stack.client.post(
            f"{ORDERS_URL}/v1/orders/{order['orderId']}/events/payment-captured",
            json={"paymentIntentId": "someone-else"},
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "PAYMENT_INTENT_MISMATCH"

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, stack):
        await stack.add_menu_item("X", "5.00")
        order = (
            await stack.create_order([{"itemId": "X", "qty": 1, "unitPrice": "5.00"}])
        ).json()

        resp = await stack.client.post(
            f"{ORDERS_URL}/v1/orders/{order['orderId']}/events/shipped", json={}
        )

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "EVENT_NOT_SUPPORTED"

    @pytest.mark.asyncio
    async def test_commit_twice_is_invalid_state(self, stack):
        await stack.add_menu_item("X", "5.00")
        order = (
            await stack.create_order([{"itemId": "X", "qty": 1, "unitPrice": "5.00"}])
        ).json()
        await stack.capture(order["paymentIntentId"])

        resp = await stack.client.post(
            f"{INVENTORY_URL}/v1/inventory/reservations/{order['reservationId']}/commit"
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "RESERVATION_INVALID_STATE"


class TestOrderQueries:
    @pytest.mark.asyncio
    async def test_unknown_order(self, stack):
        resp = await stack.client.get(f"{ORDERS_URL}/v1/orders/missing")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, stack):
        await stack.add_menu_item("X", "5.00")
        kept = (
            await stack.create_order([{"itemId": "X", "qty": 1, "unitPrice": "5.00"}])
        ).json()
        dropped = (
            await stack.create_order([{"itemId": "X", "qty": 1, "unitPrice": "5.00"}])
        ).json()
        await stack.client.post(f"{ORDERS_URL}/v1/orders/{dropped['orderId']}/cancel")

        resp = await stack.client.get(
            f"{ORDERS_URL}/v1/orders", params={"status": "reserved"}
        )

        assert [o["orderId"] for o in resp.json()["orders"]] == [kept["orderId"]]

    @pytest.mark.asyncio
    async def test_list_rejects_unknown_status(self, stack):
        resp = await stack.client.get(f"{ORDERS_URL}/v1/orders", params={"status": "lost"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_invalid_body_uses_error_envelope(self, stack):
        resp = await stack.create_order([{"itemId": "X", "qty": 0, "unitPrice": "5.00"}])

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_trace_id_is_echoed(self, stack):
        resp = await stack.client.get(
            f"{ORDERS_URL}/v1/orders/missing", headers={"X-Trace-Id": "trace_abc"}
        )

        assert resp.headers["x-trace-id"] == "trace_abc"
        assert resp.json()["error"]["traceId"] == "trace_abc"
