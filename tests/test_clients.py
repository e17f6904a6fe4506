"""
Leaf clients against httpx.MockTransport: every failure mode surfaces as
LeafCallFailed.
"""

import json
from decimal import Decimal

import httpx
import pytest

from services.order.app.clients import (
    HttpBillingClient,
    HttpInventoryClient,
    HttpMenuClient,
    LeafCallFailed,
)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSuccess:
    @pytest.mark.asyncio
    async def test_menu_validate_sends_key_and_trace(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["trace"] = request.headers.get("x-trace-id")
            return httpx.Response(200, json={"valid": True, "validatedItems": [], "traceId": "t"})

        async with _client(handler) as client:
            result = await HttpMenuClient(client, "http://menu/").validate(
                [{"itemId": "X", "qty": 1, "unitPrice": "1.00"}], "K_validation"
            )

        assert result.valid is True
        assert seen["body"]["idempotencyKey"] == "K_validation"
        assert seen["trace"].startswith("trace_")

    @pytest.mark.asyncio
    async def test_no_key_is_omitted(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"reservationId": "r", "status": "reserved"})

        async with _client(handler) as client:
            await HttpInventoryClient(client, "http://inv").reserve("o", [], None)

        assert "idempotencyKey" not in seen["body"]

    @pytest.mark.asyncio
    async def test_amounts_travel_as_strings(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                201, json={"paymentIntentId": "pi", "status": "requires_payment_method", "amount": "10.00"}
            )

        async with _client(handler) as client:
            intent = await HttpBillingClient(client, "http://billing").create_payment_intent(
                "o", Decimal("10"), "USD", None
            )

        assert seen["body"]["amount"] == "10.00"
        assert intent.amount == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_capture_path(self):
        def handler(request):
            assert request.url.path == "/v1/billing/payments/pi-1/capture"
            return httpx.Response(200, json={"paymentIntentId": "pi-1", "status": "captured"})

        async with _client(handler) as client:
            intent = await HttpBillingClient(client, "http://billing").capture("pi-1")

        assert intent.status == "captured"


class TestFailures:
    @pytest.mark.asyncio
    async def test_error_status_carries_upstream_error(self):
        def handler(request):
            return httpx.Response(
                409,
                json={"error": {"code": "INSUFFICIENT_STOCK", "message": "no", "traceId": "t"}},
            )

        async with _client(handler) as client:
            with pytest.raises(LeafCallFailed) as exc:
                await HttpInventoryClient(client, "http://inv").reserve("o", [], None)

        assert exc.value.service == "inventory"
        assert exc.value.operation == "reserve"
        assert exc.value.status_code == 409
        assert exc.value.error["code"] == "INSUFFICIENT_STOCK"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(LeafCallFailed) as exc:
                await HttpMenuClient(client, "http://menu").validate([], None)

        assert exc.value.status_code is None
        assert exc.value.to_dict()["error"] == {"message": "refused"}

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(handler) as client:
            with pytest.raises(LeafCallFailed):
                await HttpInventoryClient(client, "http://inv").release("r")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>oops</html>")

        async with _client(handler) as client:
            with pytest.raises(LeafCallFailed) as exc:
                await HttpBillingClient(client, "http://billing").create_refund("o", "pi", None, "k")

        assert exc.value.reason == "malformed response body"

    @pytest.mark.asyncio
    async def test_missing_fields(self):
        def handler(request):
            return httpx.Response(200, json={"status": "committed"})

        async with _client(handler) as client:
            with pytest.raises(LeafCallFailed):
                await HttpInventoryClient(client, "http://inv").commit("r")

    @pytest.mark.asyncio
    async def test_html_error_page(self):
        def handler(request):
            return httpx.Response(502, text="Bad Gateway")

        async with _client(handler) as client:
            with pytest.raises(LeafCallFailed) as exc:
                await HttpMenuClient(client, "http://menu").validate([], None)

        assert exc.value.status_code == 502
        assert exc.value.error is None
