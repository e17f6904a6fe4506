"""
Shared fixtures for the restaurant saga tests.

The four services run in-process: one httpx.AsyncClient mounts every app
under its own fake host, and the same client is handed to each app as its
outbound client, so a saga in the order service really calls menu,
inventory and billing, and billing's webhooks really reach the order
service. Failures are injected per path with httpx.MockTransport.
"""

import json
from dataclasses import dataclass, field

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from services.billing.app import main as billing_main
from services.billing.app.config import BillingSettings
from services.common.app import shutdown, startup
from services.inventory.app import main as inventory_main
from services.inventory.app.config import InventorySettings
from services.menu.app import main as menu_main
from services.menu.app.config import MenuSettings
from services.order.app import main as order_main
from services.order.app.config import OrdersSettings

MENU_URL = "http://menu.test"
ORDERS_URL = "http://orders.test"
INVENTORY_URL = "http://inventory.test"
BILLING_URL = "http://billing.test"


class RecordingRedis:
    """Stands in for redis.asyncio.Redis; keeps every published message."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    async def aclose(self) -> None:
        pass

    def events(self, channel: str, event_type: str | None = None) -> list[dict]:
        return [
            message
            for ch, message in self.published
            if ch == channel and (event_type is None or message["event_type"] == event_type)
        ]


def failing_transport(app: FastAPI, failures: dict[str, int]) -> httpx.MockTransport:
    """
    Route requests to `app`, except paths starting with one of the
    `failures` prefixes, which answer with the mapped status code.
    """
    inner = httpx.ASGITransport(app=app)

    async def handler(request: httpx.Request) -> httpx.Response:
        for prefix, status in failures.items():
            if request.url.path.startswith(prefix):
                return httpx.Response(
                    status,
                    json={"error": {"code": "INJECTED", "message": "injected failure"}},
                )
        return await inner.handle_async_request(request)

    return httpx.MockTransport(handler)


@dataclass
class Stack:
    client: httpx.AsyncClient
    redis: RecordingRedis
    apps: dict[str, FastAPI] = field(default_factory=dict)

    async def add_menu_item(self, item_id: str, price: str, **extra) -> dict:
        resp = await self.client.post(
            f"{MENU_URL}/v1/menu/items",
            json={"id": item_id, "name": extra.pop("name", item_id), "price": price, **extra},
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def create_order(self, items: list[dict], **body) -> httpx.Response:
        return await self.client.post(
            f"{ORDERS_URL}/v1/orders", json={"items": items, **body}
        )

    async def get_order(self, order_id: str) -> dict:
        resp = await self.client.get(f"{ORDERS_URL}/v1/orders/{order_id}")
        assert resp.status_code == 200, resp.text
        return resp.json()

    async def get_reservation(self, reservation_id: str) -> dict:
        resp = await self.client.get(
            f"{INVENTORY_URL}/v1/inventory/reservations/{reservation_id}"
        )
        assert resp.status_code == 200, resp.text
        return resp.json()

    async def get_stock(self, item_id: str) -> dict | None:
        resp = await self.client.get(f"{INVENTORY_URL}/v1/inventory/stock")
        for item in resp.json()["items"]:
            if item["itemId"] == item_id:
                return item
        return None

    async def capture(self, payment_intent_id: str) -> httpx.Response:
        return await self.client.post(
            f"{BILLING_URL}/v1/billing/payments/{payment_intent_id}/capture"
        )


def _sqlite(tmp_path, name: str) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / name}.db"


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest_asyncio.fixture
async def make_stack(tmp_path, redis):
    """
    Factory for a wired stack. `failures` maps a base URL to
    {path_prefix: status} for the calls that should fail.
    """
    built: list[Stack] = []

    async def _make(failures: dict[str, dict[str, int]] | None = None) -> Stack:
        failures = failures or {}
        apps = {
            MENU_URL: menu_main.create_app(
                MenuSettings(
                    database_url=_sqlite(tmp_path, "menu"),
                    redis_url="",
                    inventory_service_url=INVENTORY_URL,
                ),
                redis=redis,
            ),
            ORDERS_URL: order_main.create_app(
                OrdersSettings(
                    database_url=_sqlite(tmp_path, "orders"),
                    redis_url="",
                    menu_service_url=MENU_URL,
                    inventory_service_url=INVENTORY_URL,
                    billing_service_url=BILLING_URL,
                ),
                redis=redis,
            ),
            INVENTORY_URL: inventory_main.create_app(
                InventorySettings(
                    database_url=_sqlite(tmp_path, "inventory"),
                    redis_url="",
                    menu_service_url=MENU_URL,
                ),
                redis=redis,
            ),
            BILLING_URL: billing_main.create_app(
                BillingSettings(
                    database_url=_sqlite(tmp_path, "billing"),
                    redis_url="",
                    orders_service_url=ORDERS_URL,
                ),
                redis=redis,
            ),
        }
        mounts = {
            url: (
                failing_transport(app, failures[url])
                if url in failures
                else httpx.ASGITransport(app=app)
            )
            for url, app in apps.items()
        }
        client = httpx.AsyncClient(mounts=mounts)
        for app in apps.values():
            app.state.http_client = client
            await startup(app)
        stack = Stack(client=client, redis=redis, apps=apps)
        built.append(stack)
        return stack

    yield _make

    for stack in built:
        for app in stack.apps.values():
            await shutdown(app)
        await stack.client.aclose()


@pytest_asyncio.fixture
async def stack(make_stack) -> Stack:
    return await make_stack()
