"""
Menu Service — 他サービスへの通知

商品の販売可否を切り替えると、在庫サービスが在庫行を調整 (reconcile) する。
メニューの変更はコミット済みなので、呼び出し失敗はログに残すだけ。
"""

import logging

import httpx

from services.common.context import trace_headers

logger = logging.getLogger(__name__)


async def notify_inventory_reconcile(
    client: httpx.AsyncClient,
    inventory_url: str,
    item_id: str,
    available: bool,
    ingredients: list[str] | None,
) -> None:
    try:
        resp = await client.post(
            f"{inventory_url}/v1/inventory/reconcile",
            json={"itemId": item_id, "available": available, "ingredients": ingredients},
            headers=trace_headers(),
        )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Inventory reconcile for %s failed: %s", item_id, e)
