"""
Inventory Service — 他サービスへの通知

手動の在庫更新の後、その商品がまだ販売可能かをメニューに伝える。
在庫の変更はコミット済みなので、呼び出し失敗はログに残すだけ。
"""

import logging

import httpx

from services.common.context import trace_headers

logger = logging.getLogger(__name__)


async def notify_menu_availability(
    client: httpx.AsyncClient,
    menu_url: str,
    item_id: str,
    available: bool,
) -> None:
    try:
        resp = await client.post(
            f"{menu_url}/v1/menu/items/{item_id}/availability",
            json={"available": available},
            headers=trace_headers(),
        )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Menu availability update for %s failed: %s", item_id, e)
