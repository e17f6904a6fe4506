"""
Billing Service — 注文サービスへの Webhook

capture と返金は注文サービスのイベントエンドポイントへ通知する。
この時点で決済の変更はコミット済みなので、
配信失敗はログに残すだけで Billing のレスポンスには影響しない。
"""

import logging

import httpx

from services.common.context import trace_headers

logger = logging.getLogger(__name__)

PAYMENT_CAPTURED = "payment-captured"
REFUNDED = "refunded"


async def notify_order(
    client: httpx.AsyncClient,
    orders_url: str,
    order_id: str,
    event_type: str,
    payload: dict,
) -> bool:
    try:
        resp = await client.post(
            f"{orders_url}/v1/orders/{order_id}/events/{event_type}",
            json=payload,
            headers=trace_headers(),
        )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Webhook %s for order %s failed: %s", event_type, order_id, e)
        return False
    return True
