"""
Common — Redis Pub/Sub によるイベント発行

各サービスは状態変化を Redis のチャネルで通知する
(order_events, inventory_events, billing_events, menu_events, saga_events)。
発行は DB コミットの後で、ベストエフォート:
Redis 障害はログに残すだけで、コミット済みの変更をエラーにはしない。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def publish_event(
    redis: aioredis.Redis | None,
    channel: str,
    event_type: str,
    data: dict,
) -> None:
    if redis is None:
        return
    message = json.dumps(
        {
            "event_type": event_type,
            "data": data,
            "published_at": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )
    try:
        await redis.publish(channel, message)
    except (RedisError, OSError) as e:
        logger.warning("Could not publish %s on %s: %s", event_type, channel, e)
