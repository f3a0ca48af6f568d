"""
Order Saga Service — イベント発行

ドメインイベントを Redis Streams (order_events) に XADD する。

Pub/Sub は購読者が落ちている間のイベントを失うため、
消費者グループで再配信できる Streams を使う。

発行は永続化のコミット後にだけ行う (publish-after-commit)。
コミットと発行の間でプロセスが落ちるとイベントは失われうる。
"""

import logging

import redis.asyncio as aioredis

from .events import DomainEvent

logger = logging.getLogger(__name__)


class RedisEventPublisher:
    def __init__(self, redis: aioredis.Redis, stream: str = "order_events") -> None:
        self.redis = redis
        self.stream = stream

    async def publish(self, event: DomainEvent) -> None:
        """1 イベント = 1 回の XADD。"""
        await self.redis.xadd(
            self.stream,
            {"event_type": event.event_type, "data": event.model_dump_json()},
        )
        logger.info(
            "Published %s for order %s",
            event.event_type,
            getattr(event, "order_id", None),
        )
