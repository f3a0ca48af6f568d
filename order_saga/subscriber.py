"""
Order Saga Service — Redis Streams サブスクライバー

在庫・決済サービスのイベントストリームを消費者グループで購読し、
受信したイベントをオーケストレーターへ振り分ける。

┌─────────────────┐ inventory_events ┌───────────────────┐
│ Menu/Inventory  │ ──── Redis ─────▶│                   │
└─────────────────┘                  │  Order Saga       │
┌─────────────────┐ payment_events   │  (EventRouter →   │
│ Payment Service │ ──── Redis ─────▶│   Orchestrator)   │
└─────────────────┘                  └─────────┬─────────┘
                                               │ 失敗
                                     ┌─────────▼─────────┐
                                     │ dead-letter stream │
                                     └───────────────────┘

- 処理成功 → XACK
- 例外・デコード失敗・タイムアウト → dead-letter ストリームへ退避して XACK
  (このサービス内では自動リトライしない。退避したメッセージは調査・再投入用)
- 起動時は自分に割り当てられたまま未 ACK のメッセージから処理する
- Redis のエラー (接続断・タイムアウト) ではループを止めず、retry_delay 秒待って再試行する
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError, ResponseError

from .events import INBOUND_EVENT_MODELS, InboundEventType
from .notifications import LoggingNotificationService
from .orchestrator import OrderOrchestrator
from .repository import OrderRepository

logger = logging.getLogger(__name__)


class EventRouter:
    """イベント種別ごとにオーケストレーターのメソッドを呼び出す。"""

    def __init__(
        self,
        orchestrator: OrderOrchestrator,
        repository: OrderRepository,
        notifications: LoggingNotificationService,
    ) -> None:
        self.orchestrator = orchestrator
        self.repository = repository
        self.notifications = notifications

    def decode(
        self, event_type: str | None, data: str | dict
    ) -> tuple[InboundEventType, BaseModel] | None:
        """購読対象外のイベント種別なら None。"""
        try:
            kind = InboundEventType(event_type)
        except ValueError:
            return None
        payload = json.loads(data) if isinstance(data, str) else data
        return kind, INBOUND_EVENT_MODELS[kind].model_validate(payload)

    async def dispatch(self, kind: InboundEventType, event) -> None:
        match kind:
            case InboundEventType.STOCK_CONFIRMED:
                await self.orchestrator.confirm_stock(event.order_id)
            case InboundEventType.STOCK_REJECTED:
                await self.orchestrator.process_stock_rejection(
                    event.order_id, event.rejected_items
                )
            case InboundEventType.PAYMENT_SUCCEEDED:
                await self.orchestrator.mark_paid(event.order_id)
            case InboundEventType.PAYMENT_FAILED:
                await self.orchestrator.cancel_due_to_payment_failure(
                    event.order_id, event.failure_reason, event.failure_code
                )
            case InboundEventType.GRACE_PERIOD_EXPIRED:
                logger.info("Grace period expired for order %s", event.order_id)
                await self.orchestrator.expire_grace_period(event.order_id)
            case InboundEventType.ORDER_STATUS_CHANGED:
                order = await self.repository.find_by_id(event.order_id)
                if order is None:
                    return
                await self.notifications.notify_status_change(order, event.old_status)


class OrderEventConsumer:
    def __init__(
        self,
        redis: aioredis.Redis,
        router: EventRouter,
        streams: tuple[str, ...],
        group: str,
        consumer: str,
        dead_letter_stream: str,
        handler_timeout: float = 30.0,
        batch_size: int = 10,
        block_ms: int = 1000,
        retry_delay: float = 1.0,
    ) -> None:
        self.redis = redis
        self.router = router
        self.streams = streams
        self.group = group
        self.consumer = consumer
        self.dead_letter_stream = dead_letter_stream
        self.handler_timeout = handler_timeout
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.retry_delay = retry_delay

    async def ensure_groups(self) -> None:
        for stream in self.streams:
            try:
                await self.redis.xgroup_create(stream, self.group, id="0", mkstream=True)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        shutdown_event がセットされるまでストリームを読み続ける。

        起動直後は前回 ACK できなかった自分宛てのメッセージ ("0") を読み切り、
        その後に新着 (">") へ移る。Redis のエラーでは止まらず、待ってから再試行する。
        """
        groups_ready = False
        draining = True

        while not shutdown_event.is_set():
            try:
                if not groups_ready:
                    await self.ensure_groups()
                    groups_ready = True
                    logger.info(
                        "Consuming %s as %s/%s",
                        ", ".join(self.streams),
                        self.group,
                        self.consumer,
                    )
                if draining:
                    handled = await self._read({stream: "0" for stream in self.streams})
                    draining = handled > 0
                else:
                    await self._read({stream: ">" for stream in self.streams})
            except RedisError:
                logger.exception("Redis error, retrying in %.1fs", self.retry_delay)
                await asyncio.sleep(self.retry_delay)

    async def _read(self, positions: dict[str, str]) -> int:
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            positions,
            count=self.batch_size,
            block=self.block_ms,
        )
        handled = 0
        for stream, messages in response or []:
            for message_id, fields in messages:
                await self.handle_message(stream, message_id, fields)
                handled += 1
        return handled

    async def handle_message(self, stream: str, message_id: str, fields: dict | None) -> bool:
        """
        1 メッセージを処理する。成功なら True、dead-letter へ退避したら False。

        fields が None (削除済みエントリが pending に残っている) の場合も dead-letter へ。
        XADD / XACK 自体の失敗は RedisError のまま呼び出し元へ返し、
        メッセージは pending に残る。
        """
        event_type = None
        data = ""
        routed = None
        try:
            event_type = fields.get("event_type")
            data = fields.get("data", "{}")
            routed = self.router.decode(event_type, data)
            if routed is None:
                logger.debug("Ignoring %s from %s", event_type, stream)
            else:
                await asyncio.wait_for(
                    self.router.dispatch(*routed), timeout=self.handler_timeout
                )
        except Exception as exc:
            logger.exception("Failed to process %s (%s/%s)", event_type, stream, message_id)
            await self.redis.xadd(
                self.dead_letter_stream,
                {
                    "stream": stream,
                    "message_id": message_id,
                    "event_type": event_type or "",
                    "data": data,
                    "error": repr(exc),
                },
            )
            await self.redis.xack(stream, self.group, message_id)
            return False

        await self.redis.xack(stream, self.group, message_id)
        if routed is not None:
            logger.info("Processed event: %s", event_type)
        return True
