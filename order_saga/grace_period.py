"""
Order Saga Service — 猶予期間タイマー

注文作成後、一定時間 (GRACE_PERIOD_SECONDS) は購入者がキャンセルできる。
時間が経過したら Submitted → AwaitingValidation へ進める。

    schedule(order_id) → asyncio タスクが delay 秒待機 → on_expire(order_id)

タイマー自体は永続化しない。プロセスが再起動すると待機中のタスクは消えるため、
起動時に recover() で Submitted のまま残っている注文を探し、
created_at からの残り時間で予約し直す。

キャンセル用のチャネルは持たない。発火後にオーケストレーター側で
現在のステータスを確認し、Submitted 以外なら何もしない。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from .aggregate import OrderStatus

logger = logging.getLogger(__name__)


class GracePeriodScheduler:
    def __init__(self, delay_seconds: float) -> None:
        self.delay_seconds = delay_seconds
        self._on_expire: Callable[[int], Awaitable[object]] | None = None
        self._tasks: set[asyncio.Task] = set()

    def bind(self, on_expire: Callable[[int], Awaitable[object]]) -> None:
        self._on_expire = on_expire

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, order_id: int, delay_seconds: float | None = None) -> asyncio.Task:
        """1 注文につき 1 回だけ呼ぶ。戻り値のタスクは待たなくてよい。"""
        if self._on_expire is None:
            raise RuntimeError("GracePeriodScheduler is not bound to an orchestrator")

        delay = self.delay_seconds if delay_seconds is None else max(delay_seconds, 0.0)
        task = asyncio.create_task(self._fire(order_id, delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Grace period for order %s scheduled in %.1fs", order_id, delay)
        return task

    async def recover(self, repository, now: datetime | None = None) -> int:
        """
        再起動後の復旧スイープ。

        Submitted のまま残っている注文を予約し直す。
        期限切れのものは即時 (delay=0) に発火させる。
        """
        now = now or datetime.now(timezone.utc)
        pending = await repository.find_by_status(OrderStatus.SUBMITTED)
        for order in pending:
            elapsed = (now - order.created_at).total_seconds()
            self.schedule(order.id, self.delay_seconds - elapsed)
        if pending:
            logger.info("Recovered %d grace period timers", len(pending))
        return len(pending)

    async def shutdown(self) -> None:
        """待機中のタスクをすべてキャンセルする。"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _fire(self, order_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._on_expire(order_id)
        except Exception:
            # タイマーは fire-and-forget。失敗はログに残し、復旧スイープに任せる。
            logger.exception("Grace period transition failed for order %s", order_id)
