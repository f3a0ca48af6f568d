"""
Order Saga Service — ステータス変更通知

OrderStatusChanged を購読して購入者に通知する。
現時点ではログ出力のみ (メール送信サービスとの連携は未実装)。
"""

import logging

from .aggregate import Order, OrderStatus

logger = logging.getLogger(__name__)


class LoggingNotificationService:
    async def notify_status_change(self, order: Order, old_status: OrderStatus) -> None:
        message = (
            f"Order {order.id} for {order.buyer_name} changed from "
            f"{old_status.value} to {order.status.value}. "
            f"Description: {order.description or 'None'}"
        )
        logger.info("Notify %s: %s", order.buyer_email, message)
