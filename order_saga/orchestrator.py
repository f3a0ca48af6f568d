"""
Order Saga Orchestrator — 注文 Saga

Saga パターン(オーケストレーション型):
  中央のオーケストレーターが注文の状態機械を持ち、
  コマンド(HTTP)とイベント(在庫・決済サービス)に反応して注文を進める。
  失敗時は補償トランザクション(StockReturned)を発行して整合性を保つ。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. CreateOrder          → Submitted       (OrderCreated)     │
  │  2. 猶予期間経過         → AwaitingValidation                 │
  │                             (OrderAwaitingValidation)         │
  │  3. StockConfirmed       → StockConfirmed  (OrderStockConfirmed│
  │     StockRejected(一部)  → StockConfirmed   で決済を依頼)     │
  │     StockRejected(全部)  → Cancelled                          │
  │  4. PaymentSucceeded     → Paid                               │
  │     PaymentFailed        → Cancelled (補償: StockReturned)    │
  │  5. ShipOrder            → Shipped                            │
  │  *  CancelOrder          → Cancelled (在庫引き当て済みなら    │
  │                                      StockReturned)           │
  └──────────────────────────────────────────────────────────────┘

  各ステップは「読み込み → 前提条件チェック → 更新(楽観的ロック) → イベント発行」。
  イベントはコミット後にだけ発行する。
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from .aggregate import (
    STOCK_RESERVED_STATUSES,
    Address,
    NewOrder,
    Order,
    OrderItem,
    OrderStatus,
    PaymentDetails,
    validate_checkout,
)
from .basket_client import HttpBasketClient
from .errors import (
    DuplicateRequestError,
    IllegalTransitionError,
    OrderForbiddenError,
    OrderNotFoundError,
    OrderValidationError,
)
from .events import (
    OrderAwaitingValidation,
    OrderCancelled,
    OrderCreated,
    OrderItemSnapshot,
    OrderStatusChanged,
    OrderStockConfirmed,
    PaymentFailureCode,
    PaymentMethodInfo,
    RejectedItem,
    StockReturned,
    StockValidationItem,
)
from .grace_period import GracePeriodScheduler
from .idempotency import CommandType, IdempotencyLedger
from .publisher import RedisEventPublisher
from .repository import OrderRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        repository: OrderRepository,
        ledger: IdempotencyLedger,
        publisher: RedisEventPublisher,
        basket_client: HttpBasketClient,
        grace_period: GracePeriodScheduler | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.ledger = ledger
        self.publisher = publisher
        self.basket_client = basket_client
        self.grace_period = grace_period
        self.clock = clock
        if grace_period is not None:
            grace_period.bind(self.expire_grace_period)

    # ── コマンド (冪等) ──────────────────────────

    async def create_order(
        self,
        request_id: str,
        buyer_id: str,
        buyer_email: str,
        buyer_name: str,
        delivery_address: Address,
        payment_details: PaymentDetails,
        token: str,
        currency: str = "USD",
    ) -> Order:
        """
        注文作成コマンド

        1. 住所・カード情報を検証 (状態変更前に拒否)
        2. Basket Service からバスケットを取得
        3. 注文を Submitted で保存
        4. OrderCreated を発行
        5. 猶予期間タイマーを予約
        """

        async def operation() -> Order:
            existing = await self.repository.find_by_request_id(request_id)
            if existing is not None:
                return existing

            validate_checkout(
                delivery_address, payment_details, currency, self.clock().date()
            )
            basket = await self.basket_client.get_basket(buyer_id, token)
            if basket is None:
                raise OrderValidationError("Basket not found")
            if not basket.items:
                raise OrderValidationError("Basket is empty")

            new_order = NewOrder(
                request_id=request_id,
                buyer_id=buyer_id,
                buyer_email=buyer_email,
                buyer_name=buyer_name,
                delivery_address=delivery_address,
                items=[
                    OrderItem(
                        menu_item_id=item.menu_item_id,
                        menu_item_name=item.menu_item_name,
                        picture_url=item.menu_item_image_url,
                        unit_price=item.unit_price,
                        quantity=item.quantity,
                    )
                    for item in basket.items
                ],
                payment_method=payment_details.to_payment_method(),
                currency=currency.upper(),
            )
            try:
                order = await self.repository.create(new_order, self.clock())
            except DuplicateRequestError:
                # 並行した同じリクエストが先に作成済み。イベントとタイマーはそちらが担当する。
                logger.info("Order for request_id=%s created concurrently", request_id)
                return await self.repository.find_by_request_id(request_id)

            await self.publisher.publish(
                OrderCreated(
                    order_id=order.id,
                    buyer_id=order.buyer_id,
                    items=[
                        OrderItemSnapshot(
                            menu_item_id=item.menu_item_id,
                            quantity=item.quantity,
                            unit_price=item.unit_price,
                        )
                        for item in order.items
                    ],
                    total_price=order.total_price,
                    currency=order.currency,
                    created_at=order.created_at,
                )
            )

            if self.grace_period is not None:
                self.grace_period.schedule(order.id)
            return order

        return await self.ledger.execute(
            request_id, CommandType.CREATE_ORDER, operation, Order
        )

    async def cancel_order(
        self, request_id: str, order_id: int, buyer_id: str, reason: str
    ) -> Order:
        """
        注文キャンセルコマンド(購入者から)

        既に Cancelled ならそのまま返す。
        在庫が引き当て済み(確認中を含む)なら StockReturned で在庫を戻す。
        """

        async def operation() -> Order:
            order = await self.get_order(order_id, buyer_id)
            if order.status == OrderStatus.CANCELLED:
                return order
            return await self._cancel(
                order,
                reason,
                return_stock=order.status in STOCK_RESERVED_STATUSES,
            )

        return await self.ledger.execute(
            request_id, CommandType.CANCEL_ORDER, operation, Order
        )

    async def ship_order(self, request_id: str, order_id: int) -> Order | None:
        """出荷コマンド(管理者)。注文が存在しなければ None。"""

        async def operation() -> Order | None:
            order = await self.repository.find_by_id(order_id)
            if order is None:
                return None
            if order.status == OrderStatus.SHIPPED:
                return order
            self._require_status(order, OrderStatus.PAID, OrderStatus.SHIPPED)

            shipped = await self._save_transition(
                order, OrderStatus.SHIPPED, "Order shipped"
            )
            await self._publish_status_changed(shipped, order.status)
            return shipped

        return await self.ledger.execute(
            request_id, CommandType.SHIP_ORDER, operation, Order | None
        )

    # ── イベント反応 ─────────────────────────────

    async def expire_grace_period(self, order_id: int) -> Order:
        """
        猶予期間の終了: Submitted → AwaitingValidation

        タイマーとキャンセルが競合した場合に備え、
        Submitted 以外なら何もせずに返す。
        """
        order = await self._load(order_id)
        if order.status != OrderStatus.SUBMITTED:
            logger.info(
                "Grace period expired for order %s in status %s, nothing to do",
                order_id,
                order.status.value,
            )
            return order

        updated = await self._save_transition(
            order,
            OrderStatus.AWAITING_VALIDATION,
            "Order moved to AwaitingValidation after grace period",
        )
        await self.publisher.publish(
            OrderAwaitingValidation(
                order_id=updated.id,
                buyer_id=updated.buyer_id,
                items=self._stock_snapshot(updated),
            )
        )
        await self._publish_status_changed(updated, order.status)
        return updated

    async def confirm_stock(self, order_id: int) -> Order:
        """在庫確認済み: AwaitingValidation → StockConfirmed"""
        order = await self._load(order_id)
        self._require_status(
            order, OrderStatus.AWAITING_VALIDATION, OrderStatus.STOCK_CONFIRMED
        )
        updated = await self._save_transition(
            order, OrderStatus.STOCK_CONFIRMED, "Stock confirmed by menu service"
        )
        await self._publish_status_changed(updated, order.status)
        await self._request_payment(updated)
        return updated

    async def process_stock_rejection(
        self, order_id: int, rejected_items: list[RejectedItem]
    ) -> Order:
        """
        在庫不足の通知

        - 全明細が在庫 0       → Cancelled (不足品目を説明に記載)
        - 一部のみ不足         → 明細を削除・数量を減らして StockConfirmed
        """
        order = await self._load(order_id)
        self._require_status(
            order, OrderStatus.AWAITING_VALIDATION, OrderStatus.STOCK_CONFIRMED
        )

        available = {item.menu_item_id: item.available_quantity for item in rejected_items}
        remaining = order.items_after_rejection(available)

        if not remaining:
            names = ", ".join(
                f"{item.menu_item_name} (requested {item.requested_quantity}, "
                f"available {item.available_quantity})"
                for item in rejected_items
            )
            return await self._cancel(
                order, f"Stock rejected for: {names}", return_stock=False
            )

        updated = await self._save_transition(
            order,
            OrderStatus.STOCK_CONFIRMED,
            self._describe_partial_fulfillment(order.items, remaining),
            items=remaining,
        )
        await self._publish_status_changed(updated, order.status)
        await self._request_payment(updated)
        return updated

    async def mark_paid(self, order_id: int) -> Order:
        """決済成功: StockConfirmed → Paid"""
        order = await self._load(order_id)
        self._require_status(order, OrderStatus.STOCK_CONFIRMED, OrderStatus.PAID)
        updated = await self._save_transition(order, OrderStatus.PAID, "Payment succeeded")
        await self._publish_status_changed(updated, order.status)
        return updated

    async def cancel_due_to_payment_failure(
        self,
        order_id: int,
        reason: str,
        failure_code: PaymentFailureCode = PaymentFailureCode.UNKNOWN,
    ) -> Order:
        """決済失敗: StockConfirmed → Cancelled (補償: 在庫を戻す)"""
        order = await self._load(order_id)
        self._require_status(order, OrderStatus.STOCK_CONFIRMED, OrderStatus.CANCELLED)
        return await self._cancel(
            order,
            f"Payment failed ({failure_code.value}): {reason}",
            return_stock=True,
        )

    # ── クエリ ───────────────────────────────────

    async def get_order(self, order_id: int, buyer_id: str | None = None) -> Order:
        """
        注文を取得する。buyer_id が None なら管理者として所有者チェックを省く。
        存在しない (404) と他人の注文 (403) は区別する。
        """
        order = await self._load(order_id)
        if buyer_id is not None and order.buyer_id != buyer_id:
            raise OrderForbiddenError(order_id)
        return order

    # ── 内部ヘルパー ─────────────────────────────

    async def _load(self, order_id: int) -> Order:
        order = await self.repository.find_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    @staticmethod
    def _require_status(order: Order, expected: OrderStatus, target: OrderStatus) -> None:
        if order.status != expected:
            raise IllegalTransitionError(order.id, order.status.value, target.value)

    async def _save_transition(
        self,
        order: Order,
        status: OrderStatus,
        description: str,
        items: list[OrderItem] | None = None,
    ) -> Order:
        changed = order.transition_to(status, description, self.clock())
        if items is not None:
            changed = changed.with_items(items)
        saved = await self.repository.update(changed)
        logger.info(
            "Order %s: %s -> %s (%s)",
            order.id,
            order.status.value,
            status.value,
            description,
        )
        return saved

    async def _cancel(self, order: Order, reason: str, return_stock: bool) -> Order:
        old_status = order.status
        cancelled = await self._save_transition(order, OrderStatus.CANCELLED, reason)

        await self.publisher.publish(
            OrderCancelled(
                order_id=cancelled.id,
                buyer_id=cancelled.buyer_id,
                reason=reason,
                cancelled_at=cancelled.updated_at,
            )
        )
        if return_stock:
            await self.publisher.publish(
                StockReturned(order_id=cancelled.id, items=self._stock_snapshot(cancelled))
            )
        await self._publish_status_changed(cancelled, old_status)
        return cancelled

    async def _publish_status_changed(self, order: Order, old_status: OrderStatus) -> None:
        await self.publisher.publish(
            OrderStatusChanged(
                order_id=order.id,
                buyer_id=order.buyer_id,
                old_status=old_status,
                new_status=order.status,
                total_price=order.total_price,
                currency=order.currency,
                description=order.description,
                changed_at=order.updated_at,
            )
        )

    async def _request_payment(self, order: Order) -> None:
        payment = order.payment_method
        await self.publisher.publish(
            OrderStockConfirmed(
                event_id=str(uuid4()),
                order_id=order.id,
                buyer_id=order.buyer_id,
                total_amount=order.total_price,
                currency=order.currency,
                payment_method=PaymentMethodInfo(
                    card_last_four=payment.card_last_four,
                    card_brand=payment.card_brand,
                    card_holder_name=payment.card_holder_name,
                    expiration_month=payment.expiration_month,
                    expiration_year=payment.expiration_year,
                )
                if payment
                else None,
                occurred_at=order.updated_at,
            )
        )

    @staticmethod
    def _stock_snapshot(order: Order) -> list[StockValidationItem]:
        return [
            StockValidationItem(menu_item_id=item.menu_item_id, quantity=item.quantity)
            for item in order.items
        ]

    @staticmethod
    def _describe_partial_fulfillment(
        before: list[OrderItem], after: list[OrderItem]
    ) -> str:
        remaining = {item.menu_item_id: item.quantity for item in after}
        changes = []
        for item in before:
            if item.menu_item_id not in remaining:
                changes.append(f"{item.menu_item_name} removed")
            elif remaining[item.menu_item_id] != item.quantity:
                changes.append(
                    f"{item.menu_item_name} reduced from {item.quantity} "
                    f"to {remaining[item.menu_item_id]}"
                )
        if not changes:
            return "Stock confirmed by menu service"
        return "Partially fulfilled: " + "; ".join(changes)
