"""
Order Saga Service — イベント定義

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。

発行するイベント (order_events ストリーム):
    OrderCreated / OrderCancelled / OrderStatusChanged /
    OrderAwaitingValidation / StockReturned / OrderStockConfirmed

購読するイベント (他サービス → 本サービス):
    StockConfirmed / StockRejected / PaymentSucceeded / PaymentFailed /
    GracePeriodExpired / OrderStatusChanged (通知用に自分のイベントも購読)
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel

from .aggregate import CardBrand, OrderStatus


class DomainEvent(BaseModel):
    event_type: ClassVar[str]


# ── 発行イベント ─────────────────────────────────


class OrderItemSnapshot(BaseModel):
    menu_item_id: int
    quantity: int
    unit_price: Decimal


class StockValidationItem(BaseModel):
    menu_item_id: int
    quantity: int


class OrderCreated(DomainEvent):
    """注文が作成された"""

    event_type: ClassVar[str] = "OrderCreated"

    order_id: int
    buyer_id: str
    items: list[OrderItemSnapshot]
    total_price: Decimal
    currency: str
    created_at: datetime


class OrderCancelled(DomainEvent):
    """注文がキャンセルされた(購入者・在庫不足・決済失敗)"""

    event_type: ClassVar[str] = "OrderCancelled"

    order_id: int
    buyer_id: str
    reason: str
    cancelled_at: datetime


class OrderStatusChanged(DomainEvent):
    """注文ステータスが変わった(監査・通知用)"""

    event_type: ClassVar[str] = "OrderStatusChanged"

    order_id: int
    buyer_id: str
    old_status: OrderStatus
    new_status: OrderStatus
    total_price: Decimal
    currency: str
    description: str | None
    changed_at: datetime


class OrderAwaitingValidation(DomainEvent):
    """猶予期間が終わり、在庫確認を依頼する"""

    event_type: ClassVar[str] = "OrderAwaitingValidation"

    order_id: int
    buyer_id: str
    items: list[StockValidationItem]


class StockReturned(DomainEvent):
    """引き当て済み在庫を戻す(補償トランザクション)"""

    event_type: ClassVar[str] = "StockReturned"

    order_id: int
    items: list[StockValidationItem]


class PaymentMethodInfo(BaseModel):
    type: str = "CREDIT_CARD"
    card_last_four: str | None
    card_brand: CardBrand | None
    card_holder_name: str | None
    expiration_month: int | None
    expiration_year: int | None


class OrderStockConfirmed(DomainEvent):
    """在庫確認済み。Payment Service に決済を依頼する。"""

    event_type: ClassVar[str] = "OrderStockConfirmed"

    event_id: str
    order_id: int
    buyer_id: str
    total_amount: Decimal
    currency: str
    payment_method: PaymentMethodInfo | None
    occurred_at: datetime


# ── 購読イベント ─────────────────────────────────


class InboundEventType(str, Enum):
    STOCK_CONFIRMED = "StockConfirmed"
    STOCK_REJECTED = "StockRejected"
    PAYMENT_SUCCEEDED = "PaymentSucceeded"
    PAYMENT_FAILED = "PaymentFailed"
    GRACE_PERIOD_EXPIRED = "GracePeriodExpired"
    ORDER_STATUS_CHANGED = "OrderStatusChanged"


class PaymentFailureCode(str, Enum):
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    CARD_DECLINED = "CARD_DECLINED"
    CARD_EXPIRED = "CARD_EXPIRED"
    INVALID_CARD = "INVALID_CARD"
    FRAUD_SUSPECTED = "FRAUD_SUSPECTED"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class StockConfirmed(DomainEvent):
    event_type: ClassVar[str] = InboundEventType.STOCK_CONFIRMED.value

    order_id: int
    confirmed_at: datetime | None = None


class RejectedItem(BaseModel):
    menu_item_id: int
    menu_item_name: str
    requested_quantity: int
    available_quantity: int


class StockRejected(DomainEvent):
    event_type: ClassVar[str] = InboundEventType.STOCK_REJECTED.value

    order_id: int
    rejected_items: list[RejectedItem]
    rejected_at: datetime | None = None


class PaymentSucceeded(DomainEvent):
    event_type: ClassVar[str] = InboundEventType.PAYMENT_SUCCEEDED.value

    order_id: int
    amount: Decimal
    currency: str
    transaction_id: str


class PaymentFailed(DomainEvent):
    event_type: ClassVar[str] = InboundEventType.PAYMENT_FAILED.value

    order_id: int
    failure_reason: str
    failure_code: PaymentFailureCode = PaymentFailureCode.UNKNOWN


class GracePeriodExpired(DomainEvent):
    event_type: ClassVar[str] = InboundEventType.GRACE_PERIOD_EXPIRED.value

    order_id: int
    expired_at: datetime | None = None


INBOUND_EVENT_MODELS: dict[InboundEventType, type[BaseModel]] = {
    InboundEventType.STOCK_CONFIRMED: StockConfirmed,
    InboundEventType.STOCK_REJECTED: StockRejected,
    InboundEventType.PAYMENT_SUCCEEDED: PaymentSucceeded,
    InboundEventType.PAYMENT_FAILED: PaymentFailed,
    InboundEventType.GRACE_PERIOD_EXPIRED: GracePeriodExpired,
    InboundEventType.ORDER_STATUS_CHANGED: OrderStatusChanged,
}
