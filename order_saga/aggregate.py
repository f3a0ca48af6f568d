"""
Order Saga Service — 注文集約 (Order Aggregate)

注文の状態と状態遷移ルールを保持する。
集約は不変 (immutable) として扱い、遷移のたびに新しいインスタンスを返す。
永続化とイベント発行はオーケストレーター側の責務。

状態遷移:

    Submitted ──(猶予期間経過)──▶ AwaitingValidation ──(在庫確認)──▶ StockConfirmed
        │                               │                                │
        │                               │                          (決済成功)
        │                               │                                ▼
        └────────────▶ Cancelled ◀──────┴────────────────────────────  Paid ──(出荷)──▶ Shipped

    Shipped / Cancelled は終端状態。そこから出る遷移は存在しない。
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from .errors import IllegalTransitionError, OrderValidationError

CENTS = Decimal("0.01")


class OrderStatus(str, Enum):
    SUBMITTED = "Submitted"
    AWAITING_VALIDATION = "AwaitingValidation"
    STOCK_CONFIRMED = "StockConfirmed"
    PAID = "Paid"
    SHIPPED = "Shipped"
    CANCELLED = "Cancelled"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.SUBMITTED: frozenset(
        {OrderStatus.AWAITING_VALIDATION, OrderStatus.CANCELLED}
    ),
    OrderStatus.AWAITING_VALIDATION: frozenset(
        {OrderStatus.STOCK_CONFIRMED, OrderStatus.CANCELLED}
    ),
    OrderStatus.STOCK_CONFIRMED: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# 在庫が引き当て済み(または確認中)の状態。キャンセル時は在庫を戻す。
STOCK_RESERVED_STATUSES = frozenset(
    {OrderStatus.AWAITING_VALIDATION, OrderStatus.STOCK_CONFIRMED}
)


class CardBrand(str, Enum):
    VISA = "VISA"
    MASTERCARD = "MASTERCARD"
    AMEX = "AMEX"
    DISCOVER = "DISCOVER"
    UNKNOWN = "UNKNOWN"

    @property
    def display_name(self) -> str:
        return {
            CardBrand.VISA: "Visa",
            CardBrand.MASTERCARD: "MasterCard",
            CardBrand.AMEX: "American Express",
            CardBrand.DISCOVER: "Discover",
            CardBrand.UNKNOWN: "Unknown",
        }[self]


# ── 値オブジェクト ─────────────────────────────────


class Address(BaseModel):
    street: str
    city: str
    state: str
    country: str
    zip_code: str


class PaymentDetails(BaseModel):
    """注文作成時に受け取るカード情報。永続化するのは下 4 桁のみ。"""

    card_brand: CardBrand
    card_number: str
    card_holder_name: str
    card_security_number: str
    expiration_month: int
    expiration_year: int

    def is_expired(self, today: date) -> bool:
        return (self.expiration_year, self.expiration_month) < (today.year, today.month)

    def to_payment_method(self) -> "PaymentMethod":
        digits = "".join(ch for ch in self.card_number if ch.isdigit())
        return PaymentMethod(
            card_brand=self.card_brand,
            card_holder_name=self.card_holder_name,
            card_last_four=digits[-4:],
            expiration_month=self.expiration_month,
            expiration_year=self.expiration_year,
        )


class PaymentMethod(BaseModel):
    card_brand: CardBrand
    card_holder_name: str
    card_last_four: str
    expiration_month: int
    expiration_year: int


class OrderItem(BaseModel):
    id: int | None = None
    menu_item_id: int
    menu_item_name: str
    picture_url: str
    unit_price: Decimal
    quantity: int = Field(ge=1)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class OrderHistoryEntry(BaseModel):
    status: OrderStatus
    description: str | None
    created_at: datetime


def compute_total(items: list[OrderItem]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0")).quantize(CENTS)


# ── 集約 ─────────────────────────────────────────


class Order(BaseModel):
    """
    注文集約。

    total_price は常に items の unit_price × quantity の合計と一致する。
    version は楽観的ロック用で、リポジトリの更新ごとに 1 ずつ増える。
    """

    id: int
    request_id: str
    buyer_id: str
    buyer_email: str
    buyer_name: str
    status: OrderStatus
    delivery_address: Address
    items: list[OrderItem]
    payment_method: PaymentMethod | None = None
    total_price: Decimal
    currency: str = "USD"
    description: str | None = None
    history: list[OrderHistoryEntry] = Field(default_factory=list)
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    def can_transition_to(self, status: OrderStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def transition_to(
        self, status: OrderStatus, description: str | None, now: datetime
    ) -> "Order":
        if not self.can_transition_to(status):
            raise IllegalTransitionError(self.id, self.status.value, status.value)
        return self.model_copy(
            update={"status": status, "description": description, "updated_at": now}
        )

    def with_items(self, items: list[OrderItem]) -> "Order":
        return self.model_copy(
            update={"items": list(items), "total_price": compute_total(items)}
        )

    def items_after_rejection(self, available: dict[int, int]) -> list[OrderItem]:
        """
        在庫不足の通知を注文明細に反映する。

        available: menu_item_id → 引き当て可能数
          - 0           → 明細を削除
          - 1 以上      → 数量をその値に置き換え (注文数を超えては増やさない)
          - 該当なし    → そのまま
        """
        remaining: list[OrderItem] = []
        for item in self.items:
            if item.menu_item_id not in available:
                remaining.append(item)
                continue
            quantity = min(available[item.menu_item_id], item.quantity)
            if quantity > 0:
                remaining.append(item.model_copy(update={"quantity": quantity}))
        return remaining


class NewOrder(BaseModel):
    """リポジトリに渡す作成前の注文"""

    request_id: str
    buyer_id: str
    buyer_email: str
    buyer_name: str
    delivery_address: Address
    items: list[OrderItem]
    payment_method: PaymentMethod | None
    currency: str = "USD"


# ── 入力検証 ─────────────────────────────────────


def validate_checkout(
    address: Address, payment: PaymentDetails, currency: str, today: date
) -> None:
    """状態を変更する前に住所・カード情報を検証する。"""
    errors: list[str] = []
    for name in ("street", "city", "state", "country", "zip_code"):
        if not getattr(address, name).strip():
            errors.append(f"{name} is required")

    digits = payment.card_number.replace(" ", "").replace("-", "")
    if not digits.isdigit() or not 12 <= len(digits) <= 19:
        errors.append("card_number must contain 12 to 19 digits")
    if not payment.card_holder_name.strip():
        errors.append("card_holder_name is required")
    if not (payment.card_security_number.isdigit() and len(payment.card_security_number) in (3, 4)):
        errors.append("card_security_number must be 3 or 4 digits")
    if not 1 <= payment.expiration_month <= 12:
        errors.append("expiration_month must be between 1 and 12")
    elif payment.is_expired(today):
        errors.append("card is expired")
    if len(currency) != 3 or not currency.isalpha():
        errors.append("currency must be a 3-letter code")

    if errors:
        raise OrderValidationError("; ".join(errors))
