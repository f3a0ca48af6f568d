"""Tests for Order Saga orchestration (commands and event reactions)."""
import asyncio
from decimal import Decimal

import pytest

from order_saga.aggregate import OrderStatus
from order_saga.errors import (
    IdempotencyKeyReuseError,
    IllegalTransitionError,
    OrderForbiddenError,
    OrderNotFoundError,
    OrderValidationError,
)
from order_saga.events import PaymentFailureCode, RejectedItem


def _rejected(menu_item_id: int, name: str, requested: int, available: int) -> RejectedItem:
    return RejectedItem(
        menu_item_id=menu_item_id,
        menu_item_name=name,
        requested_quantity=requested,
        available_quantity=available,
    )


async def _awaiting_validation(orchestrator, place_order, **kwargs):
    order = await place_order(**kwargs)
    return await orchestrator.expire_grace_period(order.id)


# ── 正常系 ───────────────────────────────────────


async def test_happy_path_to_shipped(orchestrator, place_order, redis):
    """Submitted → AwaitingValidation → StockConfirmed → Paid → Shipped"""
    order = await place_order()
    assert order.status == OrderStatus.SUBMITTED
    assert order.total_price == Decimal("20.00")
    assert order.payment_method.card_last_four == "1234"

    await orchestrator.expire_grace_period(order.id)
    await orchestrator.confirm_stock(order.id)
    await orchestrator.mark_paid(order.id)
    shipped = await orchestrator.ship_order("req-ship-1", order.id)

    assert shipped.status == OrderStatus.SHIPPED
    assert shipped.version == 5
    assert [entry.status for entry in shipped.history] == [
        OrderStatus.SUBMITTED,
        OrderStatus.AWAITING_VALIDATION,
        OrderStatus.STOCK_CONFIRMED,
        OrderStatus.PAID,
        OrderStatus.SHIPPED,
    ]
    assert redis.event_types() == [
        "OrderCreated",
        "OrderAwaitingValidation",
        "OrderStatusChanged",
        "OrderStatusChanged",
        "OrderStockConfirmed",
        "OrderStatusChanged",
        "OrderStatusChanged",
    ]
    assert "StockReturned" not in redis.event_types()

    published = len(redis.event_types())
    replayed = await orchestrator.ship_order("req-ship-1", order.id)
    assert replayed == shipped
    assert len(redis.event_types()) == published


async def test_order_created_event_payload(place_order, redis):
    order = await place_order()

    [created] = redis.events("OrderCreated")
    assert created["order_id"] == order.id
    assert created["buyer_id"] == "buyer-1"
    assert Decimal(created["total_price"]) == Decimal("20.00")
    assert created["items"][0]["menu_item_id"] == 1
    assert created["items"][0]["quantity"] == 2


async def test_stock_confirmed_requests_payment(orchestrator, place_order, redis):
    order = await _awaiting_validation(orchestrator, place_order)
    await orchestrator.confirm_stock(order.id)

    [request] = redis.events("OrderStockConfirmed")
    assert request["order_id"] == order.id
    assert Decimal(request["total_amount"]) == Decimal("20.00")
    assert request["payment_method"]["card_last_four"] == "1234"
    assert request["payment_method"]["card_brand"] == "VISA"


# ── 在庫不足 ─────────────────────────────────────


async def test_partial_stock_rejection_reduces_order(orchestrator, place_order, redis):
    order = await _awaiting_validation(orchestrator, place_order, buyer_id="buyer-2")
    assert order.total_price == Decimal("33.50")

    updated = await orchestrator.process_stock_rejection(
        order.id, [_rejected(1, "Margherita", 2, 1), _rejected(2, "Tiramisu", 3, 0)]
    )

    assert updated.status == OrderStatus.STOCK_CONFIRMED
    assert [(item.menu_item_id, item.quantity) for item in updated.items] == [(1, 1)]
    assert updated.total_price == Decimal("10.00")
    assert updated.description == (
        "Partially fulfilled: Margherita reduced from 2 to 1; Tiramisu removed"
    )
    [request] = redis.events("OrderStockConfirmed")
    assert Decimal(request["total_amount"]) == Decimal("10.00")


async def test_rejection_leaves_unlisted_items_untouched(orchestrator, place_order):
    order = await _awaiting_validation(orchestrator, place_order, buyer_id="buyer-2")

    updated = await orchestrator.process_stock_rejection(
        order.id, [_rejected(1, "Margherita", 2, 1)]
    )

    assert [(item.menu_item_id, item.quantity) for item in updated.items] == [(1, 1), (2, 3)]
    assert updated.total_price == Decimal("23.50")
    assert updated.status == OrderStatus.STOCK_CONFIRMED


async def test_full_stock_rejection_cancels_without_returning_stock(
    orchestrator, place_order, redis
):
    order = await _awaiting_validation(orchestrator, place_order)

    cancelled = await orchestrator.process_stock_rejection(
        order.id, [_rejected(1, "Margherita", 2, 0)]
    )

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.description == (
        "Stock rejected for: Margherita (requested 2, available 0)"
    )
    assert "StockReturned" not in redis.event_types()
    [event] = redis.events("OrderCancelled")
    assert event["reason"] == cancelled.description


async def test_stock_events_require_awaiting_validation(orchestrator, place_order):
    order = await place_order()

    with pytest.raises(IllegalTransitionError):
        await orchestrator.confirm_stock(order.id)
    with pytest.raises(IllegalTransitionError):
        await orchestrator.process_stock_rejection(order.id, [_rejected(1, "Margherita", 2, 0)])

    assert (await orchestrator.get_order(order.id)).status == OrderStatus.SUBMITTED


# ── 決済 ─────────────────────────────────────────


async def test_payment_failure_cancels_and_returns_stock(orchestrator, place_order, redis):
    order = await _awaiting_validation(orchestrator, place_order)
    await orchestrator.confirm_stock(order.id)

    cancelled = await orchestrator.cancel_due_to_payment_failure(
        order.id, "insufficient funds", PaymentFailureCode.INSUFFICIENT_FUNDS
    )

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.description == "Payment failed (INSUFFICIENT_FUNDS): insufficient funds"
    [returned] = redis.events("StockReturned")
    assert returned["items"] == [{"menu_item_id": 1, "quantity": 2}]
    assert redis.event_types()[-3:] == ["OrderCancelled", "StockReturned", "OrderStatusChanged"]


async def test_payment_events_require_stock_confirmed(orchestrator, place_order):
    order = await _awaiting_validation(orchestrator, place_order)

    with pytest.raises(IllegalTransitionError):
        await orchestrator.mark_paid(order.id)
    with pytest.raises(IllegalTransitionError):
        await orchestrator.cancel_due_to_payment_failure(order.id, "declined")


# ── キャンセル ───────────────────────────────────


async def test_cancel_during_grace_period_does_not_return_stock(
    orchestrator, place_order, redis
):
    order = await place_order()

    cancelled = await orchestrator.cancel_order("req-cancel-1", order.id, "buyer-1", "Changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.description == "Changed my mind"
    assert "StockReturned" not in redis.event_types()


async def test_cancel_after_stock_reserved_returns_stock(orchestrator, place_order, redis):
    order = await _awaiting_validation(orchestrator, place_order)

    await orchestrator.cancel_order("req-cancel-1", order.id, "buyer-1", "Changed my mind")

    assert len(redis.events("StockReturned")) == 1


async def test_cancel_after_stock_confirmed_returns_current_items(
    orchestrator, place_order, redis
):
    order = await _awaiting_validation(orchestrator, place_order, buyer_id="buyer-2")
    await orchestrator.process_stock_rejection(order.id, [_rejected(2, "Tiramisu", 3, 1)])

    await orchestrator.cancel_order("req-cancel-1", order.id, "buyer-2", "Changed my mind")

    [returned] = redis.events("StockReturned")
    assert returned["items"] == [
        {"menu_item_id": 1, "quantity": 2},
        {"menu_item_id": 2, "quantity": 1},
    ]


async def test_cancel_is_idempotent_per_request_id(orchestrator, place_order, redis):
    order = await place_order()

    first = await orchestrator.cancel_order("req-cancel-1", order.id, "buyer-1", "no")
    published = len(redis.event_types())
    again = await orchestrator.cancel_order("req-cancel-1", order.id, "buyer-1", "no")

    assert again == first
    assert len(redis.event_types()) == published


async def test_cancel_already_cancelled_with_new_request_is_noop(orchestrator, place_order, redis):
    order = await place_order()
    first = await orchestrator.cancel_order("req-cancel-1", order.id, "buyer-1", "no")
    published = len(redis.event_types())

    second = await orchestrator.cancel_order("req-cancel-2", order.id, "buyer-1", "really no")

    assert second.status == OrderStatus.CANCELLED
    assert second.version == first.version
    assert second.description == "no"
    assert len(redis.event_types()) == published


async def test_cannot_cancel_after_payment(orchestrator, place_order):
    order = await _awaiting_validation(orchestrator, place_order)
    await orchestrator.confirm_stock(order.id)
    await orchestrator.mark_paid(order.id)

    with pytest.raises(IllegalTransitionError):
        await orchestrator.cancel_order("req-cancel-1", order.id, "buyer-1", "too late")


# ── 作成の冪等性・入力検証 ───────────────────────


async def test_create_is_idempotent_per_request_id(place_order, basket, redis):
    first = await place_order("req-create-1")
    second = await place_order("req-create-1")

    assert second == first
    assert basket.calls == 1
    assert redis.event_types() == ["OrderCreated"]


async def test_request_id_cannot_be_reused_for_another_command(orchestrator, place_order):
    order = await place_order("req-1")

    with pytest.raises(IdempotencyKeyReuseError):
        await orchestrator.cancel_order("req-1", order.id, "buyer-1", "no")


async def test_create_rejects_missing_or_empty_basket(place_order, basket, redis):
    with pytest.raises(OrderValidationError, match="Basket not found"):
        await place_order(buyer_id="nobody")

    basket.put("buyer-empty")
    with pytest.raises(OrderValidationError, match="Basket is empty"):
        await place_order("req-create-2", buyer_id="buyer-empty")

    assert redis.event_types() == []


async def test_create_rejects_invalid_card_before_basket_lookup(
    orchestrator, address, payment, basket, repository
):
    bad_payment = payment.model_copy(update={"card_security_number": "1"})

    with pytest.raises(OrderValidationError):
        await orchestrator.create_order(
            request_id="req-create-1",
            buyer_id="buyer-1",
            buyer_email="buyer-1@example.com",
            buyer_name="Buyer",
            delivery_address=address,
            payment_details=bad_payment,
            token="token",
        )

    assert basket.calls == 0
    assert await repository.find_by_request_id("req-create-1") is None


# ── 出荷 ─────────────────────────────────────────


async def test_ship_requires_paid(orchestrator, place_order):
    order = await _awaiting_validation(orchestrator, place_order)
    await orchestrator.confirm_stock(order.id)

    with pytest.raises(IllegalTransitionError):
        await orchestrator.ship_order("req-ship-1", order.id)


async def test_ship_unknown_order_returns_none(orchestrator):
    assert await orchestrator.ship_order("req-ship-1", 999) is None
    assert await orchestrator.ship_order("req-ship-1", 999) is None


async def test_ship_twice_is_noop(orchestrator, place_order, redis):
    order = await _awaiting_validation(orchestrator, place_order)
    await orchestrator.confirm_stock(order.id)
    await orchestrator.mark_paid(order.id)
    shipped = await orchestrator.ship_order("req-ship-1", order.id)
    published = len(redis.event_types())

    again = await orchestrator.ship_order("req-ship-2", order.id)

    assert again == shipped
    assert len(redis.event_types()) == published


# ── 猶予期間 ─────────────────────────────────────


async def test_grace_period_expiry_after_cancel_is_noop(orchestrator, place_order, redis):
    order = await place_order()
    await orchestrator.cancel_order("req-cancel-1", order.id, "buyer-1", "no")
    published = len(redis.event_types())

    result = await orchestrator.expire_grace_period(order.id)

    assert result.status == OrderStatus.CANCELLED
    assert len(redis.event_types()) == published


async def test_grace_period_expiry_publishes_validation_request(orchestrator, place_order, redis):
    order = await _awaiting_validation(orchestrator, place_order, buyer_id="buyer-2")

    assert order.status == OrderStatus.AWAITING_VALIDATION
    [event] = redis.events("OrderAwaitingValidation")
    assert event["items"] == [
        {"menu_item_id": 1, "quantity": 2},
        {"menu_item_id": 2, "quantity": 3},
    ]
    [changed] = redis.events("OrderStatusChanged")
    assert changed["old_status"] == "Submitted"
    assert changed["new_status"] == "AwaitingValidation"


# ── 参照 ─────────────────────────────────────────


async def test_get_order_distinguishes_missing_from_foreign(orchestrator, place_order):
    order = await place_order()

    assert (await orchestrator.get_order(order.id, "buyer-1")).id == order.id
    assert (await orchestrator.get_order(order.id)).id == order.id
    with pytest.raises(OrderForbiddenError):
        await orchestrator.get_order(order.id, "buyer-2")
    with pytest.raises(OrderNotFoundError):
        await orchestrator.get_order(order.id + 1, "buyer-1")


async def test_cancel_foreign_order_is_forbidden(orchestrator, place_order):
    order = await place_order()

    with pytest.raises(OrderForbiddenError):
        await orchestrator.cancel_order("req-cancel-1", order.id, "buyer-2", "not mine")


async def test_concurrent_duplicate_create_yields_one_order(place_order, redis, repository):
    """同じ request_id の作成が並行しても、注文・イベントは 1 つで両方に同じ結果を返す。"""
    first, second = await asyncio.gather(place_order("dup"), place_order("dup"))

    assert first == second
    assert redis.event_types() == ["OrderCreated"]
    assert len(await repository.find_by_status(OrderStatus.SUBMITTED)) == 1
