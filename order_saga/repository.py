"""
Order Saga Service — 注文リポジトリ

注文集約の読み書きを担当する。
更新は version 列による楽観的ロック (compare-and-swap) で行う:

    UPDATE orders SET ..., version = version + 1
    WHERE id = :id AND version = :expected

該当行が 0 件なら別のハンドラが先に更新している → ConcurrencyConflictError。
同じ注文に対して並行に動いたハンドラのうち、成功するのは高々 1 つ。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .aggregate import (
    CENTS,
    Address,
    CardBrand,
    NewOrder,
    Order,
    OrderHistoryEntry,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    compute_total,
)
from .errors import ConcurrencyConflictError, DuplicateRequestError
from .schema import order_history, order_items, orders

logger = logging.getLogger(__name__)


def utc(value: datetime | str) -> datetime:
    """SQLite はタイムゾーンを保持しないので UTC として補う。"""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS)


class OrderRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def find_by_id(self, order_id: int) -> Order | None:
        async with self._session_factory() as session:
            return await self._load(session, orders.c.id == order_id)

    async def find_by_request_id(self, request_id: str) -> Order | None:
        async with self._session_factory() as session:
            return await self._load(session, orders.c.request_id == request_id)

    async def find_by_status(self, status: OrderStatus) -> list[Order]:
        """指定ステータスの注文を古い順に返す(猶予期間タイマーの復旧用)。"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(orders.c.id)
                .where(orders.c.status == status.value)
                .order_by(orders.c.created_at.asc(), orders.c.id.asc())
            )
            ids = [row.id for row in result.fetchall()]
            found = []
            for order_id in ids:
                order = await self._load(session, orders.c.id == order_id)
                if order is not None:
                    found.append(order)
            return found

    async def create(self, new_order: NewOrder, now: datetime) -> Order:
        """
        注文を Submitted で作成する。

        1. orders に INSERT (合計金額は明細から計算)
        2. order_items に明細を INSERT
        3. order_history に "Order submitted" を追記

        同じ request_id の注文が並行して先に保存されていた場合は
        DuplicateRequestError (呼び出し側は既存の注文を読み直す)。
        """
        description = "Order submitted"

        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    self._insert_order(new_order, description, now)
                )
            except IntegrityError as exc:
                await session.rollback()
                if await self.find_by_request_id(new_order.request_id) is None:
                    raise
                raise DuplicateRequestError(new_order.request_id) from exc
            order_id = result.scalar_one()

            await session.execute(
                insert(order_items),
                [
                    {
                        "order_id": order_id,
                        "menu_item_id": item.menu_item_id,
                        "menu_item_name": item.menu_item_name,
                        "picture_url": item.picture_url,
                        "unit_price": item.unit_price,
                        "quantity": item.quantity,
                    }
                    for item in new_order.items
                ],
            )
            await self._append_history(
                session, order_id, OrderStatus.SUBMITTED, description, now
            )

            order = await self._load(session, orders.c.id == order_id)
            await session.commit()

        logger.info("Created order %s (request_id=%s)", order_id, new_order.request_id)
        return order

    async def update(self, order: Order) -> Order:
        """
        集約の変更を保存する。order.version は読み込み時の値であること。

        ステータス・説明・合計金額・明細を更新し、履歴を 1 行追記する。
        明細は削除(在庫 0)と数量変更(部分的な在庫不足)のみ発生する。
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == order.id, orders.c.version == order.version)
                .values(
                    status=order.status.value,
                    total_price=compute_total(order.items),
                    description=order.description,
                    updated_at=order.updated_at,
                    version=order.version + 1,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ConcurrencyConflictError(order.id, order.version)

            kept_ids = [item.id for item in order.items if item.id is not None]
            await session.execute(
                delete(order_items).where(
                    order_items.c.order_id == order.id,
                    order_items.c.id.not_in(kept_ids),
                )
            )
            for item in order.items:
                await session.execute(
                    update(order_items)
                    .where(order_items.c.id == item.id)
                    .values(quantity=item.quantity, unit_price=item.unit_price)
                )

            await self._append_history(
                session, order.id, order.status, order.description, order.updated_at
            )

            saved = await self._load(session, orders.c.id == order.id)
            await session.commit()
        return saved

    # ── 内部ヘルパー ─────────────────────────────

    @staticmethod
    def _insert_order(new_order: NewOrder, description: str, now: datetime):
        address = new_order.delivery_address
        payment = new_order.payment_method
        return (
            insert(orders)
            .values(
                request_id=new_order.request_id,
                buyer_id=new_order.buyer_id,
                buyer_email=new_order.buyer_email,
                buyer_name=new_order.buyer_name,
                status=OrderStatus.SUBMITTED.value,
                total_price=compute_total(new_order.items),
                currency=new_order.currency,
                description=description,
                street=address.street,
                city=address.city,
                state=address.state,
                country=address.country,
                zip_code=address.zip_code,
                card_brand=payment.card_brand.value if payment else None,
                card_holder_name=payment.card_holder_name if payment else None,
                card_last_four=payment.card_last_four if payment else None,
                card_expiration_month=payment.expiration_month if payment else None,
                card_expiration_year=payment.expiration_year if payment else None,
                version=1,
                created_at=now,
                updated_at=now,
            )
            .returning(orders.c.id)
        )

    async def _append_history(
        self,
        session: AsyncSession,
        order_id: int,
        status: OrderStatus,
        description: str | None,
        now: datetime,
    ) -> None:
        await session.execute(
            insert(order_history).values(
                order_id=order_id,
                status=status.value,
                description=description,
                created_at=now,
            )
        )

    async def _load(self, session: AsyncSession, condition) -> Order | None:
        result = await session.execute(select(orders).where(condition))
        row = result.fetchone()
        if not row:
            return None

        item_rows = await session.execute(
            select(order_items)
            .where(order_items.c.order_id == row.id)
            .order_by(order_items.c.id.asc())
        )
        history_rows = await session.execute(
            select(order_history)
            .where(order_history.c.order_id == row.id)
            .order_by(order_history.c.id.asc())
        )
        return _to_order(row, item_rows.fetchall(), history_rows.fetchall())


def _to_order(row, item_rows, history_rows) -> Order:
    payment_method = None
    if row.card_brand is not None:
        payment_method = PaymentMethod(
            card_brand=CardBrand(row.card_brand),
            card_holder_name=row.card_holder_name,
            card_last_four=row.card_last_four,
            expiration_month=row.card_expiration_month,
            expiration_year=row.card_expiration_year,
        )

    return Order(
        id=row.id,
        request_id=row.request_id,
        buyer_id=row.buyer_id,
        buyer_email=row.buyer_email,
        buyer_name=row.buyer_name,
        status=OrderStatus(row.status),
        delivery_address=Address(
            street=row.street,
            city=row.city,
            state=row.state,
            country=row.country,
            zip_code=row.zip_code,
        ),
        items=[
            OrderItem(
                id=item.id,
                menu_item_id=item.menu_item_id,
                menu_item_name=item.menu_item_name,
                picture_url=item.picture_url,
                unit_price=money(item.unit_price),
                quantity=item.quantity,
            )
            for item in item_rows
        ],
        payment_method=payment_method,
        total_price=money(row.total_price),
        currency=row.currency,
        description=row.description,
        history=[
            OrderHistoryEntry(
                status=OrderStatus(entry.status),
                description=entry.description,
                created_at=utc(entry.created_at),
            )
            for entry in history_rows
        ],
        version=row.version,
        created_at=utc(row.created_at),
        updated_at=utc(row.updated_at),
    )
