"""
Order Saga Service — クエリハンドラ (Read 側)

一覧表示用のサマリーをページング付きで返す。
item_count は明細の数量合計。新しい注文から順に並べる。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderStatus
from .repository import money, utc
from .schema import order_items, orders

MAX_PAGE_SIZE = 100


class OrderSummary(BaseModel):
    id: int
    buyer_id: str
    status: OrderStatus
    total_price: Decimal
    currency: str
    item_count: int
    description: str | None
    created_at: datetime


class PaginatedOrders(BaseModel):
    orders: list[OrderSummary]
    total: int
    offset: int
    limit: int


async def list_orders(
    session: AsyncSession,
    offset: int = 0,
    limit: int = 10,
    status: OrderStatus | None = None,
    buyer_id: str | None = None,
) -> PaginatedOrders:
    """購入者・ステータスで絞り込んだ注文一覧を返す。"""
    offset = max(offset, 0)
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    conditions = []
    if buyer_id is not None:
        conditions.append(orders.c.buyer_id == buyer_id)
    if status is not None:
        conditions.append(orders.c.status == status.value)

    total = await session.scalar(
        select(func.count()).select_from(orders).where(*conditions)
    )

    item_count = func.coalesce(func.sum(order_items.c.quantity), 0).label("item_count")
    result = await session.execute(
        select(
            orders.c.id,
            orders.c.buyer_id,
            orders.c.status,
            orders.c.total_price,
            orders.c.currency,
            orders.c.description,
            orders.c.created_at,
            item_count,
        )
        .select_from(orders.outerjoin(order_items, order_items.c.order_id == orders.c.id))
        .where(*conditions)
        .group_by(orders.c.id)
        .order_by(orders.c.created_at.desc(), orders.c.id.desc())
        .offset(offset)
        .limit(limit)
    )

    return PaginatedOrders(
        orders=[
            OrderSummary(
                id=row.id,
                buyer_id=row.buyer_id,
                status=OrderStatus(row.status),
                total_price=money(row.total_price),
                currency=row.currency,
                item_count=int(row.item_count),
                description=row.description,
                created_at=utc(row.created_at),
            )
            for row in result.fetchall()
        ],
        total=total or 0,
        offset=offset,
        limit=limit,
    )
