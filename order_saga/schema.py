"""
Order Saga Service — テーブル定義

PostgreSQL (本番) と SQLite (テスト) の両方で動くよう
SQLAlchemy Core のテーブル定義を使う。

    orders               注文ヘッダ (version 列で楽観的ロック)
    order_items          注文明細 (注文時点のスナップショット)
    order_history        ステータス履歴 (追記のみ)
    processed_requests   冪等性台帳 (request_id 一意、追記のみ)
"""

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

# SQLite の自動採番は INTEGER PRIMARY KEY のみ
Id = BigInteger().with_variant(Integer(), "sqlite")

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Id, primary_key=True, autoincrement=True),
    Column("request_id", String(255), nullable=False, unique=True),
    Column("buyer_id", String(255), nullable=False, index=True),
    Column("buyer_email", String(255), nullable=False),
    Column("buyer_name", String(255), nullable=False),
    Column("status", String(50), nullable=False, index=True),
    Column("total_price", Numeric(19, 4), nullable=False),
    Column("currency", String(3), nullable=False, default="USD"),
    Column("description", Text, nullable=True),
    Column("street", String(255), nullable=False),
    Column("city", String(255), nullable=False),
    Column("state", String(255), nullable=False),
    Column("country", String(255), nullable=False),
    Column("zip_code", String(50), nullable=False),
    Column("card_brand", String(50), nullable=True),
    Column("card_holder_name", String(255), nullable=True),
    Column("card_last_four", String(4), nullable=True),
    Column("card_expiration_month", Integer, nullable=True),
    Column("card_expiration_year", Integer, nullable=True),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Id, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        Id,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("menu_item_id", BigInteger, nullable=False),
    Column("menu_item_name", String(255), nullable=False),
    Column("picture_url", Text, nullable=False),
    Column("unit_price", Numeric(19, 4), nullable=False),
    Column("quantity", Integer, nullable=False),
)

order_history = Table(
    "order_history",
    metadata,
    Column("id", Id, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        Id,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("status", String(50), nullable=False),
    Column("description", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

processed_requests = Table(
    "processed_requests",
    metadata,
    Column("request_id", String(255), primary_key=True),
    Column("command_type", String(50), nullable=False),
    Column("result", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def init_schema(engine: AsyncEngine) -> None:
    """起動時にテーブルを作成する(既存テーブルはそのまま)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
