"""Pytest fixtures for the order saga (SQLite-backed repository, recording Redis)."""

import json
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from order_saga.aggregate import Address, CardBrand, PaymentDetails
from order_saga.basket_client import BasketItem, CustomerBasket
from order_saga.idempotency import IdempotencyLedger
from order_saga.orchestrator import OrderOrchestrator
from order_saga.publisher import RedisEventPublisher
from order_saga.repository import OrderRepository
from order_saga.schema import init_schema


class RecordingRedis:
    """Redis Streams の代わりに XADD / XACK を記録するだけのダブル。"""

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        self.acked: list[tuple[str, str, str]] = []
        self.groups: list[tuple[str, str]] = []

    async def xadd(self, stream: str, fields: dict) -> str:
        entries = self.streams.setdefault(stream, [])
        message_id = f"{len(entries) + 1}-0"
        entries.append((message_id, dict(fields)))
        return message_id

    async def xack(self, stream: str, group: str, *ids: str) -> int:
        for message_id in ids:
            self.acked.append((stream, group, message_id))
        return len(ids)

    async def xgroup_create(self, stream, group, id="$", mkstream=False) -> bool:
        self.groups.append((stream, group))
        return True

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        return []

    async def aclose(self) -> None:
        pass

    def events(self, event_type: str | None = None, stream: str = "order_events") -> list[dict]:
        return [
            json.loads(fields["data"])
            for _, fields in self.streams.get(stream, [])
            if event_type is None or fields["event_type"] == event_type
        ]

    def event_types(self, stream: str = "order_events") -> list[str]:
        return [fields["event_type"] for _, fields in self.streams.get(stream, [])]


class FakeBasketClient:
    def __init__(self) -> None:
        self.baskets: dict[str, CustomerBasket] = {}
        self.calls = 0

    def put(self, buyer_id: str, *items: tuple[int, str, str, int]) -> None:
        """items: (menu_item_id, name, unit_price, quantity)"""
        self.baskets[buyer_id] = CustomerBasket(
            buyer_id=buyer_id,
            items=[
                BasketItem(
                    menu_item_id=menu_item_id,
                    menu_item_name=name,
                    menu_item_image_url=f"https://img.example/{menu_item_id}.png",
                    unit_price=Decimal(price),
                    quantity=quantity,
                )
                for menu_item_id, name, price, quantity in items
            ],
        )

    async def get_basket(self, buyer_id: str, token: str) -> CustomerBasket | None:
        self.calls += 1
        return self.baskets.get(buyer_id)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_schema(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def repository(session_factory) -> OrderRepository:
    return OrderRepository(session_factory)


@pytest.fixture
def ledger(session_factory) -> IdempotencyLedger:
    return IdempotencyLedger(session_factory)


@pytest.fixture
def redis() -> RecordingRedis:
    return RecordingRedis()


@pytest.fixture
def basket() -> FakeBasketClient:
    basket = FakeBasketClient()
    basket.put("buyer-1", (1, "Margherita", "10.00", 2))
    basket.put("buyer-2", (1, "Margherita", "10.00", 2), (2, "Tiramisu", "4.50", 3))
    return basket


@pytest.fixture
def orchestrator(repository, ledger, redis, basket) -> OrderOrchestrator:
    return OrderOrchestrator(
        repository,
        ledger,
        RedisEventPublisher(redis, "order_events"),
        basket,
    )


@pytest.fixture
def address() -> Address:
    return Address(
        street="1 Main St",
        city="Springfield",
        state="IL",
        country="US",
        zip_code="62701",
    )


@pytest.fixture
def payment() -> PaymentDetails:
    return PaymentDetails(
        card_brand=CardBrand.VISA,
        card_number="4111 1111 1111 1234",
        card_holder_name="Jane Doe",
        card_security_number="123",
        expiration_month=12,
        expiration_year=2099,
    )


@pytest.fixture
def place_order(orchestrator, address, payment):
    """buyer の注文を作成するヘルパー。"""

    async def _place(request_id: str = "req-create-1", buyer_id: str = "buyer-1"):
        return await orchestrator.create_order(
            request_id=request_id,
            buyer_id=buyer_id,
            buyer_email=f"{buyer_id}@example.com",
            buyer_name=buyer_id.title(),
            delivery_address=address,
            payment_details=payment,
            token="token",
        )

    return _place
