"""
Order Saga Service — FastAPI エントリーポイント

Command (POST) と Query (GET) のエンドポイントを分離する。
起動時に以下をまとめて立ち上げる:

  - DB エンジン / テーブル作成
  - Redis (イベント発行・購読)
  - Basket Service 用 httpx クライアント
  - Redis Streams サブスクライバー (バックグラウンドタスク)
  - 猶予期間タイマーの復旧スイープ

認証は前段のゲートウェイが行い、購入者情報は X-Buyer-* ヘッダで受け取る。
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import queries
from .aggregate import Address, CardBrand, Order, OrderStatus, PaymentDetails
from .basket_client import HttpBasketClient
from .config import Settings
from .errors import (
    ConcurrencyConflictError,
    IdempotencyKeyReuseError,
    IllegalTransitionError,
    OrderForbiddenError,
    OrderNotFoundError,
    OrderValidationError,
)
from .events import RejectedItem
from .grace_period import GracePeriodScheduler
from .idempotency import IdempotencyLedger
from .notifications import LoggingNotificationService
from .orchestrator import OrderOrchestrator
from .publisher import RedisEventPublisher
from .repository import OrderRepository
from .schema import init_schema
from .subscriber import EventRouter, OrderEventConsumer

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    OrderValidationError: 400,
    OrderForbiddenError: 403,
    OrderNotFoundError: 404,
    IllegalTransitionError: 409,
    ConcurrencyConflictError: 409,
    IdempotencyKeyReuseError: 422,
}


def log_consumer_exit(task: asyncio.Task) -> None:
    """購読タスクが例外で終了したらログに残す。"""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Event consumer stopped unexpectedly", exc_info=exc)


# ── Request Models ───────────────────────────────


class CreateOrderRequest(BaseModel):
    street: str
    city: str
    state: str
    country: str
    zip_code: str
    currency: str = "USD"
    payment_details: PaymentDetails


class CancelOrderRequest(BaseModel):
    reason: str = "Cancelled by user"


class StockRejectedRequest(BaseModel):
    rejected_items: list[RejectedItem]


def create_app(
    settings: Settings | None = None,
    redis: aioredis.Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = settings or Settings.from_env()
        logging.basicConfig(
            level=config.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        engine = create_async_engine(config.database_url, echo=False)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        await init_schema(engine)

        redis_pool = redis or aioredis.from_url(config.redis_url, decode_responses=True)
        client = http_client or httpx.AsyncClient(timeout=config.http_timeout_seconds)

        repository = OrderRepository(async_session)
        scheduler = GracePeriodScheduler(config.grace_period_seconds)
        orchestrator = OrderOrchestrator(
            repository,
            IdempotencyLedger(async_session),
            RedisEventPublisher(redis_pool, config.order_events_stream),
            HttpBasketClient(client, config.basket_service_url),
            grace_period=scheduler,
        )
        app.state.orchestrator = orchestrator
        app.state.async_session = async_session

        await scheduler.recover(repository)

        shutdown_event = asyncio.Event()
        subscriber_task = None
        if config.inbound_streams:
            consumer = OrderEventConsumer(
                redis_pool,
                EventRouter(orchestrator, repository, LoggingNotificationService()),
                streams=config.inbound_streams,
                group=config.consumer_group,
                consumer=config.consumer_name,
                dead_letter_stream=config.dead_letter_stream,
                handler_timeout=config.event_handler_timeout_seconds,
            )
            subscriber_task = asyncio.create_task(consumer.run(shutdown_event))
            subscriber_task.add_done_callback(log_consumer_exit)

        yield

        shutdown_event.set()
        if subscriber_task is not None:
            subscriber_task.cancel()
            await asyncio.gather(subscriber_task, return_exceptions=True)
        await scheduler.shutdown()
        if http_client is None:
            await client.aclose()
        if redis is None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Saga Service", lifespan=lifespan)

    async def handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=ERROR_STATUS[type(exc)], content={"detail": str(exc)})

    for error_type in ERROR_STATUS:
        app.add_exception_handler(error_type, handle_domain_error)

    # ── Command Endpoints (Write 側) ─────────────────

    @app.post("/commands/orders", status_code=201, response_model=Order)
    async def cmd_create_order(
        req: CreateOrderRequest,
        request: Request,
        x_request_id: str = Header(),
        x_buyer_id: str = Header(),
        x_buyer_email: str = Header(""),
        x_buyer_name: str | None = Header(None),
        authorization: str = Header(""),
    ):
        """注文作成コマンド"""
        orchestrator: OrderOrchestrator = request.app.state.orchestrator
        return await orchestrator.create_order(
            request_id=x_request_id,
            buyer_id=x_buyer_id,
            buyer_email=x_buyer_email,
            buyer_name=x_buyer_name or x_buyer_id,
            delivery_address=Address(
                street=req.street,
                city=req.city,
                state=req.state,
                country=req.country,
                zip_code=req.zip_code,
            ),
            payment_details=req.payment_details,
            token=authorization.removeprefix("Bearer ").strip(),
            currency=req.currency,
        )

    @app.post("/commands/orders/{order_id}/cancel", response_model=Order)
    async def cmd_cancel_order(
        order_id: int,
        request: Request,
        req: CancelOrderRequest | None = None,
        x_request_id: str = Header(),
        x_buyer_id: str = Header(),
    ):
        """注文キャンセルコマンド(購入者)"""
        reason = req.reason if req else "Cancelled by user"
        return await request.app.state.orchestrator.cancel_order(
            x_request_id, order_id, x_buyer_id, reason
        )

    @app.post("/commands/orders/{order_id}/ship", response_model=Order)
    async def cmd_ship_order(order_id: int, request: Request, x_request_id: str = Header()):
        """出荷コマンド(管理者)"""
        order = await request.app.state.orchestrator.ship_order(x_request_id, order_id)
        if order is None:
            raise HTTPException(404, "Order not found")
        return order

    @app.post("/commands/orders/{order_id}/stock-confirmed", response_model=Order)
    async def cmd_confirm_stock(order_id: int, request: Request):
        """在庫確認(管理者による手動トリガー)"""
        return await request.app.state.orchestrator.confirm_stock(order_id)

    @app.post("/commands/orders/{order_id}/stock-rejected", response_model=Order)
    async def cmd_reject_stock(order_id: int, req: StockRejectedRequest, request: Request):
        """在庫不足(管理者による手動トリガー)"""
        return await request.app.state.orchestrator.process_stock_rejection(
            order_id, req.rejected_items
        )

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/queries/orders", response_model=queries.PaginatedOrders)
    async def query_list_orders(
        request: Request,
        offset: int = 0,
        limit: int = 10,
        status: OrderStatus | None = None,
        x_buyer_id: str = Header(),
    ):
        """購入者自身の注文一覧"""
        async with request.app.state.async_session() as session:
            return await queries.list_orders(session, offset, limit, status, x_buyer_id)

    @app.get("/queries/orders/all", response_model=queries.PaginatedOrders)
    async def query_list_all_orders(
        request: Request,
        offset: int = 0,
        limit: int = 20,
        status: OrderStatus | None = None,
        buyer_id: str | None = None,
    ):
        """全注文一覧(管理者)"""
        async with request.app.state.async_session() as session:
            return await queries.list_orders(session, offset, limit, status, buyer_id)

    @app.get("/queries/orders/{order_id}", response_model=Order)
    async def query_get_order(order_id: int, request: Request, x_buyer_id: str = Header()):
        """指定注文を取得(他の購入者の注文は 403)"""
        return await request.app.state.orchestrator.get_order(order_id, x_buyer_id)

    @app.get("/queries/card-brands")
    async def query_card_brands():
        return [{"id": brand.value, "name": brand.display_name} for brand in CardBrand]

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-saga-service"}

    return app


app = create_app()
