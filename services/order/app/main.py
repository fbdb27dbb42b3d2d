"""
Order Service — FastAPI エントリーポイント

注文のライフサイクルを管理し、注文作成時には Saga オーケストレーターを
通じて Customer / Product / Payment サービスを順に呼び出す。

接続ハンドル (DB エンジン・Redis・httpx) はグローバル変数に置かず、
lifespan で作成して app.state に保持し、依存関数経由で渡す。
"""

from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.db import create_database, init_schema
from services.common.errors import ErrorKind, ServiceError, install_error_handlers
from services.common.logconfig import configure_logging
from services.common.responses import api_response, pagination

from . import commands, config, queries
from .clients import CustomerClient, PaymentClient, ProductClient
from .orchestrator import OrderSagaOrchestrator
from .tables import metadata


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging("order-service")
    engine, session_factory = create_database(config.DATABASE_URL)
    await init_schema(engine, metadata)
    redis = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    http = httpx.AsyncClient(headers={"Content-Type": "application/json"})

    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.orchestrator = OrderSagaOrchestrator(
        session_factory,
        CustomerClient(http, config.CUSTOMER_SERVICE_URL, config.LOOKUP_TIMEOUT),
        ProductClient(http, config.PRODUCT_SERVICE_URL, config.LOOKUP_TIMEOUT),
        PaymentClient(http, config.PAYMENT_SERVICE_URL, config.PAYMENT_TIMEOUT),
        redis=redis,
        quantity=config.ORDER_QUANTITY,
    )
    yield
    await http.aclose()
    await redis.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app)


# ── Dependencies ─────────────────────────────────

def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def get_redis(request: Request) -> aioredis.Redis | None:
    return getattr(request.app.state, "redis", None)


def get_orchestrator(request: Request) -> OrderSagaOrchestrator:
    return request.app.state.orchestrator


def get_transitions() -> dict[str, set[str]] | None:
    return config.STATUS_TRANSITIONS


# ── Request / Response Models ────────────────────

class ShippingAddress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    street: str | None = Field(None, max_length=200)
    city: str | None = Field(None, max_length=100)
    state: str | None = Field(None, max_length=100)
    zip_code: str | None = Field(None, max_length=20)
    country: str | None = Field(None, max_length=100)


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    amount: float = Field(gt=0, allow_inf_nan=False)
    shipping_address: ShippingAddress | None = None


class UpdateStatusRequest(BaseModel):
    status: str


# ── Command Endpoints ────────────────────────────

@app.post("/api/orders")
async def create_order(
    req: CreateOrderRequest,
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    """注文作成 (Saga を実行する)"""
    address = req.shipping_address.model_dump(by_alias=True) if req.shipping_address else None
    result = await orchestrator.execute(req.customer_id, req.product_id, req.amount, address)
    if not result.success:
        return JSONResponse(
            status_code=result.error.status_code,
            content=api_response(
                False,
                data=result.order,
                message=result.error.message,
                error=result.error.error,
            ),
        )
    return JSONResponse(
        status_code=201,
        content=api_response(
            True,
            data=result.order,
            message="Order created and payment processed successfully",
            warnings=result.warnings or None,
        ),
    )


@app.patch("/api/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    redis: aioredis.Redis | None = Depends(get_redis),
    transitions: dict[str, set[str]] | None = Depends(get_transitions),
):
    """ステータス更新 (遷移表に従う)"""
    async with session_factory() as session:
        await commands.update_status(session, redis, order_id, req.status, transitions)
        order = await queries.get_order(session, order_id)
    return api_response(True, data=order, message="Order status updated successfully")


@app.patch("/api/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文キャンセル (pending / confirmed のみ)"""
    async with session_factory() as session:
        await commands.cancel_order(session, redis, order_id, reason="Cancelled by request")
        order = await queries.get_order(session, order_id)
    return api_response(True, data=order, message="Order cancelled successfully")


# ── Query Endpoints ──────────────────────────────

@app.get("/api/orders")
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        orders, total = await queries.list_orders(session, page, limit, status=status)
    return api_response(
        True,
        data={"orders": orders, "pagination": pagination(page, limit, total)},
        message="Orders retrieved successfully",
    )


@app.get("/api/orders/customer/{customer_id}")
async def list_customer_orders(
    customer_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        orders, total = await queries.list_orders(session, page, limit, customer_id=customer_id)
    return api_response(
        True,
        data={"orders": orders, "pagination": pagination(page, limit, total)},
        message="Orders retrieved successfully",
    )


@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        order = await queries.get_order(session, order_id)
    if not order:
        raise ServiceError("Order not found", kind=ErrorKind.NOT_FOUND)
    return api_response(True, data=order, message="Order retrieved successfully")


@app.get("/api/orders/{order_id}/events")
async def get_order_events(
    order_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """指定注文のイベント履歴"""
    async with session_factory() as session:
        events = await queries.get_order_history(session, order_id)
    if not events:
        raise ServiceError("Order not found", kind=ErrorKind.NOT_FOUND)
    return api_response(True, data=events)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
