"""
Payment Service — FastAPI エントリーポイント

決済ゲートウェイの代役。決済ごとに Payment を記録し、
成功した決済は RabbitMQ の transaction_queue に取引メッセージとして流す。

┌──────────────┐  POST /api/payments  ┌─────────────────┐
│ Order Service │ ──────────────────▶ │ Payment Service │
└──────────────┘                      └────────┬────────┘
                                               │ transaction_queue (durable)
                                      ┌────────▼────────────┐
                                      │ Transaction Worker  │
                                      └─────────────────────┘
"""

import logging
from contextlib import asynccontextmanager
from typing import Literal

from aio_pika.exceptions import AMQPError
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.db import create_database, init_schema
from services.common.errors import ErrorKind, ServiceError, install_error_handlers
from services.common.logconfig import configure_logging
from services.common.messaging import RabbitMQConnection
from services.common.responses import api_response, pagination

from . import commands, config, queries
from .gateway import SimulatedGateway
from .publisher import TransactionPublisher
from .tables import metadata

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging("payment-service")
    engine, session_factory = create_database(config.DATABASE_URL)
    await init_schema(engine, metadata)

    connection = RabbitMQConnection(config.RABBITMQ_URL)
    publisher = TransactionPublisher(connection, config.TRANSACTION_QUEUE)
    try:
        await connection.connect()
        await publisher.setup()
    except (AMQPError, OSError):
        # ブローカーが無くても決済は受け付ける。発行は次回以降に再試行される
        logger.exception("Failed to connect to RabbitMQ")

    app.state.session_factory = session_factory
    app.state.publisher = publisher
    app.state.gateway = SimulatedGateway(
        success_rate=config.SUCCESS_RATE,
        min_delay=config.MIN_DELAY,
        max_delay=config.MAX_DELAY,
        max_amount=config.MAX_AMOUNT,
        min_amount=config.MIN_AMOUNT,
    )
    yield
    await publisher.close()
    await connection.close()
    await engine.dispose()


app = FastAPI(title="Payment Service", lifespan=lifespan)
install_error_handlers(app)


# ── Dependencies ─────────────────────────────────

def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def get_gateway(request: Request) -> SimulatedGateway:
    return request.app.state.gateway


def get_publisher(request: Request) -> TransactionPublisher | None:
    return getattr(request.app.state, "publisher", None)


# ── Request Models ───────────────────────────────

PaymentMethod = Literal["credit_card", "debit_card", "paypal", "bank_transfer", "cash_on_delivery"]


class PaymentRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    amount: float = Field(gt=0, allow_inf_nan=False)
    payment_method: PaymentMethod = "bank_transfer"


# ── Command Endpoints ────────────────────────────

@app.post("/api/payments")
async def create_payment(
    req: PaymentRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: SimulatedGateway = Depends(get_gateway),
    publisher: TransactionPublisher | None = Depends(get_publisher),
):
    """決済処理"""
    async with session_factory() as session:
        result = await commands.process_payment(
            session,
            gateway,
            publisher,
            req.customer_id,
            req.order_id,
            req.product_id,
            req.amount,
            req.payment_method,
        )

    if not result.outcome.success:
        return JSONResponse(
            status_code=400,
            content=api_response(
                False, message="Payment processing failed", error=result.outcome.error
            ),
        )
    return JSONResponse(
        status_code=201,
        content=api_response(
            True,
            data={
                "success": True,
                "paymentId": result.payment["paymentId"],
                "transactionId": result.payment["transactionId"],
                "message": "Payment processed successfully",
            },
            message="Payment processed successfully",
        ),
    )


# ── Query Endpoints ──────────────────────────────

@app.get("/api/payments")
async def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        items, total = await queries.list_payments(session, page, limit, status=status)
    return api_response(
        True,
        data={"payments": items, "pagination": pagination(page, limit, total)},
        message="Payments retrieved successfully",
    )


@app.get("/api/payments/customer/{customer_id}")
async def list_customer_payments(
    customer_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        items, total = await queries.list_payments(session, page, limit, customer_id=customer_id)
    return api_response(
        True,
        data={"payments": items, "pagination": pagination(page, limit, total)},
        message="Payments retrieved successfully",
    )


@app.get("/api/payments/order/{order_id}")
async def get_order_payment(
    order_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        payment = await queries.get_payment_by_order(session, order_id)
    if not payment:
        raise ServiceError("Payment not found for this order", kind=ErrorKind.NOT_FOUND)
    return api_response(True, data=payment, message="Payment retrieved successfully")


@app.get("/api/payments/{payment_id}")
async def get_payment(
    payment_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        payment = await queries.get_payment(session, payment_id)
    if not payment:
        raise ServiceError("Payment not found", kind=ErrorKind.NOT_FOUND)
    return api_response(True, data=payment, message="Payment retrieved successfully")


@app.get("/health")
async def health(request: Request):
    publisher = get_publisher(request)
    return {
        "status": "ok",
        "service": "payment-service",
        "rabbitmq": "connected" if publisher and publisher.connection.is_connected else "disconnected",
    }
