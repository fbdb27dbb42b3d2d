"""
Transaction Worker — FastAPI エントリーポイント

transaction_queue をバックグラウンドで消費して監査レコードを残し、
その参照用 Query API だけを提供する。Command エンドポイントは持たない。

┌─────────────────┐  transaction_queue  ┌────────────────────┐
│ Payment Service │ ───── RabbitMQ ───▶ │ Transaction Worker │
└─────────────────┘   (durable)         └────────┬───────────┘
                                                 │
                                        ┌────────▼───────────┐
                                        │ transaction_history │
                                        └────────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.db import create_database, init_schema
from services.common.errors import ErrorKind, ServiceError, install_error_handlers
from services.common.logconfig import configure_logging
from services.common.messaging import RabbitMQConnection
from services.common.responses import api_response, pagination

from . import config, queries
from .consumer import TransactionConsumer
from .tables import metadata

logger = logging.getLogger(__name__)


async def run_consumer(
    consumer: TransactionConsumer,
    shutdown_event: asyncio.Event,
    retry_interval: float = 5.0,
) -> None:
    """
    shutdown_event がセットされるまでコンシューマを動かす。
    ブローカーに繋がらない間やチャネルが途中で閉じた場合は
    retry_interval ごとに再試行する。キャンセルだけはそのまま伝える。
    """
    while not shutdown_event.is_set():
        try:
            await consumer.start()
        except Exception:
            logger.exception("Consumer stopped, retrying in %.1fs", retry_interval)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=retry_interval)
        except asyncio.TimeoutError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にコンシューマをバックグラウンドタスクとして開始する。"""
    configure_logging("transaction-worker")
    engine, session_factory = create_database(config.DATABASE_URL)
    await init_schema(engine, metadata)

    connection = RabbitMQConnection(config.RABBITMQ_URL)
    consumer = TransactionConsumer(
        connection, session_factory, config.TRANSACTION_QUEUE, config.PREFETCH_COUNT
    )
    app.state.session_factory = session_factory
    app.state.connection = connection

    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(run_consumer(consumer, shutdown_event))
    yield
    shutdown_event.set()
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass
    await consumer.stop()
    await connection.close()
    await engine.dispose()


app = FastAPI(title="Transaction Worker", lifespan=lifespan)
install_error_handlers(app)


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


# ── Query Endpoints (Read 側のみ) ─────────────────

@app.get("/api/transactions/order/{order_id}")
async def list_order_transactions(
    order_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        items, total = await queries.list_transactions(session, page, limit, order_id=order_id)
    return api_response(
        True,
        data={"transactions": items, "pagination": pagination(page, limit, total)},
        message="Transactions retrieved successfully",
    )


@app.get("/api/transactions/customer/{customer_id}")
async def list_customer_transactions(
    customer_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        items, total = await queries.list_transactions(
            session, page, limit, customer_id=customer_id
        )
    return api_response(
        True,
        data={"transactions": items, "pagination": pagination(page, limit, total)},
        message="Transactions retrieved successfully",
    )


@app.get("/api/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        transaction = await queries.get_transaction(session, transaction_id)
    if not transaction:
        raise ServiceError("Transaction not found", kind=ErrorKind.NOT_FOUND)
    return api_response(True, data=transaction, message="Transaction retrieved successfully")


@app.get("/health")
async def health(request: Request):
    connection = getattr(request.app.state, "connection", None)
    return {
        "status": "ok",
        "service": "transaction-worker",
        "rabbitmq": "connected" if connection and connection.is_connected else "disconnected",
    }
