"""
Tests for TransactionConsumer's ack/nack policy and queue setup.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aio_pika.exceptions import AMQPConnectionError
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from services.transaction_worker.app import main as worker_main
from services.transaction_worker.app.consumer import TransactionConsumer
from services.transaction_worker.app.ingestion import IngestResult
from services.transaction_worker.app.tables import metadata, transaction_history


@pytest_asyncio.fixture
async def worker_db(database):
    return await database(metadata)


def incoming(body) -> MagicMock:
    message = MagicMock()
    message.body = body if isinstance(body, bytes) else json.dumps(body).encode()
    message.message_id = "msg-1"
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    return message


def transaction(transaction_id: str = "TXN_1", **overrides) -> dict:
    body = {
        "customerId": "CUST_1",
        "orderId": "order-1",
        "productId": "PROD_1",
        "amount": 50000,
        "transactionId": transaction_id,
        "timestamp": "2026-03-01T12:00:00+00:00",
    }
    body.update(overrides)
    return body


async def record_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(transaction_history))


class FakeQueueIterator:
    """Stands in for aio-pika's QueueIterator: yields preset messages then stops."""

    def __init__(self, messages) -> None:
        self._messages = list(messages)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)


def fake_connection(messages) -> tuple[MagicMock, MagicMock]:
    queue = MagicMock()
    queue.iterator = MagicMock(return_value=FakeQueueIterator(messages))
    channel = MagicMock()
    channel.is_closed = False
    channel.close = AsyncMock()
    channel.declare_queue = AsyncMock(return_value=queue)
    connection = MagicMock()
    connection.channel = AsyncMock(return_value=channel)
    return connection, channel


class TestAckPolicy:
    @pytest.mark.asyncio
    async def test_new_transaction_is_stored_and_acked(self, worker_db) -> None:
        consumer = TransactionConsumer(MagicMock(), worker_db, "transaction_queue")
        message = incoming(transaction())

        result = await consumer.handle_message(message)

        assert result is IngestResult.INSERTED
        message.ack.assert_awaited_once()
        message.nack.assert_not_awaited()
        assert await record_count(worker_db) == 1

    @pytest.mark.asyncio
    async def test_duplicate_delivery_yields_one_record(self, worker_db) -> None:
        consumer = TransactionConsumer(MagicMock(), worker_db, "transaction_queue")
        first, second = incoming(transaction("TXN_1")), incoming(transaction("TXN_1"))

        assert await consumer.handle_message(first) is IngestResult.INSERTED
        assert await consumer.handle_message(second) is IngestResult.DUPLICATE

        first.ack.assert_awaited_once()
        second.ack.assert_awaited_once()
        assert await record_count(worker_db) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b"not json at all",
            transaction(transactionId=""),
            transaction(amount=-10),
            {"orderId": "order-1"},
        ],
    )
    async def test_invalid_message_is_acked_and_dropped(self, worker_db, body) -> None:
        consumer = TransactionConsumer(MagicMock(), worker_db, "transaction_queue")
        message = incoming(body)

        assert await consumer.handle_message(message) is None

        message.ack.assert_awaited_once()
        message.nack.assert_not_awaited()
        assert await record_count(worker_db) == 0

    @pytest.mark.asyncio
    async def test_persistence_error_is_nacked_without_requeue(self) -> None:
        session = MagicMock()
        session.scalar = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("db down")))
        session_factory = MagicMock()
        session_factory.return_value.__aenter__ = AsyncMock(return_value=session)
        session_factory.return_value.__aexit__ = AsyncMock(return_value=False)
        consumer = TransactionConsumer(MagicMock(), session_factory, "transaction_queue")
        message = incoming(transaction())

        assert await consumer.handle_message(message) is None

        message.nack.assert_awaited_once_with(requeue=False)
        message.ack.assert_not_awaited()


class TestConsumeLoop:
    @pytest.mark.asyncio
    async def test_uses_prefetch_one_and_durable_queue(self, worker_db) -> None:
        connection, channel = fake_connection([])
        consumer = TransactionConsumer(connection, worker_db, "transaction_queue")

        await consumer.start()

        connection.channel.assert_awaited_once_with(prefetch_count=1)
        channel.declare_queue.assert_awaited_once_with(
            "transaction_queue", durable=True, exclusive=False, auto_delete=False
        )

    @pytest.mark.asyncio
    async def test_drains_queue_in_order(self, worker_db) -> None:
        messages = [
            incoming(transaction("TXN_1")),
            incoming(transaction("TXN_1")),
            incoming(b"{broken"),
            incoming(transaction("TXN_2")),
        ]
        connection, _ = fake_connection(messages)
        consumer = TransactionConsumer(connection, worker_db, "transaction_queue")

        await consumer.start()

        assert all(m.ack.await_count == 1 for m in messages)
        assert await record_count(worker_db) == 2

    @pytest.mark.asyncio
    async def test_stop_closes_channel(self, worker_db) -> None:
        connection, channel = fake_connection([])
        consumer = TransactionConsumer(connection, worker_db, "transaction_queue")
        await consumer.start()

        await consumer.stop()

        channel.close.assert_awaited_once()


class TestRunConsumer:
    @pytest.mark.asyncio
    async def test_retries_until_shutdown(self) -> None:
        shutdown = asyncio.Event()
        consumer = MagicMock()
        attempts = []

        async def start():
            attempts.append(1)
            if len(attempts) == 3:
                shutdown.set()
            raise AMQPConnectionError("broker down")

        consumer.start = start

        await asyncio.wait_for(
            worker_main.run_consumer(consumer, shutdown, retry_interval=0.01), timeout=2
        )

        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_survives_channel_error_that_is_not_amqp(self) -> None:
        shutdown = asyncio.Event()
        consumer = MagicMock()
        consumer.start = AsyncMock(side_effect=[RuntimeError("Channel closed"), None, None])

        async def stop_after_restart():
            while consumer.start.await_count < 2:
                await asyncio.sleep(0.01)
            shutdown.set()

        await asyncio.wait_for(
            asyncio.gather(
                worker_main.run_consumer(consumer, shutdown, retry_interval=0.01),
                stop_after_restart(),
            ),
            timeout=2,
        )

        assert consumer.start.await_count >= 2

    @pytest.mark.asyncio
    async def test_cancellation_still_propagates(self) -> None:
        consumer = MagicMock()
        consumer.start = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await worker_main.run_consumer(consumer, asyncio.Event(), retry_interval=0.01)
