"""
Tests for the order command and query handlers against an in-memory database.
"""

import pytest

from services.common.errors import ErrorKind, ServiceError
from services.order.app import commands, queries
from services.order.app.event_store import ConcurrencyError, append_event


async def _create(session, redis=None, customer_id="CUST_1", amount=50000):
    return await commands.create_order(
        session,
        redis,
        customer_id,
        "PROD_1",
        amount,
        {"street": "1-1 Chiyoda", "city": "Tokyo"},
    )


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_pending_order_in_read_model(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            order = await queries.get_order(session, agg.id)

        assert order["orderStatus"] == "pending"
        assert order["paymentStatus"] == "pending"
        assert order["amount"] == 50000
        assert order["customerId"] == "CUST_1"
        assert order["shippingAddress"] == {"street": "1-1 Chiyoda", "city": "Tokyo"}
        assert agg.version == 1

    @pytest.mark.asyncio
    async def test_each_order_gets_a_fresh_id(self, order_db) -> None:
        async with order_db() as session:
            first = await _create(session)
            second = await _create(session)

        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_publishes_order_created(self, order_db, fake_redis) -> None:
        async with order_db() as session:
            agg = await _create(session, fake_redis)

        [payload] = fake_redis.events(commands.ORDER_EVENTS_CHANNEL)
        assert payload["event_type"] == "OrderCreated"
        assert payload["data"]["order_id"] == agg.id

    @pytest.mark.asyncio
    async def test_redis_failure_does_not_fail_the_command(self, order_db, failing_redis) -> None:
        async with order_db() as session:
            agg = await _create(session, failing_redis)
            order = await queries.get_order(session, agg.id)

        assert order is not None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_confirm_then_ship(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            await commands.confirm_order(session, None, agg.id)
            await commands.update_status(session, None, agg.id, "processing")
            await commands.update_status(session, None, agg.id, "shipped")
            order = await queries.get_order(session, agg.id)

        assert order["orderStatus"] == "shipped"
        assert order["paymentStatus"] == "paid"

    @pytest.mark.asyncio
    async def test_confirm_twice_is_invalid_state(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            await commands.confirm_order(session, None, agg.id)
            with pytest.raises(ServiceError) as exc_info:
                await commands.confirm_order(session, None, agg.id)

        assert exc_info.value.kind is ErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_compensation_marks_payment_failed(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            await commands.cancel_order(
                session, None, agg.id, reason="Card declined by issuer", payment_failed=True
            )
            order = await queries.get_order(session, agg.id)

        assert order["orderStatus"] == "cancelled"
        assert order["paymentStatus"] == "failed"

    @pytest.mark.asyncio
    async def test_unconfirmed_paid_order_keeps_paid_status(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            await commands.cancel_order(
                session, None, agg.id, reason="confirm failed", payment_captured=True
            )
            order = await queries.get_order(session, agg.id)

        assert order["orderStatus"] == "cancelled"
        assert order["paymentStatus"] == "paid"

    @pytest.mark.asyncio
    async def test_cancel_confirmed_order(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            await commands.confirm_order(session, None, agg.id)
            cancelled = await commands.cancel_order(session, None, agg.id, reason="by request")

        assert cancelled.status == "cancelled"
        assert cancelled.payment_status == "paid"

    @pytest.mark.asyncio
    async def test_cancel_shipped_order_is_rejected(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            await commands.confirm_order(session, None, agg.id)
            await commands.update_status(session, None, agg.id, "processing")
            with pytest.raises(ServiceError) as exc_info:
                await commands.cancel_order(session, None, agg.id, reason="too late")
            order = await queries.get_order(session, agg.id)

        assert exc_info.value.kind is ErrorKind.INVALID_STATE
        assert order["orderStatus"] == "processing"

    @pytest.mark.asyncio
    async def test_update_to_cancelled_records_cancellation(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            await commands.update_status(session, None, agg.id, "cancelled")
            history = await queries.get_order_history(session, agg.id)

        assert [e["eventType"] for e in history] == ["OrderCreated", "OrderCancelled"]

    @pytest.mark.asyncio
    async def test_unknown_status_is_validation_error(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            with pytest.raises(ServiceError) as exc_info:
                await commands.update_status(session, None, agg.id, "lost")

        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert exc_info.value.message == "Invalid order status"

    @pytest.mark.asyncio
    async def test_missing_order_is_not_found(self, order_db) -> None:
        async with order_db() as session:
            with pytest.raises(ServiceError) as exc_info:
                await commands.cancel_order(session, None, "missing", reason="x")

        assert exc_info.value.kind is ErrorKind.NOT_FOUND


class TestOptimisticLocking:
    @pytest.mark.asyncio
    async def test_stale_version_is_a_conflict(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            stale = await commands.load_order(session, agg.id)
            await commands.confirm_order(session, None, agg.id)

            with pytest.raises(ConcurrencyError) as exc_info:
                await append_event(
                    session, agg.id, "Order", "OrderCancelled", {"order_id": agg.id}, stale.version
                )

        assert exc_info.value.kind is ErrorKind.CONFLICT
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_conflict_leaves_state_untouched(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            stale = await commands.load_order(session, agg.id)
            await commands.confirm_order(session, None, agg.id)

            with pytest.raises(ConcurrencyError):
                await commands._record(
                    session,
                    None,
                    stale,
                    commands.OrderCancelled(
                        order_id=agg.id, reason="race", timestamp=stale.created_at
                    ),
                )
            order = await queries.get_order(session, agg.id)

        assert order["orderStatus"] == "confirmed"


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, order_db) -> None:
        async with order_db() as session:
            for _ in range(3):
                await _create(session, customer_id="CUST_1")
            other = await _create(session, customer_id="CUST_2")
            await commands.confirm_order(session, None, other.id)

            page, total = await queries.list_orders(session, page=1, limit=2, customer_id="CUST_1")
            confirmed, confirmed_total = await queries.list_orders(session, status="confirmed")
            everything, everything_total = await queries.list_orders(session)
            with pytest.raises(ServiceError) as exc_info:
                await queries.list_orders(session, status="bogus")

        assert total == 3
        assert len(page) == 2
        assert confirmed_total == 1
        assert confirmed[0]["orderId"] == other.id
        assert everything_total == 4
        assert len(everything) == 4
        assert exc_info.value.kind is ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_history_is_versioned(self, order_db) -> None:
        async with order_db() as session:
            agg = await _create(session)
            await commands.confirm_order(session, None, agg.id)
            history = await queries.get_order_history(session, agg.id)

        assert [e["version"] for e in history] == [1, 2]
        assert history[1]["eventType"] == "OrderConfirmed"
