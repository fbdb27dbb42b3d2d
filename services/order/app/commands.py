"""
Order Service — コマンドハンドラ (CQRS の Write 側)

CQRS パターンでは、書き込み(Command)と読み取り(Query)を分離する。
コマンドは状態を変更する操作で、イベントを生成してストアに保存する。
同時にリードモデル(Read Model)も同じトランザクションで更新する。

コミット後に Redis Pub/Sub の order_events へ通知する。
通知は fire-and-forget で、失敗してもコマンドの結果は変わらない。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import ErrorKind, ServiceError

from . import event_store
from .aggregate import OrderAggregate, OrderStatus
from .events import (
    OrderCancelled,
    OrderConfirmed,
    OrderCreated,
    OrderEvent,
    OrderStatusChanged,
)
from .tables import orders_read_model

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    customer_id: str,
    product_id: str,
    amount: float,
    shipping_address: dict | None = None,
) -> OrderAggregate:
    """
    注文作成コマンド

    1. OrderCreated イベントを生成 (注文 ID はここで採番する)
    2. イベントストアに保存
    3. リードモデルを更新
    4. Redis Pub/Sub でイベントを発行（他サービスへ通知）
    """
    now = datetime.now(timezone.utc)
    event = OrderCreated(
        order_id=str(uuid4()),
        customer_id=customer_id,
        product_id=product_id,
        amount=amount,
        shipping_address=shipping_address,
        timestamp=now,
    )

    # 1. イベントストアに追記
    version = await event_store.append_event(
        session, event.order_id, "Order", event.event_type, event.to_data(), 0, now
    )

    # 2. リードモデルを更新 (CQRS: Write 側がリードモデルも更新)
    await session.execute(
        insert(orders_read_model).values(
            id=event.order_id,
            customer_id=customer_id,
            product_id=product_id,
            amount=amount,
            status=OrderStatus.PENDING.value,
            payment_status="pending",
            shipping_address=shipping_address,
            version=version,
            order_date=now,
            created_at=now,
            updated_at=now,
        )
    )

    await session.commit()

    # 3. Redis Pub/Sub でイベントを発行
    await publish_order_event(redis, event)

    # 4. 集約を返す
    agg = OrderAggregate()
    agg.apply_order_created(event.to_data())
    agg.version = version
    agg.created_at = agg.updated_at = now
    return agg


async def confirm_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
) -> OrderAggregate:
    """
    注文確定コマンド（Saga から呼ばれる）

    決済が成功した場合にのみ実行される。
    """
    agg = await load_order(session, order_id)
    agg.ensure_pending()
    event = OrderConfirmed(order_id=order_id, timestamp=datetime.now(timezone.utc))
    return await _record(session, redis, agg, event)


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    reason: str,
    payment_failed: bool = False,
    payment_captured: bool = False,
) -> OrderAggregate:
    """
    注文キャンセルコマンド

    payment_failed=True: Saga の補償トランザクション (pending からのみ)
    payment_captured=True: 決済後に確定できなかった注文の取り消し (pending からのみ)
    どちらも False: キャンセル操作 (pending / confirmed からのみ)
    """
    agg = await load_order(session, order_id)
    if payment_failed or payment_captured:
        agg.ensure_pending()
    else:
        agg.ensure_cancellable()
    event = OrderCancelled(
        order_id=order_id,
        reason=reason,
        payment_failed=payment_failed,
        payment_captured=payment_captured,
        timestamp=datetime.now(timezone.utc),
    )
    return await _record(session, redis, agg, event)


async def update_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    new_status: str,
    transitions: dict[str, set[str]] | None = None,
) -> OrderAggregate:
    """
    ステータス更新コマンド（運用操作）

    遷移表にない遷移は VALIDATION エラー。
    cancelled への遷移はキャンセル操作と同じ制約を受ける。
    """
    if new_status not in {s.value for s in OrderStatus}:
        raise ServiceError("Invalid order status", kind=ErrorKind.VALIDATION)

    agg = await load_order(session, order_id)
    agg.ensure_transition(new_status, transitions)

    now = datetime.now(timezone.utc)
    if new_status == OrderStatus.CANCELLED.value:
        event: OrderEvent = OrderCancelled(
            order_id=order_id, reason="Status updated by operator", timestamp=now
        )
    else:
        event = OrderStatusChanged(
            order_id=order_id,
            from_status=agg.status,
            to_status=new_status,
            timestamp=now,
        )
    return await _record(session, redis, agg, event)


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate:
    """現在の集約をイベントから再構築する。"""
    events = await event_store.load_events(session, order_id)
    if not events:
        raise ServiceError("Order not found", kind=ErrorKind.NOT_FOUND)
    return OrderAggregate.from_events(events)


async def _record(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    event: OrderEvent,
) -> OrderAggregate:
    """イベント追記 → 集約へ適用 → リードモデル更新 → コミット → 通知"""
    data = event.to_data()
    version = await event_store.append_event(
        session, agg.id, "Order", event.event_type, data, agg.version, event.timestamp
    )
    agg.apply_event(event.event_type, data)
    agg.version = version
    agg.updated_at = event.timestamp

    await session.execute(
        update(orders_read_model)
        .where(orders_read_model.c.id == agg.id)
        .values(
            status=agg.status,
            payment_status=agg.payment_status,
            version=version,
            updated_at=event.timestamp,
        )
    )
    await session.commit()

    await publish_order_event(redis, event)
    return agg


async def publish_order_event(redis: aioredis.Redis | None, event: OrderEvent) -> None:
    if redis is None:
        return
    try:
        await redis.publish(
            ORDER_EVENTS_CHANNEL,
            json.dumps({"event_type": event.event_type, "data": event.to_data()}, default=str),
        )
    except RedisError:
        logger.warning("Failed to publish %s for order %s", event.event_type, event.order_id)
