"""
Order Service — クエリハンドラ (CQRS の Read 側)

CQRS パターンでは、読み取りはリードモデル(Read Model)から行う。
リードモデルはイベントから投影(Projection)された非正規化データで、
クエリに最適化されている。
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import ErrorKind, ServiceError

from . import event_store
from .aggregate import OrderStatus
from .tables import orders_read_model


def _isoformat(value):
    return value.isoformat() if value else None


def order_to_dict(row) -> dict:
    return {
        "orderId": row.id,
        "customerId": row.customer_id,
        "productId": row.product_id,
        "amount": float(row.amount),
        "orderStatus": row.status,
        "paymentStatus": row.payment_status,
        "shippingAddress": row.shipping_address,
        "orderDate": _isoformat(row.order_date),
        "createdAt": _isoformat(row.created_at),
        "updatedAt": _isoformat(row.updated_at),
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """リードモデルから注文を取得する。"""
    result = await session.execute(
        select(orders_read_model).where(orders_read_model.c.id == order_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return order_to_dict(row)


async def list_orders(
    session: AsyncSession,
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
    customer_id: str | None = None,
) -> tuple[list[dict], int]:
    """注文一覧を新しい順に取得する。(注文, 総件数) を返す。未知のステータスは VALIDATION。"""
    conditions = []
    if status:
        if status not in {s.value for s in OrderStatus}:
            raise ServiceError("Invalid order status", kind=ErrorKind.VALIDATION, error=status)
        conditions.append(orders_read_model.c.status == status)
    if customer_id:
        conditions.append(orders_read_model.c.customer_id == customer_id)

    total = await session.scalar(
        select(func.count()).select_from(orders_read_model).where(*conditions)
    )
    result = await session.execute(
        select(orders_read_model)
        .where(*conditions)
        .order_by(orders_read_model.c.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return [order_to_dict(row) for row in result.fetchall()], total or 0


async def get_order_history(session: AsyncSession, order_id: str) -> list[dict]:
    """指定注文のイベント履歴を返す。"""
    return [
        {
            "eventType": e["event_type"],
            "eventData": e["event_data"],
            "version": e["version"],
            "createdAt": _isoformat(e["created_at"]),
        }
        for e in await event_store.load_events(session, order_id)
    ]
