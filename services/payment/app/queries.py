"""
Payment Service — クエリハンドラ
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import payments


def payment_to_dict(row) -> dict:
    return {
        "paymentId": row.payment_id,
        "customerId": row.customer_id,
        "orderId": row.order_id,
        "productId": row.product_id,
        "amount": float(row.amount),
        "paymentMethod": row.payment_method,
        "status": row.status,
        "transactionId": row.transaction_id,
        "failureReason": row.failure_reason,
        "paymentDate": row.payment_date.isoformat(),
        "createdAt": row.created_at.isoformat(),
        "updatedAt": row.updated_at.isoformat(),
    }


async def get_payment(session: AsyncSession, payment_id: str) -> dict | None:
    result = await session.execute(select(payments).where(payments.c.payment_id == payment_id))
    row = result.fetchone()
    return payment_to_dict(row) if row else None


async def get_payment_by_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文に対応する最新の決済を返す。"""
    result = await session.execute(
        select(payments)
        .where(payments.c.order_id == order_id)
        .order_by(payments.c.created_at.desc())
        .limit(1)
    )
    row = result.fetchone()
    return payment_to_dict(row) if row else None


async def list_payments(
    session: AsyncSession,
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
    customer_id: str | None = None,
) -> tuple[list[dict], int]:
    conditions = []
    if status:
        conditions.append(payments.c.status == status)
    if customer_id:
        conditions.append(payments.c.customer_id == customer_id)

    total = await session.scalar(select(func.count()).select_from(payments).where(*conditions))
    result = await session.execute(
        select(payments)
        .where(*conditions)
        .order_by(payments.c.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return [payment_to_dict(row) for row in result.fetchall()], total or 0
