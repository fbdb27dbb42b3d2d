"""
Transaction Worker — クエリハンドラ (監査レコードの参照のみ)
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import transaction_history


def transaction_to_dict(row) -> dict:
    return {
        "transactionId": row.transaction_id,
        "customerId": row.customer_id,
        "orderId": row.order_id,
        "productId": row.product_id,
        "amount": float(row.amount),
        "status": row.status,
        "timestamp": row.timestamp.isoformat(),
        "createdAt": row.created_at.isoformat(),
    }


async def get_transaction(session: AsyncSession, transaction_id: str) -> dict | None:
    result = await session.execute(
        select(transaction_history).where(transaction_history.c.transaction_id == transaction_id)
    )
    row = result.fetchone()
    return transaction_to_dict(row) if row else None


async def list_transactions(
    session: AsyncSession,
    page: int = 1,
    limit: int = 10,
    order_id: str | None = None,
    customer_id: str | None = None,
) -> tuple[list[dict], int]:
    conditions = []
    if order_id:
        conditions.append(transaction_history.c.order_id == order_id)
    if customer_id:
        conditions.append(transaction_history.c.customer_id == customer_id)

    total = await session.scalar(
        select(func.count()).select_from(transaction_history).where(*conditions)
    )
    result = await session.execute(
        select(transaction_history)
        .where(*conditions)
        .order_by(transaction_history.c.timestamp.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return [transaction_to_dict(row) for row in result.fetchall()], total or 0
