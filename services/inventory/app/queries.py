"""
Inventory Service — クエリハンドラ
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import products


def product_to_dict(row) -> dict:
    return {
        "productId": row.product_id,
        "name": row.name,
        "description": row.description,
        "price": float(row.price),
        "category": row.category,
        "stock": row.stock,
        "isActive": row.is_active,
        "createdAt": row.created_at.isoformat(),
        "updatedAt": row.updated_at.isoformat(),
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(select(products).where(products.c.product_id == product_id))
    row = result.fetchone()
    return product_to_dict(row) if row else None


async def list_products(
    session: AsyncSession,
    page: int = 1,
    limit: int = 10,
    category: str | None = None,
    in_stock: bool = False,
) -> tuple[list[dict], int]:
    """有効な商品のみを名前順で返す。"""
    conditions = [products.c.is_active.is_(True)]
    if category:
        conditions.append(products.c.category == category)
    if in_stock:
        conditions.append(products.c.stock > 0)

    total = await session.scalar(select(func.count()).select_from(products).where(*conditions))
    result = await session.execute(
        select(products)
        .where(*conditions)
        .order_by(products.c.name)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return [product_to_dict(row) for row in result.fetchall()], total or 0
