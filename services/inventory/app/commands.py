"""
Inventory Service — コマンドハンドラ

在庫の減算は「在庫 >= 数量」を条件にした 1 回の UPDATE で行う。
読んでから書く方式と違い、同時に減算されても在庫は負にならない。
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import ErrorKind, ServiceError

from . import queries
from .tables import products

logger = logging.getLogger(__name__)


class StockOperation(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


async def create_product(
    session: AsyncSession,
    name: str,
    price: float,
    category: str,
    stock: int = 0,
    description: str = "",
    is_active: bool = True,
    product_id: str | None = None,
) -> dict:
    now = datetime.now(timezone.utc)
    product_id = product_id or f"PROD_{uuid4().hex[:12].upper()}"
    try:
        await session.execute(
            insert(products).values(
                product_id=product_id,
                name=name,
                description=description,
                price=price,
                category=category,
                stock=stock,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ServiceError("Product already exists", kind=ErrorKind.CONFLICT)

    logger.info("Product created: %s", product_id)
    return await queries.get_product(session, product_id)


async def update_stock(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    operation: StockOperation,
) -> dict:
    product = await queries.get_product(session, product_id)
    if not product or not product["isActive"]:
        raise ServiceError("Product not found", kind=ErrorKind.NOT_FOUND)

    stmt = update(products).where(
        products.c.product_id == product_id, products.c.is_active.is_(True)
    )
    if operation is StockOperation.DECREASE:
        stmt = stmt.where(products.c.stock >= quantity).values(stock=products.c.stock - quantity)
    else:
        stmt = stmt.values(stock=products.c.stock + quantity)

    result = await session.execute(stmt.values(updated_at=datetime.now(timezone.utc)))
    if result.rowcount == 0:
        await session.rollback()
        raise ServiceError("Insufficient stock", kind=ErrorKind.REJECTED)
    await session.commit()

    logger.info("Product stock updated: %s - %s %d", product_id, operation.value, quantity)
    return await queries.get_product(session, product_id)
