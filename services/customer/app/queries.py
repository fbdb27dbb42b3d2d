"""
Customer Service — 顧客の登録と参照
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import ErrorKind, ServiceError

from .tables import customers

logger = logging.getLogger(__name__)


def customer_to_dict(row) -> dict:
    return {
        "customerId": row.customer_id,
        "name": row.name,
        "email": row.email,
        "phone": row.phone,
        "address": row.address,
        "isActive": row.is_active,
        "createdAt": row.created_at.isoformat(),
        "updatedAt": row.updated_at.isoformat(),
    }


async def get_customer(session: AsyncSession, customer_id: str) -> dict | None:
    result = await session.execute(
        select(customers).where(customers.c.customer_id == customer_id)
    )
    row = result.fetchone()
    return customer_to_dict(row) if row else None


async def list_customers(
    session: AsyncSession, page: int = 1, limit: int = 10
) -> tuple[list[dict], int]:
    total = await session.scalar(select(func.count()).select_from(customers))
    result = await session.execute(
        select(customers)
        .order_by(customers.c.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return [customer_to_dict(row) for row in result.fetchall()], total or 0


async def create_customer(
    session: AsyncSession,
    name: str,
    email: str,
    phone: str | None = None,
    address: dict | None = None,
    is_active: bool = True,
    customer_id: str | None = None,
) -> dict:
    now = datetime.now(timezone.utc)
    customer_id = customer_id or f"CUST_{uuid4().hex[:12].upper()}"
    try:
        await session.execute(
            insert(customers).values(
                customer_id=customer_id,
                name=name,
                email=email.lower(),
                phone=phone,
                address=address,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ServiceError("Customer with this email already exists", kind=ErrorKind.CONFLICT)

    logger.info("Customer created: %s", customer_id)
    return await get_customer(session, customer_id)
