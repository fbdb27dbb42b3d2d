"""
Customer Service — FastAPI エントリーポイント

顧客ディレクトリ。Order Service からは GET /api/customers/{id} だけが呼ばれ、
isActive が true の顧客だけが注文できる。
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.db import create_database, init_schema
from services.common.errors import ErrorKind, ServiceError, install_error_handlers
from services.common.logconfig import configure_logging
from services.common.responses import api_response, pagination

from . import config, queries
from .tables import metadata

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging("customer-service")
    engine, session_factory = create_database(config.DATABASE_URL)
    await init_schema(engine, metadata)
    app.state.session_factory = session_factory
    yield
    await engine.dispose()


app = FastAPI(title="Customer Service", lifespan=lifespan)
install_error_handlers(app)


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


class Address(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    street: str | None = Field(None, max_length=200)
    city: str | None = Field(None, max_length=100)
    state: str | None = Field(None, max_length=100)
    zip_code: str | None = Field(None, max_length=20)
    country: str | None = Field(None, max_length=100)


class CreateCustomerRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_id: str | None = Field(None, min_length=1, max_length=64)
    name: str = Field(min_length=2, max_length=100)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$", max_length=254)
    phone: str | None = Field(None, pattern=r"^\+?[\d\s\-()]+$", max_length=32)
    address: Address | None = None
    is_active: bool = True


@app.post("/api/customers")
async def create_customer(
    req: CreateCustomerRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """顧客登録"""
    address = req.address.model_dump(by_alias=True, exclude_none=True) if req.address else None
    async with session_factory() as session:
        customer = await queries.create_customer(
            session,
            name=req.name,
            email=req.email,
            phone=req.phone,
            address=address,
            is_active=req.is_active,
            customer_id=req.customer_id,
        )
    return JSONResponse(
        status_code=201,
        content=api_response(True, data=customer, message="Customer created successfully"),
    )


@app.get("/api/customers")
async def list_customers(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        items, total = await queries.list_customers(session, page, limit)
    return api_response(
        True,
        data={"customers": items, "pagination": pagination(page, limit, total)},
        message="Customers retrieved successfully",
    )


@app.get("/api/customers/{customer_id}")
async def get_customer(
    customer_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        customer = await queries.get_customer(session, customer_id)
    if not customer:
        raise ServiceError("Customer not found", kind=ErrorKind.NOT_FOUND)
    return api_response(True, data=customer, message="Customer retrieved successfully")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "customer-service"}
