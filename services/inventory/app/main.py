"""
Inventory Service — FastAPI エントリーポイント

商品と在庫数を持つ。Order Service からは
商品の参照 (GET /api/products/{id}) と在庫の減算 (PATCH .../stock) だけが呼ばれる。
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

from . import commands, config, queries
from .commands import StockOperation
from .tables import metadata

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging("product-service")
    engine, session_factory = create_database(config.DATABASE_URL)
    await init_schema(engine, metadata)
    app.state.session_factory = session_factory
    yield
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


# ── Request Models ───────────────────────────────

class CreateProductRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_id: str | None = Field(None, min_length=1, max_length=64)
    name: str = Field(min_length=2, max_length=200)
    description: str = Field("", max_length=1000)
    price: float = Field(ge=0, allow_inf_nan=False)
    category: str = Field(min_length=1, max_length=100)
    stock: int = Field(0, ge=0)
    is_active: bool = True


class StockUpdateRequest(BaseModel):
    quantity: int = Field(gt=0)
    operation: StockOperation


# ── Command Endpoints ────────────────────────────

@app.post("/api/products")
async def create_product(
    req: CreateProductRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """商品登録"""
    async with session_factory() as session:
        product = await commands.create_product(
            session,
            name=req.name,
            price=req.price,
            category=req.category,
            stock=req.stock,
            description=req.description,
            is_active=req.is_active,
            product_id=req.product_id,
        )
    return JSONResponse(
        status_code=201,
        content=api_response(True, data=product, message="Product created successfully"),
    )


@app.patch("/api/products/{product_id}/stock")
async def update_stock(
    product_id: str,
    req: StockUpdateRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """在庫の増減"""
    async with session_factory() as session:
        product = await commands.update_stock(session, product_id, req.quantity, req.operation)
    return api_response(True, data=product, message="Product stock updated successfully")


# ── Query Endpoints ──────────────────────────────

@app.get("/api/products")
async def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: str | None = None,
    in_stock: bool = Query(False, alias="inStock"),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        items, total = await queries.list_products(
            session, page, limit, category=category, in_stock=in_stock
        )
    return api_response(
        True,
        data={"products": items, "pagination": pagination(page, limit, total)},
        message="Products retrieved successfully",
    )


@app.get("/api/products/{product_id}")
async def get_product(
    product_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        product = await queries.get_product(session, product_id)
    if not product or not product["isActive"]:
        raise ServiceError("Product not found", kind=ErrorKind.NOT_FOUND)
    return api_response(True, data=product, message="Product retrieved successfully")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "product-service"}
