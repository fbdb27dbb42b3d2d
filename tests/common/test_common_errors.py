"""
Tests for the shared response envelope, error mapping and queue message model.
"""

import json

import httpx
import pytest
from fastapi import FastAPI
from pydantic import BaseModel, ValidationError

from services.common.errors import DEFAULT_STATUS, ErrorKind, ServiceError, install_error_handlers
from services.common.messages import TransactionMessage
from services.common.responses import api_response, pagination


class TestEnvelope:
    def test_none_keys_are_omitted(self) -> None:
        assert api_response(False, message="nope") == {"success": False, "message": "nope"}

    def test_extra_keys(self) -> None:
        body = api_response(True, data={"id": 1}, warnings=["careful"], ignored=None)

        assert body == {"success": True, "data": {"id": 1}, "warnings": ["careful"]}

    @pytest.mark.parametrize(("total", "pages"), [(0, 0), (1, 1), (10, 1), (11, 2)])
    def test_pagination(self, total, pages) -> None:
        assert pagination(1, 10, total)["totalPages"] == pages


class TestServiceError:
    @pytest.mark.parametrize(
        ("kind", "status"),
        [
            (ErrorKind.VALIDATION, 400),
            (ErrorKind.NOT_FOUND, 404),
            (ErrorKind.UNAVAILABLE, 503),
            (ErrorKind.REJECTED, 400),
            (ErrorKind.INVALID_STATE, 400),
            (ErrorKind.CONFLICT, 409),
            (ErrorKind.INTERNAL, 500),
        ],
    )
    def test_default_status(self, kind, status) -> None:
        assert ServiceError("x", kind=kind).status_code == status == DEFAULT_STATUS[kind]

    def test_status_override(self) -> None:
        error = ServiceError("Bad gateway", kind=ErrorKind.UNAVAILABLE, status_code=502)

        assert error.status_code == 502
        assert error.kind is ErrorKind.UNAVAILABLE


class Item(BaseModel):
    amount: float


def make_app() -> FastAPI:
    app = FastAPI()
    install_error_handlers(app)

    @app.get("/boom")
    async def boom():
        raise ServiceError("Order not found", kind=ErrorKind.NOT_FOUND, error="order-1")

    @app.post("/items")
    async def create(item: Item):
        return api_response(True, data=item.model_dump())

    return app


class TestHandlers:
    @pytest.mark.asyncio
    async def test_service_error_becomes_envelope(self) -> None:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=make_app()), base_url="http://test"
        ) as client:
            resp = await client.get("/boom")

        assert resp.status_code == 404
        assert resp.json() == {"success": False, "message": "Order not found", "error": "order-1"}

    @pytest.mark.asyncio
    async def test_request_validation_is_400(self) -> None:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=make_app()), base_url="http://test"
        ) as client:
            resp = await client.post("/items", json={"amount": "lots"})

        assert resp.status_code == 400
        body = resp.json()
        assert body["message"] == "Validation failed"
        assert body["error"].startswith("amount:")


class TestTransactionMessage:
    def test_wire_format_is_camel_case(self) -> None:
        message = TransactionMessage(
            customer_id="CUST_1",
            order_id="order-1",
            product_id="PROD_1",
            amount=10,
            transaction_id="TXN_1",
        )

        body = json.loads(message.to_json())

        assert body["transactionId"] == "TXN_1"
        assert body["customerId"] == "CUST_1"
        assert "transaction_id" not in body

    @pytest.mark.parametrize("amount", [float("inf"), float("nan"), -0.01, None])
    def test_rejects_bad_amounts(self, amount) -> None:
        with pytest.raises(ValidationError):
            TransactionMessage(
                customer_id="CUST_1",
                order_id="order-1",
                product_id="PROD_1",
                amount=amount,
                transaction_id="TXN_1",
            )
