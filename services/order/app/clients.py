"""
Order Service — 協調サービスのクライアント

Customer / Product / Payment サービスへの HTTP 呼び出しをまとめる。
httpx.AsyncClient は lifespan で1つだけ作り、各クライアントに渡す。

エラーの対応:
  接続不可・タイムアウト     → UNAVAILABLE (503)
  相手が 404 を返した        → NOT_FOUND  (404)
  相手がその他のエラーを返した → 相手のステータスをそのまま伝播
  応答が JSON でない          → UNAVAILABLE (502)
"""

import logging
from urllib.parse import quote

import httpx

from services.common.errors import ErrorKind, ServiceError

logger = logging.getLogger(__name__)


class ServiceClient:
    name = "Remote"

    def __init__(self, http: httpx.AsyncClient, base_url: str, timeout: float) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def url(self, *parts: str) -> str:
        return "/".join([self.base_url, *(quote(str(p), safe="") for p in parts)])

    async def request(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = await self.http.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException:
            logger.error("%s service timed out: %s %s", self.name, method, url)
            raise ServiceError(f"{self.name} service unavailable", kind=ErrorKind.UNAVAILABLE)
        except httpx.TransportError as e:
            logger.error("%s service unreachable: %s", self.name, e)
            raise ServiceError(f"{self.name} service unavailable", kind=ErrorKind.UNAVAILABLE)

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.is_error:
            body = body if isinstance(body, dict) else {}
            if resp.status_code == 404:
                kind = ErrorKind.NOT_FOUND
            elif resp.status_code >= 500:
                kind = ErrorKind.UNAVAILABLE
            else:
                kind = ErrorKind.REJECTED
            raise ServiceError(
                body.get("message") or f"{self.name} service error",
                kind=kind,
                status_code=resp.status_code,
                error=body.get("error"),
            )

        if not isinstance(body, dict):
            raise ServiceError(
                f"{self.name} service returned an invalid response",
                kind=ErrorKind.UNAVAILABLE,
                status_code=502,
            )
        return body


class CustomerClient(ServiceClient):
    name = "Customer"

    async def validate_customer(self, customer_id: str) -> dict:
        """顧客が存在し、有効であることを確認する。"""
        logger.info("Validating customer: %s", customer_id)
        body = await self.request("GET", self.url("api", "customers", customer_id))
        customer = body.get("data")
        if not body.get("success") or not customer or not customer.get("isActive", False):
            logger.warning("Customer validation failed: %s", customer_id)
            raise ServiceError("Customer not found or inactive", kind=ErrorKind.NOT_FOUND)
        return customer


class ProductClient(ServiceClient):
    name = "Product"

    async def validate_product(self, product_id: str, quantity: int = 1) -> dict:
        """商品が存在し、有効で、在庫が quantity 以上あることを確認する。"""
        logger.info("Validating product: %s (quantity: %d)", product_id, quantity)
        body = await self.request("GET", self.url("api", "products", product_id))
        product = body.get("data")
        if not body.get("success") or not product:
            logger.warning("Product validation failed: %s - not found", product_id)
            raise ServiceError("Product not found", kind=ErrorKind.NOT_FOUND)
        if not product.get("isActive") or product.get("stock", 0) < quantity:
            logger.warning(
                "Product validation failed: %s - insufficient stock or inactive", product_id
            )
            raise ServiceError(
                "Product not available or insufficient stock",
                kind=ErrorKind.REJECTED,
                error="INSUFFICIENT_STOCK",
            )
        return product

    async def decrease_stock(self, product_id: str, quantity: int) -> dict:
        logger.info("Updating product stock: %s (decrease by %d)", product_id, quantity)
        body = await self.request(
            "PATCH",
            self.url("api", "products", product_id, "stock"),
            json={"quantity": quantity, "operation": "decrease"},
        )
        if not body.get("success"):
            raise ServiceError(
                body.get("message") or "Failed to update product stock",
                kind=ErrorKind.REJECTED,
            )
        return body.get("data") or {}


class PaymentClient(ServiceClient):
    name = "Payment"

    async def charge(
        self,
        customer_id: str,
        order_id: str,
        product_id: str,
        amount: float,
        payment_method: str = "bank_transfer",
    ) -> dict:
        """決済を依頼する。成功時は {paymentId, transactionId, ...} を返す。"""
        logger.info("Processing payment for order: %s (amount: %s)", order_id, amount)
        body = await self.request(
            "POST",
            self.url("api", "payments"),
            json={
                "customerId": customer_id,
                "orderId": order_id,
                "productId": product_id,
                "amount": amount,
                "paymentMethod": payment_method,
            },
        )
        if not body.get("success") or not body.get("data"):
            raise ServiceError(
                body.get("message") or "Payment processing failed",
                kind=ErrorKind.REJECTED,
                error=body.get("error"),
            )
        return body["data"]
