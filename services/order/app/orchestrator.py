"""
Saga Orchestrator — 注文 Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが各サービスへのコマンド実行を制御する。
  失敗時は補償トランザクション(Compensating Transaction)を実行して
  整合性を保つ。

  フロー (すべて直列、1リクエスト内で完結):
  ┌─────────────────────────────────────────────────────────┐
  │  1. Customer Service で顧客を検証                         │
  │  2. Product Service で商品と在庫を検証                    │
  │  3. 注文を pending で作成 (最初の永続的な副作用)          │
  │  4. Payment Service に決済を依頼                          │
  │     └─ 失敗 → 注文をキャンセル (補償トランザクション)     │
  │  5. 注文を確定 (失敗したら 1 回だけ再試行)                │
  │     └─ それでも失敗 → 注文をキャンセル (要返金)           │
  │  6. 在庫を減らす (ベストエフォート: 失敗しても警告のみ)   │
  └─────────────────────────────────────────────────────────┘

  ステップ 3 以降、注文は必ず confirmed か cancelled で終わる。
  pending のまま返すことはない。
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.errors import ErrorKind, ServiceError

from . import commands
from .aggregate import OrderAggregate
from .clients import CustomerClient, PaymentClient, ProductClient

logger = logging.getLogger(__name__)

SAGA_EVENTS_CHANNEL = "saga_events"


@dataclass
class SagaResult:
    success: bool
    order: dict | None = None
    error: ServiceError | None = None
    warnings: list[str] = field(default_factory=list)
    saga_log: list[dict] = field(default_factory=list)


def validate_order_input(customer_id, product_id, amount) -> None:
    """ネットワーク呼び出しの前に入力の形だけを検証する。"""
    errors = []
    if not isinstance(customer_id, str) or not customer_id.strip():
        errors.append("customerId is required")
    if not isinstance(product_id, str) or not product_id.strip():
        errors.append("productId is required")
    if (
        isinstance(amount, bool)
        or not isinstance(amount, (int, float))
        or not math.isfinite(amount)
        or amount <= 0
    ):
        errors.append("Amount must be a positive number")
    if errors:
        raise ServiceError("Validation failed", kind=ErrorKind.VALIDATION, error=", ".join(errors))


def order_projection(agg: OrderAggregate) -> dict:
    return {
        "customerId": agg.customer_id,
        "orderId": agg.id,
        "productId": agg.product_id,
        "orderStatus": agg.status,
        "amount": agg.amount,
        "paymentStatus": agg.payment_status,
        "orderDate": agg.created_at.isoformat() if agg.created_at else None,
        "createdAt": agg.created_at.isoformat() if agg.created_at else None,
        "updatedAt": agg.updated_at.isoformat() if agg.updated_at else None,
    }


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        customers: CustomerClient,
        products: ProductClient,
        payments: PaymentClient,
        redis: aioredis.Redis | None = None,
        quantity: int = 1,
    ):
        self.session_factory = session_factory
        self.customers = customers
        self.products = products
        self.payments = payments
        self.redis = redis
        self.quantity = quantity

    async def execute(
        self,
        customer_id: str,
        product_id: str,
        amount: float,
        shipping_address: dict | None = None,
    ) -> SagaResult:
        """
        Saga を実行する。

        各ステップの結果に応じて次のアクションを決定する。
        失敗時は補償トランザクションを実行して一貫性を保つ。
        """
        saga_log: list[dict] = []

        try:
            validate_order_input(customer_id, product_id, amount)
        except ServiceError as e:
            return SagaResult(False, error=e, saga_log=saga_log)

        logger.info("Creating order for customer: %s, product: %s", customer_id, product_id)

        # ── Step 1: 顧客を検証 ──────────────────────
        step = _begin(saga_log, "ValidateCustomer")
        try:
            await self.customers.validate_customer(customer_id)
            step["status"] = "COMPLETED"
        except ServiceError as e:
            _fail(step, e)
            return await self._finish("SagaFailed", None, SagaResult(False, error=e, saga_log=saga_log))

        # ── Step 2: 商品と在庫を検証 ────────────────
        step = _begin(saga_log, "ValidateProduct")
        try:
            await self.products.validate_product(product_id, self.quantity)
            step["status"] = "COMPLETED"
        except ServiceError as e:
            _fail(step, e)
            return await self._finish("SagaFailed", None, SagaResult(False, error=e, saga_log=saga_log))

        # ── Step 3: 注文を pending で作成 ───────────
        step = _begin(saga_log, "CreateOrder")
        try:
            async with self.session_factory() as session:
                order = await commands.create_order(
                    session, self.redis, customer_id, product_id, amount, shipping_address
                )
            step["status"] = "COMPLETED"
            step["order_id"] = order.id
        except (ServiceError, SQLAlchemyError):
            logger.exception("Failed to create order for customer %s", customer_id)
            error = ServiceError(
                "Failed to create order", kind=ErrorKind.INTERNAL, error="Failed to create order"
            )
            _fail(step, error)
            return await self._finish("SagaFailed", None, SagaResult(False, error=error, saga_log=saga_log))

        logger.info("Order created successfully: %s", order.id)

        # ── Step 4: 決済 ────────────────────────────
        step = _begin(saga_log, "ProcessPayment")
        try:
            payment = await self.payments.charge(customer_id, order.id, product_id, amount)
            step["status"] = "COMPLETED"
            step["transaction_id"] = payment.get("transactionId")
        except ServiceError as e:
            _fail(step, e)
            logger.error("Payment failed for order: %s", order.id)
            return await self._compensate(order, e, saga_log)

        # ── Step 5: 注文を確定 ──────────────────────
        step = _begin(saga_log, "ConfirmOrder")
        confirmed = await self._confirm(order.id)
        if confirmed is None:
            # 決済は完了しているが注文を確定できなかった
            _fail(step, ServiceError("Failed to confirm order", kind=ErrorKind.INTERNAL))
            return await self._cancel_unconfirmed(order, payment.get("transactionId"), saga_log)
        order = confirmed
        step["status"] = "COMPLETED"

        # ── Step 6: 在庫を減らす (ベストエフォート) ─
        warnings: list[str] = []
        step = _begin(saga_log, "DecreaseStock")
        try:
            await self.products.decrease_stock(product_id, self.quantity)
            step["status"] = "COMPLETED"
        except ServiceError as e:
            # 注文は confirmed のまま。在庫と注文がずれる既知のギャップ
            _fail(step, e)
            logger.warning("Failed to update product stock for order: %s (%s)", order.id, e.message)
            warnings.append(f"Failed to update product stock: {e.message}")

        logger.info("Order processing completed successfully: %s", order.id)
        return await self._finish(
            "SagaCompleted",
            order.id,
            SagaResult(True, order=order_projection(order), warnings=warnings, saga_log=saga_log),
        )

    async def _compensate(
        self,
        order: OrderAggregate,
        payment_error: ServiceError,
        saga_log: list[dict],
    ) -> SagaResult:
        """決済失敗の補償: 注文を cancelled にしてから決済エラーを返す。"""
        detail = payment_error.error or payment_error.message
        step = _begin(saga_log, "CancelOrder (COMPENSATING)")
        try:
            async with self.session_factory() as session:
                order = await commands.cancel_order(
                    session, self.redis, order.id, reason=detail, payment_failed=True
                )
            step["status"] = "COMPLETED"
        except (ServiceError, SQLAlchemyError):
            logger.exception("Failed to cancel order %s after payment failure", order.id)
            error = ServiceError(
                "Failed to cancel order after payment failure",
                kind=ErrorKind.INTERNAL,
                error="Failed to cancel order",
            )
            _fail(step, error)
            return await self._finish("SagaFailed", order.id, SagaResult(False, error=error, saga_log=saga_log))

        error = ServiceError(
            f"Payment processing failed: {detail}",
            kind=payment_error.kind,
            status_code=payment_error.status_code,
            error=detail,
        )
        return await self._finish(
            "SagaCompensated",
            order.id,
            SagaResult(False, order=order_projection(order), error=error, saga_log=saga_log),
        )

    async def _confirm(self, order_id: str, attempts: int = 2) -> OrderAggregate | None:
        """
        注文を確定する。失敗したら新しいセッションで集約を読み直して再試行する。
        すべて失敗したら None を返す。
        """
        for attempt in range(1, attempts + 1):
            try:
                async with self.session_factory() as session:
                    return await commands.confirm_order(session, self.redis, order_id)
            except (ServiceError, SQLAlchemyError):
                logger.exception(
                    "Failed to confirm paid order %s (attempt %d/%d)", order_id, attempt, attempts
                )
        return None

    async def _cancel_unconfirmed(
        self,
        order: OrderAggregate,
        transaction_id: str | None,
        saga_log: list[dict],
    ) -> SagaResult:
        """
        決済済みで確定できなかった注文を cancelled にする。
        paymentStatus は paid のまま残り、返金が必要なことがリードモデルから分かる。
        """
        step = _begin(saga_log, "CancelOrder (COMPENSATING)")
        try:
            async with self.session_factory() as session:
                order = await commands.cancel_order(
                    session,
                    self.redis,
                    order.id,
                    reason=f"Order could not be confirmed after payment {transaction_id}",
                    payment_captured=True,
                )
            step["status"] = "COMPLETED"
        except (ServiceError, SQLAlchemyError):
            logger.exception("Failed to cancel unconfirmed order %s, it stays pending", order.id)
            error = ServiceError(
                "Failed to confirm order", kind=ErrorKind.INTERNAL, error="Failed to confirm order"
            )
            _fail(step, error)
            return await self._finish("SagaFailed", order.id, SagaResult(False, error=error, saga_log=saga_log))

        logger.error("Order %s cancelled after payment %s, refund required", order.id, transaction_id)
        error = ServiceError(
            "Failed to confirm order",
            kind=ErrorKind.INTERNAL,
            error="Order cancelled after payment, refund required",
        )
        return await self._finish(
            "SagaCompensated",
            order.id,
            SagaResult(False, order=order_projection(order), error=error, saga_log=saga_log),
        )

    async def _finish(self, event_type: str, order_id: str | None, result: SagaResult) -> SagaResult:
        await self._publish_saga_event(event_type, order_id, result.saga_log)
        return result

    async def _publish_saga_event(
        self,
        event_type: str,
        order_id: str | None,
        saga_log: list[dict],
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                SAGA_EVENTS_CHANNEL,
                json.dumps(
                    {
                        "event_type": event_type,
                        "order_id": order_id,
                        "saga_log": saga_log,
                    },
                    default=str,
                ),
            )
        except RedisError:
            logger.warning("Failed to publish %s for order %s", event_type, order_id)


def _begin(saga_log: list[dict], action: str) -> dict:
    entry = {
        "step": len(saga_log) + 1,
        "action": action,
        "status": "EXECUTING",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    saga_log.append(entry)
    return entry


def _fail(step: dict, error: ServiceError) -> None:
    step["status"] = "FAILED"
    step["error"] = error.error or error.message
