"""
Payment Service — コマンドハンドラ

決済処理の順序:
  1. Payment を pending で記録 (ゲートウェイ呼び出し前に必ず残す)
  2. ゲートウェイ (シミュレーター) に問い合わせる
  3. 成功 → completed + transaction_id を確定 → キューへ発行
     失敗 → failed + 失敗理由を確定
  Payment は pending から一度だけ completed / failed に遷移し、以後変わらない。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.messages import TransactionMessage

from . import queries
from .gateway import GatewayOutcome, SimulatedGateway
from .publisher import TransactionPublisher
from .tables import payments

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass
class PaymentResult:
    payment: dict
    outcome: GatewayOutcome
    published: bool = False


async def process_payment(
    session: AsyncSession,
    gateway: SimulatedGateway,
    publisher: TransactionPublisher | None,
    customer_id: str,
    order_id: str,
    product_id: str,
    amount: float,
    payment_method: str = "bank_transfer",
) -> PaymentResult:
    logger.info("Processing payment for order: %s (amount: %s)", order_id, amount)

    # 1. pending で記録
    now = datetime.now(timezone.utc)
    payment_id = f"PAY_{uuid4().hex}"
    await session.execute(
        insert(payments).values(
            payment_id=payment_id,
            customer_id=customer_id,
            order_id=order_id,
            product_id=product_id,
            amount=amount,
            payment_method=payment_method,
            status=PaymentStatus.PENDING.value,
            payment_date=now,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    logger.info("Payment record created: %s", payment_id)

    # 2. ゲートウェイ
    outcome = await gateway.process(amount)

    # 3. 結果を確定
    if outcome.success:
        values = {
            "status": PaymentStatus.COMPLETED.value,
            "transaction_id": outcome.transaction_id,
        }
    else:
        values = {"status": PaymentStatus.FAILED.value, "failure_reason": outcome.error}
    await session.execute(
        update(payments)
        .where(payments.c.payment_id == payment_id)
        .values(updated_at=datetime.now(timezone.utc), **values)
    )
    await session.commit()

    payment = await queries.get_payment(session, payment_id)
    if not outcome.success:
        logger.error("Payment failed: %s - %s", payment_id, outcome.error)
        return PaymentResult(payment, outcome)

    logger.info("Payment completed successfully: %s", payment_id)

    # ステータス確定後に発行する。失敗しても決済は成功のまま
    published = False
    if publisher is not None:
        published = await publisher.publish(
            TransactionMessage(
                customer_id=customer_id,
                order_id=order_id,
                product_id=product_id,
                amount=amount,
                transaction_id=outcome.transaction_id,
            )
        )
    if not published:
        logger.warning("Failed to publish transaction message for payment: %s", payment_id)
    return PaymentResult(payment, outcome, published)
