"""
Transaction Worker — 冪等な取り込み

1 メッセージの処理:
  1. パース + 検証 (失敗 → InvalidMessage。呼び出し側で ack して破棄)
  2. transaction_id で既存レコードを検索 (あれば DUPLICATE)
  3. 無ければ status=completed で挿入 (INSERTED)

同じ transaction_id を何度受け取っても監査レコードは 1 件。
挿入時のユニーク制約違反も重複として扱う。
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum

from pydantic import ValidationError
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.messages import TransactionMessage

from .tables import transaction_history

logger = logging.getLogger(__name__)


class InvalidMessage(Exception):
    """再試行しても直らないメッセージ。"""


class IngestResult(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"


def parse_message(body: bytes | str) -> TransactionMessage:
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidMessage(f"Malformed JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidMessage("Message payload must be a JSON object")
    try:
        return TransactionMessage.model_validate(payload)
    except ValidationError as exc:
        raise InvalidMessage(f"Invalid transaction message: {exc.error_count()} error(s)") from exc


async def exists(session: AsyncSession, transaction_id: str) -> bool:
    found = await session.scalar(
        select(transaction_history.c.id).where(
            transaction_history.c.transaction_id == transaction_id
        )
    )
    return found is not None


async def ingest(session: AsyncSession, message: TransactionMessage) -> IngestResult:
    if await exists(session, message.transaction_id):
        logger.info("Transaction already processed: %s", message.transaction_id)
        return IngestResult.DUPLICATE

    try:
        await session.execute(
            insert(transaction_history).values(
                transaction_id=message.transaction_id,
                customer_id=message.customer_id,
                order_id=message.order_id,
                product_id=message.product_id,
                amount=message.amount,
                status="completed",
                timestamp=message.timestamp,
                created_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()
    except IntegrityError:
        # 検索と挿入の間に別コンシューマが挿入した
        await session.rollback()
        logger.info("Transaction inserted concurrently: %s", message.transaction_id)
        return IngestResult.DUPLICATE

    logger.info("Transaction history saved: %s", message.transaction_id)
    return IngestResult.INSERTED
