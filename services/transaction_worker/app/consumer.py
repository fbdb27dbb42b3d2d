"""
Transaction Worker — キューコンシューマ

transaction_queue を prefetch=1 で購読し、1 件ずつ直列に取り込む。
自動 ack は使わず、結果ごとに明示的に応答する:

  不正なメッセージ        → ack (破棄。再配信させない)
  重複 (取り込み済み)     → ack
  新規に挿入              → ack
  想定外のエラー (DB など) → nack(requeue=False)
"""

import logging

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.messaging import RabbitMQConnection

from .ingestion import IngestResult, InvalidMessage, ingest, parse_message

logger = logging.getLogger(__name__)


class TransactionConsumer:
    def __init__(
        self,
        connection: RabbitMQConnection,
        session_factory: async_sessionmaker[AsyncSession],
        queue_name: str,
        prefetch_count: int = 1,
    ) -> None:
        self.connection = connection
        self.session_factory = session_factory
        self.queue_name = queue_name
        self.prefetch_count = prefetch_count
        self._channel: AbstractChannel | None = None

    async def start(self) -> None:
        """キューが閉じられるかタスクがキャンセルされるまで消費し続ける。"""
        await self.stop()
        self._channel = await self.connection.channel(prefetch_count=self.prefetch_count)
        queue = await self._channel.declare_queue(
            self.queue_name, durable=True, exclusive=False, auto_delete=False
        )
        logger.info("Consuming from queue %s (prefetch=%d)", self.queue_name, self.prefetch_count)
        async with queue.iterator() as messages:
            async for message in messages:
                await self.handle_message(message)

    async def handle_message(self, message: AbstractIncomingMessage) -> IngestResult | None:
        try:
            parsed = parse_message(message.body)
        except InvalidMessage as exc:
            logger.error("Dropping invalid message %s: %s", message.message_id, exc)
            await message.ack()
            return None

        try:
            async with self.session_factory() as session:
                result = await ingest(session, parsed)
        except Exception:
            logger.exception("Error processing transaction: %s", parsed.transaction_id)
            await message.nack(requeue=False)
            return None

        await message.ack()
        return result

    async def stop(self) -> None:
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
