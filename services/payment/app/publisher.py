"""
Payment Service — 取引メッセージのパブリッシャ

決済成功ごとに TransactionMessage を永続キュー (transaction_queue) へ送る。

発行はベストエフォート:
  決済ステータスは発行前に必ず DB へ確定している。
  発行に失敗してもログに残すだけで、決済は成功として返す。
"""

import logging

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel

from services.common.messages import TransactionMessage
from services.common.messaging import RabbitMQConnection

logger = logging.getLogger(__name__)


class TransactionPublisher:
    def __init__(self, connection: RabbitMQConnection, queue_name: str) -> None:
        self.connection = connection
        self.queue_name = queue_name
        self._channel: AbstractChannel | None = None

    async def setup(self) -> None:
        """チャネルを開き、永続キューを宣言する。"""
        self._channel = await self.connection.channel()
        await self._channel.declare_queue(
            self.queue_name, durable=True, exclusive=False, auto_delete=False
        )
        logger.info("RabbitMQ queue %s set up successfully", self.queue_name)

    async def publish(self, message: TransactionMessage) -> bool:
        """メッセージを発行する。失敗時は False (例外は投げない)。"""
        try:
            if self._channel is None or self._channel.is_closed:
                await self.setup()
            await self._channel.default_exchange.publish(
                Message(
                    body=message.to_json(),
                    content_type="application/json",
                    delivery_mode=DeliveryMode.PERSISTENT,
                    message_id=message.transaction_id,
                    correlation_id=message.order_id,
                ),
                routing_key=self.queue_name,
            )
        except Exception:
            logger.exception("Error publishing transaction message: %s", message.transaction_id)
            return False
        logger.info("Transaction message published: %s", message.transaction_id)
        return True

    async def close(self) -> None:
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
