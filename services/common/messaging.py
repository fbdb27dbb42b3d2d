"""
Common — RabbitMQ 接続ハンドル

接続とチャネルをプロセス全体のグローバルに置かず、
このオブジェクトを lifespan で生成してパブリッシャ/コンシューマに渡す。
接続・再接続・切断のライフサイクルはここで管理する。

aio-pika の RobustConnection を使うので、ブローカー再起動時は
自動で再接続され、宣言済みのキューとコンシューマも復元される。
"""

import logging

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractRobustConnection

logger = logging.getLogger(__name__)


class RabbitMQConnection:
    def __init__(
        self,
        url: str,
        reconnect_interval: float = 5.0,
        heartbeat: int = 60,
    ) -> None:
        self.url = url
        self.reconnect_interval = reconnect_interval
        self.heartbeat = heartbeat
        self._connection: AbstractRobustConnection | None = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        if self.is_connected:
            return
        logger.info("Connecting to RabbitMQ...")
        self._connection = await aio_pika.connect_robust(
            self.url,
            reconnect_interval=self.reconnect_interval,
            heartbeat=self.heartbeat,
        )
        self._connection.close_callbacks.add(self._on_close)
        self._connection.reconnect_callbacks.add(self._on_reconnect)
        logger.info("Connected to RabbitMQ successfully")

    async def channel(self, prefetch_count: int | None = None) -> AbstractChannel:
        """新しいチャネルを開く。prefetch_count を渡すと QoS を設定する。"""
        if not self.is_connected:
            await self.connect()
        channel = await self._connection.channel()
        if prefetch_count is not None:
            await channel.set_qos(prefetch_count=prefetch_count)
        return channel

    async def close(self) -> None:
        if self._connection is None:
            return
        try:
            await self._connection.close()
            logger.info("RabbitMQ connection closed")
        finally:
            self._connection = None

    def _on_close(self, *args) -> None:
        logger.warning("RabbitMQ connection closed: %s", args[-1] if args else None)

    def _on_reconnect(self, *args) -> None:
        logger.info("RabbitMQ connection re-established")
