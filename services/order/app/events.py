"""
Order Service — イベント定義

Event Sourcing では、ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class OrderEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str
    timestamp: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_data(self) -> dict:
        return self.model_dump(mode="json")


class OrderCreated(OrderEvent):
    """注文が作成された (pending)"""
    customer_id: str
    product_id: str
    amount: float
    shipping_address: dict | None = None


class OrderConfirmed(OrderEvent):
    """注文が確定された（決済成功）"""


class OrderCancelled(OrderEvent):
    """
    注文がキャンセルされた

    payment_failed=True のときは Saga の補償トランザクション、
    payment_captured=True のときは決済済みだが確定できなかった注文 (要返金)、
    どちらも False のときは利用者によるキャンセル操作。
    """
    reason: str
    payment_failed: bool = False
    payment_captured: bool = False


class OrderStatusChanged(OrderEvent):
    """運用操作でステータスが更新された"""
    from_status: str
    to_status: str
