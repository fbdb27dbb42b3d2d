"""
Order Service — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

apply_xxx メソッド: 各イベントを適用して状態を変更する
ensure_xxx メソッド: コマンド実行前に状態遷移が許されるか検証する
"""

from datetime import datetime
from enum import Enum

from services.common.errors import ErrorKind, ServiceError


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


# 運用操作 (updateStatus) で許可する遷移。設定で差し替えられる。
# pending → confirmed は決済成功 (Saga) でのみ起きるので含めない。
DEFAULT_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING.value: {OrderStatus.CANCELLED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}

# キャンセルはどの設定でもこの状態からのみ
CANCELLABLE = frozenset({OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value})


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。

    状態遷移:
        PENDING → CONFIRMED  (決済成功)
        PENDING → CANCELLED  (決済失敗 = 補償、または決済後に確定できなかった)
        CONFIRMED → PROCESSING → SHIPPED → DELIVERED  (運用操作)
        {PENDING, CONFIRMED} → CANCELLED  (キャンセル操作)
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.customer_id: str = ""
        self.product_id: str = ""
        self.amount: float = 0
        self.shipping_address: dict | None = None
        self.status: str = "unknown"
        self.payment_status: str = PaymentStatus.PENDING.value
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = data["order_id"]
        self.customer_id = data["customer_id"]
        self.product_id = data["product_id"]
        self.amount = data["amount"]
        self.shipping_address = data.get("shipping_address")
        self.status = OrderStatus.PENDING.value
        self.payment_status = PaymentStatus.PENDING.value

    def apply_order_confirmed(self, _data: dict) -> None:
        self.status = OrderStatus.CONFIRMED.value
        self.payment_status = PaymentStatus.PAID.value

    def apply_order_cancelled(self, data: dict) -> None:
        self.status = OrderStatus.CANCELLED.value
        if data.get("payment_failed"):
            self.payment_status = PaymentStatus.FAILED.value
        elif data.get("payment_captured"):
            # 決済済みのまま取り消された。返金が必要
            self.payment_status = PaymentStatus.PAID.value

    def apply_order_status_changed(self, data: dict) -> None:
        self.status = data["to_status"]

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderConfirmed": self.apply_order_confirmed,
            "OrderCancelled": self.apply_order_cancelled,
            "OrderStatusChanged": self.apply_order_status_changed,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
            agg.created_at = agg.created_at or e["created_at"]
            agg.updated_at = e["created_at"]
        return agg

    # ── 遷移の検証 ───────────────────────────────────

    def ensure_pending(self) -> None:
        """Saga の確定/補償は pending からのみ。"""
        if self.status != OrderStatus.PENDING.value:
            raise ServiceError(
                f"Order is {self.status}, expected pending",
                kind=ErrorKind.INVALID_STATE,
            )

    def ensure_cancellable(self) -> None:
        if self.status not in CANCELLABLE:
            raise ServiceError(
                "Order cannot be cancelled at this stage",
                kind=ErrorKind.INVALID_STATE,
                error=f"Order status is {self.status}",
            )

    def ensure_transition(
        self,
        new_status: str,
        transitions: dict[str, set[str]] | None = None,
    ) -> None:
        table = transitions if transitions is not None else DEFAULT_TRANSITIONS
        if new_status == OrderStatus.CANCELLED.value:
            self.ensure_cancellable()
        if new_status not in table.get(self.status, set()):
            raise ServiceError(
                "Invalid status transition",
                kind=ErrorKind.VALIDATION,
                error=f"Cannot transition from {self.status} to {new_status}",
            )
