"""
Order Service — テーブル定義

event_store:        全イベントの追記専用ログ (書き込み側の真実)
orders_read_model:  イベントから投影した現在の注文状態 (読み取り側)

(aggregate_id, version) のユニーク制約が楽観的ロックになる。
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
)

metadata = MetaData()

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(64), nullable=False, index=True),
    Column("aggregate_type", String(32), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_aggregate_version"),
)

orders_read_model = Table(
    "orders_read_model",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("customer_id", String(64), nullable=False, index=True),
    Column("product_id", String(64), nullable=False, index=True),
    Column("amount", Numeric(14, 2, asdecimal=False), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("payment_status", String(16), nullable=False),
    Column("shipping_address", JSON, nullable=True),
    Column("version", Integer, nullable=False),
    Column("order_date", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
