"""
Transaction Worker — 監査レコード (transaction_history)

transaction_id が自然キー。ユニーク制約で重複配信時も1件に保つ。
作成後は更新も削除もしない。
"""

from sqlalchemy import Column, DateTime, Integer, MetaData, Numeric, String, Table

metadata = MetaData()

transaction_history = Table(
    "transaction_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("transaction_id", String(64), nullable=False, unique=True),
    Column("customer_id", String(64), nullable=False, index=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("product_id", String(64), nullable=False, index=True),
    Column("amount", Numeric(14, 2, asdecimal=False), nullable=False),
    Column("status", String(16), nullable=False, default="completed"),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
