from sqlalchemy import Column, DateTime, MetaData, Numeric, String, Table

metadata = MetaData()

payments = Table(
    "payments",
    metadata,
    Column("payment_id", String(64), primary_key=True),
    Column("customer_id", String(64), nullable=False, index=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("product_id", String(64), nullable=False),
    Column("amount", Numeric(14, 2, asdecimal=False), nullable=False),
    Column("payment_method", String(32), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("transaction_id", String(64), nullable=True, unique=True),
    Column("failure_reason", String(255), nullable=True),
    Column("payment_date", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
