"""
Billing Service — テーブル定義

金額はワイヤ上と同じ小数点以下 2 桁の文字列で保存する。
"""

from sqlalchemy import Column, MetaData, String, Table

metadata = MetaData()

payment_intents = Table(
    "payment_intents",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("amount", String(20), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("status", String(32), nullable=False),
    Column("client_secret", String(255), nullable=True),
    Column("idempotency_key", String(255), nullable=True, index=True),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

refunds = Table(
    "refunds",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("payment_intent_id", String(36), nullable=False, index=True),
    Column("amount", String(20), nullable=False),
    Column("status", String(32), nullable=False),
    Column("idempotency_key", String(255), nullable=True, index=True),
    Column("created_at", String(40), nullable=False),
)
