"""
Order Service — テーブル定義

`orders` は各注文の現在の状態（リードモデル）で、楽観的ロック用の
version カウンタを持つ。`order_events` は追記専用の監査ログで、
(aggregate_id, version) が一意なので 2 つの書き手が同じステップを二重に記録することはない。
"""

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("customer_id", String(100), nullable=False),
    Column("customer_name", String(255), nullable=True),
    Column("items", Text, nullable=False),
    Column("total_amount", String(20), nullable=False),
    Column("status", String(20), nullable=False),
    Column("reservation_id", String(36), nullable=True),
    Column("payment_intent_id", String(36), nullable=True),
    Column("idempotency_key", String(255), nullable=True, index=True),
    Column("version", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

order_events = Table(
    "order_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(36), nullable=False, index=True),
    Column("event_type", String(50), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_order_events_version"),
)
