"""
Inventory Service — テーブル定義

有効在庫 (available = quantity - reserved_quantity) は保存しない。
必要なクエリで毎回計算する。
"""

from sqlalchemy import Column, Integer, MetaData, String, Table, Text

metadata = MetaData()

stock = Table(
    "stock",
    metadata,
    Column("item_id", String(64), primary_key=True),
    Column("item_name", String(255), nullable=False),
    Column("quantity", Integer, nullable=False, default=0),
    Column("reserved_quantity", Integer, nullable=False, default=0),
    Column("updated_at", String(40), nullable=False),
)

reservations = Table(
    "reservations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("items", Text, nullable=False),
    Column("status", String(20), nullable=False),
    Column("idempotency_key", String(255), nullable=True, index=True),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
)
