"""
Menu Service — テーブル定義
"""

from sqlalchemy import Boolean, Column, MetaData, String, Table, Text

metadata = MetaData()

menu_items = Table(
    "menu_items",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=True),
    Column("price", String(20), nullable=False),
    Column("category", String(100), nullable=False),
    Column("available", Boolean, nullable=False, default=True),
    Column("ingredients", Text, nullable=True),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)
