"""
Common — データベース接続

Database per Service: 各サービスが自分のエンジンとスキーマを持つ。
テーブルは SQLAlchemy Core で宣言して起動時に作成し、
クエリ自体は sqlalchemy.text() で素の SQL として書く。
"""

import json
from datetime import datetime, timezone

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


async def open_database(
    database_url: str, metadata: MetaData
) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


def to_iso(moment: datetime) -> str:
    """タイムスタンプは ISO-8601 (UTC) 文字列で保存する（文字列順 = 時刻順）"""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utcnow() -> str:
    return to_iso(datetime.now(timezone.utc))


def dump_json(value) -> str:
    return json.dumps(value, default=str)


def load_json(value):
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value
