"""
Order Service — イベントストア

注文の状態変化はすべて、`orders` 行の更新と同じトランザクションでここに追記する。
バージョン番号は変更後の注文のバージョンで、
バージョン順にリプレイすれば集約を再構築できる。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.database import dump_json, load_json


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
    created_at: str,
) -> int:
    """
    イベントを 1 件追記し、新しいバージョンを返す。

    コミットは呼び出し側。(aggregate_id, version) の重複は一意制約違反になり、
    行レベルのバージョンチェックをすり抜けた 2 つ目の書き手を検出する。
    """
    new_version = expected_version + 1
    await session.execute(
        text("""
            INSERT INTO order_events
                (aggregate_id, event_type, event_data, version, created_at)
            VALUES
                (:agg_id, :evt_type, :evt_data, :version, :now)
        """),
        {
            "agg_id": aggregate_id,
            "evt_type": event_type,
            "evt_data": dump_json(event_data),
            "version": new_version,
            "now": created_at,
        },
    )
    return new_version


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM order_events
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """),
        {"agg_id": aggregate_id},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": load_json(row.event_data),
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
