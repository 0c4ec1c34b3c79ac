"""
Orders — タイムライン

注文ごとの追記専用ステータス履歴。
(order_id, seq) が主キーなので、同じ注文を同時に更新した 2 つのリクエストが
同じ seq を書こうとすると片方が一意制約違反で失敗する → 競合を検知できる。
"""

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import order_timeline
from .aggregate import TimelineEntry


async def append_entries(
    session: AsyncSession, order_id: str, entries: list[TimelineEntry]
) -> None:
    if not entries:
        return
    await session.execute(
        insert(order_timeline),
        [
            {
                "order_id": order_id,
                "seq": entry.seq,
                "status": entry.status,
                "note": entry.note,
                "updated_by": entry.updated_by,
                "timestamp": entry.timestamp,
            }
            for entry in entries
        ],
    )


async def load_timelines(session: AsyncSession, order_ids: list[str]) -> dict[str, list]:
    """複数注文のタイムラインを seq 順にまとめて読む。"""
    if not order_ids:
        return {}
    result = await session.execute(
        select(order_timeline)
        .where(order_timeline.c.order_id.in_(order_ids))
        .order_by(order_timeline.c.order_id, order_timeline.c.seq)
    )
    grouped: dict[str, list] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        grouped[row.order_id].append(row)
    return grouped
