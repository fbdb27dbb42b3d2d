"""
Order Service — イベントストア

注文の変更はすべてイベントとして追記する。
Saga と運用操作 (ステータス更新・キャンセル) が同じ注文を同時に書き換えた場合、
後から追記した側が ConcurrencyError (409) になり、更新が失われることはない。
"""

from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import ErrorKind, ServiceError

from .tables import event_store


class ConcurrencyError(ServiceError):
    def __init__(self, aggregate_id: str, expected_version: int) -> None:
        super().__init__(
            "Order was modified concurrently",
            kind=ErrorKind.CONFLICT,
            error=f"{aggregate_id} is past version {expected_version}",
        )


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
    now: datetime | None = None,
) -> int:
    """
    expected_version + 1 を新しいバージョンとして追記し、それを返す。

    (aggregate_id, version) のユニーク制約違反は、読み込んだ後に
    別の書き込みがあったことを意味する。
    """
    new_version = expected_version + 1
    try:
        await session.execute(
            insert(event_store).values(
                aggregate_id=aggregate_id,
                aggregate_type=aggregate_type,
                event_type=event_type,
                event_data=event_data,
                version=new_version,
                created_at=now or datetime.now(timezone.utc),
            )
        )
    except IntegrityError:
        await session.rollback()
        raise ConcurrencyError(aggregate_id, expected_version)
    return new_version


async def load_events(
    session: AsyncSession,
    aggregate_id: str,
) -> list[dict]:
    """
    注文のイベントをバージョン順に返す。無ければ空リスト。
    """
    result = await session.execute(
        select(
            event_store.c.event_type,
            event_store.c.event_data,
            event_store.c.version,
            event_store.c.created_at,
        )
        .where(event_store.c.aggregate_id == aggregate_id)
        .order_by(event_store.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
