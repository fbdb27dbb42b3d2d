"""
Common — DB エンジンとセッションファクトリ

各サービスは自分専用の DB を持つ。lifespan で create_database() を呼び、
得られたエンジンとセッションファクトリを app.state に置く。
"""

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def create_database(
    database_url: str,
    **engine_kwargs,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(database_url, echo=False, **engine_kwargs)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, session_factory


async def init_schema(engine: AsyncEngine, metadata: MetaData) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
