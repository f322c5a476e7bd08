from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from settings import pg_settings


engine: AsyncEngine | None = None
session_maker: async_sessionmaker[AsyncSession] | None = None


def init(url: str | None = None) -> async_sessionmaker[AsyncSession]:
    global engine, session_maker

    engine = create_async_engine(
        url or pg_settings.get_url('psycopg'),
        pool_size=20,
        max_overflow=30,
    )
    session_maker = async_sessionmaker(engine, expire_on_commit=False)
    return session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    assert session_maker is not None
    return session_maker


async def dispose():
    if engine is not None:
        await engine.dispose()
