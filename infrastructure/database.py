"""
数据库引擎与会话工厂
"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine import make_url
from sqlalchemy.pool import NullPool

from core.config import settings
from infrastructure.models import Base


_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _build_async_url(database_url: str) -> str:
    """未显式指定驱动时补上异步驱动"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    if url.drivername not in _ASYNC_DRIVERS:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}. 请在 DATABASE__URL 中指定 async 驱动")
    return str(url.set(drivername=_ASYNC_DRIVERS[url.drivername]))


engine = create_async_engine(
    _build_async_url(settings.database.url),
    echo=settings.DEBUG,
    pool_pre_ping=not settings.database.url.startswith("sqlite"),
)

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


def create_isolated_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    为 Celery 任务创建独立会话工厂

    每个任务通过 asyncio.run 运行在新的事件循环上，连接不能跨循环复用，
    因此使用 NullPool，每次取用都新建连接。
    """
    task_engine = create_async_engine(
        _build_async_url(settings.database.url),
        poolclass=NullPool,
    )
    return async_sessionmaker(bind=task_engine, expire_on_commit=False)


async def create_tables():
    """开发环境建表；生产使用 Alembic 迁移"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
