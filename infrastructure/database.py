"""
异步引擎与会话工厂

业务代码不直接使用会话，统一经 SQLAlchemyUnitOfWork 控制事务边界。
"""
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from core.config import settings
from infrastructure.models import Base


_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _build_async_url(database_url: str) -> str:
    """未显式指定驱动的 URL 补上 async 驱动（asyncpg / aiosqlite）"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    try:
        driver = _ASYNC_DRIVERS[url.drivername]
    except KeyError:
        raise ValueError(f"不支持的数据库: {url.drivername}，请在 DATABASE__URL 中指定 async 驱动") from None
    return url.set(drivername=driver).render_as_string(hide_password=False)


def build_engine(database_url: str, *, echo: bool = False, **kwargs) -> AsyncEngine:
    return create_async_engine(_build_async_url(database_url), echo=echo, **kwargs)


engine = build_engine(settings.database.url, echo=settings.database.echo)

# UoW 提交后实体仍需读取字段，不能过期
AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_tables(bind: AsyncEngine = engine) -> None:
    """开发与测试环境直接建表；生产使用 alembic 迁移"""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
