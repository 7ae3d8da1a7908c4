from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from config import DATABASE_URL


def make_session_factory(url, **engine_kw):
    """Engine + session factory for the given URL (tests pass a SQLite URL)."""
    eng = create_async_engine(url, echo=False, **engine_kw)
    return eng, sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)


engine, AsyncSessionLocal = make_session_factory(
    DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=300,
)
Base = declarative_base()


async def init_models(eng=None):
    async with (eng or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with AsyncSessionLocal() as s:
        yield s
