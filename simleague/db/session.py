import logging

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from simleague.core.config import settings
from simleague.core.errors import SchemaMismatch
from simleague.db.base import Base
import simleague.models  # noqa: F401  registers every table on Base.metadata

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    connect_args={"timeout": 30} if settings.DATABASE_URL.startswith("sqlite") else {},
)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db():
    """Dependency for FastAPI to get an async database session"""
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(bind: AsyncEngine = engine) -> None:
    """Create tables that do not exist yet. Existing tables are left untouched."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("init_db_create_all_done")


def _missing_schema(sync_conn) -> list[str]:
    inspector = inspect(sync_conn)
    existing_tables = set(inspector.get_table_names())
    missing: list[str] = []
    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            missing.append(table.name)
            continue
        columns = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name not in columns:
                missing.append(f"{table.name}.{column.name}")
    return missing


async def check_schema(bind: AsyncEngine = engine) -> None:
    """Fail fast when the database lacks tables or columns the models need.

    Runs once at startup so a drifted schema is reported before any request is
    served, instead of surfacing as per-request Store errors.
    """
    async with bind.connect() as conn:
        missing = await conn.run_sync(_missing_schema)
    if missing:
        logger.critical("schema_mismatch", extra={"missing": missing})
        raise SchemaMismatch(
            f"Database schema is missing: {', '.join(missing)}",
            details={"missing": missing},
        )
    logger.info("schema_check_passed")
