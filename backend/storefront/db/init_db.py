import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from storefront.db.base import Base
from storefront.db.session import engine as default_engine
import storefront.db.models  # noqa: F401: registers all models with Base metadata

logger = logging.getLogger(__name__)


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables if they don't already exist.

    Accepts an optional engine so tests can inject an in-memory SQLite engine
    without touching the real database URL from settings.
    """
    target = engine or default_engine

    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("init_db: tables created / verified against %s", target.url)
