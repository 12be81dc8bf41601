# src/core/database.py
import logging

from prisma import Prisma
from src.core.settings import settings

logger = logging.getLogger(__name__)


def _create_client() -> Prisma:
    # Falls back to DATABASE_URL from the schema's env() when unset here
    if settings.DATABASE_URL:
        return Prisma(datasource={"url": settings.DATABASE_URL})
    return Prisma()


# Shared by the API process and cron-triggered workers
prisma = _create_client()


async def connect_db() -> None:
    if not prisma.is_connected():
        await prisma.connect()
        logger.info("Connected to database")


async def disconnect_db() -> None:
    if prisma.is_connected():
        await prisma.disconnect()


async def get_db() -> Prisma:
    """Database dependency for FastAPI dependency injection."""
    return prisma
