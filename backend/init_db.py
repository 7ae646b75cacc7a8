import asyncio
import logging
import os
from services.db import engine, Base, DATABASE_URL
from models import user, one_time_code  # important: force-load all models

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

async def init_models():
    """Create the users and one_time_codes tables."""
    # Never log the password part of the URL
    logger.info(f"Initializing database at {DATABASE_URL.rsplit('@', 1)[-1]}")
    logger.info(f"Environment: {os.getenv('ENVIRONMENT', 'development')}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Created tables: {sorted(Base.metadata.tables.keys())}")
    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_models())
