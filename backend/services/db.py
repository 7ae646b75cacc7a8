from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
import os

# Database configuration with defaults
POSTGRES_USER = os.getenv('POSTGRES_USER', 'market_user')
POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD', 'secretpassword')
DB_HOST = os.getenv('DB_HOST', 'localhost')
DB_PORT = os.getenv('DB_PORT', '5432')
POSTGRES_DB = os.getenv('POSTGRES_DB', 'marketplace')

# An explicit DATABASE_URL (e.g. sqlite+aiosqlite for local runs) wins over the parts above
DATABASE_URL = os.getenv(
    'DATABASE_URL',
    f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{DB_HOST}:{DB_PORT}/{POSTGRES_DB}"
)

engine = create_async_engine(DATABASE_URL, echo=os.getenv('SQL_ECHO', 'false').lower() == 'true', future=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

Base = declarative_base()

async def get_db():
    async with SessionLocal() as session:
        yield session
