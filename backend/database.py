from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Boolean, Float, Text, JSON
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from datetime import datetime
import os
from config import settings

def async_database_url(url: str) -> str:
    """Point plain database URLs at their async drivers"""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url

# Create async engine
engine = create_async_engine(async_database_url(settings.database_url), echo=False)

# Session factory
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()

class TemplateRecord(Base):
    __tablename__ = "templates"

    id = Column(String(32), primary_key=True)
    name = Column(String(100), unique=True, index=True, nullable=False)
    tile_x = Column(Integer, nullable=False)
    tile_y = Column(Integer, nullable=False)
    pixel_x = Column(Integer, nullable=False)
    pixel_y = Column(Integer, nullable=False)
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    share_code = Column(Text, nullable=False)  # image, compressed
    user_ids = Column(JSON, nullable=False, default=list)

    can_buy_charges = Column(Boolean, default=False)
    can_buy_max_charges = Column(Boolean, default=False)
    anti_grief_mode = Column(Boolean, default=False)
    erase_mode = Column(Boolean, default=False)
    outline_mode = Column(Boolean, default=False)
    skip_painted_pixels = Column(Boolean, default=False)
    enable_autostart = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class AccountRecord(Base):
    __tablename__ = "accounts"

    id = Column(BigInteger, primary_key=True, autoincrement=False)  # remote account id
    name = Column(String(100), nullable=False)
    cookies = Column(JSON, nullable=False)
    expiration_date = Column(Float, nullable=True)
    suspended_until = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

class SettingsRecord(Base):
    __tablename__ = "app_settings"

    id = Column(Integer, primary_key=True)
    data = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

async def get_db():
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()

async def init_db():
    """Initialize database tables"""
    os.makedirs(settings.data_dir, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
