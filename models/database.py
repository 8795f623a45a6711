# models/database.py
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config.settings import settings

engine = create_async_engine(settings.database_url, echo=settings.database_echo)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

class Base(DeclarativeBase):
    pass

def build_session_factory(database_url: str, **engine_kwargs):
    """Create an engine and session factory for a database other than the configured one"""
    other_engine = create_async_engine(database_url, **engine_kwargs)
    return other_engine, sessionmaker(other_engine, class_=AsyncSession, expire_on_commit=False)
