"""
Database plumbing shared by the consent and audit stores
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .utils.clock import ensure_utc

Base = declarative_base()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads"""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=echo)


def create_session_factory(database_url: Optional[str] = None,
                           engine: Optional[Engine] = None,
                           echo: bool = False) -> sessionmaker:
    """Bind a session factory and make sure every table exists"""
    if engine is None:
        engine = create_db_engine(database_url or "sqlite:///medconsent.db", echo=echo)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC"""
    value = ensure_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value)
