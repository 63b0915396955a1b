"""
Database connection and session management.
Uses SQLAlchemy for the cache, pattern and sales-history tables.
"""
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from auctionmind.utils.logger import get_logger

logger = get_logger("persistence.database")

# Base class for all our database models (must be defined before engine)
Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    In-memory SQLite gets a StaticPool so every session (and every thread)
    shares the one connection holding the data.
    """
    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url == "sqlite://"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        db_path = make_url(database_url).database
        if db_path:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    # Import registers the table classes on Base.metadata
    from auctionmind.persistence import tables  # noqa: F401
    Base.metadata.create_all(bind=engine)


def create_session_factory(database_url: Optional[str] = None, engine: Optional[Engine] = None) -> sessionmaker:
    """Build a session factory, creating tables on first use."""
    if engine is None:
        if not database_url:
            raise ValueError("database_url or engine is required")
        engine = build_engine(database_url)
    init_db(engine)
    logger.info(f"Database ready: {engine.url.render_as_string(hide_password=True)}")
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
