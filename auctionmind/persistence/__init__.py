"""SQLAlchemy persistence for cache entries, learned patterns and sale records."""
from auctionmind.persistence.database import Base, build_engine, create_session_factory, init_db

__all__ = ["Base", "build_engine", "create_session_factory", "init_db"]
