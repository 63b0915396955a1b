"""
SQLAlchemy table models.

sales_history is authoritative for sale records and is written only by the
ingestion collaborator (and by tier-gated refreshes). analysis_cache and
learned_patterns belong to the analysis core.
"""
from datetime import timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlalchemy.sql import func

from auctionmind.persistence.database import Base


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns timezone-aware UTC (SQLite drops tzinfo)."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class SaleHistoryRow(Base):
    """One auction sale observation."""
    __tablename__ = "sales_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lot_id = Column(String(64), nullable=False, unique=True, index=True)
    make = Column(String(100), index=True)
    model = Column(String(100), index=True)
    year = Column(Integer, index=True)
    vehicle_damage = Column(String(100))
    auction_location = Column(String(255))
    base_site = Column(String(50))
    purchase_price = Column(Float, nullable=True)
    sale_status = Column(String(50))
    sale_date = Column(UTCDateTime(), nullable=False, index=True)
    vehicle_has_keys = Column(Boolean, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AnalysisCacheRow(Base):
    """
    One cached analysis. Several rows may share an identity; the newest wins on read.
    """
    __tablename__ = "analysis_cache"
    __table_args__ = (
        Index("ix_analysis_cache_identity_created", "identity", "created_at"),
        Index("ix_analysis_cache_subject_created", "subject", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity = Column(String(64), nullable=False)
    subject = Column(String(255), nullable=False)
    analysis_type = Column(String(50), nullable=False)
    filters = Column(Text, nullable=False)        # canonical filter JSON
    payload = Column(Text, nullable=False)        # AnalysisResult JSON, write-once
    created_at = Column(UTCDateTime(), nullable=False, index=True)
    last_accessed_at = Column(UTCDateTime(), nullable=False)
    access_count = Column(Integer, nullable=False, default=0)


class LearnedPatternRow(Base):
    """A pattern keyed by (analysis_type, pattern_type, canonical payload)."""
    __tablename__ = "learned_patterns"
    __table_args__ = (
        UniqueConstraint("analysis_type", "pattern_type", "pattern_key", name="uq_learned_patterns_identity"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    analysis_type = Column(String(50), nullable=False, index=True)
    pattern_type = Column(String(50), nullable=False, index=True)
    pattern_key = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False)
    frequency = Column(Integer, nullable=False, default=1)
    last_seen = Column(UTCDateTime(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
