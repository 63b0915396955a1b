"""
Local sale-record access layer.

Two interchangeable stores satisfy the RecordSource protocol: an in-process
list (tests, single-node deployments) and a SQLAlchemy-backed store over the
sales_history table. Both return records most recent first.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol, runtime_checkable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from auctionmind.core.errors import TransientUpstreamError
from auctionmind.data.records import AnalysisFilter, MarketSegment, SaleRecord
from auctionmind.persistence.tables import SaleHistoryRow
from auctionmind.utils.logger import get_logger

logger = get_logger("data.record_store")


@runtime_checkable
class RecordSource(Protocol):
    """Read side used by the analysis core, plus ingest for refreshed records."""

    def fetch(self, analysis_filter: AnalysisFilter, limit: int) -> List[SaleRecord]:
        """Return up to `limit` matching records, most recent first.

        Raises TransientUpstreamError when the store is temporarily unavailable;
        an empty list means no matching data.
        """
        ...

    def latest_sale_date(self, segment: MarketSegment) -> Optional[datetime]:
        ...

    def ingest(self, records: Iterable[SaleRecord]) -> int:
        """Add records, skipping lots already present. Returns the number added."""
        ...


@dataclass
class RefreshBatch:
    """Records returned by the external refresh source for one window."""
    records: List[SaleRecord] = field(default_factory=list)
    count: int = 0


@runtime_checkable
class RefreshSource(Protocol):
    """Third-party auction data provider, queried only for entitled tiers."""

    def fetch_fresh(self, segment: MarketSegment, window_start: datetime, window_end: datetime) -> RefreshBatch:
        ...


class InMemoryRecordStore:
    """Thread-safe in-process record store."""

    def __init__(self, records: Optional[Iterable[SaleRecord]] = None):
        self._lock = threading.Lock()
        self._records: List[SaleRecord] = []
        self._lots = set()
        if records:
            self.ingest(records)

    def fetch(self, analysis_filter: AnalysisFilter, limit: int) -> List[SaleRecord]:
        with self._lock:
            snapshot = list(self._records)
        matching = [r for r in snapshot if analysis_filter.matches(r)]
        matching.sort(key=lambda r: r.sale_date, reverse=True)
        return matching[:limit]

    def latest_sale_date(self, segment: MarketSegment) -> Optional[datetime]:
        with self._lock:
            dates = [r.sale_date for r in self._records if segment.matches(r)]
        return max(dates) if dates else None

    def ingest(self, records: Iterable[SaleRecord]) -> int:
        added = 0
        with self._lock:
            for record in records:
                if record.lot_id in self._lots:
                    continue
                self._lots.add(record.lot_id)
                self._records.append(record)
                added += 1
        return added

    def __len__(self) -> int:
        return len(self._records)


def _row_to_record(row: SaleHistoryRow) -> SaleRecord:
    return SaleRecord(
        lot_id=row.lot_id,
        make=row.make,
        model=row.model,
        year=row.year,
        damage=row.vehicle_damage,
        location=row.auction_location,
        platform=row.base_site,
        price=row.purchase_price,
        sale_status=row.sale_status,
        sale_date=row.sale_date,
        has_keys=row.vehicle_has_keys,
    )


def _ci_in(column, values):
    """Case-insensitive IN over a list of strings."""
    return func.lower(column).in_([v.strip().lower() for v in values])


class SqlRecordStore:
    """
    Thin repository for sale records stored in the sales_history table.

    Args:
        session_factory: SQLAlchemy sessionmaker bound to the database.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _build_query(self, analysis_filter: AnalysisFilter, limit: int):
        stmt = select(SaleHistoryRow)
        if analysis_filter.makes:
            stmt = stmt.where(_ci_in(SaleHistoryRow.make, analysis_filter.makes))
        if analysis_filter.models:
            stmt = stmt.where(_ci_in(SaleHistoryRow.model, analysis_filter.models))
        if analysis_filter.damage_types:
            stmt = stmt.where(_ci_in(SaleHistoryRow.vehicle_damage, analysis_filter.damage_types))
        if analysis_filter.locations:
            stmt = stmt.where(_ci_in(SaleHistoryRow.auction_location, analysis_filter.locations))
        if analysis_filter.platforms:
            stmt = stmt.where(_ci_in(SaleHistoryRow.base_site, analysis_filter.platforms))
        if analysis_filter.year_range:
            lower, upper = analysis_filter.year_range
            stmt = stmt.where(SaleHistoryRow.year >= lower, SaleHistoryRow.year <= upper)
        if analysis_filter.price_range:
            lower, upper = analysis_filter.price_range
            stmt = stmt.where(
                SaleHistoryRow.purchase_price >= lower,
                SaleHistoryRow.purchase_price <= upper,
            )
        return stmt.order_by(SaleHistoryRow.sale_date.desc()).limit(limit)

    def fetch(self, analysis_filter: AnalysisFilter, limit: int) -> List[SaleRecord]:
        stmt = self._build_query(analysis_filter, limit)
        logger.debug("Executing sales_history query: %s", stmt)
        try:
            with self.session_factory() as session:
                rows = session.scalars(stmt).all()
                return [_row_to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise TransientUpstreamError(f"sales_history query failed: {e}") from e

    def latest_sale_date(self, segment: MarketSegment) -> Optional[datetime]:
        stmt = select(func.max(SaleHistoryRow.sale_date))
        if segment.make:
            stmt = stmt.where(func.lower(SaleHistoryRow.make) == segment.make.lower())
        if segment.model:
            stmt = stmt.where(func.lower(SaleHistoryRow.model) == segment.model.lower())
        if segment.year is not None:
            stmt = stmt.where(SaleHistoryRow.year == segment.year)
        try:
            with self.session_factory() as session:
                latest = session.execute(stmt).scalar()
        except SQLAlchemyError as e:
            raise TransientUpstreamError(f"sales_history freshness query failed: {e}") from e
        if latest is not None and latest.tzinfo is None:
            latest = latest.replace(tzinfo=timezone.utc)
        return latest

    def ingest(self, records: Iterable[SaleRecord]) -> int:
        records = list(records)
        if not records:
            return 0
        lot_ids = [r.lot_id for r in records]
        try:
            with self.session_factory() as session:
                existing = set(session.scalars(
                    select(SaleHistoryRow.lot_id).where(SaleHistoryRow.lot_id.in_(lot_ids))
                ).all())
                added = 0
                for record in records:
                    if record.lot_id in existing:
                        continue
                    existing.add(record.lot_id)
                    session.add(SaleHistoryRow(
                        lot_id=record.lot_id,
                        make=record.make,
                        model=record.model,
                        year=record.year,
                        vehicle_damage=record.damage,
                        auction_location=record.location,
                        base_site=record.platform,
                        purchase_price=record.price,
                        sale_status=record.sale_status,
                        sale_date=record.sale_date,
                        vehicle_has_keys=record.has_keys,
                    ))
                    added += 1
                session.commit()
                return added
        except IntegrityError:
            # A concurrent ingest inserted one of the lots first; retry lot by lot
            logger.info("Concurrent ingest detected, retrying per record")
            return sum(self.ingest([r]) for r in records) if len(records) > 1 else 0
        except SQLAlchemyError as e:
            raise TransientUpstreamError(f"sales_history ingest failed: {e}") from e
