"""
Result cache for computed analyses.

Entries are keyed by cache_identity(subject, analysis_type, filter). Writes
append a new entry instead of overwriting, so every identity keeps a short
history trail; reads always return the most recent entry. The payload of an
entry is write-once; only access bookkeeping (access_count, last_accessed_at)
changes after insert.

Two backends:
- InMemoryResultCache: guarded dict, for tests and single-process deployments
- SqlResultCache: analysis_cache table via SQLAlchemy

Backends raise PersistenceUnavailableError when storage fails. Callers decide
whether that is a miss (reads) or a skipped write (puts).
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from itertools import islice
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from auctionmind.analysis.models import AnalysisResult, AnalysisType
from auctionmind.cache.cache_policy import RECENT_ACCESS_HOURS
from auctionmind.cache.canonical import cache_identity, canonical_filter
from auctionmind.core.errors import PersistenceUnavailableError
from auctionmind.persistence.tables import AnalysisCacheRow
from auctionmind.utils.logger import get_logger

logger = get_logger("cache.result_cache")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    """One cached analysis."""
    identity: str
    subject: str
    analysis_type: AnalysisType
    filters: str
    payload: AnalysisResult
    created_at: datetime
    last_accessed_at: datetime
    access_count: int = 0
    entry_id: Optional[int] = None

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at


@dataclass
class CacheStats:
    total_entries: int
    hits: int
    misses: int
    hit_rate: float
    average_access_count: float
    recently_accessed: int


class CacheHistory:
    """
    Lazy, finite, restartable view over a subject's cache entries.

    Each iteration re-reads the backing store, most recent entry first.
    """

    def __init__(self, loader: Callable[[int], Iterator[CacheEntry]], limit: int):
        self._loader = loader
        self.limit = max(0, limit)

    def __iter__(self) -> Iterator[CacheEntry]:
        if self.limit == 0:
            return iter(())
        return islice(self._loader(self.limit), self.limit)


class ResultCache(ABC):
    """Cache contract shared by every backend."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow
        self._counter_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------ #
    # Public interface
    # ------------------------------------------------------------------ #

    def get(
        self,
        subject: str,
        analysis_type: AnalysisType,
        filter_obj: Any,
        max_age: Optional[timedelta] = None,
    ) -> Optional[CacheEntry]:
        """
        Return the most recent entry for the identity, or None on a miss.

        A hit increments access_count by one and stamps last_accessed_at.
        With max_age, an entry older than the validity window is a miss.
        """
        identity = cache_identity(subject, analysis_type, filter_obj)
        now = self._clock()
        entry = self._latest(identity)
        if entry is None or (max_age is not None and entry.age(now) > max_age):
            self._count(hit=False)
            logger.debug(f"Cache miss for {identity[:12]} (subject={subject}, type={AnalysisType(analysis_type).value})")
            return None
        entry = self._record_access(entry, now)
        self._count(hit=True)
        logger.debug(f"Cache hit for {identity[:12]} (access_count={entry.access_count})")
        return entry

    def latest(self, subject: str, analysis_type: AnalysisType, filter_obj: Any) -> Optional[CacheEntry]:
        """Most recent entry regardless of age, without access bookkeeping."""
        return self._latest(cache_identity(subject, analysis_type, filter_obj))

    def put(self, subject: str, analysis_type: AnalysisType, filter_obj: Any, payload: AnalysisResult) -> CacheEntry:
        """Append a new entry for the identity."""
        now = self._clock()
        entry = CacheEntry(
            identity=cache_identity(subject, analysis_type, filter_obj),
            subject=str(subject),
            analysis_type=AnalysisType(analysis_type),
            filters=canonical_filter(filter_obj),
            payload=payload,
            created_at=now,
            last_accessed_at=now,
            access_count=0,
        )
        stored = self._append(entry)
        logger.info(f"Cached {entry.analysis_type.value} analysis for subject {subject} ({entry.identity[:12]})")
        return stored

    def history(self, subject: str, limit: int = 20) -> CacheHistory:
        """Entries for a subject, most recent first."""
        return CacheHistory(lambda n: self._iter_subject(str(subject), n), limit)

    def purge_older_than(self, age: timedelta, now: Optional[datetime] = None) -> int:
        """Delete entries created before now - age. Returns the number deleted."""
        cutoff = (now or self._clock()) - age
        deleted = self._delete_before(cutoff)
        logger.info(f"Cache purge removed {deleted} entries created before {cutoff.isoformat()}")
        return deleted

    def stats(self, now: Optional[datetime] = None) -> CacheStats:
        total, average_access, recent = self._aggregate((now or self._clock()) - timedelta(hours=RECENT_ACCESS_HOURS))
        with self._counter_lock:
            hits, misses = self._hits, self._misses
        lookups = hits + misses
        return CacheStats(
            total_entries=total,
            hits=hits,
            misses=misses,
            hit_rate=round(hits / lookups, 4) if lookups else 0.0,
            average_access_count=round(average_access, 1),
            recently_accessed=recent,
        )

    def _count(self, hit: bool) -> None:
        with self._counter_lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    # ------------------------------------------------------------------ #
    # Backend hooks
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _latest(self, identity: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    def _record_access(self, entry: CacheEntry, now: datetime) -> CacheEntry:
        ...

    @abstractmethod
    def _append(self, entry: CacheEntry) -> CacheEntry:
        ...

    @abstractmethod
    def _iter_subject(self, subject: str, limit: int) -> Iterator[CacheEntry]:
        ...

    @abstractmethod
    def _delete_before(self, cutoff: datetime) -> int:
        ...

    @abstractmethod
    def _aggregate(self, recent_cutoff: datetime) -> Tuple[int, float, int]:
        """Return (total entries, mean access_count, entries accessed since cutoff)."""
        ...


def _detached(entry: CacheEntry, **changes) -> CacheEntry:
    """Copy of an entry that shares no mutable state with the stored one."""
    return replace(entry, payload=entry.payload.model_copy(deep=True), **changes)


class InMemoryResultCache(ResultCache):
    """
    Guarded-map backend. Entries are kept per identity in insertion order.

    Payloads are deep-copied on the way in and out, so callers never share
    the stored object.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._lock = threading.RLock()
        self._by_identity: Dict[str, List[CacheEntry]] = {}
        self._sequence = 0

    def _latest(self, identity: str) -> Optional[CacheEntry]:
        with self._lock:
            entries = self._by_identity.get(identity)
            return _detached(entries[-1]) if entries else None

    def _record_access(self, entry: CacheEntry, now: datetime) -> CacheEntry:
        with self._lock:
            for stored in self._by_identity.get(entry.identity, []):
                if stored.entry_id == entry.entry_id:
                    stored.access_count += 1
                    stored.last_accessed_at = now
                    return _detached(stored)
        # Purged between lookup and bookkeeping; still a valid read
        return _detached(entry, access_count=entry.access_count + 1, last_accessed_at=now)

    def _append(self, entry: CacheEntry) -> CacheEntry:
        with self._lock:
            self._sequence += 1
            stored = _detached(entry, entry_id=self._sequence)
            self._by_identity.setdefault(stored.identity, []).append(stored)
            return _detached(stored)

    def _iter_subject(self, subject: str, limit: int) -> Iterator[CacheEntry]:
        with self._lock:
            entries = [_detached(e) for group in self._by_identity.values() for e in group if e.subject == subject]
        entries.sort(key=lambda e: (e.created_at, e.entry_id), reverse=True)
        yield from entries[:limit]

    def _delete_before(self, cutoff: datetime) -> int:
        deleted = 0
        with self._lock:
            for identity in list(self._by_identity):
                kept = [e for e in self._by_identity[identity] if e.created_at >= cutoff]
                deleted += len(self._by_identity[identity]) - len(kept)
                if kept:
                    self._by_identity[identity] = kept
                else:
                    del self._by_identity[identity]
        return deleted

    def _aggregate(self, recent_cutoff: datetime) -> Tuple[int, float, int]:
        with self._lock:
            entries = [e for group in self._by_identity.values() for e in group]
        if not entries:
            return 0, 0.0, 0
        average = sum(e.access_count for e in entries) / len(entries)
        recent = sum(1 for e in entries if e.last_accessed_at >= recent_cutoff)
        return len(entries), average, recent


def _row_to_entry(row: AnalysisCacheRow) -> CacheEntry:
    return CacheEntry(
        identity=row.identity,
        subject=row.subject,
        analysis_type=AnalysisType(row.analysis_type),
        filters=row.filters,
        payload=AnalysisResult.model_validate_json(row.payload),
        created_at=row.created_at,
        last_accessed_at=row.last_accessed_at,
        access_count=row.access_count,
        entry_id=row.id,
    )


class SqlResultCache(ResultCache):
    """analysis_cache table backend."""

    def __init__(self, session_factory: sessionmaker, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self.session_factory = session_factory

    def _latest(self, identity: str) -> Optional[CacheEntry]:
        stmt = (
            select(AnalysisCacheRow)
            .where(AnalysisCacheRow.identity == identity)
            .order_by(AnalysisCacheRow.created_at.desc(), AnalysisCacheRow.id.desc())
            .limit(1)
        )
        try:
            with self.session_factory() as session:
                row = session.scalars(stmt).first()
                return _row_to_entry(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Cache read error for {identity[:12]}: {e}")
            raise PersistenceUnavailableError(f"analysis_cache read failed: {e}") from e

    def _record_access(self, entry: CacheEntry, now: datetime) -> CacheEntry:
        stmt = (
            update(AnalysisCacheRow)
            .where(AnalysisCacheRow.id == entry.entry_id)
            .values(access_count=AnalysisCacheRow.access_count + 1, last_accessed_at=now)
        )
        try:
            with self.session_factory() as session:
                session.execute(stmt)
                session.commit()
                count = session.scalar(
                    select(AnalysisCacheRow.access_count).where(AnalysisCacheRow.id == entry.entry_id)
                )
        except SQLAlchemyError as e:
            logger.error(f"Cache access update error for {entry.identity[:12]}: {e}")
            raise PersistenceUnavailableError(f"analysis_cache update failed: {e}") from e
        return replace(
            entry,
            access_count=count if count is not None else entry.access_count + 1,
            last_accessed_at=now,
        )

    def _append(self, entry: CacheEntry) -> CacheEntry:
        row = AnalysisCacheRow(
            identity=entry.identity,
            subject=entry.subject,
            analysis_type=entry.analysis_type.value,
            filters=entry.filters,
            payload=entry.payload.model_dump_json(),
            created_at=entry.created_at,
            last_accessed_at=entry.last_accessed_at,
            access_count=entry.access_count,
        )
        try:
            with self.session_factory() as session:
                session.add(row)
                session.commit()
                return replace(entry, entry_id=row.id)
        except SQLAlchemyError as e:
            logger.error(f"Cache write error for {entry.identity[:12]}: {e}")
            raise PersistenceUnavailableError(f"analysis_cache write failed: {e}") from e

    def _iter_subject(self, subject: str, limit: int) -> Iterator[CacheEntry]:
        stmt = (
            select(AnalysisCacheRow)
            .where(AnalysisCacheRow.subject == subject)
            .order_by(AnalysisCacheRow.created_at.desc(), AnalysisCacheRow.id.desc())
            .limit(limit)
            .execution_options(yield_per=50)
        )
        try:
            with self.session_factory() as session:
                for row in session.scalars(stmt):
                    yield _row_to_entry(row)
        except SQLAlchemyError as e:
            logger.error(f"Cache history read error for subject {subject}: {e}")
            raise PersistenceUnavailableError(f"analysis_cache history failed: {e}") from e

    def _delete_before(self, cutoff: datetime) -> int:
        try:
            with self.session_factory() as session:
                result = session.execute(delete(AnalysisCacheRow).where(AnalysisCacheRow.created_at < cutoff))
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Cache purge error: {e}")
            raise PersistenceUnavailableError(f"analysis_cache purge failed: {e}") from e

    def _aggregate(self, recent_cutoff: datetime) -> Tuple[int, float, int]:
        try:
            with self.session_factory() as session:
                total, average = session.execute(
                    select(func.count(AnalysisCacheRow.id), func.avg(AnalysisCacheRow.access_count))
                ).one()
                recent = session.scalar(
                    select(func.count(AnalysisCacheRow.id)).where(AnalysisCacheRow.last_accessed_at >= recent_cutoff)
                )
        except SQLAlchemyError as e:
            logger.error(f"Cache statistics error: {e}")
            raise PersistenceUnavailableError(f"analysis_cache statistics failed: {e}") from e
        return int(total or 0), float(average or 0.0), int(recent or 0)
