"""
Confidence-weighted pattern storage.

Patterns are keyed by (analysis_type, pattern_type, canonical payload). Seeing
an existing pattern again blends its confidence with the new observation
((existing + new) / 2), bumps its frequency and moves last_seen forward.
Read-then-write happens under the store lock, so concurrent upserts of one
identity never lose an update.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import TypeAdapter
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from auctionmind.analysis.models import AnalysisType
from auctionmind.cache.canonical import canonical_json
from auctionmind.core.errors import PersistenceUnavailableError
from auctionmind.learning.models import Pattern, PatternPayload, PatternType
from auctionmind.persistence.tables import LearnedPatternRow
from auctionmind.utils.logger import get_logger

logger = get_logger("learning.pattern_store")

_payload_adapter = TypeAdapter(PatternPayload)

PatternKey = Tuple[str, str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def blend(existing: Pattern, observed: Pattern) -> Pattern:
    """Merge a new observation into a stored pattern."""
    return existing.model_copy(update={
        "confidence": _clamp((existing.confidence + observed.confidence) / 2),
        "frequency": existing.frequency + 1,
        "last_seen": max(existing.last_seen, observed.last_seen),
    })


def _check_factor(factor: float) -> None:
    if not 0.0 <= factor <= 1.0:
        raise ValueError(f"decay factor must be within [0, 1], got {factor}")


class PatternStore(ABC):
    """Pattern store contract shared by every backend."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow

    @abstractmethod
    def upsert(self, pattern: Pattern) -> Pattern:
        """Insert with frequency 1, or blend into the existing identity. Returns the stored pattern."""

    @abstractmethod
    def get(self, analysis_type: AnalysisType, pattern_type: PatternType, payload) -> Optional[Pattern]:
        ...

    @abstractmethod
    def top_by_confidence(self, analysis_type: AnalysisType, limit: int = 10) -> List[Pattern]:
        """Patterns for an analysis type, confidence desc, ties by frequency desc."""

    @abstractmethod
    def by_type(self, pattern_type: PatternType) -> List[Pattern]:
        ...

    @abstractmethod
    def decay(self, older_than: timedelta, factor: float, now: Optional[datetime] = None) -> int:
        """Multiply the confidence of patterns not seen since now - older_than. Returns the count."""

    @abstractmethod
    def prune(self, max_confidence: float, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Delete patterns below max_confidence that were not seen since now - older_than."""

    @abstractmethod
    def high_confidence(
        self,
        analysis_type: AnalysisType,
        threshold: float,
        pattern_type: Optional[PatternType] = None,
    ) -> List[Pattern]:
        """Every pattern at or above threshold, optionally of one type, in ranking order."""


def _key(analysis_type, pattern_type, payload) -> PatternKey:
    return (AnalysisType(analysis_type).value, PatternType(pattern_type).value, canonical_json(payload))


def _rank(pattern: Pattern):
    return (-pattern.confidence, -pattern.frequency, pattern.payload_key)


class InMemoryPatternStore(PatternStore):
    """Guarded-map backend."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._lock = threading.RLock()
        self._patterns: Dict[PatternKey, Pattern] = {}

    def upsert(self, pattern: Pattern) -> Pattern:
        key = pattern.identity
        with self._lock:
            existing = self._patterns.get(key)
            stored = blend(existing, pattern) if existing else pattern.model_copy(update={"frequency": 1})
            self._patterns[key] = stored
        return stored

    def get(self, analysis_type, pattern_type, payload) -> Optional[Pattern]:
        with self._lock:
            return self._patterns.get(_key(analysis_type, pattern_type, payload))

    def top_by_confidence(self, analysis_type, limit: int = 10) -> List[Pattern]:
        analysis_type = AnalysisType(analysis_type)
        with self._lock:
            matching = [p for p in self._patterns.values() if p.analysis_type == analysis_type]
        return sorted(matching, key=_rank)[:max(0, limit)]

    def high_confidence(self, analysis_type, threshold: float, pattern_type=None) -> List[Pattern]:
        analysis_type = AnalysisType(analysis_type)
        pattern_type = PatternType(pattern_type) if pattern_type is not None else None
        with self._lock:
            matching = [
                p for p in self._patterns.values()
                if p.analysis_type == analysis_type
                and p.confidence >= threshold
                and (pattern_type is None or p.pattern_type == pattern_type)
            ]
        return sorted(matching, key=_rank)

    def by_type(self, pattern_type) -> List[Pattern]:
        pattern_type = PatternType(pattern_type)
        with self._lock:
            matching = [p for p in self._patterns.values() if p.pattern_type == pattern_type]
        return sorted(matching, key=_rank)

    def decay(self, older_than: timedelta, factor: float, now: Optional[datetime] = None) -> int:
        _check_factor(factor)
        cutoff = (now or self._clock()) - older_than
        decayed = 0
        with self._lock:
            for key, pattern in self._patterns.items():
                if pattern.last_seen < cutoff:
                    self._patterns[key] = pattern.model_copy(update={"confidence": _clamp(pattern.confidence * factor)})
                    decayed += 1
        logger.info(f"Decayed {decayed} patterns not seen since {cutoff.isoformat()}")
        return decayed

    def prune(self, max_confidence: float, older_than: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - older_than
        with self._lock:
            doomed = [k for k, p in self._patterns.items() if p.confidence < max_confidence and p.last_seen < cutoff]
            for key in doomed:
                del self._patterns[key]
        logger.info(f"Pruned {len(doomed)} stale low-confidence patterns")
        return len(doomed)

    def __len__(self) -> int:
        return len(self._patterns)


def _row_to_pattern(row: LearnedPatternRow) -> Pattern:
    return Pattern(
        analysis_type=AnalysisType(row.analysis_type),
        pattern_type=PatternType(row.pattern_type),
        payload=_payload_adapter.validate_json(row.pattern_key),
        confidence=row.confidence,
        frequency=row.frequency,
        last_seen=row.last_seen,
    )


class SqlPatternStore(PatternStore):
    """
    learned_patterns table backend.

    The unique (analysis_type, pattern_type, pattern_key) constraint backs the
    in-process lock when several processes share one database.
    """

    def __init__(self, session_factory: sessionmaker, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self.session_factory = session_factory
        self._lock = threading.Lock()

    def _select(self, key: PatternKey):
        analysis_type, pattern_type, pattern_key = key
        return select(LearnedPatternRow).where(
            LearnedPatternRow.analysis_type == analysis_type,
            LearnedPatternRow.pattern_type == pattern_type,
            LearnedPatternRow.pattern_key == pattern_key,
        )

    def upsert(self, pattern: Pattern) -> Pattern:
        key = pattern.identity
        with self._lock:
            try:
                try:
                    return self._upsert(key, pattern)
                except IntegrityError:
                    # Another process inserted the identity first; blend into its row
                    logger.info(f"Concurrent insert for pattern {key[1]}:{key[2]}, retrying as update")
                    return self._upsert(key, pattern)
            except SQLAlchemyError as e:
                logger.error(f"Pattern write error: {e}")
                raise PersistenceUnavailableError(f"learned_patterns write failed: {e}") from e

    def _upsert(self, key: PatternKey, pattern: Pattern) -> Pattern:
        with self.session_factory() as session:
            row = session.scalars(self._select(key)).first()
            if row is None:
                stored = pattern.model_copy(update={"frequency": 1})
                session.add(LearnedPatternRow(
                    analysis_type=key[0],
                    pattern_type=key[1],
                    pattern_key=key[2],
                    confidence=stored.confidence,
                    frequency=1,
                    last_seen=stored.last_seen,
                ))
            else:
                stored = blend(_row_to_pattern(row), pattern)
                row.confidence = stored.confidence
                row.frequency = stored.frequency
                row.last_seen = stored.last_seen
            session.commit()
            return stored

    def get(self, analysis_type, pattern_type, payload) -> Optional[Pattern]:
        try:
            with self.session_factory() as session:
                row = session.scalars(self._select(_key(analysis_type, pattern_type, payload))).first()
                return _row_to_pattern(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Pattern read error: {e}")
            raise PersistenceUnavailableError(f"learned_patterns read failed: {e}") from e

    def _query(self, stmt) -> List[Pattern]:
        try:
            with self.session_factory() as session:
                return [_row_to_pattern(row) for row in session.scalars(stmt).all()]
        except SQLAlchemyError as e:
            logger.error(f"Pattern read error: {e}")
            raise PersistenceUnavailableError(f"learned_patterns read failed: {e}") from e

    def top_by_confidence(self, analysis_type, limit: int = 10) -> List[Pattern]:
        stmt = (
            select(LearnedPatternRow)
            .where(LearnedPatternRow.analysis_type == AnalysisType(analysis_type).value)
            .order_by(
                LearnedPatternRow.confidence.desc(),
                LearnedPatternRow.frequency.desc(),
                LearnedPatternRow.pattern_key,
            )
            .limit(max(0, limit))
        )
        return self._query(stmt)

    def high_confidence(self, analysis_type, threshold: float, pattern_type=None) -> List[Pattern]:
        stmt = select(LearnedPatternRow).where(
            LearnedPatternRow.analysis_type == AnalysisType(analysis_type).value,
            LearnedPatternRow.confidence >= threshold,
        )
        if pattern_type is not None:
            stmt = stmt.where(LearnedPatternRow.pattern_type == PatternType(pattern_type).value)
        stmt = stmt.order_by(
            LearnedPatternRow.confidence.desc(),
            LearnedPatternRow.frequency.desc(),
            LearnedPatternRow.pattern_key,
        )
        return self._query(stmt)

    def by_type(self, pattern_type) -> List[Pattern]:
        stmt = (
            select(LearnedPatternRow)
            .where(LearnedPatternRow.pattern_type == PatternType(pattern_type).value)
            .order_by(
                LearnedPatternRow.confidence.desc(),
                LearnedPatternRow.frequency.desc(),
                LearnedPatternRow.pattern_key,
            )
        )
        return self._query(stmt)

    def decay(self, older_than: timedelta, factor: float, now: Optional[datetime] = None) -> int:
        _check_factor(factor)
        cutoff = (now or self._clock()) - older_than
        stmt = (
            update(LearnedPatternRow)
            .where(LearnedPatternRow.last_seen < cutoff)
            .values(confidence=LearnedPatternRow.confidence * factor)
        )
        try:
            with self._lock, self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Pattern decay error: {e}")
            raise PersistenceUnavailableError(f"learned_patterns decay failed: {e}") from e
        decayed = result.rowcount or 0
        logger.info(f"Decayed {decayed} patterns not seen since {cutoff.isoformat()}")
        return decayed

    def prune(self, max_confidence: float, older_than: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - older_than
        stmt = delete(LearnedPatternRow).where(
            LearnedPatternRow.confidence < max_confidence,
            LearnedPatternRow.last_seen < cutoff,
        )
        try:
            with self._lock, self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Pattern prune error: {e}")
            raise PersistenceUnavailableError(f"learned_patterns prune failed: {e}") from e
        pruned = result.rowcount or 0
        logger.info(f"Pruned {pruned} stale low-confidence patterns")
        return pruned
