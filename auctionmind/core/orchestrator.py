"""
Analysis orchestrator.

Composes canonicalization, the result cache, the freshness gate, the market
analyzer and the pattern store into one request:

1. canonicalize the filter into a cache identity
2. serve a cache hit younger than the validity window
3. refresh stale segments for entitled tiers (best effort)
4. fetch a bounded record sample
5. analyze with current high-confidence patterns
6. learn patterns from the result
7. cache the result
8. return the result with processing metrics

Cache, pattern, refresh and insight failures degrade the response and are
listed in metrics.degradations. A record-source failure is served from the
latest cached entry when one exists, else raised as RecordSourceUnavailableError.
"""
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from auctionmind.analysis.insight_writer import InsightWriter, OpenAIInsightWriter
from auctionmind.analysis.market_analyzer import MarketAnalyzer
from auctionmind.analysis.models import AnalysisResult, AnalysisType, InsightStatus
from auctionmind.cache.canonical import cache_identity
from auctionmind.cache.result_cache import (
    CacheEntry,
    CacheHistory,
    CacheStats,
    InMemoryResultCache,
    ResultCache,
    SqlResultCache,
)
from auctionmind.core.config import AuctionMindConfig, get_config
from auctionmind.core.errors import (
    AnalysisCancelledError,
    FilterCanonicalizationError,
    MalformedFilterError,
    PersistenceUnavailableError,
    RecordSourceUnavailableError,
    TransientUpstreamError,
)
from auctionmind.data.freshness import FreshnessGate, RefreshStatus
from auctionmind.data.record_store import InMemoryRecordStore, RecordSource, RefreshSource, SqlRecordStore
from auctionmind.data.records import AnalysisFilter, SaleRecord, segments_for
from auctionmind.learning.extraction import extract_patterns
from auctionmind.learning.models import Pattern, PatternType
from auctionmind.learning.pattern_store import InMemoryPatternStore, PatternStore, SqlPatternStore
from auctionmind.persistence.database import create_session_factory
from auctionmind.utils.logger import configure_logging, get_logger

logger = get_logger("core.orchestrator")


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running analysis."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            logger.info(f"Analysis cancelled before {stage}")
            raise AnalysisCancelledError(f"analysis cancelled before {stage}")


class ProcessingMetrics(BaseModel):
    duration_ms: float = Field(description="Wall-clock time of the request")
    record_count: int = Field(default=0, description="Records analyzed (0 for cache hits)")
    patterns_applied: int = Field(default=0, description="Learned patterns that boosted a candidate")
    patterns_learned: int = Field(default=0, description="Pattern observations written")
    refresh_outcomes: List[str] = Field(default_factory=list)
    degradations: List[str] = Field(default_factory=list)


class AnalysisResponse(BaseModel):
    subject: str
    analysis_type: AnalysisType
    cached: bool = Field(description="True when served from the result cache")
    stale: bool = Field(default=False, description="True when served past the validity window after a source failure")
    generated_at: datetime = Field(description="When the served result was computed")
    result: AnalysisResult
    metrics: ProcessingMetrics


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_filter(filter_obj: Any) -> AnalysisFilter:
    """Interpret a request filter. Raises MalformedFilterError when it cannot be parsed."""
    if filter_obj is None:
        return AnalysisFilter()
    if isinstance(filter_obj, AnalysisFilter):
        return filter_obj
    if not isinstance(filter_obj, Mapping):
        raise MalformedFilterError(f"Filter must be a mapping, got {type(filter_obj).__name__}")
    try:
        return AnalysisFilter.model_validate(dict(filter_obj))
    except ValidationError as e:
        raise MalformedFilterError(f"Invalid filter: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e


class AnalysisOrchestrator:
    """
    Entry point for cached, pattern-aware market analyses.

    Safe to call from many threads at once. Duplicate computation of one
    identity is tolerated; the most recent cache entry wins.
    """

    def __init__(
        self,
        record_source: RecordSource,
        result_cache: ResultCache,
        pattern_store: PatternStore,
        freshness_gate: FreshnessGate,
        analyzer: Optional[MarketAnalyzer] = None,
        config: Optional[AuctionMindConfig] = None,
        executor: Optional[Executor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or get_config()
        self.record_source = record_source
        self.result_cache = result_cache
        self.pattern_store = pattern_store
        self.freshness_gate = freshness_gate
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="auctionmind"
        )
        self.analyzer = analyzer or MarketAnalyzer(self.config, executor=self._executor)
        self._clock = clock or _utcnow

        logger.info(
            f"AnalysisOrchestrator initialized: validity={self.config.cache_validity_minutes}min, "
            f"freshness={self.config.freshness_window_days}d, refresh tiers={list(self.config.refresh_tiers)}"
        )

    # ------------------------------------------------------------------ #
    # Analysis
    # ------------------------------------------------------------------ #

    def run_analysis(
        self,
        subject: str,
        analysis_type: Any,
        filter_obj: Any,
        tier: Any,
        cancel: Optional[CancellationToken] = None,
    ) -> AnalysisResponse:
        """
        Run (or serve from cache) one market analysis.

        Args:
            subject: Requesting user or tenant id
            analysis_type: 'standard' or 'comprehensive'
            filter_obj: AnalysisFilter or a mapping of filter fields
            tier: Subscription tier of the requester
            cancel: Optional cancellation token

        Returns:
            AnalysisResponse with the result and processing metrics

        Raises:
            MalformedFilterError: the filter cannot be parsed
            RecordSourceUnavailableError: no records and no cached result
            AnalysisCancelledError: cancelled before a write
        """
        started = time.perf_counter()
        cancel = cancel or CancellationToken()
        analysis_type = AnalysisType(analysis_type)
        subject = str(subject)
        degradations: List[str] = []

        # 1. Identity
        cacheable = True
        try:
            identity = cache_identity(subject, analysis_type, filter_obj)
        except FilterCanonicalizationError as e:
            identity = None
            cacheable = False
            logger.warning(f"Filter cannot be cached ({e}); computing one-off result")
        analysis_filter = parse_filter(filter_obj)
        if not cacheable:
            degradations.append("uncachable_filter")

        # 2. Cache
        if cacheable:
            try:
                entry = self.result_cache.get(subject, analysis_type, filter_obj, max_age=self.config.cache_validity)
            except PersistenceUnavailableError as e:
                logger.warning(f"Cache read failed, treating as miss: {e}")
                degradations.append("cache_read_failed")
                entry = None
            if entry is not None:
                logger.info(f"Serving cached {analysis_type.value} analysis for {subject} ({identity[:12]})")
                return self._from_cache(subject, analysis_type, entry, started, degradations)

        # 3. Freshness
        cancel.raise_if_cancelled("refresh")
        refresh_outcomes = self._refresh_segments(analysis_filter, tier, degradations)

        # 4. Records
        try:
            records = self._fetch_records(analysis_filter, analysis_type)
        except TransientUpstreamError as e:
            logger.warning(f"Record source failed: {e}")
            stale = self._latest_cached(subject, analysis_type, filter_obj) if cacheable else None
            if stale is None:
                raise RecordSourceUnavailableError(
                    f"Record source unavailable and no cached analysis exists for this request: {e}"
                ) from e
            degradations.append("served_stale_cache")
            logger.warning(f"Serving stale cached analysis from {stale.created_at.isoformat()}")
            return self._from_cache(subject, analysis_type, stale, started, degradations, refresh_outcomes, stale=True)

        # 5. Analyze
        patterns = self._current_patterns(analysis_type, degradations) if cacheable else []
        result = self.analyzer.analyze(records, patterns)
        if result.insight_status == InsightStatus.FAILED:
            degradations.append("insights_failed")

        # 6. Learn
        learned = 0
        if cacheable:
            cancel.raise_if_cancelled("pattern writes")
            learned = self._learn(result, analysis_type, degradations)

        # 7. Cache
        generated_at = self._clock()
        if cacheable:
            cancel.raise_if_cancelled("cache write")
            try:
                generated_at = self.result_cache.put(subject, analysis_type, filter_obj, result).created_at
            except PersistenceUnavailableError as e:
                logger.warning(f"Cache write failed, result not cached: {e}")
                degradations.append("cache_write_failed")

        # 8. Respond
        metrics = ProcessingMetrics(
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            record_count=len(records),
            patterns_applied=result.patterns_applied,
            patterns_learned=learned,
            refresh_outcomes=refresh_outcomes,
            degradations=degradations,
        )
        if degradations:
            logger.warning(f"Analysis for {subject} completed with degradations: {degradations}")
        logger.info(
            f"Computed {analysis_type.value} analysis for {subject}: {len(records)} records, "
            f"{metrics.duration_ms}ms"
        )
        return AnalysisResponse(
            subject=subject,
            analysis_type=analysis_type,
            cached=False,
            generated_at=generated_at,
            result=result,
            metrics=metrics,
        )

    def _from_cache(
        self,
        subject: str,
        analysis_type: AnalysisType,
        entry: CacheEntry,
        started: float,
        degradations: List[str],
        refresh_outcomes: Optional[List[str]] = None,
        stale: bool = False,
    ) -> AnalysisResponse:
        return AnalysisResponse(
            subject=subject,
            analysis_type=analysis_type,
            cached=True,
            stale=stale,
            generated_at=entry.created_at,
            result=entry.payload,
            metrics=ProcessingMetrics(
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                refresh_outcomes=refresh_outcomes or [],
                degradations=degradations,
            ),
        )

    def _refresh_segments(self, analysis_filter: AnalysisFilter, tier: Any, degradations: List[str]) -> List[str]:
        outcomes = []
        for segment in segments_for(analysis_filter):
            try:
                outcome = self.freshness_gate.ensure_fresh(segment, tier, analysis_filter)
            except TransientUpstreamError as e:
                logger.warning(f"Freshness check failed for {segment.label}: {e}")
                degradations.append(f"refresh_failed:{segment.label}")
                continue
            if outcome is None:
                continue
            outcomes.append(str(outcome))
            if outcome.status == RefreshStatus.UPSTREAM_ERROR:
                degradations.append(f"refresh_failed:{segment.label}")
        return outcomes

    def _fetch_records(self, analysis_filter: AnalysisFilter, analysis_type: AnalysisType) -> List[SaleRecord]:
        """Bounded record sample. Raises TransientUpstreamError on failure or timeout."""
        limit = self.config.sample_cap(analysis_type.value)
        if analysis_filter.sample_size:
            limit = min(limit, analysis_filter.sample_size)

        future = self._executor.submit(self.record_source.fetch, analysis_filter, limit)
        try:
            return list(future.result(timeout=self.config.fetch_timeout_seconds))
        except FuturesTimeoutError as e:
            future.cancel()
            raise TransientUpstreamError(
                f"record fetch timed out after {self.config.fetch_timeout_seconds}s"
            ) from e

    def _latest_cached(self, subject: str, analysis_type: AnalysisType, filter_obj: Any) -> Optional[CacheEntry]:
        try:
            return self.result_cache.latest(subject, analysis_type, filter_obj)
        except PersistenceUnavailableError as e:
            logger.error(f"Cache unavailable for stale fallback: {e}")
            return None

    def _current_patterns(self, analysis_type: AnalysisType, degradations: List[str]) -> List[Pattern]:
        try:
            # Only opportunity patterns can boost a candidate
            return self.pattern_store.high_confidence(
                analysis_type, self.config.high_confidence_threshold, PatternType.OPPORTUNITY,
            )
        except PersistenceUnavailableError as e:
            logger.warning(f"Pattern read failed, analyzing without patterns: {e}")
            degradations.append("pattern_read_failed")
            return []

    def _learn(self, result: AnalysisResult, analysis_type: AnalysisType, degradations: List[str]) -> int:
        learned = 0
        for observation in extract_patterns(result, analysis_type, self._clock()):
            try:
                self.pattern_store.upsert(observation)
            except PersistenceUnavailableError as e:
                logger.warning(f"Pattern write failed, skipping remaining observations: {e}")
                degradations.append("pattern_write_failed")
                break
            learned += 1
        return learned

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def purge_old_cache(self, age: Optional[timedelta] = None) -> int:
        """Delete cache entries older than the retention age (default 30 days)."""
        return self.result_cache.purge_older_than(age or self.config.cache_retention)

    def top_patterns(self, analysis_type: Any, limit: int = 10) -> List[Pattern]:
        return self.pattern_store.top_by_confidence(AnalysisType(analysis_type), limit)

    def decay_patterns(
        self,
        older_than: Optional[timedelta] = None,
        factor: Optional[float] = None,
    ) -> Tuple[int, int]:
        """
        Decay patterns not seen recently, then prune stale low-confidence ones.

        Returns:
            (decayed, pruned)
        """
        decayed = self.pattern_store.decay(
            older_than or timedelta(days=self.config.decay_after_days),
            self.config.decay_factor if factor is None else factor,
        )
        pruned = self.pattern_store.prune(
            self.config.prune_below_confidence,
            timedelta(days=self.config.prune_after_days),
        )
        return decayed, pruned

    def cache_statistics(self) -> CacheStats:
        return self.result_cache.stats()

    def analysis_history(self, subject: str, limit: int = 20) -> CacheHistory:
        return self.result_cache.history(subject, limit)

    def shutdown(self) -> None:
        """Stop the worker pool used for fetches, refreshes and insights."""
        self._executor.shutdown(wait=False)


def build_orchestrator(
    config: Optional[AuctionMindConfig] = None,
    record_source: Optional[RecordSource] = None,
    refresh_source: Optional[RefreshSource] = None,
    insight_writer: Optional[InsightWriter] = None,
) -> AnalysisOrchestrator:
    """
    Wire an orchestrator from configuration.

    backend 'sql' stores records, cache entries and patterns in database_url;
    backend 'memory' keeps everything in process.
    """
    config = config or get_config()
    configure_logging(config.log_level)
    logger.debug(f"Effective configuration: {config.to_dict()}")
    executor = ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="auctionmind")

    if config.backend == "sql":
        session_factory = create_session_factory(config.database_url)
        record_source = record_source or SqlRecordStore(session_factory)
        result_cache = SqlResultCache(session_factory)
        pattern_store = SqlPatternStore(session_factory)
    elif config.backend == "memory":
        record_source = record_source or InMemoryRecordStore()
        result_cache = InMemoryResultCache()
        pattern_store = InMemoryPatternStore()
    else:
        raise ValueError(f"Unknown storage backend: {config.backend!r}")

    freshness_gate = FreshnessGate(
        record_source,
        refresh_source,
        window=config.freshness_window,
        refresh_tiers=config.refresh_tiers,
        timeout_seconds=config.refresh_timeout_seconds,
        executor=executor,
    )
    if insight_writer is None and config.insights_enabled:
        insight_writer = OpenAIInsightWriter(model=config.insight_model)
    analyzer = MarketAnalyzer(config, insight_writer=insight_writer, executor=executor)

    logger.info(f"Built orchestrator with {config.backend} backend")
    return AnalysisOrchestrator(
        record_source,
        result_cache,
        pattern_store,
        freshness_gate,
        analyzer=analyzer,
        config=config,
        executor=executor,
    )
