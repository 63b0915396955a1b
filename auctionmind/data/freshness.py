"""
Freshness policy for local sale data.

A market segment is fresh when its newest local sale falls inside the
freshness window. Stale segments may be topped up from the external refresh
source, but only for subscription tiers entitled to trigger refreshes; every
other tier is served whatever local data exists.

Segment state:
    stale/not_attempted --refresh()--> stale/attempted   (denied, no data, upstream error)
    stale/not_attempted --refresh()--> fresh/attempted   (non-empty successful fetch)
"""
from __future__ import annotations

import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Union

from auctionmind.cache.cache_policy import DEFAULT_FRESHNESS_WINDOW_DAYS
from auctionmind.core.errors import TransientUpstreamError
from auctionmind.data.record_store import RecordSource, RefreshSource
from auctionmind.data.records import AnalysisFilter, MarketSegment
from auctionmind.utils.logger import get_logger

logger = get_logger("data.freshness")


class Tier(str, Enum):
    """Subscription tiers, lowest to highest."""
    FREEMIUM = "freemium"
    BASIC = "basic"
    GOLD = "gold"
    PLATINUM = "platinum"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Union["Tier", str, None]) -> Optional["Tier"]:
        """Return the tier for a string, or None when it is not a known tier."""
        if isinstance(value, Tier):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


DEFAULT_REFRESH_TIERS = frozenset({Tier.GOLD, Tier.PLATINUM, Tier.ADMIN})


class RefreshStatus(str, Enum):
    REFRESHED = "refreshed"
    NO_NEW_DATA = "no_new_data"
    DENIED = "denied"
    UPSTREAM_ERROR = "upstream_error"


@dataclass(frozen=True)
class RefreshOutcome:
    segment: MarketSegment
    status: RefreshStatus
    count: int = 0
    detail: Optional[str] = None

    def __str__(self) -> str:
        if self.status == RefreshStatus.REFRESHED:
            return f"{self.segment.label}: refreshed({self.count})"
        return f"{self.segment.label}: {self.status.value}"


@dataclass(frozen=True)
class FreshnessState:
    segment: MarketSegment
    fresh: bool
    refresh_attempted: bool
    latest_sale_date: Optional[datetime] = None
    last_outcome: Optional[RefreshOutcome] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FreshnessGate:
    """
    Decides whether local data is fresh and whether a tier may refresh it.

    Args:
        record_source: Local store consulted for the newest sale per segment
            and receiving refreshed records.
        refresh_source: External provider. When None, refresh attempts by
            entitled tiers report an upstream error.
        window: Freshness window (default 3 days).
        refresh_tiers: Tiers allowed to trigger a refresh.
        timeout_seconds: Upper bound on one provider call.
        executor: Pool running provider calls. A private pool is created when omitted.
        clock: Returns the current time (timezone-aware UTC).
    """

    def __init__(
        self,
        record_source: RecordSource,
        refresh_source: Optional[RefreshSource] = None,
        window: timedelta = timedelta(days=DEFAULT_FRESHNESS_WINDOW_DAYS),
        refresh_tiers: Iterable[Union[Tier, str]] = DEFAULT_REFRESH_TIERS,
        timeout_seconds: float = 10.0,
        executor: Optional[Executor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.record_source = record_source
        self.refresh_source = refresh_source
        self.window = window
        self.refresh_tiers = frozenset(t for t in (Tier.parse(x) for x in refresh_tiers) if t is not None)
        self.timeout_seconds = timeout_seconds
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="refresh")
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._outcomes: Dict[MarketSegment, RefreshOutcome] = {}

    def is_fresh(self, segment: MarketSegment, now: Optional[datetime] = None) -> bool:
        """True iff the newest local sale for the segment is within the window (inclusive)."""
        latest = self.record_source.latest_sale_date(segment)
        if latest is None:
            return False
        return latest >= (now or self._clock()) - self.window

    def can_refresh(self, tier: Union[Tier, str, None]) -> bool:
        """True only for entitled tiers. Unknown tiers are denied."""
        parsed = Tier.parse(tier)
        return parsed is not None and parsed in self.refresh_tiers

    def refresh(
        self,
        segment: MarketSegment,
        tier: Union[Tier, str, None],
        analysis_filter: Optional[AnalysisFilter] = None,
        now: Optional[datetime] = None,
    ) -> RefreshOutcome:
        """
        Pull the freshness window for a segment from the external source and
        ingest it locally. Denied tiers never reach the source.
        """
        if not self.can_refresh(tier):
            logger.info(f"Refresh denied for tier {tier!r} on {segment.label}")
            return self._remember(RefreshOutcome(segment, RefreshStatus.DENIED))

        if self.refresh_source is None:
            return self._remember(
                RefreshOutcome(segment, RefreshStatus.UPSTREAM_ERROR, detail="no refresh source configured")
            )

        window_end = now or self._clock()
        window_start = window_end - self.window
        logger.info(
            f"Refreshing {segment.label} for tier {Tier.parse(tier).value} "
            f"({window_start.date()} to {window_end.date()})"
        )
        if analysis_filter is not None:
            logger.debug(f"Refresh requested for filter {analysis_filter.model_dump(exclude_none=True)}")

        future = self._executor.submit(self.refresh_source.fetch_fresh, segment, window_start, window_end)
        try:
            batch = future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError:
            future.cancel()
            logger.warning(f"Refresh for {segment.label} timed out after {self.timeout_seconds}s")
            return self._remember(RefreshOutcome(segment, RefreshStatus.UPSTREAM_ERROR, detail="timeout"))
        except Exception as e:
            logger.warning(f"Refresh source failed for {segment.label}: {e}")
            return self._remember(RefreshOutcome(segment, RefreshStatus.UPSTREAM_ERROR, detail=str(e)))

        records = [r for r in (batch.records or []) if segment.matches(r)]
        try:
            added = self.record_source.ingest(records)
        except TransientUpstreamError as e:
            logger.error(f"Could not store refreshed records for {segment.label}: {e}")
            return self._remember(RefreshOutcome(segment, RefreshStatus.UPSTREAM_ERROR, detail=str(e)))

        if added == 0:
            logger.info(f"Refresh for {segment.label} returned no new records")
            return self._remember(RefreshOutcome(segment, RefreshStatus.NO_NEW_DATA))

        logger.info(f"Refresh for {segment.label} stored {added} new records")
        return self._remember(RefreshOutcome(segment, RefreshStatus.REFRESHED, count=added))

    def ensure_fresh(
        self,
        segment: MarketSegment,
        tier: Union[Tier, str, None],
        analysis_filter: Optional[AnalysisFilter] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshOutcome]:
        """Refresh only when the segment is stale and the tier is entitled. None means nothing was done."""
        now = now or self._clock()
        if self.is_fresh(segment, now):
            return None
        if not self.can_refresh(tier):
            logger.debug(f"{segment.label} is stale; tier {tier!r} served local data")
            return None
        return self.refresh(segment, tier, analysis_filter, now)

    def state(self, segment: MarketSegment, now: Optional[datetime] = None) -> FreshnessState:
        latest = self.record_source.latest_sale_date(segment)
        fresh = latest is not None and latest >= (now or self._clock()) - self.window
        with self._lock:
            outcome = self._outcomes.get(segment)
        return FreshnessState(
            segment=segment,
            fresh=fresh,
            refresh_attempted=outcome is not None and outcome.status != RefreshStatus.DENIED,
            latest_sale_date=latest,
            last_outcome=outcome,
        )

    def _remember(self, outcome: RefreshOutcome) -> RefreshOutcome:
        with self._lock:
            self._outcomes[outcome.segment] = outcome
        return outcome
