"""
Aggregate-statistics market analysis over a sample of sale records.

Produces a summary, at most one opportunity per dimension, time trends, risk
factors and recommendations. Structured output is deterministic for a given
record sample and pattern set; the optional insight prose is not.
"""
from collections import Counter, defaultdict
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
import math

import numpy as np

from auctionmind.analysis.insight_writer import InsightWriter
from auctionmind.analysis.models import (
    AnalysisResult,
    InsightStatus,
    MarketSummary,
    MarketTrend,
    Opportunity,
    PriceRange,
    Recommendations,
    RiskFactor,
    RiskLevel,
    SegmentCount,
    SegmentProfile,
)
from auctionmind.core.config import AuctionMindConfig, get_config
from auctionmind.data.records import SaleRecord
from auctionmind.learning.models import Pattern, PatternType
from auctionmind.utils.logger import get_logger

logger = get_logger("analysis.market_analyzer")

HIGH_RISK_CV = 0.6
FLAT_TREND_PCT = 0.5
TOP_MAKES = 5
ELEVATED_RISK_KEYWORDS = ("flood", "water")
KEYS_DIMENSION = "keys"
WITHOUT_KEYS = "Without Keys"

# Risk-factor thresholds
DAMAGE_CONCENTRATION_SHARE = 0.4
DAMAGE_CONCENTRATION_HIGH_SHARE = 0.6
VOLATILITY_MEDIUM_CV = 0.4
LOW_SOLD_RATE = 0.5
THIN_SAMPLE_RECORDS = 50


def baseline_confidence(sample_size: int) -> float:
    """Confidence earned by sample size alone. Approaches 0.85 as n grows."""
    return 0.5 + 0.35 * (1 - math.exp(-sample_size / 50))


def price_stats(prices: Sequence[float]) -> Tuple[float, float]:
    """
    Mean and coefficient of variation of a non-empty price list.

    Returns:
        (mean, cv) where cv = population std / mean
    """
    arr = np.asarray(prices, dtype=float)
    mean = float(arr.mean())
    cv = float(arr.std() / mean) if mean > 0 else 0.0
    return mean, cv


@dataclass(frozen=True)
class Partition:
    """Priced records sharing one value of an opportunity dimension."""
    key: str
    prices: Tuple[float, ...]
    make: Optional[str] = None
    year: Optional[int] = None

    @property
    def count(self) -> int:
        return len(self.prices)


@dataclass(frozen=True)
class Dimension:
    name: str
    min_volume: int
    min_partitions: int
    key: Callable[[SaleRecord], Optional[str]]


def _make_year_key(record: SaleRecord) -> Optional[str]:
    if not record.make or record.year is None:
        return None
    return f"{record.make} {record.year}"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


def build_dimensions(config: AuctionMindConfig) -> List[Dimension]:
    return [
        Dimension("damage", config.min_volume_damage, 2, lambda r: _clean(r.damage)),
        Dimension("location", config.min_volume_location, 2, lambda r: _clean(r.location)),
        Dimension("make", config.min_volume_make, 2, lambda r: _clean(r.make)),
        Dimension("make_year", config.min_volume_make_year, 3, _make_year_key),
    ]


def partition_records(records: Iterable[SaleRecord], dimension: Dimension) -> List[Partition]:
    """
    Group priced records by a dimension, keeping partitions that meet the
    dimension's minimum volume (inclusive).

    Returns:
        Qualifying partitions ranked by mean price ascending, ties to the
        larger sample, then by key.
    """
    groups: Dict[str, List[SaleRecord]] = defaultdict(list)
    for record in records:
        if not record.has_price:
            continue
        key = dimension.key(record)
        if key is not None:
            groups[key].append(record)

    partitions = []
    for key, members in groups.items():
        if len(members) < dimension.min_volume:
            continue
        partitions.append(Partition(
            key=key,
            prices=tuple(float(r.price) for r in members),
            make=members[0].make,
            year=members[0].year,
        ))
    partitions.sort(key=lambda p: (float(np.mean(p.prices)), -p.count, p.key))
    return partitions


def _money(value: float) -> str:
    return f"${round(value):,}"


def _describe_opportunity(dimension: str, partition: Partition, discount: float, mean: float) -> Tuple[str, str, List[str]]:
    """Title, description and action steps for a candidate."""
    key = partition.key
    if dimension == "damage":
        return (
            f"{key} Damage Vehicles",
            f"Vehicles with {key} damage trade at {discount:.1f}% below market average, "
            f"presenting strong acquisition opportunities.",
            [
                f"Target {key} damage vehicles in upcoming auctions",
                f"Set maximum bid at {_money(mean * 1.1)}",
                "Focus on vehicles with repairable damage patterns",
            ],
        )
    if dimension == "location":
        return (
            f"{key} Location Advantage",
            f"Vehicles from {key} auctions trade {discount:.1f}% below market average, "
            f"offering geographic arbitrage opportunities.",
            [
                f"Prioritize auctions in {key}",
                "Research transportation costs to your market",
                f"Build relationships with {key} auction houses",
            ],
        )
    if dimension == "make":
        return (
            f"{key} Value Opportunity",
            f"{key} vehicles trade {discount:.1f}% below market average across the sample.",
            [
                f"Shortlist {key} lots in upcoming auctions",
                f"Set competitive bid limits around {_money(mean * 1.05)}",
                f"Compare {key} repair costs against the market before bidding",
            ],
        )
    label = f"{partition.year} {partition.make}"
    return (
        f"{label} Opportunity",
        f"{label} vehicles trade below market average, representing strong value acquisition targets.",
        [
            f"Target {label} models in auctions",
            "Research common issues for this make/year combination",
            f"Set competitive bid limits around {_money(mean * 1.05)}",
        ],
    )


class MarketAnalyzer:
    """
    Turns a record sample into an AnalysisResult.

    Args:
        config: Thresholds and confidence settings (global config when omitted).
        insight_writer: Optional prose writer (see insight_writer.py).
        executor: Pool running the insight writer under a timeout.
    """

    def __init__(
        self,
        config: Optional[AuctionMindConfig] = None,
        insight_writer: Optional[InsightWriter] = None,
        executor: Optional[Executor] = None,
    ):
        self.config = config or get_config()
        self.insight_writer = insight_writer
        self._executor = executor
        self.dimensions = build_dimensions(self.config)

    def analyze(self, records: Sequence[SaleRecord], patterns: Iterable[Pattern] = ()) -> AnalysisResult:
        """
        Analyze a record sample.

        Args:
            records: Sale records (may be empty, prices may be missing)
            patterns: Learned patterns; high-confidence opportunity patterns
                boost matching candidates

        Returns:
            AnalysisResult; AnalysisResult.empty_result() for no records
        """
        records = list(records)
        if not records:
            logger.info("No records to analyze, returning empty result")
            return AnalysisResult.empty_result()

        priced = [r for r in records if r.has_price]
        summary = self.summarize(records)
        boosts = self._opportunity_boosts(patterns)

        opportunities: List[Opportunity] = []
        applied = 0
        if priced:
            market_mean = float(np.mean([r.price for r in priced]))
            for dimension in self.dimensions:
                opportunity = self.find_opportunity(priced, dimension, market_mean, boosts)
                if opportunity is not None:
                    opportunities.append(opportunity)
                    applied += int(opportunity.boosted)
            opportunity = self.find_keys_opportunity(priced, boosts)
            if opportunity is not None:
                opportunities.append(opportunity)
                applied += int(opportunity.boosted)

        trends = self.find_trends(priced)
        risks = self.assess_risks(records, summary)
        result = AnalysisResult(
            summary=summary,
            opportunities=opportunities,
            trends=trends,
            risks=risks,
            recommendations=self.recommend(summary, opportunities),
            patterns_applied=applied,
        )
        logger.info(
            f"Analyzed {summary.total_records} records ({summary.priced_records} priced): "
            f"{len(opportunities)} opportunities, {len(trends)} trends, {len(risks)} risks, "
            f"{applied} pattern boosts"
        )
        if self.insight_writer is not None:
            result = self.write_insights(result)
        return result

    # ------------------------------------------------------------------ #
    # Summary
    # ------------------------------------------------------------------ #

    def summarize(self, records: Sequence[SaleRecord]) -> MarketSummary:
        priced = [r for r in records if r.has_price]
        prices = np.asarray([r.price for r in priced], dtype=float)

        make_counts = Counter(r.make for r in records if r.make)
        top_makes = sorted(make_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_MAKES]

        statuses = [r for r in records if r.sale_status]
        sold_rate = round(sum(1 for r in statuses if r.is_sold) / len(statuses), 4) if statuses else None

        by_make: Dict[str, List[float]] = defaultdict(list)
        for r in priced:
            if r.make:
                by_make[r.make].append(float(r.price))
        profiles = []
        for make, make_prices in by_make.items():
            mean, cv = price_stats(make_prices)
            profiles.append(SegmentProfile(name=make, count=len(make_prices), average_price=round(mean, 2), price_cv=round(cv, 4)))
        profiles.sort(key=lambda p: (-p.count, p.name))

        return MarketSummary(
            total_records=len(records),
            priced_records=len(priced),
            average_price=round(float(prices.mean()), 2) if prices.size else None,
            price_range=PriceRange(min=float(prices.min()), max=float(prices.max())) if prices.size else None,
            top_makes=[SegmentCount(name=name, count=count) for name, count in top_makes],
            sold_rate=sold_rate,
            make_profiles=profiles,
        )

    # ------------------------------------------------------------------ #
    # Opportunities
    # ------------------------------------------------------------------ #

    def _opportunity_boosts(self, patterns: Iterable[Pattern]) -> Dict[Tuple[str, str], float]:
        """Best high-confidence opportunity pattern per (dimension, partition)."""
        boosts: Dict[Tuple[str, str], float] = {}
        for pattern in patterns:
            if pattern.pattern_type != PatternType.OPPORTUNITY:
                continue
            if pattern.confidence < self.config.high_confidence_threshold:
                continue
            key = (pattern.payload.dimension, pattern.payload.partition.casefold())
            boosts[key] = max(boosts.get(key, 0.0), pattern.confidence)
        return boosts

    def find_opportunity(
        self,
        priced: Sequence[SaleRecord],
        dimension: Dimension,
        market_mean: float,
        boosts: Optional[Dict[Tuple[str, str], float]] = None,
    ) -> Optional[Opportunity]:
        """Cheapest qualifying partition of one dimension, if it is below market."""
        partitions = partition_records(priced, dimension)
        if len(partitions) < dimension.min_partitions:
            return None

        best = partitions[0]
        mean, cv = price_stats(best.prices)
        if mean >= market_mean:
            return None

        confidence, boosted = self._confidence(dimension.name, best.key, best.count, boosts)

        discount = (market_mean - mean) / market_mean * 100
        title, description, steps = _describe_opportunity(dimension.name, best, discount, mean)
        return Opportunity(
            dimension=dimension.name,
            partition=best.key,
            title=title,
            description=description,
            average_price=round(mean, 2),
            market_average=round(market_mean, 2),
            profit_potential=round(market_mean - mean, 2),
            discount_pct=round(discount, 1),
            sample_size=best.count,
            risk_level=self.risk_level(dimension.name, best.key, best.count, cv),
            confidence=round(confidence, 4),
            boosted=boosted,
            action_steps=steps,
        )

    def find_keys_opportunity(
        self,
        priced: Sequence[SaleRecord],
        boosts: Optional[Dict[Tuple[str, str], float]] = None,
    ) -> Optional[Opportunity]:
        """
        Keys-present versus keys-missing price gap.

        Both groups need min_volume_keys priced records (inclusive). Records
        with unknown key status are left out. A candidate exists only when
        lots without keys sell below lots with keys; the keyed mean is the
        comparison baseline.
        """
        with_keys = [float(r.price) for r in priced if r.has_keys is True]
        without_keys = [float(r.price) for r in priced if r.has_keys is False]
        minimum = self.config.min_volume_keys
        if len(with_keys) < minimum or len(without_keys) < minimum:
            return None

        keyed_mean, _ = price_stats(with_keys)
        mean, cv = price_stats(without_keys)
        if mean >= keyed_mean:
            return None

        confidence, boosted = self._confidence(KEYS_DIMENSION, WITHOUT_KEYS, len(without_keys), boosts)
        premium = (keyed_mean - mean) / mean * 100
        return Opportunity(
            dimension=KEYS_DIMENSION,
            partition=WITHOUT_KEYS,
            title="Vehicle Keys Impact Analysis",
            description=(
                f"Vehicles with keys present command {premium:.1f}% higher prices. "
                f"Target vehicles without keys for lower acquisition costs."
            ),
            average_price=round(mean, 2),
            market_average=round(keyed_mean, 2),
            profit_potential=round(keyed_mean - mean, 2),
            discount_pct=round((keyed_mean - mean) / keyed_mean * 100, 1),
            sample_size=len(without_keys),
            risk_level=self.risk_level(KEYS_DIMENSION, WITHOUT_KEYS, len(without_keys), cv),
            confidence=round(confidence, 4),
            boosted=boosted,
            action_steps=[
                "Focus bidding on vehicles listed without keys",
                "Factor in key replacement costs ($150-$500)",
                "Verify vehicle security systems before bidding",
            ],
        )

    def _confidence(
        self,
        dimension: str,
        partition: str,
        count: int,
        boosts: Optional[Dict[Tuple[str, str], float]],
    ) -> Tuple[float, bool]:
        confidence = baseline_confidence(count)
        pattern_confidence = (boosts or {}).get((dimension, partition.casefold()))
        if pattern_confidence is None:
            return confidence, False
        return min(
            self.config.confidence_cap,
            max(confidence, pattern_confidence) + self.config.confidence_boost,
        ), True

    def risk_level(self, dimension: str, partition: str, count: int, cv: float) -> RiskLevel:
        if cv > HIGH_RISK_CV:
            return RiskLevel.HIGH
        if dimension == "damage" and any(k in partition.lower() for k in ELEVATED_RISK_KEYWORDS):
            return RiskLevel.MEDIUM
        if count <= self.config.low_risk_min_volume:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # ------------------------------------------------------------------ #
    # Trends
    # ------------------------------------------------------------------ #

    def find_trends(self, priced: Sequence[SaleRecord]) -> List[MarketTrend]:
        trends = []
        by_year: Dict[str, List[float]] = defaultdict(list)
        by_month: Dict[str, List[float]] = defaultdict(list)
        for r in priced:
            if r.year is not None:
                by_year[str(r.year)].append(float(r.price))
            by_month[r.sale_date.strftime("%Y-%m")].append(float(r.price))

        for bucket, groups, sort_key in (
            ("model_year", by_year, int),
            ("sale_month", by_month, str),
        ):
            trend = self._trend(bucket, groups, sort_key)
            if trend is not None:
                trends.append(trend)
        return trends

    def _trend(self, bucket: str, groups: Dict[str, List[float]], sort_key) -> Optional[MarketTrend]:
        """Head-to-tail price change across qualifying buckets."""
        qualifying = sorted(
            ((label, prices) for label, prices in groups.items() if len(prices) >= self.config.trend_min_bucket_size),
            key=lambda item: sort_key(item[0]),
        )
        if len(qualifying) < self.config.trend_min_buckets:
            return None

        start_label, start_prices = qualifying[0]
        end_label, end_prices = qualifying[-1]
        start_avg = float(np.mean(start_prices))
        end_avg = float(np.mean(end_prices))
        change = (end_avg - start_avg) / start_avg * 100

        if abs(change) <= FLAT_TREND_PCT:
            direction = "flat"
            finding = f"Prices are flat from {start_label} to {end_label}"
            impact = "Stable market - compete on condition and logistics"
        elif change > 0:
            direction = "up"
            finding = f"Vehicle prices have increased by {abs(change):.1f}% from {start_label} to {end_label}"
            impact = "Rising market - consider faster acquisition"
        else:
            direction = "down"
            finding = f"Vehicle prices have decreased by {abs(change):.1f}% from {start_label} to {end_label}"
            impact = "Declining market - negotiate aggressively"

        used = sum(len(prices) for _, prices in qualifying)
        return MarketTrend(
            bucket=bucket,
            start_label=start_label,
            end_label=end_label,
            start_average=round(start_avg, 2),
            end_average=round(end_avg, 2),
            percent_change=round(change, 1),
            direction=direction,
            bucket_count=len(qualifying),
            finding=finding,
            impact=impact,
            confidence=round(baseline_confidence(used), 4),
        )

    # ------------------------------------------------------------------ #
    # Risks and recommendations
    # ------------------------------------------------------------------ #

    def assess_risks(self, records: Sequence[SaleRecord], summary: MarketSummary) -> List[RiskFactor]:
        risks = []
        n = summary.total_records

        damages = Counter(_clean(r.damage) for r in records if _clean(r.damage))
        if damages:
            damage, count = sorted(damages.items(), key=lambda kv: (-kv[1], kv[0]))[0]
            share = count / n
            if share >= DAMAGE_CONCENTRATION_SHARE:
                risks.append(RiskFactor(
                    category="damage_concentration",
                    severity=RiskLevel.HIGH if share >= DAMAGE_CONCENTRATION_HIGH_SHARE else RiskLevel.MEDIUM,
                    finding=f"{damage} damage represents {share * 100:.1f}% of available inventory",
                    confidence=round(baseline_confidence(n), 4),
                ))

        priced = [float(r.price) for r in records if r.has_price]
        if len(priced) >= 2:
            _, cv = price_stats(priced)
            if cv > VOLATILITY_MEDIUM_CV:
                risks.append(RiskFactor(
                    category="price_volatility",
                    severity=RiskLevel.HIGH if cv > HIGH_RISK_CV else RiskLevel.MEDIUM,
                    finding=f"Sale prices vary widely (coefficient of variation {cv:.2f})",
                    confidence=round(baseline_confidence(len(priced)), 4),
                ))

        if summary.sold_rate is not None and summary.sold_rate < LOW_SOLD_RATE:
            risks.append(RiskFactor(
                category="low_sold_rate",
                severity=RiskLevel.MEDIUM,
                finding=f"Only {summary.sold_rate * 100:.1f}% of lots in the sample sold",
                confidence=round(baseline_confidence(n), 4),
            ))

        if summary.priced_records < THIN_SAMPLE_RECORDS:
            risks.append(RiskFactor(
                category="thin_sample",
                severity=RiskLevel.MEDIUM,
                finding=f"Only {summary.priced_records} priced sales support this analysis",
                confidence=round(baseline_confidence(summary.priced_records), 4),
            ))
        return risks

    def recommend(self, summary: MarketSummary, opportunities: Sequence[Opportunity]) -> Recommendations:
        immediate = []
        if summary.average_price is not None:
            immediate.append(
                f"Focus on vehicles priced $1,000-$2,000 below the {_money(summary.average_price)} market average"
            )
        if opportunities:
            immediate.append(f"Target {opportunities[0].title} for immediate profit potential")
        if summary.top_makes:
            makes = ", ".join(m.name for m in summary.top_makes[:3])
            immediate.append(f"Set up alerts for {makes} vehicles in upcoming auctions")

        return Recommendations(
            immediate=immediate,
            strategic=[
                "Build expertise in the most profitable damage categories",
                "Develop geographic diversification to access lower-priced markets",
                "Create standardized evaluation criteria for consistent decision-making",
            ],
        )

    # ------------------------------------------------------------------ #
    # Insight prose
    # ------------------------------------------------------------------ #

    def write_insights(self, result: AnalysisResult) -> AnalysisResult:
        """
        Attach prose from the insight writer. Failure or timeout marks the
        result as insight_status=failed and leaves structured output unchanged.
        """
        if self.insight_writer is None or result.empty:
            return result
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="insights")

        future = self._executor.submit(self.insight_writer.describe, result)
        try:
            text = future.result(timeout=self.config.insight_timeout_seconds)
        except FuturesTimeoutError:
            future.cancel()
            logger.warning(f"Insight writer timed out after {self.config.insight_timeout_seconds}s")
            return result.model_copy(update={"insight_status": InsightStatus.FAILED})
        except Exception as e:
            logger.warning(f"Insight writer failed: {e}")
            return result.model_copy(update={"insight_status": InsightStatus.FAILED})

        if not text:
            return result.model_copy(update={"insight_status": InsightStatus.FAILED})
        return result.model_copy(update={"insights": text, "insight_status": InsightStatus.WRITTEN})
