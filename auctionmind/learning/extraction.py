"""
Turns a finished analysis into pattern observations for the PatternStore.
"""
import math
from datetime import datetime, timezone
from typing import List, Optional

from auctionmind.analysis.models import AnalysisResult, AnalysisType
from auctionmind.learning.models import (
    OpportunityPayload,
    Pattern,
    PatternType,
    ProfitabilityPayload,
    RiskPayload,
    TrendPayload,
)
from auctionmind.utils.logger import get_logger

logger = get_logger("learning.extraction")

PRICE_BAND_WIDTH = 5000
MIN_PROFILE_RECORDS = 3
CONSISTENCY_THRESHOLD = 0.7


def price_band(price: float) -> str:
    """$5,000-wide band label, e.g. 7999 -> '5000-10000'."""
    low = int(math.floor(max(price, 0) / PRICE_BAND_WIDTH) * PRICE_BAND_WIDTH)
    return f"{low}-{low + PRICE_BAND_WIDTH}"


def price_consistency(cv: float) -> float:
    """Confidence from price dispersion: 1 - variance / mean^2, floored at 0.5."""
    return max(0.5, 1 - cv * cv)


def extract_patterns(
    result: AnalysisResult,
    analysis_type: AnalysisType,
    now: Optional[datetime] = None,
) -> List[Pattern]:
    """
    Observations worth remembering from one analysis.

    Args:
        result: Structured analysis output
        analysis_type: Type the analysis ran as
        now: Observation time (last_seen of every pattern)

    Returns:
        One pattern per opportunity, trend and risk factor, plus one
        profitability pattern per make with consistent pricing
    """
    if result.empty:
        return []
    now = now or datetime.now(timezone.utc)
    observations = []

    for opp in result.opportunities:
        observations.append(Pattern(
            analysis_type=analysis_type,
            pattern_type=PatternType.OPPORTUNITY,
            payload=OpportunityPayload(
                dimension=opp.dimension,
                partition=opp.partition,
                price_band=price_band(opp.average_price),
            ),
            confidence=opp.confidence,
            last_seen=now,
        ))

    for trend in result.trends:
        observations.append(Pattern(
            analysis_type=analysis_type,
            pattern_type=PatternType.TREND,
            payload=TrendPayload(bucket=trend.bucket, direction=trend.direction),
            confidence=trend.confidence,
            last_seen=now,
        ))

    for risk in result.risks:
        observations.append(Pattern(
            analysis_type=analysis_type,
            pattern_type=PatternType.RISK,
            payload=RiskPayload(category=risk.category, severity=risk.severity.value),
            confidence=risk.confidence,
            last_seen=now,
        ))

    for profile in result.summary.make_profiles:
        if profile.count < MIN_PROFILE_RECORDS:
            continue
        consistency = price_consistency(profile.price_cv)
        if consistency < CONSISTENCY_THRESHOLD:
            continue
        observations.append(Pattern(
            analysis_type=analysis_type,
            pattern_type=PatternType.PROFITABILITY,
            payload=ProfitabilityPayload(make=profile.name, price_band=price_band(profile.average_price)),
            confidence=round(consistency, 2),
            last_seen=now,
        ))

    logger.debug(f"Extracted {len(observations)} pattern observations")
    return observations
