"""
Pydantic models for analysis results.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class AnalysisType(str, Enum):
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class InsightStatus(str, Enum):
    """Outcome of the optional prose step."""
    WRITTEN = "written"
    SKIPPED = "skipped"
    FAILED = "failed"


class PriceRange(BaseModel):
    min: float
    max: float


class SegmentCount(BaseModel):
    name: str
    count: int


class SegmentProfile(BaseModel):
    """Price profile of one make within the sample."""
    name: str = Field(description="Make name")
    count: int = Field(description="Priced records for this make")
    average_price: float
    price_cv: float = Field(description="Coefficient of variation of prices (std / mean)")


class MarketSummary(BaseModel):
    total_records: int = 0
    priced_records: int = 0
    average_price: Optional[float] = Field(default=None, description="Mean over positive prices only")
    price_range: Optional[PriceRange] = None
    top_makes: List[SegmentCount] = Field(default_factory=list)
    sold_rate: Optional[float] = Field(default=None, description="Share of records with a sold status, 0-1")
    make_profiles: List[SegmentProfile] = Field(default_factory=list)


class Opportunity(BaseModel):
    """Lowest-priced qualifying partition of one dimension."""
    dimension: str = Field(description="damage, location, make, make_year or keys")
    partition: str = Field(description="Partition key, e.g. 'Ford' or 'Ford 2018'")
    title: str
    description: str
    average_price: float
    market_average: float = Field(description="Comparison mean: the whole sample, or lots with keys for the keys dimension")
    profit_potential: float = Field(description="Comparison mean minus partition average, per vehicle")
    discount_pct: float
    sample_size: int
    risk_level: RiskLevel
    confidence: float = Field(ge=0.0, le=1.0)
    boosted: bool = Field(default=False, description="Confidence raised by a learned pattern")
    action_steps: List[str] = Field(default_factory=list)


class MarketTrend(BaseModel):
    bucket: str = Field(description="model_year or sale_month")
    start_label: str
    end_label: str
    start_average: float
    end_average: float
    percent_change: float
    direction: str = Field(description="up, down or flat")
    bucket_count: int
    finding: str
    impact: str
    confidence: float = Field(ge=0.0, le=1.0)


class RiskFactor(BaseModel):
    category: str
    severity: RiskLevel
    finding: str
    confidence: float = Field(ge=0.0, le=1.0)


class Recommendations(BaseModel):
    immediate: List[str] = Field(default_factory=list)
    strategic: List[str] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    """Structured market analysis. Insight prose is optional and never required."""
    empty: bool = False
    summary: MarketSummary = Field(default_factory=MarketSummary)
    opportunities: List[Opportunity] = Field(default_factory=list)
    trends: List[MarketTrend] = Field(default_factory=list)
    risks: List[RiskFactor] = Field(default_factory=list)
    recommendations: Recommendations = Field(default_factory=Recommendations)
    patterns_applied: int = Field(default=0, description="Learned patterns that boosted a candidate")
    insights: Optional[str] = None
    insight_status: InsightStatus = InsightStatus.SKIPPED

    @classmethod
    def empty_result(cls) -> "AnalysisResult":
        """Explicit marker for an analysis over zero records."""
        return cls(empty=True)
