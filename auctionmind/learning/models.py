"""
Learned pattern models.

Each pattern type carries its own payload variant; the `kind` tag selects the
variant when patterns are read back from storage.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auctionmind.analysis.models import AnalysisType
from auctionmind.cache.canonical import canonical_json


class PatternType(str, Enum):
    OPPORTUNITY = "opportunity"
    TREND = "trend"
    RISK = "risk"
    PROFITABILITY = "profitability"


class OpportunityPayload(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["opportunity"] = "opportunity"
    dimension: str
    partition: str
    price_band: str


class TrendPayload(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["trend"] = "trend"
    bucket: str
    direction: str


class RiskPayload(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["risk"] = "risk"
    category: str
    severity: str


class ProfitabilityPayload(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["profitability"] = "profitability"
    make: str
    price_band: str


PatternPayload = Annotated[
    Union[OpportunityPayload, TrendPayload, RiskPayload, ProfitabilityPayload],
    Field(discriminator="kind"),
]

# Payload variant expected for each pattern type
PAYLOAD_KIND = {
    PatternType.OPPORTUNITY: "opportunity",
    PatternType.TREND: "trend",
    PatternType.RISK: "risk",
    PatternType.PROFITABILITY: "profitability",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Pattern(BaseModel):
    """A confidence-weighted generalization learned from completed analyses."""
    analysis_type: AnalysisType
    pattern_type: PatternType
    payload: PatternPayload
    confidence: float = Field(ge=0.0, le=1.0)
    frequency: int = Field(default=1, ge=1)
    last_seen: datetime = Field(default_factory=_utcnow)

    @field_validator("payload")
    @classmethod
    def _payload_matches_type(cls, payload, info):
        pattern_type = info.data.get("pattern_type")
        if pattern_type is not None and PAYLOAD_KIND[pattern_type] != payload.kind:
            raise ValueError(f"{payload.kind} payload cannot describe a {pattern_type.value} pattern")
        return payload

    @property
    def payload_key(self) -> str:
        """Canonical string form of the payload."""
        return canonical_json(self.payload)

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.analysis_type.value, self.pattern_type.value, self.payload_key)
