"""
Sale records, analysis filters and market segments.

SaleRecord mirrors one row of the sales_history table. Records are owned by the
ingestion collaborator and are read-only here.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


@dataclass(frozen=True)
class SaleRecord:
    """One historical auction sale observation."""
    lot_id: str
    make: Optional[str]
    model: Optional[str]
    year: Optional[int]
    damage: Optional[str]
    location: Optional[str]
    platform: Optional[str]
    price: Optional[float]
    sale_status: Optional[str]
    sale_date: datetime
    has_keys: Optional[bool] = None

    @property
    def has_price(self) -> bool:
        """True when the record carries a usable (positive) sale price."""
        return self.price is not None and self.price > 0

    @property
    def is_sold(self) -> bool:
        if not self.sale_status:
            return False
        return self.sale_status.strip().lower().startswith("sold")


def _fold(value: Optional[str]) -> Optional[str]:
    return value.strip().casefold() if value else None


class AnalysisFilter(BaseModel):
    """Sparse set of constraints over SaleRecord fields."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    makes: Optional[List[str]] = Field(default=None, description="Vehicle makes (any of)")
    models: Optional[List[str]] = Field(default=None, description="Vehicle models (any of)")
    year_range: Optional[Tuple[int, int]] = Field(default=None, description="Inclusive model-year range")
    price_range: Optional[Tuple[float, float]] = Field(default=None, description="Inclusive sale-price range")
    damage_types: Optional[List[str]] = Field(default=None, description="Primary damage categories (any of)")
    locations: Optional[List[str]] = Field(default=None, description="Auction locations (any of)")
    platforms: Optional[List[str]] = Field(default=None, description="Source platforms, e.g. copart, iaai")
    sample_size: Optional[int] = Field(default=None, gt=0, description="Requested record sample size")

    @field_validator("makes", "models", "damage_types", "locations", "platforms", mode="before")
    @classmethod
    def _listify(cls, value):
        if isinstance(value, str):
            return [value]
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "AnalysisFilter":
        for name in ("year_range", "price_range"):
            bounds = getattr(self, name)
            if bounds is not None and bounds[0] > bounds[1]:
                raise ValueError(f"{name} lower bound exceeds upper bound: {bounds}")
        return self

    def matches(self, record: SaleRecord) -> bool:
        """Return True if the record satisfies every constraint present."""
        if not _matches_any(self.makes, record.make):
            return False
        if not _matches_any(self.models, record.model):
            return False
        if not _matches_any(self.damage_types, record.damage):
            return False
        if not _matches_any(self.locations, record.location):
            return False
        if not _matches_any(self.platforms, record.platform):
            return False
        if self.year_range is not None:
            if record.year is None or not (self.year_range[0] <= record.year <= self.year_range[1]):
                return False
        if self.price_range is not None:
            if record.price is None or not (self.price_range[0] <= record.price <= self.price_range[1]):
                return False
        return True


def _matches_any(allowed: Optional[Sequence[str]], value: Optional[str]) -> bool:
    if not allowed:
        return True
    folded = _fold(value)
    return folded is not None and folded in {_fold(a) for a in allowed}


@dataclass(frozen=True)
class MarketSegment:
    """
    The data-subject used for freshness checks.

    Any part left as None acts as a wildcard; MarketSegment() is the whole market.
    """
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None

    def matches(self, record: SaleRecord) -> bool:
        if self.make and _fold(record.make) != _fold(self.make):
            return False
        if self.model and _fold(record.model) != _fold(self.model):
            return False
        if self.year is not None and record.year != self.year:
            return False
        return True

    @property
    def label(self) -> str:
        parts = [str(p) for p in (self.year, self.make, self.model) if p]
        return " ".join(parts) if parts else "all makes"


def segments_for(analysis_filter: AnalysisFilter) -> List[MarketSegment]:
    """
    Market segments whose freshness governs an analysis over this filter.

    One segment per requested make; a single requested model and a collapsed
    year range narrow that segment further.
    """
    year = None
    if analysis_filter.year_range and analysis_filter.year_range[0] == analysis_filter.year_range[1]:
        year = analysis_filter.year_range[0]

    makes = sorted({m.strip() for m in analysis_filter.makes or [] if m and m.strip()})
    if not makes:
        return [MarketSegment(year=year)]

    model = None
    if len(makes) == 1 and analysis_filter.models and len(analysis_filter.models) == 1:
        model = analysis_filter.models[0].strip()
    return [MarketSegment(make=make, model=model, year=year) for make in makes]
