"""
Shared fixtures: record factories, fixed clocks and in-memory SQLite.
"""
import sys
from datetime import datetime, timedelta, timezone
from itertools import count
from pathlib import Path

import pytest

# Make the package importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from auctionmind.core.config import AuctionMindConfig, set_config
from auctionmind.data.records import SaleRecord
from auctionmind.persistence.database import build_engine, create_session_factory

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)

_lot_ids = count(1)


def make_record(
    make="Ford",
    model="Focus",
    year=2018,
    price=8000.0,
    damage="Front End",
    location="Dallas, TX",
    platform="copart",
    sale_status="Sold",
    sale_date=None,
    lot_id=None,
    has_keys=None,
) -> SaleRecord:
    return SaleRecord(
        lot_id=lot_id or f"LOT{next(_lot_ids):07d}",
        make=make,
        model=model,
        year=year,
        damage=damage,
        location=location,
        platform=platform,
        price=price,
        sale_status=sale_status,
        sale_date=sale_date or NOW - timedelta(days=1),
        has_keys=has_keys,
    )


def make_records(n, **kwargs):
    return [make_record(**kwargs) for _ in range(n)]


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def default_config():
    config = AuctionMindConfig()
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    factory = create_session_factory(engine=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def ford_toyota_records():
    """30 Fords at $8,000 and 25 Toyotas at $11,000, same year, damage and location."""
    return (
        make_records(30, make="Ford", model="Focus", price=8000.0)
        + make_records(25, make="Toyota", model="Corolla", price=11000.0)
    )
