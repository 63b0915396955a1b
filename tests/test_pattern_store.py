"""
Tests for pattern storage, blending and maintenance.
"""
import threading
from datetime import timedelta

import pytest
from pydantic import ValidationError

from auctionmind.analysis.models import AnalysisType
from auctionmind.learning.models import (
    OpportunityPayload,
    Pattern,
    PatternType,
    ProfitabilityPayload,
    RiskPayload,
    TrendPayload,
)
from auctionmind.learning.pattern_store import InMemoryPatternStore, SqlPatternStore

from conftest import NOW

FORD_PAYLOAD = OpportunityPayload(dimension="make", partition="Ford", price_band="5000-10000")


def observation(confidence, payload=FORD_PAYLOAD, pattern_type=PatternType.OPPORTUNITY,
                analysis_type=AnalysisType.STANDARD, last_seen=NOW):
    return Pattern(
        analysis_type=analysis_type,
        pattern_type=pattern_type,
        payload=payload,
        confidence=confidence,
        last_seen=last_seen,
    )


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory, clock):
    if request.param == "memory":
        return InMemoryPatternStore(clock=clock)
    return SqlPatternStore(session_factory, clock=clock)


class TestPatternModel:

    def test_payload_must_match_pattern_type(self):
        with pytest.raises(ValidationError):
            Pattern(
                analysis_type="standard",
                pattern_type=PatternType.TREND,
                payload=FORD_PAYLOAD,
                confidence=0.5,
            )

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            observation(1.2)
        with pytest.raises(ValidationError):
            observation(-0.1)

    def test_payload_parsed_from_mapping_by_kind(self):
        pattern = Pattern(
            analysis_type="comprehensive",
            pattern_type="risk",
            payload={"kind": "risk", "category": "thin_sample", "severity": "Medium"},
            confidence=0.6,
        )
        assert isinstance(pattern.payload, RiskPayload)
        assert pattern.frequency == 1


class TestUpsert:

    def test_insert_starts_at_frequency_one(self, store):
        stored = store.upsert(observation(0.8))
        assert stored.frequency == 1
        assert stored.confidence == 0.8

    def test_blend_averages_confidence_and_bumps_frequency(self, store):
        store.upsert(observation(0.8))
        blended = store.upsert(observation(0.6, last_seen=NOW + timedelta(days=1)))
        assert blended.confidence == pytest.approx(0.7)
        assert blended.frequency == 2
        assert blended.last_seen == NOW + timedelta(days=1)

        fetched = store.get(AnalysisType.STANDARD, PatternType.OPPORTUNITY, FORD_PAYLOAD)
        assert fetched.confidence == pytest.approx(0.7)
        assert fetched.frequency == 2

    def test_last_seen_never_moves_backwards(self, store):
        store.upsert(observation(0.8, last_seen=NOW))
        blended = store.upsert(observation(0.8, last_seen=NOW - timedelta(days=3)))
        assert blended.last_seen == NOW

    def test_repeated_observations_converge_within_bounds(self, store):
        confidence = None
        for _ in range(20):
            confidence = store.upsert(observation(1.0)).confidence
            assert 0.0 <= confidence <= 1.0
        assert confidence == pytest.approx(1.0)
        assert store.get(AnalysisType.STANDARD, PatternType.OPPORTUNITY, FORD_PAYLOAD).frequency == 20

    def test_identity_includes_analysis_type(self, store):
        store.upsert(observation(0.8))
        store.upsert(observation(0.4, analysis_type=AnalysisType.COMPREHENSIVE))
        assert store.get(AnalysisType.STANDARD, PatternType.OPPORTUNITY, FORD_PAYLOAD).confidence == 0.8
        assert store.get(AnalysisType.COMPREHENSIVE, PatternType.OPPORTUNITY, FORD_PAYLOAD).confidence == 0.4

    def test_get_missing(self, store):
        assert store.get(AnalysisType.STANDARD, PatternType.RISK, RiskPayload(category="x", severity="Low")) is None

    def test_payload_round_trips_through_storage(self, store):
        payload = ProfitabilityPayload(make="Honda", price_band="10000-15000")
        store.upsert(observation(0.75, payload=payload, pattern_type=PatternType.PROFITABILITY))
        [stored] = store.by_type(PatternType.PROFITABILITY)
        assert stored.payload == payload


class TestQueries:

    def test_top_by_confidence_orders_by_confidence_then_frequency(self, store):
        a = OpportunityPayload(dimension="make", partition="A", price_band="0-5000")
        b = OpportunityPayload(dimension="make", partition="B", price_band="0-5000")
        c = OpportunityPayload(dimension="make", partition="C", price_band="0-5000")
        store.upsert(observation(0.6, payload=a))
        store.upsert(observation(0.9, payload=b))
        store.upsert(observation(0.6, payload=c))
        store.upsert(observation(0.6, payload=c))

        top = store.top_by_confidence(AnalysisType.STANDARD, limit=10)
        assert [p.payload.partition for p in top] == ["B", "C", "A"]
        assert len(store.top_by_confidence(AnalysisType.STANDARD, limit=2)) == 2
        assert store.top_by_confidence(AnalysisType.COMPREHENSIVE) == []

    def test_by_type(self, store):
        store.upsert(observation(0.8))
        store.upsert(observation(0.7, payload=TrendPayload(bucket="model_year", direction="up"),
                                 pattern_type=PatternType.TREND))
        trends = store.by_type(PatternType.TREND)
        assert len(trends) == 1
        assert trends[0].payload.direction == "up"

    def test_high_confidence_filter(self, store):
        store.upsert(observation(0.8))
        store.upsert(observation(0.5, payload=TrendPayload(bucket="model_year", direction="up"),
                                 pattern_type=PatternType.TREND))
        assert [p.pattern_type for p in store.high_confidence(AnalysisType.STANDARD, 0.7)] == [PatternType.OPPORTUNITY]

    def test_high_confidence_by_type_has_no_size_cap(self, store):
        """Test that a typed high-confidence read returns every qualifying pattern."""
        for i in range(60):
            store.upsert(observation(1.0, payload=ProfitabilityPayload(make=f"Make{i:02d}", price_band="0-5000"),
                                     pattern_type=PatternType.PROFITABILITY))
        for i in range(55):
            store.upsert(observation(0.8, payload=OpportunityPayload(dimension="make", partition=f"P{i:02d}",
                                                                     price_band="0-5000")))
        store.upsert(observation(0.6, payload=OpportunityPayload(dimension="make", partition="weak",
                                                                 price_band="0-5000")))

        opportunities = store.high_confidence(AnalysisType.STANDARD, 0.7, PatternType.OPPORTUNITY)
        assert len(opportunities) == 55
        assert all(p.pattern_type == PatternType.OPPORTUNITY for p in opportunities)
        assert len(store.high_confidence(AnalysisType.STANDARD, 0.7)) == 115
        assert store.high_confidence(AnalysisType.COMPREHENSIVE, 0.7, PatternType.OPPORTUNITY) == []


class TestMaintenance:

    def test_decay_only_touches_stale_patterns(self, store):
        store.upsert(observation(0.8, last_seen=NOW - timedelta(days=20)))
        fresh_payload = TrendPayload(bucket="sale_month", direction="down")
        store.upsert(observation(0.8, payload=fresh_payload, pattern_type=PatternType.TREND, last_seen=NOW))

        assert store.decay(timedelta(days=14), 0.5, now=NOW) == 1
        assert store.get(AnalysisType.STANDARD, PatternType.OPPORTUNITY, FORD_PAYLOAD).confidence == pytest.approx(0.4)
        assert store.get(AnalysisType.STANDARD, PatternType.TREND, fresh_payload).confidence == pytest.approx(0.8)

    def test_decay_rejects_factor_outside_unit_interval(self, store):
        with pytest.raises(ValueError):
            store.decay(timedelta(days=1), 1.5)

    def test_prune_removes_stale_low_confidence(self, store):
        store.upsert(observation(0.5, last_seen=NOW - timedelta(days=8)))
        strong = RiskPayload(category="price_volatility", severity="High")
        store.upsert(observation(0.9, payload=strong, pattern_type=PatternType.RISK, last_seen=NOW - timedelta(days=8)))
        recent = RiskPayload(category="thin_sample", severity="Medium")
        store.upsert(observation(0.5, payload=recent, pattern_type=PatternType.RISK, last_seen=NOW))

        assert store.prune(0.6, timedelta(days=7), now=NOW) == 1
        assert store.get(AnalysisType.STANDARD, PatternType.OPPORTUNITY, FORD_PAYLOAD) is None
        assert store.get(AnalysisType.STANDARD, PatternType.RISK, strong) is not None
        assert store.get(AnalysisType.STANDARD, PatternType.RISK, recent) is not None


class TestConcurrentUpserts:

    def test_no_lost_updates(self, store):
        store.upsert(observation(0.5))

        def writer():
            for _ in range(10):
                store.upsert(observation(0.5))

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stored = store.get(AnalysisType.STANDARD, PatternType.OPPORTUNITY, FORD_PAYLOAD)
        assert stored.frequency == 41
        assert stored.confidence == pytest.approx(0.5)
