"""
Tests for the market analysis pipeline.
"""
import math
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from auctionmind.analysis.market_analyzer import MarketAnalyzer, baseline_confidence
from auctionmind.analysis.models import InsightStatus, RiskLevel
from auctionmind.core.config import AuctionMindConfig
from auctionmind.core.errors import InsightWriterError
from auctionmind.learning.models import OpportunityPayload, Pattern, PatternType, TrendPayload

from conftest import NOW, make_record, make_records


def opportunity_pattern(dimension, partition, confidence, analysis_type="standard"):
    return Pattern(
        analysis_type=analysis_type,
        pattern_type=PatternType.OPPORTUNITY,
        payload=OpportunityPayload(dimension=dimension, partition=partition, price_band="5000-10000"),
        confidence=confidence,
    )


class TestEmptyAndDegenerateInput:

    def setup_method(self):
        """Set up test fixtures."""
        self.analyzer = MarketAnalyzer(AuctionMindConfig())

    def test_empty_input_returns_explicit_empty_result(self):
        """Test analysis of zero records."""
        result = self.analyzer.analyze([])
        assert result.empty
        assert result.summary.total_records == 0
        assert result.opportunities == []
        assert result.trends == []

    def test_all_null_prices(self):
        """Test analysis when no record carries a price."""
        records = make_records(60, price=None) + make_records(5, price=0.0)
        result = self.analyzer.analyze(records)
        assert not result.empty
        assert result.summary.total_records == 65
        assert result.summary.priced_records == 0
        assert result.summary.average_price is None
        assert result.summary.price_range is None
        assert result.opportunities == []
        assert result.trends == []

    def test_zero_prices_are_excluded_from_average(self):
        """Test that zero prices are not averaged."""
        records = make_records(3, price=10000.0) + make_records(2, price=0.0) + make_records(1, price=None)
        summary = self.analyzer.analyze(records).summary
        assert summary.priced_records == 3
        assert summary.average_price == 10000.0


class TestSummary:

    def setup_method(self):
        """Set up test fixtures."""
        self.analyzer = MarketAnalyzer(AuctionMindConfig())

    def test_top_makes_ordered_by_count_then_name(self):
        """Test top makes ordering."""
        records = (
            make_records(3, make="Honda")
            + make_records(3, make="Audi")
            + make_records(5, make="Ford")
            + [make_record(make=m) for m in ("BMW", "Kia", "Mazda")]
        )
        top = self.analyzer.summarize(records).top_makes
        assert [m.name for m in top] == ["Ford", "Audi", "Honda", "BMW", "Kia"]
        assert top[0].count == 5

    def test_sold_rate_and_price_range(self):
        """Test sold rate and price range."""
        records = (
            make_records(3, price=5000.0, sale_status="Sold")
            + make_records(1, price=9000.0, sale_status="Not Sold")
            + make_records(1, price=7000.0, sale_status=None)
        )
        summary = self.analyzer.summarize(records)
        assert summary.sold_rate == 0.75
        assert summary.price_range.min == 5000.0
        assert summary.price_range.max == 9000.0

    def test_make_profiles(self):
        """Test per-make price profiles."""
        records = make_records(4, make="Ford", price=8000.0) + make_records(2, make="Kia", price=4000.0)
        profiles = self.analyzer.summarize(records).make_profiles
        assert [(p.name, p.count, p.average_price, p.price_cv) for p in profiles] == [
            ("Ford", 4, 8000.0, 0.0),
            ("Kia", 2, 4000.0, 0.0),
        ]


class TestOpportunities:

    def setup_method(self):
        """Set up test fixtures."""
        self.analyzer = MarketAnalyzer(AuctionMindConfig())

    def test_single_make_opportunity(self, ford_toyota_records):
        """Test a make opportunity end to end."""
        result = self.analyzer.analyze(ford_toyota_records)

        assert len(result.opportunities) == 1
        opp = result.opportunities[0]
        assert opp.dimension == "make"
        assert opp.partition == "Ford"
        assert opp.title == "Ford Value Opportunity"
        assert opp.average_price == 8000.0
        assert opp.market_average == pytest.approx(9363.64, abs=0.01)
        assert opp.profit_potential == pytest.approx(1363.64, abs=0.01)
        assert opp.risk_level == RiskLevel.LOW
        assert opp.sample_size == 30
        assert opp.confidence == pytest.approx(baseline_confidence(30), abs=1e-4)
        assert not opp.boosted
        assert len(opp.action_steps) == 3

    def test_minimum_volume_is_inclusive(self):
        """Test that a partition at exactly the minimum volume qualifies."""
        records = make_records(20, make="Ford", price=8000.0) + make_records(20, make="Toyota", price=11000.0)
        opp = self.analyzer.analyze(records).opportunities[0]
        assert opp.partition == "Ford"
        assert opp.sample_size == 20
        assert opp.risk_level == RiskLevel.MEDIUM

    def test_partition_below_minimum_volume_is_ignored(self):
        """Test that a partition one below the minimum volume is dropped."""
        records = make_records(19, make="Ford", price=8000.0) + make_records(25, make="Toyota", price=11000.0)
        assert self.analyzer.analyze(records).opportunities == []

    def test_needs_two_qualifying_partitions(self):
        """Test that a single partition yields no candidate."""
        records = make_records(40, make="Ford", price=8000.0) + make_records(5, make="Toyota", price=11000.0)
        assert [o.dimension for o in self.analyzer.analyze(records).opportunities] == []

    def test_equal_means_tie_break_to_larger_sample(self):
        """Test the tie break between equally priced partitions."""
        records = (
            make_records(30, make="Ford", price=8000.0)
            + make_records(22, make="Chevrolet", price=8000.0)
            + make_records(25, make="Toyota", price=12000.0)
        )
        opp = self.analyzer.analyze(records).opportunities[0]
        assert opp.partition == "Ford"

    def test_no_candidate_when_cheapest_is_not_below_market(self):
        """Test that no candidate is reported at market price."""
        records = make_records(30, make="Ford", price=8000.0) + make_records(30, make="Toyota", price=8000.0)
        assert self.analyzer.analyze(records).opportunities == []

    def test_make_year_needs_three_partitions(self):
        """Test the make and year partition minimum."""
        two_years = (
            make_records(20, make="Ford", year=2015, price=6000.0)
            + make_records(20, make="Ford", year=2019, price=10000.0)
        )
        assert [o.dimension for o in self.analyzer.analyze(two_years).opportunities] == []

        three_years = two_years + make_records(20, make="Ford", year=2020, price=12000.0)
        opportunities = self.analyzer.analyze(three_years).opportunities
        assert [(o.dimension, o.partition) for o in opportunities] == [("make_year", "Ford 2015")]
        assert opportunities[0].title == "2015 Ford Opportunity"

    def test_flood_damage_is_medium_risk(self):
        """Test flood damage risk level."""
        records = (
            make_records(50, damage="Flood", price=3000.0, location=None)
            + make_records(50, damage="Front End", price=7000.0, location=None)
        )
        opp = self.analyzer.analyze(records).opportunities[0]
        assert opp.dimension == "damage"
        assert opp.partition == "Flood"
        assert opp.risk_level == RiskLevel.MEDIUM
        assert opp.title == "Flood Damage Vehicles"

    def test_high_price_dispersion_is_high_risk(self):
        """Test high dispersion risk level."""
        volatile = [make_record(make="Ford", price=p) for p in [500.0, 15500.0] * 15]
        records = volatile + make_records(25, make="Toyota", price=11000.0)
        # Ford mean 8000 < market mean, cv = 7500 / 8000 > 0.6
        opp = self.analyzer.analyze(records).opportunities[0]
        assert opp.partition == "Ford"
        assert opp.risk_level == RiskLevel.HIGH

    def test_missing_dimension_values_are_not_partitions(self):
        """Test that blank dimension values form no partition."""
        records = (
            make_records(60, damage=None, location=None, make="Ford", price=8000.0)
            + make_records(60, damage=None, location=None, make="Toyota", price=9000.0)
        )
        assert [o.dimension for o in self.analyzer.analyze(records).opportunities] == ["make"]


class TestKeysOpportunity:
    """Lots sold without keys against lots sold with keys."""

    def setup_method(self):
        """Set up test fixtures."""
        self.analyzer = MarketAnalyzer(AuctionMindConfig())

    def keyed(self, with_keys=20, without_keys=20, unknown=0):
        return (
            make_records(with_keys, has_keys=True, price=10000.0)
            + make_records(without_keys, has_keys=False, price=7000.0)
            + make_records(unknown, has_keys=None, price=1000.0)
        )

    def test_keys_gap_at_minimum_volume(self):
        """Test the keys candidate with exactly 20 lots in each group."""
        [opp] = self.analyzer.analyze(self.keyed()).opportunities
        assert opp.dimension == "keys"
        assert opp.partition == "Without Keys"
        assert opp.title == "Vehicle Keys Impact Analysis"
        assert "42.9% higher prices" in opp.description
        assert opp.average_price == 7000.0
        assert opp.market_average == 10000.0
        assert opp.profit_potential == 3000.0
        assert opp.discount_pct == 30.0
        assert opp.sample_size == 20
        assert opp.risk_level == RiskLevel.MEDIUM
        assert opp.action_steps[0] == "Focus bidding on vehicles listed without keys"

    def test_either_group_below_minimum_volume(self):
        """Test that 19 lots in either group yields no keys candidate."""
        assert self.analyzer.analyze(self.keyed(without_keys=19)).opportunities == []
        assert self.analyzer.analyze(self.keyed(with_keys=19)).opportunities == []

    def test_unknown_key_status_is_left_out(self):
        """Test that lots with no key information are in neither group."""
        [opp] = self.analyzer.analyze(self.keyed(unknown=30)).opportunities
        assert opp.sample_size == 20
        assert opp.market_average == 10000.0

    def test_no_candidate_when_keys_do_not_add_value(self):
        """Test that no candidate is reported when keyless lots are not cheaper."""
        records = make_records(20, has_keys=True, price=7000.0) + make_records(20, has_keys=False, price=7000.0)
        assert self.analyzer.analyze(records).opportunities == []

    def test_keys_pattern_boosts_candidate(self):
        """Test boosting the keys candidate by a learned pattern."""
        result = self.analyzer.analyze(self.keyed(), [opportunity_pattern("keys", "Without Keys", 0.9)])
        assert result.opportunities[0].boosted
        assert result.opportunities[0].confidence == pytest.approx(0.95)


class TestPatternBoost:

    def setup_method(self):
        """Set up test fixtures."""
        self.analyzer = MarketAnalyzer(AuctionMindConfig())

    def test_high_confidence_pattern_boosts_matching_candidate(self, ford_toyota_records):
        """Test boosting by a matching pattern."""
        pattern = opportunity_pattern("make", "Ford", 0.9)
        result = self.analyzer.analyze(ford_toyota_records, [pattern])
        opp = result.opportunities[0]
        assert opp.boosted
        assert opp.confidence == pytest.approx(0.95)
        assert result.patterns_applied == 1

    def test_boost_uses_baseline_when_higher(self):
        """Test boost on top of a higher baseline."""
        records = make_records(100, make="Ford", price=8000.0) + make_records(25, make="Toyota", price=11000.0)
        pattern = opportunity_pattern("make", "ford", 0.7)
        opp = self.analyzer.analyze(records, [pattern]).opportunities[0]
        baseline = baseline_confidence(100)
        assert baseline > 0.7
        assert opp.boosted
        assert opp.confidence == pytest.approx(baseline + 0.05, abs=1e-4)

    def test_boost_uses_pattern_when_higher(self, ford_toyota_records):
        """Test boost on top of a higher pattern confidence."""
        opp = self.analyzer.analyze(ford_toyota_records, [opportunity_pattern("make", "Ford", 0.8)]).opportunities[0]
        assert opp.confidence == pytest.approx(0.85)

    def test_low_confidence_pattern_is_ignored(self, ford_toyota_records):
        """Test that weak patterns do not boost."""
        result = self.analyzer.analyze(ford_toyota_records, [opportunity_pattern("make", "Ford", 0.69)])
        assert not result.opportunities[0].boosted
        assert result.patterns_applied == 0

    def test_non_matching_patterns_are_ignored(self, ford_toyota_records):
        """Test that other dimensions and types do not boost."""
        patterns = [
            opportunity_pattern("damage", "Ford", 0.9),
            Pattern(
                analysis_type="standard",
                pattern_type=PatternType.TREND,
                payload=TrendPayload(bucket="model_year", direction="up"),
                confidence=0.9,
            ),
        ]
        assert self.analyzer.analyze(ford_toyota_records, patterns).patterns_applied == 0

    def test_baseline_confidence_curve(self):
        """Test the sample-size confidence curve."""
        assert baseline_confidence(0) == 0.5
        assert baseline_confidence(50) == pytest.approx(0.5 + 0.35 * (1 - math.exp(-1)))
        assert baseline_confidence(100000) < 0.85 + 1e-9


class TestTrends:

    def setup_method(self):
        """Set up test fixtures."""
        self.analyzer = MarketAnalyzer(AuctionMindConfig())

    def test_model_year_trend_up(self):
        """Test an upward model-year trend."""
        records = (
            make_records(10, year=2016, price=5000.0)
            + make_records(10, year=2017, price=6000.0)
            + make_records(10, year=2018, price=7500.0)
        )
        trend = next(t for t in self.analyzer.analyze(records).trends if t.bucket == "model_year")
        assert trend.direction == "up"
        assert trend.start_label == "2016"
        assert trend.end_label == "2018"
        assert trend.percent_change == 50.0
        assert trend.bucket_count == 3

    def test_small_buckets_are_dropped(self):
        """Test that undersized buckets are dropped."""
        records = (
            make_records(10, year=2016, price=5000.0)
            + make_records(9, year=2017, price=6000.0)
            + make_records(10, year=2018, price=7500.0)
        )
        assert [t for t in self.analyzer.analyze(records).trends if t.bucket == "model_year"] == []

    def test_sale_month_trend_down_and_flat(self):
        """Test downward and flat sale-month trends."""
        months = [NOW - timedelta(days=d) for d in (95, 65, 35)]
        falling = (
            make_records(10, sale_date=months[0], price=9000.0)
            + make_records(10, sale_date=months[1], price=8000.0)
            + make_records(10, sale_date=months[2], price=6000.0)
        )
        trend = next(t for t in self.analyzer.analyze(falling).trends if t.bucket == "sale_month")
        assert trend.direction == "down"

        flat = (
            make_records(10, sale_date=months[0], price=9000.0)
            + make_records(10, sale_date=months[1], price=8000.0)
            + make_records(10, sale_date=months[2], price=9040.0)
        )
        trend = next(t for t in self.analyzer.analyze(flat).trends if t.bucket == "sale_month")
        assert trend.direction == "flat"


class TestRisksAndRecommendations:

    def setup_method(self):
        """Set up test fixtures."""
        self.analyzer = MarketAnalyzer(AuctionMindConfig())

    def test_thin_sample_and_damage_concentration(self):
        """Test thin sample and damage concentration risks."""
        result = self.analyzer.analyze(make_records(10, damage="Hail"))
        categories = {r.category: r for r in result.risks}
        assert "thin_sample" in categories
        assert categories["damage_concentration"].severity == RiskLevel.HIGH

    def test_low_sold_rate(self):
        """Test the low sold rate risk."""
        records = make_records(60, sale_status="Not Sold") + make_records(10, sale_status="Sold")
        categories = {r.category for r in self.analyzer.analyze(records).risks}
        assert "low_sold_rate" in categories

    def test_recommendations_reference_top_opportunity(self, ford_toyota_records):
        """Test that recommendations cite the top opportunity."""
        recommendations = self.analyzer.analyze(ford_toyota_records).recommendations
        assert any("Ford Value Opportunity" in line for line in recommendations.immediate)
        assert len(recommendations.strategic) == 3


class TestDeterminism:

    def test_same_input_same_output(self, ford_toyota_records):
        """Test that structured output is deterministic."""
        analyzer = MarketAnalyzer(AuctionMindConfig())
        assert analyzer.analyze(ford_toyota_records) == analyzer.analyze(list(reversed(ford_toyota_records)))


class TestInsights:

    def test_written_insights(self, ford_toyota_records):
        """Test attaching writer prose."""
        writer = MagicMock()
        writer.describe.return_value = "Fords are cheap."
        result = MarketAnalyzer(AuctionMindConfig(), insight_writer=writer).analyze(ford_toyota_records)
        assert result.insight_status == InsightStatus.WRITTEN
        assert result.insights == "Fords are cheap."

    def test_writer_failure_keeps_structured_output(self, ford_toyota_records):
        """Test insight writer failure."""
        writer = MagicMock()
        writer.describe.side_effect = InsightWriterError("rate limited")
        baseline = MarketAnalyzer(AuctionMindConfig()).analyze(ford_toyota_records)
        result = MarketAnalyzer(AuctionMindConfig(), insight_writer=writer).analyze(ford_toyota_records)
        assert result.insight_status == InsightStatus.FAILED
        assert result.insights is None
        assert result.opportunities == baseline.opportunities
        assert result.summary == baseline.summary

    def test_no_writer_means_skipped(self, ford_toyota_records):
        """Test the default skipped insight status."""
        result = MarketAnalyzer(AuctionMindConfig()).analyze(ford_toyota_records)
        assert result.insight_status == InsightStatus.SKIPPED
