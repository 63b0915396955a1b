"""
Tests for sale-record stores and filter matching.
"""
from datetime import timedelta

import pytest
from pydantic import ValidationError

from auctionmind.data.record_store import InMemoryRecordStore, SqlRecordStore
from auctionmind.data.records import AnalysisFilter, MarketSegment, segments_for

from conftest import NOW, make_record


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory):
    if request.param == "memory":
        return InMemoryRecordStore()
    return SqlRecordStore(session_factory)


class TestSaleRecord:

    def test_sold_status(self):
        assert make_record(sale_status="Sold").is_sold
        assert make_record(sale_status="sold - pending").is_sold
        assert not make_record(sale_status="Not Sold").is_sold
        assert not make_record(sale_status=None).is_sold


class TestAnalysisFilter:

    def test_string_values_become_lists(self):
        assert AnalysisFilter(makes="Ford").makes == ["Ford"]

    def test_inverted_range_rejected(self):
        with pytest.raises(ValidationError):
            AnalysisFilter(year_range=(2020, 2015))

    def test_matching_is_case_insensitive(self):
        record = make_record(make="Ford", damage="Front End")
        assert AnalysisFilter(makes=["FORD"], damage_types=["front end"]).matches(record)
        assert not AnalysisFilter(makes=["Toyota"]).matches(record)

    def test_ranges_are_inclusive(self):
        record = make_record(year=2018, price=8000.0)
        assert AnalysisFilter(year_range=(2018, 2018), price_range=(8000, 9000)).matches(record)
        assert not AnalysisFilter(price_range=(8000.01, 9000)).matches(record)
        assert not AnalysisFilter(price_range=(0, 9000)).matches(make_record(price=None))


class TestSegments:

    def test_no_makes_is_whole_market(self):
        assert segments_for(AnalysisFilter()) == [MarketSegment()]

    def test_one_segment_per_make(self):
        segments = segments_for(AnalysisFilter(makes=["Toyota", "Ford", "Ford "]))
        assert [s.make for s in segments] == ["Ford", "Toyota"]

    def test_single_model_and_year_narrow_segment(self):
        [segment] = segments_for(AnalysisFilter(makes=["Ford"], models=["Focus"], year_range=(2018, 2018)))
        assert segment == MarketSegment(make="Ford", model="Focus", year=2018)
        assert segment.label == "2018 Ford Focus"

    def test_segment_matching(self):
        segment = MarketSegment(make="ford")
        assert segment.matches(make_record(make="Ford"))
        assert not segment.matches(make_record(make="Honda"))
        assert MarketSegment().label == "all makes"


class TestRecordStore:

    def test_fetch_most_recent_first_with_limit(self, store):
        store.ingest([
            make_record(lot_id="A", sale_date=NOW - timedelta(days=5)),
            make_record(lot_id="B", sale_date=NOW - timedelta(days=1)),
            make_record(lot_id="C", sale_date=NOW - timedelta(days=3)),
        ])
        fetched = store.fetch(AnalysisFilter(), limit=2)
        assert [r.lot_id for r in fetched] == ["B", "C"]

    def test_fetch_applies_filter(self, store):
        store.ingest([
            make_record(lot_id="F1", make="Ford", year=2018),
            make_record(lot_id="F2", make="Ford", year=2012),
            make_record(lot_id="T1", make="Toyota", year=2018),
        ])
        fetched = store.fetch(AnalysisFilter(makes=["ford"], year_range=(2015, 2020)), limit=10)
        assert [r.lot_id for r in fetched] == ["F1"]

    def test_ingest_skips_known_lots(self, store):
        assert store.ingest([make_record(lot_id="A"), make_record(lot_id="B")]) == 2
        assert store.ingest([make_record(lot_id="B"), make_record(lot_id="C")]) == 1
        assert store.ingest([]) == 0
        assert len(store.fetch(AnalysisFilter(), limit=10)) == 3

    def test_latest_sale_date_per_segment(self, store):
        store.ingest([
            make_record(lot_id="A", make="Ford", sale_date=NOW - timedelta(days=4)),
            make_record(lot_id="B", make="Ford", sale_date=NOW - timedelta(days=2)),
            make_record(lot_id="C", make="Honda", sale_date=NOW),
        ])
        assert store.latest_sale_date(MarketSegment(make="FORD")) == NOW - timedelta(days=2)
        assert store.latest_sale_date(MarketSegment()) == NOW
        assert store.latest_sale_date(MarketSegment(make="Kia")) is None

    def test_round_trip_preserves_fields(self, store):
        record = make_record(lot_id="X", has_keys=True, sale_status="Not Sold")
        store.ingest([record])
        [fetched] = store.fetch(AnalysisFilter(), limit=1)
        assert fetched == record
