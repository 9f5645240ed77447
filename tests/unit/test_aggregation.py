"""
Tests for core.aggregation module.
"""
from datetime import datetime, timezone

import pytest

from core.aggregation import (
    EventAggregator,
    extract_revenue,
    group_by_sum,
    sum_measurement,
    sum_statistics,
    to_number,
)
from core.attribution import AttributionContext, AttributionResolver
from core.models import Event, ReportWindow
from tests.fakes import FakeKlaviyo, event_resource

WINDOW = ReportWindow.last_days(30, now=datetime(2026, 3, 31, tzinfo=timezone.utc))


def _event(event_id, properties=None) -> Event:
    return Event(id=event_id, metric_id="m", datetime=None, properties=properties or {})


class TestRevenue:
    """Tests for to_number() and extract_revenue()."""

    def test_to_number(self):
        assert to_number("12.5") == 12.5
        assert to_number(3) == 3.0
        assert to_number(None) == 0.0
        assert to_number("abc") == 0.0
        assert to_number(True) == 0.0
        assert to_number(float("nan")) == 0.0
        assert to_number(float("inf")) == 0.0

    def test_value_property(self):
        assert extract_revenue({"$value": "49.90"}) == 49.9

    def test_value_wins_even_when_zero(self):
        assert extract_revenue({"$value": 0, "amount": 30}) == 0.0

    def test_fallback_keys(self):
        assert extract_revenue({"order_total": 20}) == 20.0
        assert extract_revenue({"value": -5, "amount": 7}) == 7.0

    def test_no_revenue(self):
        assert extract_revenue({}) == 0.0
        assert extract_revenue({"$value": "n/a"}) == 0.0
        assert extract_revenue({"SKU": "abc"}) == 0.0


class TestSumStatistics:
    def test_summed_over_rows(self):
        results = [
            {"groupings": {"flow_message_id": "FM1"}, "statistics": {"opens": 15, "conversion_value": 30.5}},
            {"groupings": {"flow_message_id": "FM2"}, "statistics": {"opens": 5, "conversion_value": "14.5"}},
            {"groupings": {"flow_message_id": "FM3"}, "statistics": {"opens": None, "clicks": 2}},
        ]
        assert sum_statistics(results) == {"opens": 20.0, "conversion_value": 45.0, "clicks": 2.0}

    def test_empty(self):
        assert sum_statistics([]) == {}
        assert sum_statistics([{"groupings": {}}]) == {}


class TestSumMeasurement:
    def test_lists_and_scalars(self):
        rows = [
            {"dimensions": [], "measurements": {"sum_value": [1.5, 2.5, None]}},
            {"dimensions": ["x"], "measurements": {"sum_value": 6}},
            {"dimensions": ["y"], "measurements": {}},
        ]
        assert sum_measurement(rows, "sum_value") == 10.0

    def test_empty(self):
        assert sum_measurement([], "count") == 0.0


class TestGroupBySum:
    """Tests for group_by_sum()."""

    def test_counts_and_sums(self):
        items = [("a", 1.0), ("b", 2.0), ("a", 3.0)]
        grouping = group_by_sum(items, lambda i: i[0], lambda i: i[1])

        assert grouping.count("a") == 2
        assert grouping.sum("a") == 4.0
        assert grouping.sums() == {"a": 4.0, "b": 2.0}

    def test_missing_key_counted_in_total(self):
        """Items without a key are not dropped from the total."""
        items = [("a", 1.0), (None, 5.0)]
        grouping = group_by_sum(items, lambda i: i[0], lambda i: i[1])

        assert grouping.total.count == 2
        assert grouping.total.sum == 6.0
        assert grouping.ungrouped.count == 1
        assert grouping.ungrouped.sum == 5.0
        assert set(grouping.groups) == {"a"}

    def test_count_only(self):
        grouping = group_by_sum(["x", "x", "y"], lambda i: i)
        assert grouping.count("x") == 2
        assert grouping.sum("x") == 0.0
        assert grouping.count("z") == 0


class TestResolveConversions:
    """Ambiguity handling when both chains hit."""

    @pytest.fixture
    def resolver(self) -> AttributionResolver:
        return AttributionResolver(AttributionContext.build({"C1": ["M1"]}))

    @pytest.fixture
    def events(self):
        return [
            _event("both", {"$attributed_campaign": "C1", "$attributed_flow": "F1", "$value": 10}),
            _event("flow", {"$attributed_flow": "F1", "$value": 5}),
        ]

    def test_campaign_mode(self, resolver, events):
        resolved = EventAggregator.resolve_conversions(events, resolver, ambiguous="campaign")
        assert [(r.campaign_id, r.flow_id) for r in resolved] == [("C1", None), (None, "F1")]

    def test_flow_mode(self, resolver, events):
        resolved = EventAggregator.resolve_conversions(events, resolver, ambiguous="flow")
        assert [(r.campaign_id, r.flow_id) for r in resolved] == [(None, "F1"), (None, "F1")]

    def test_stale_campaign_does_not_take_flow_credit(self):
        """A campaign outside the window cannot win the tie against a live flow."""
        resolver = AttributionResolver(
            AttributionContext.build({"C1": ["M1"]}, campaign_ids=["C1"], flow_ids=["F1"])
        )
        events = [_event("e1", {"$attributed_campaign": "C_OLD", "$attributed_flow": "F1", "$value": 50})]

        result = EventAggregator(None, WINDOW).aggregate_conversions(events, resolver, ambiguous="campaign")

        assert result.by_flow.sum("F1") == 50.0
        assert result.by_campaign.groups == {}
        assert result.coverage.campaign_events == 0
        assert result.coverage.flow_events == 1
        assert result.coverage.ambiguous_events == 0
        assert result.coverage.unattributed_events == 0

    def test_both_mode(self, resolver, events):
        resolved = EventAggregator.resolve_conversions(events, resolver, ambiguous="both")
        assert resolved[0].campaign_id == "C1"
        assert resolved[0].flow_id == "F1"
        assert resolved[0].revenue == 10.0


class TestAggregateConversions:
    def test_coverage(self):
        resolver = AttributionResolver(AttributionContext.build({"C1": ["M1"]}))
        events = [
            _event("e1", {"$message_interaction": "M1", "$value": 100}),
            _event("e2", {"$attributed_flow": "F1", "$value": 30}),
            _event("e3", {"$attributed_campaign": "C1", "$attributed_flow": "F1", "$value": 20}),
            _event("e4", {"$value": 40}),
        ]

        result = EventAggregator(None, WINDOW).aggregate_conversions(events, resolver, ambiguous="both")

        assert result.by_campaign.sum("C1") == 120.0
        assert result.by_campaign.count("C1") == 2
        assert result.by_flow.sum("F1") == 50.0
        assert result.coverage.events == 4
        assert result.coverage.revenue == 190.0
        assert result.coverage.ambiguous_events == 1
        assert result.coverage.unattributed_events == 1
        assert result.coverage.unattributed_revenue == 40.0
        assert result.by_campaign.total.sum == 190.0


class TestEngagement:
    def test_grouped_by_message_and_flow(self):
        events = [
            _event("o1", {"$message": "M1"}),
            _event("o2", {"$message": "M1"}),
            _event("o3", {"$message": "FM1", "$flow": "F1"}),
            _event("o4", {}),
        ]

        result = EventAggregator.aggregate_engagement(events)

        assert result.by_message.count("M1") == 2
        assert result.by_message.count("FM1") == 1
        assert result.by_flow.count("F1") == 1
        assert result.total == 4

    def test_learn_message_flows(self):
        opens = [_event("o1", {"$message": "FM1", "$flow": "F1"}), _event("o2", {"$message": "M1"})]
        clicks = [_event("c1", {"$message": "FM2", "$flow": "F2"}), _event("c2", {"$message": "FM1", "$flow": "F9"})]

        pairs = EventAggregator.learn_message_flows(opens, clicks)

        assert pairs == {"FM1": "F1", "FM2": "F2"}


class TestFetchEvents:
    @pytest.mark.asyncio
    async def test_events_outside_window_dropped(self, make_client):
        fake = FakeKlaviyo()
        fake.add_events("m_order", [
            event_resource("in", {"$value": 1}, when="2026-03-15T12:00:00+00:00"),
            event_resource("late", {"$value": 1}, when="2026-04-02T12:00:00+00:00"),
        ])

        async with make_client(fake) as client:
            batch = await EventAggregator(client, WINDOW).fetch_events("m_order")

        assert [e.id for e in batch.events] == ["in"]
        assert batch.metric_id == "m_order"
        params = fake.calls_to("events")[0].url.params
        assert 'equals(metric_id,"m_order")' in params["filter"]

    @pytest.mark.asyncio
    async def test_fetch_total_revenue(self, make_client):
        fake = FakeKlaviyo()
        fake.aggregate_totals["m_order"] = 123.45

        async with make_client(fake) as client:
            total = await EventAggregator(client, WINDOW).fetch_total_revenue("m_order")

        assert total == 123.45
