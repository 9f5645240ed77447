"""
Event fetching and local aggregation.

Klaviyo's server-side grouping cannot reliably group conversions by the
owner we need, so every event of the window is pulled through the
events endpoint and grouped here. One generic `group_by_sum` does all
grouping: conversions by campaign, conversions by flow, and each
engagement metric by message and by flow.

Events whose key function yields None stay out of the groups but are
counted in `Grouping.total` and `Grouping.ungrouped`, so partial
attribution shows up instead of disappearing.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from core.attribution import AttributionResolver, clean_id
from core.models import AttributionCoverage, Event, GroupTotals, ReportWindow
from core.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Checked after `$value`; fallbacks only count when positive
REVENUE_FALLBACK_KEYS = ("value", "Value", "order_total", "total_price", "amount", "revenue")

MESSAGE_KEY = "$message"
FLOW_KEY = "$flow"


def to_number(value: Any) -> float:
    """Parse a numeric API value; anything unparseable or non-finite is 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def extract_revenue(properties: Dict[str, Any]) -> float:
    """Revenue carried by an event's properties, 0 when there is none."""
    if not properties:
        return 0.0
    if properties.get("$value") is not None:
        return to_number(properties["$value"])
    for key in REVENUE_FALLBACK_KEYS:
        if properties.get(key) is not None:
            number = to_number(properties[key])
            if number > 0:
                return number
    return 0.0


def sum_measurement(rows: Iterable[Dict[str, Any]], measurement: str) -> float:
    """
    Sum one measurement over metric-aggregate rows.

    Measurements arrive either as a scalar or as a per-interval list.
    """
    total = 0.0
    for row in rows:
        value = (row.get("measurements") or {}).get(measurement)
        if isinstance(value, list):
            total += sum(to_number(v) for v in value)
        else:
            total += to_number(value)
    return total


def sum_statistics(results: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    """Add up values-report statistics over result rows (e.g. every message of a flow)."""
    totals: Dict[str, float] = {}
    for result in results:
        for name, value in (result.get("statistics") or {}).items():
            totals[name] = round(totals.get(name, 0.0) + to_number(value), 2)
    return totals


@dataclass
class Grouping:
    """Result of one group-by: per-key totals plus the overall total."""
    groups: Dict[str, GroupTotals] = field(default_factory=dict)
    total: GroupTotals = field(default_factory=GroupTotals)
    ungrouped: GroupTotals = field(default_factory=GroupTotals)

    def count(self, key: str) -> int:
        group = self.groups.get(key)
        return group.count if group else 0

    def sum(self, key: str) -> float:
        group = self.groups.get(key)
        return group.sum if group else 0.0

    def sums(self) -> Dict[str, float]:
        return {key: group.sum for key, group in self.groups.items()}


def group_by_sum(
    items: Iterable[T],
    key_fn: Callable[[T], Optional[str]],
    value_fn: Optional[Callable[[T], float]] = None,
) -> Grouping:
    """
    Group items by key, counting them and summing their values in one pass.

    Args:
        items: Anything iterable (events, resolved events ...)
        key_fn: Grouping key; None leaves the item ungrouped
        value_fn: Numeric value per item (defaults to 0, count only)
    """
    grouping = Grouping()
    for item in items:
        value = value_fn(item) if value_fn else 0.0
        grouping.total.add(value)
        key = key_fn(item)
        if key is None:
            grouping.ungrouped.add(value)
            continue
        grouping.groups.setdefault(key, GroupTotals()).add(value)
    return grouping


@dataclass
class EventBatch:
    """Events of one metric with the side-loaded resources of their pages."""
    metric_id: Optional[str]
    events: List[Event] = field(default_factory=list)
    included: List[Dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.events)


@dataclass(frozen=True)
class ResolvedConversion:
    event: Event
    revenue: float
    campaign_id: Optional[str]
    flow_id: Optional[str]


@dataclass
class ConversionAggregation:
    by_campaign: Grouping
    by_flow: Grouping
    coverage: AttributionCoverage


@dataclass
class EngagementAggregation:
    """One engagement metric grouped by message id and by flow id."""
    by_message: Grouping = field(default_factory=Grouping)
    by_flow: Grouping = field(default_factory=Grouping)

    @property
    def total(self) -> int:
        return self.by_message.total.count


def _engagement_key(key: str) -> Callable[[Event], Optional[str]]:
    return lambda event: clean_id(event.properties.get(key))


class EventAggregator:
    """
    Fetches the window's events and groups them locally.

    Usage:
        aggregator = EventAggregator(client, window)
        batch = await aggregator.fetch_events(conversion_metric_id)
        conversions = aggregator.aggregate_conversions(batch.events, resolver)
    """

    def __init__(self, client, window: ReportWindow):
        self.client = client
        self.window = window

    async def fetch_events(self, metric_id: str) -> EventBatch:
        """Drain every event of a metric in the window."""
        page = await self.client.get_events(metric_id, self.window)
        events = [Event.from_api(item, metric_id=metric_id) for item in page.items]

        in_window = [e for e in events if e.datetime is None or self.window.contains(e.datetime)]
        if len(in_window) != len(events):
            logger.warning(
                f"Dropped {len(events) - len(in_window)} events outside the window",
                extra={"metric_id": metric_id},
            )

        logger.info(f"Fetched {len(in_window)} events", extra={"metric_id": metric_id})
        return EventBatch(metric_id=metric_id, events=in_window, included=page.included)

    async def fetch_total_revenue(self, metric_id: str) -> float:
        """Authoritative sum of conversion value in the window (report endpoint)."""
        rows = await self.client.query_metric_aggregate(metric_id, ["sum_value"], self.window)
        return sum_measurement(rows, "sum_value")

    @staticmethod
    def resolve_conversions(
        events: Sequence[Event],
        resolver: AttributionResolver,
        ambiguous: str = "campaign",
    ) -> List[ResolvedConversion]:
        """
        Resolve each conversion's owners once.

        `ambiguous` decides what happens when both chains hit:
        "both" credits both, "campaign"/"flow" keeps only that side.
        """
        resolved = []
        for event in events:
            campaign_id = resolver.resolve_campaign_id(event)
            flow_id = resolver.resolve_flow_id(event)
            if campaign_id and flow_id:
                if ambiguous == "campaign":
                    flow_id = None
                elif ambiguous == "flow":
                    campaign_id = None
            resolved.append(ResolvedConversion(
                event=event,
                revenue=extract_revenue(event.properties),
                campaign_id=campaign_id,
                flow_id=flow_id,
            ))
        return resolved

    def aggregate_conversions(
        self,
        events: Sequence[Event],
        resolver: AttributionResolver,
        ambiguous: str = "campaign",
    ) -> ConversionAggregation:
        """Conversion count and revenue by campaign id and by flow id."""
        resolved = self.resolve_conversions(events, resolver, ambiguous)

        by_campaign = group_by_sum(resolved, lambda r: r.campaign_id, lambda r: r.revenue)
        by_flow = group_by_sum(resolved, lambda r: r.flow_id, lambda r: r.revenue)

        coverage = AttributionCoverage(
            events=len(resolved),
            revenue=sum(r.revenue for r in resolved),
        )
        for r in resolved:
            if r.campaign_id:
                coverage.campaign_events += 1
            if r.flow_id:
                coverage.flow_events += 1
            if r.campaign_id and r.flow_id:
                coverage.ambiguous_events += 1
            if not r.campaign_id and not r.flow_id:
                coverage.unattributed_events += 1
                coverage.unattributed_revenue += r.revenue

        if coverage.unattributed_events:
            logger.info(
                f"{coverage.unattributed_events} of {coverage.events} conversions unattributed",
                extra={"unattributed_revenue": round(coverage.unattributed_revenue, 2)},
            )
        if coverage.ambiguous_events:
            logger.warning(
                f"{coverage.ambiguous_events} conversions resolve to both a campaign and a flow",
                extra={"ambiguous_attribution": ambiguous},
            )
        return ConversionAggregation(by_campaign=by_campaign, by_flow=by_flow, coverage=coverage)

    @staticmethod
    def aggregate_engagement(events: Sequence[Event]) -> EngagementAggregation:
        """Count (and sum any embedded value of) engagement events by message and by flow."""
        value = lambda event: extract_revenue(event.properties)
        return EngagementAggregation(
            by_message=group_by_sum(events, _engagement_key(MESSAGE_KEY), value),
            by_flow=group_by_sum(events, _engagement_key(FLOW_KEY), value),
        )

    @staticmethod
    def learn_message_flows(*batches: Sequence[Event]) -> Dict[str, str]:
        """message id -> flow id pairs seen on engagement events."""
        pairs: Dict[str, str] = {}
        for events in batches:
            for event in events:
                message_id = clean_id(event.properties.get(MESSAGE_KEY))
                flow_id = clean_id(event.properties.get(FLOW_KEY))
                if message_id and flow_id:
                    pairs.setdefault(message_id, flow_id)
        return pairs
