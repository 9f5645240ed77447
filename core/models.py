"""
Domain models for Klaviyo data.

Provides type-safe dataclasses for metrics, campaigns, flows and events,
parsed from Klaviyo's JSON:API resources, plus the request-scoped
aggregation types the report pipeline builds. Every report reconstructs
these from scratch; nothing here is persisted.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the API into an aware UTC datetime."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way Klaviyo filters expect (no millis, Z suffix)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _related_ids(resource: Dict[str, Any], *names: str) -> List[str]:
    """Ids linked under the first relationship name present on a resource."""
    relationships = resource.get("relationships") or {}
    for name in names:
        rel = relationships.get(name)
        if not rel:
            continue
        data = rel.get("data")
        if isinstance(data, list):
            return [str(item["id"]) for item in data if item and item.get("id")]
        if isinstance(data, dict) and data.get("id"):
            return [str(data["id"])]
    return []


# ═══════════════════════════════════════════════════════════════════════════════
# REPORTING WINDOW
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReportWindow:
    """Trailing reporting period, [start, end)."""
    start: datetime
    end: datetime

    @classmethod
    def last_days(cls, days: int, now: Optional[datetime] = None) -> "ReportWindow":
        end = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        return cls(start=end - timedelta(days=days), end=end)

    @property
    def start_str(self) -> str:
        return format_timestamp(self.start)

    @property
    def end_str(self) -> str:
        return format_timestamp(self.end)

    def datetime_predicates(self) -> List[str]:
        """Event datetime filter predicates; datetime values stay unquoted."""
        return [
            f"greater-or-equal(datetime,{self.start_str})",
            f"less-than(datetime,{self.end_str})",
        ]

    def contains(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.start <= moment < self.end


# ═══════════════════════════════════════════════════════════════════════════════
# UPSTREAM RESOURCES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Metric:
    """Named business metric (e.g. "Placed Order")."""
    id: str
    name: str
    integration: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Metric":
        attrs = data.get("attributes") or {}
        integration = attrs.get("integration")
        if isinstance(integration, dict):
            integration = integration.get("name")
        return cls(id=str(data["id"]), name=attrs.get("name") or "", integration=integration)


@dataclass(frozen=True)
class Message:
    """A send variant of a campaign; engagement events key to this id."""
    id: str
    label: str
    channel: Optional[str] = None
    campaign_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Message":
        attrs = data.get("attributes") or {}
        owners = _related_ids(data, "campaign")
        return cls(
            id=str(data["id"]),
            label=attrs.get("label") or attrs.get("name") or str(data["id"]),
            channel=attrs.get("channel"),
            campaign_id=owners[0] if owners else None,
        )


@dataclass
class Campaign:
    """Campaign from the campaigns list endpoint."""
    id: str
    name: str
    status: str
    channel: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    send_time: Optional[datetime] = None
    message_ids: List[str] = field(default_factory=list)
    messages: List[Message] = field(default_factory=list)

    @classmethod
    def from_api(
        cls,
        data: Dict[str, Any],
        channel: Optional[str] = None,
    ) -> "Campaign":
        attrs = data.get("attributes") or {}
        return cls(
            id=str(data["id"]),
            name=attrs.get("name") or "Unnamed Campaign",
            status=attrs.get("status") or "unknown",
            channel=channel,
            created_at=parse_datetime(attrs.get("created_at")),
            updated_at=parse_datetime(attrs.get("updated_at")),
            scheduled_at=parse_datetime(attrs.get("scheduled_at")),
            send_time=parse_datetime(attrs.get("send_time")),
            message_ids=_related_ids(data, "campaign-messages", "campaign_messages"),
        )

    @property
    def last_activity(self) -> Optional[datetime]:
        return self.updated_at or self.created_at

    @property
    def send_date(self) -> Optional[datetime]:
        return self.send_time or self.scheduled_at or self.created_at

    @property
    def message_type(self) -> str:
        """Channel of the first message, else the channel it was listed under."""
        for message in self.messages:
            if message.channel:
                return message.channel
        return self.channel or "unknown"


@dataclass
class Flow:
    """Automated flow from the flows list endpoint."""
    id: str
    name: str
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    trigger_type: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Flow":
        attrs = data.get("attributes") or {}
        return cls(
            id=str(data["id"]),
            name=attrs.get("name") or "Unnamed Flow",
            status=attrs.get("status") or "unknown",
            created_at=parse_datetime(attrs.get("created")),
            updated_at=parse_datetime(attrs.get("updated")),
            trigger_type=attrs.get("trigger_type"),
        )

    @property
    def is_draft(self) -> bool:
        return self.status.lower() == "draft"


@dataclass(frozen=True)
class Event:
    """
    A single metric event. Fetched once and never mutated.

    `properties` are the event_properties; `relationships` is the raw
    JSON:API relationships block (attributions, campaign, flow ...).
    """
    id: str
    metric_id: Optional[str]
    datetime: Optional[datetime]
    properties: Dict[str, Any] = field(default_factory=dict)
    relationships: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any], metric_id: Optional[str] = None) -> "Event":
        attrs = data.get("attributes") or {}
        related_metric = _related_ids(data, "metric")
        return cls(
            id=str(data["id"]),
            metric_id=attrs.get("metric_id") or (related_metric[0] if related_metric else metric_id),
            datetime=parse_datetime(attrs.get("datetime")),
            properties=attrs.get("event_properties") or {},
            relationships=data.get("relationships") or {},
        )

    def related_ids(self, *names: str) -> List[str]:
        return _related_ids({"relationships": self.relationships}, *names)


@dataclass
class Page:
    """One page of a cursor-paginated list."""
    items: List[Dict[str, Any]]
    next_cursor: Optional[str] = None
    included: List[Dict[str, Any]] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATION RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class GroupTotals:
    """Count and value sum of one group."""
    count: int = 0
    sum: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.sum += value


@dataclass
class EntityMetrics:
    """Attribution-map value for one campaign, flow or message id."""
    revenue: float = 0.0
    conversions: int = 0
    opens: int = 0
    clicks: int = 0
    recipients: int = 0
    engagement_revenue: float = 0.0

    def merge(self, other: "EntityMetrics") -> None:
        self.revenue += other.revenue
        self.conversions += other.conversions
        self.opens += other.opens
        self.clicks += other.clicks
        self.recipients += other.recipients
        self.engagement_revenue += other.engagement_revenue


@dataclass
class AttributionCoverage:
    """How much of the conversion stream could be assigned to an entity."""
    events: int = 0
    revenue: float = 0.0
    campaign_events: int = 0
    flow_events: int = 0
    ambiguous_events: int = 0
    unattributed_events: int = 0
    unattributed_revenue: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversionEvents": self.events,
            "conversionRevenue": round(self.revenue, 2),
            "campaignEvents": self.campaign_events,
            "flowEvents": self.flow_events,
            "ambiguousEvents": self.ambiguous_events,
            "unattributedEvents": self.unattributed_events,
            "unattributedRevenue": round(self.unattributed_revenue, 2),
        }
