"""
Event -> campaign / flow attribution.

Each owner type has an ordered chain of extractor functions. The first
extractor that yields a non-empty id decides the owner; when none does,
the event is unattributed (it still counts toward report totals).
Ids of campaigns outside the window and of draft flows are skipped, so
they can neither own revenue nor win a campaign/flow tie.

Campaign chain:
    1. $message_interaction, mapped through the message index
    2. $attributed_campaign
    3. $attributed_message, mapped through the message index
    4. raw campaign id properties (several historical spellings)
    5. included "attribution" records linked from the event
    6. direct `campaign` relationship

The flow chain mirrors it with flow properties. Both chains run on
every event; what happens to an event that resolves to both a campaign
and a flow is decided by the aggregator (`ambiguous_attribution`).
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from core.models import Event

CAMPAIGN_ID_KEYS = ("campaign_id", "Campaign ID", "CampaignID", "campaignId", "$campaign")
FLOW_ID_KEYS = ("flow_id", "Flow ID", "FlowID", "flowId", "$flow")


def clean_id(value: Any) -> Optional[str]:
    """Normalize a candidate id; empty strings and non-scalars are None."""
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    text = str(value).strip()
    return text or None


@dataclass
class AttributionContext:
    """
    Lookup tables shared by the extractors during one report.

    message_campaigns: message id -> campaign id for in-window campaigns
        (a campaign id also maps to itself; campaign sends report the
        campaign id as their attributed message)
    message_flows: message id -> flow id, learned from engagement events
        that carry both `$message` and `$flow`
    attributions: included attribution records by id
    campaign_ids / flow_ids: owners a resolved id must belong to
        (in-window campaigns, non-draft flows); None accepts any id
    """
    message_campaigns: Dict[str, str] = field(default_factory=dict)
    message_flows: Dict[str, str] = field(default_factory=dict)
    attributions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    campaign_ids: Optional[FrozenSet[str]] = None
    flow_ids: Optional[FrozenSet[str]] = None

    @classmethod
    def build(
        cls,
        message_map: Dict[str, List[str]],
        included: Iterable[Dict[str, Any]] = (),
        message_flows: Optional[Dict[str, str]] = None,
        campaign_ids: Optional[Iterable[str]] = None,
        flow_ids: Optional[Iterable[str]] = None,
    ) -> "AttributionContext":
        message_campaigns: Dict[str, str] = {}
        for campaign_id, message_ids in message_map.items():
            message_campaigns[campaign_id] = campaign_id
            for message_id in message_ids:
                message_campaigns.setdefault(message_id, campaign_id)

        attributions = {
            str(item["id"]): item
            for item in included
            if item.get("type") == "attribution" and item.get("id")
        }
        return cls(
            message_campaigns=message_campaigns,
            message_flows=dict(message_flows or {}),
            attributions=attributions,
            campaign_ids=frozenset(campaign_ids) if campaign_ids is not None else None,
            flow_ids=frozenset(flow_ids) if flow_ids is not None else None,
        )

    def knows_campaign(self, campaign_id: str) -> bool:
        return self.campaign_ids is None or campaign_id in self.campaign_ids

    def knows_flow(self, flow_id: str) -> bool:
        return self.flow_ids is None or flow_id in self.flow_ids

    def campaign_for_message(self, message_id: Optional[str]) -> Optional[str]:
        return self.message_campaigns.get(message_id) if message_id else None

    def flow_for_message(self, message_id: Optional[str]) -> Optional[str]:
        return self.message_flows.get(message_id) if message_id else None

    def attribution_records(self, event: Event) -> List[Dict[str, Any]]:
        records = []
        for ref_id in event.related_ids("attributions"):
            record = self.attributions.get(ref_id)
            if record:
                records.append(record)
        return records


Extractor = Callable[[Event, AttributionContext], Optional[str]]


def _first_property(event: Event, keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = clean_id(event.properties.get(key))
        if value:
            return value
    return None


def _from_records(
    event: Event,
    ctx: AttributionContext,
    id_key: str,
    relationship: str,
    via_message: Callable[[Optional[str]], Optional[str]],
) -> Optional[str]:
    for record in ctx.attribution_records(event):
        attrs = record.get("attributes") or {}
        owner = clean_id(attrs.get(id_key))
        if owner:
            return owner
        rel = ((record.get("relationships") or {}).get(relationship) or {}).get("data")
        if isinstance(rel, dict):
            owner = clean_id(rel.get("id"))
            if owner:
                return owner
        owner = via_message(clean_id(attrs.get("message_id")))
        if owner:
            return owner
    return None


# ─── Campaign extractors ─────────────────────────────────────────────────────

def campaign_from_message_interaction(event: Event, ctx: AttributionContext) -> Optional[str]:
    return ctx.campaign_for_message(clean_id(event.properties.get("$message_interaction")))


def campaign_from_attributed_campaign(event: Event, ctx: AttributionContext) -> Optional[str]:
    return clean_id(event.properties.get("$attributed_campaign"))


def campaign_from_attributed_message(event: Event, ctx: AttributionContext) -> Optional[str]:
    return ctx.campaign_for_message(clean_id(event.properties.get("$attributed_message")))


def campaign_from_id_property(event: Event, ctx: AttributionContext) -> Optional[str]:
    return _first_property(event, CAMPAIGN_ID_KEYS)


def campaign_from_attribution_records(event: Event, ctx: AttributionContext) -> Optional[str]:
    return _from_records(event, ctx, "campaign_id", "campaign", ctx.campaign_for_message)


def campaign_from_relationship(event: Event, ctx: AttributionContext) -> Optional[str]:
    ids = event.related_ids("campaign")
    return clean_id(ids[0]) if ids else None


CAMPAIGN_EXTRACTORS: List[Extractor] = [
    campaign_from_message_interaction,
    campaign_from_attributed_campaign,
    campaign_from_attributed_message,
    campaign_from_id_property,
    campaign_from_attribution_records,
    campaign_from_relationship,
]


# ─── Flow extractors ─────────────────────────────────────────────────────────

def flow_from_message_interaction(event: Event, ctx: AttributionContext) -> Optional[str]:
    return ctx.flow_for_message(clean_id(event.properties.get("$message_interaction")))


def flow_from_attributed_flow(event: Event, ctx: AttributionContext) -> Optional[str]:
    return clean_id(event.properties.get("$attributed_flow"))


def flow_from_attributed_message(event: Event, ctx: AttributionContext) -> Optional[str]:
    return ctx.flow_for_message(clean_id(event.properties.get("$attributed_message")))


def flow_from_id_property(event: Event, ctx: AttributionContext) -> Optional[str]:
    return _first_property(event, FLOW_ID_KEYS)


def flow_from_attribution_records(event: Event, ctx: AttributionContext) -> Optional[str]:
    return _from_records(event, ctx, "flow_id", "flow", ctx.flow_for_message)


def flow_from_relationship(event: Event, ctx: AttributionContext) -> Optional[str]:
    ids = event.related_ids("flow")
    return clean_id(ids[0]) if ids else None


FLOW_EXTRACTORS: List[Extractor] = [
    flow_from_message_interaction,
    flow_from_attributed_flow,
    flow_from_attributed_message,
    flow_from_id_property,
    flow_from_attribution_records,
    flow_from_relationship,
]


def resolve_first(
    event: Event,
    ctx: AttributionContext,
    extractors: Sequence[Extractor],
    accept: Optional[Callable[[str], bool]] = None,
) -> Optional[str]:
    """
    Run extractors in order and return the first non-empty id.

    Ids rejected by `accept` (stale campaigns, draft flows) do not stop
    the chain; later extractors still get their turn.
    """
    for extractor in extractors:
        owner = extractor(event, ctx)
        if owner and (accept is None or accept(owner)):
            return owner
    return None


class AttributionResolver:
    """Applies the campaign and flow extractor chains with one context."""

    def __init__(
        self,
        context: AttributionContext,
        campaign_extractors: Sequence[Extractor] = None,
        flow_extractors: Sequence[Extractor] = None,
    ):
        self.context = context
        self.campaign_extractors = list(campaign_extractors or CAMPAIGN_EXTRACTORS)
        self.flow_extractors = list(flow_extractors or FLOW_EXTRACTORS)

    def resolve_campaign_id(self, event: Event) -> Optional[str]:
        return resolve_first(event, self.context, self.campaign_extractors, self.context.knows_campaign)

    def resolve_flow_id(self, event: Event) -> Optional[str]:
        return resolve_first(event, self.context, self.flow_extractors, self.context.knows_flow)
