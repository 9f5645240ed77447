"""
Campaign & flow performance report.

`ReportPipeline` runs one report end to end against a KlaviyoClient:

    metrics      resolve metric ids (mandatory)
    entities     list in-window campaigns and non-draft flows (mandatory)
    engagement   opens / clicks / received events (optional, degrade to 0)
    total        authoritative conversion value sum (optional, falls back to events)
    conversions  conversion events, attributed locally (mandatory if the metric exists)
    assemble     rows, rates, percentages

`ReportAssembler` is the pure last step and is usable on its own.
Nothing survives between two reports.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from core.aggregation import (
    ConversionAggregation,
    EngagementAggregation,
    EventAggregator,
    EventBatch,
)
from core.attribution import AttributionContext, AttributionResolver
from core.config import ReportConfig, config as app_config
from core.entities import EntityFetcher
from core.exceptions import KlaviyoError, ReportError
from core.metric_resolver import MetricResolver
from core.models import Campaign, EntityMetrics, Flow, ReportWindow, format_timestamp
from core.observability import Timer, get_logger, metrics

logger = get_logger(__name__)

ProgressCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]

ENGAGEMENT_KINDS = ("opens", "clicks", "recipients")


def rate(part: int, recipients: int) -> float:
    """Percentage of recipients, clamped to [0, 100]; 0 without recipients."""
    if recipients <= 0:
        return 0.0
    return round(min(100.0, max(0.0, part / recipients * 100)), 2)


def revenue_percentage(revenue: float, total: float) -> str:
    if total <= 0:
        return "0.0"
    return f"{revenue / total * 100:.1f}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value else None


# ═══════════════════════════════════════════════════════════════════════════════
# ROWS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CampaignRow:
    id: str
    name: str
    status: str
    send_date: Optional[str]
    message_type: str
    metrics: EntityMetrics
    revenue_percentage: str = "0.0"

    def to_dict(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "sendDate": self.send_date,
            "messageType": self.message_type,
            "recipients": m.recipients,
            "opens": m.opens,
            "clicks": m.clicks,
            "revenue": round(m.revenue, 2),
            "conversions": m.conversions,
            "openRate": rate(m.opens, m.recipients),
            "clickRate": rate(m.clicks, m.recipients),
            "engagementRevenue": round(m.engagement_revenue, 2),
            "revenuePercentage": self.revenue_percentage,
        }


@dataclass
class FlowRow:
    id: str
    name: str
    status: str
    updated_at: Optional[str]
    metrics: EntityMetrics
    revenue_percentage: str = "0.0"

    def to_dict(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "updatedAt": self.updated_at,
            "recipients": m.recipients,
            "opens": m.opens,
            "clicks": m.clicks,
            "revenue": round(m.revenue, 2),
            "conversions": m.conversions,
            "openRate": rate(m.opens, m.recipients),
            "clickRate": rate(m.clicks, m.recipients),
            "engagementRevenue": round(m.engagement_revenue, 2),
            "revenuePercentage": self.revenue_percentage,
        }


@dataclass
class ReportInputs:
    """Everything the assembler needs, collected by the pipeline."""
    campaigns: List[Campaign]
    flows: List[Flow]
    conversions: Optional[ConversionAggregation] = None
    engagement: Dict[str, EngagementAggregation] = field(default_factory=dict)
    total_revenue: float = 0.0
    total_revenue_source: str = "none"
    warnings: List[str] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# ASSEMBLER
# ═══════════════════════════════════════════════════════════════════════════════

class ReportAssembler:
    """
    Merges entity lists with the aggregated maps into the response.

    Campaign engagement is summed over the campaign's message ids (the
    campaign id stands in when it has none); conversions key to the
    campaign id only. Flows key everything by flow id.
    """

    def __init__(self, report_config: ReportConfig = None):
        self.report_config = report_config or app_config.report

    @property
    def additive(self) -> bool:
        return self.report_config.engagement_revenue_mode == "additive"

    def _engagement(self, inputs: ReportInputs, keys: Sequence[str], by_flow: bool) -> EntityMetrics:
        result = EntityMetrics()
        for kind in ENGAGEMENT_KINDS:
            aggregation = inputs.engagement.get(kind)
            if aggregation is None:
                continue
            grouping = aggregation.by_flow if by_flow else aggregation.by_message
            part = EntityMetrics(**{kind: sum(grouping.count(key) for key in keys)})
            if kind != "recipients":
                part.engagement_revenue = sum(grouping.sum(key) for key in keys)
            result.merge(part)
        return result

    @staticmethod
    def capped_rates(entity: str, row_id: str, m: EntityMetrics) -> List[str]:
        """Warnings for rates that `rate()` will cap at 100."""
        if m.recipients <= 0:
            return []
        return [
            f"{kind} exceed recipients for {entity} {row_id} ({count} > {m.recipients}); rate capped at 100"
            for kind, count in (("opens", m.opens), ("clicks", m.clicks))
            if count > m.recipients
        ]

    def _finish(self, result: EntityMetrics, revenue: float, conversions: int) -> EntityMetrics:
        result.conversions = conversions
        result.revenue = revenue + (result.engagement_revenue if self.additive else 0.0)
        return result

    def campaign_metrics(self, campaign: Campaign, inputs: ReportInputs) -> EntityMetrics:
        keys = campaign.message_ids or [campaign.id]
        result = self._engagement(inputs, keys, by_flow=False)
        grouping = inputs.conversions.by_campaign if inputs.conversions else None
        return self._finish(
            result,
            grouping.sum(campaign.id) if grouping else 0.0,
            grouping.count(campaign.id) if grouping else 0,
        )

    def flow_metrics(self, flow: Flow, inputs: ReportInputs) -> EntityMetrics:
        result = self._engagement(inputs, [flow.id], by_flow=True)
        grouping = inputs.conversions.by_flow if inputs.conversions else None
        return self._finish(
            result,
            grouping.sum(flow.id) if grouping else 0.0,
            grouping.count(flow.id) if grouping else 0,
        )

    def assemble(self, inputs: ReportInputs) -> Dict[str, Any]:
        total = inputs.total_revenue
        warnings = list(inputs.warnings)

        campaign_rows = [
            CampaignRow(
                id=c.id,
                name=c.name,
                status=c.status,
                send_date=_iso(c.send_date),
                message_type=c.message_type,
                metrics=self.campaign_metrics(c, inputs),
            )
            for c in inputs.campaigns
        ]
        flow_rows = [
            FlowRow(
                id=f.id,
                name=f.name,
                status=f.status,
                updated_at=_iso(f.updated_at or f.created_at),
                metrics=self.flow_metrics(f, inputs),
            )
            for f in inputs.flows
        ]

        for row in campaign_rows + flow_rows:
            row.revenue_percentage = revenue_percentage(row.metrics.revenue, total)
            entity = "campaign" if isinstance(row, CampaignRow) else "flow"
            for message in self.capped_rates(entity, row.id, row.metrics):
                logger.warning(message)
                warnings.append(message)

        campaign_rows.sort(key=lambda r: r.metrics.revenue, reverse=True)
        flow_rows.sort(key=lambda r: r.metrics.revenue, reverse=True)

        campaign_revenue = sum(r.metrics.revenue for r in campaign_rows)
        flow_revenue = sum(r.metrics.revenue for r in flow_rows)
        if campaign_revenue + flow_revenue > total + 0.01:
            message = (
                f"Attributed revenue {campaign_revenue + flow_revenue:.2f} "
                f"exceeds total revenue {total:.2f}"
            )
            logger.warning(message)
            warnings.append(message)

        coverage = inputs.conversions.coverage.to_dict() if inputs.conversions else None

        return {
            "success": True,
            "totalRevenue": round(total, 2),
            "totalRevenueSource": inputs.total_revenue_source,
            "totalCampaigns": len(campaign_rows),
            "totalFlows": len(flow_rows),
            "campaignRevenue": round(campaign_revenue, 2),
            "flowRevenue": round(flow_revenue, 2),
            "attributedCampaignRevenue": {r.id: round(r.metrics.revenue, 2) for r in campaign_rows},
            "attributedFlowRevenue": {r.id: round(r.metrics.revenue, 2) for r in flow_rows},
            "campaigns": [r.to_dict() for r in campaign_rows],
            "flows": [r.to_dict() for r in flow_rows],
            "attribution": coverage,
            "engagementRevenueMode": self.report_config.engagement_revenue_mode,
            "warnings": warnings,
            "timeframe": self.report_config.timeframe_label,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# PIPELINE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ResolvedMetrics:
    conversion: Optional[str]
    engagement: Dict[str, Optional[str]]


@dataclass
class Entities:
    campaigns: List[Campaign]
    flows: List[Flow]


class ReportPipeline:
    """
    One report computation over one client.

    Usage:
        async with KlaviyoClient() as client:
            report = await ReportPipeline(client).run()
    """

    def __init__(
        self,
        client,
        report_config: ReportConfig = None,
        window: ReportWindow = None,
        progress: Optional[ProgressCallback] = None,
    ):
        self.client = client
        self.report_config = report_config or app_config.report
        self.window = window or ReportWindow.last_days(self.report_config.window_days)
        self.progress = progress
        self.aggregator = EventAggregator(client, self.window)
        self.warnings: List[str] = []

    async def _stage(self, stage: str, **detail: Any) -> None:
        logger.info(f"Report stage: {stage}", extra={"stage": stage, **detail})
        if self.progress is None:
            return
        throttle = getattr(self.client, "throttle", None)
        pending = detail.get("pending_report_calls", 0)
        detail["estimatedWaitSeconds"] = round(throttle.estimate(pending), 1) if throttle else 0.0
        await self.progress(stage, detail)

    def _warn(self, message: str, error: Exception = None) -> None:
        logger.warning(message, extra={"error": str(error)} if error else None)
        self.warnings.append(f"{message}: {error}" if error else message)

    async def resolve_metrics(self) -> ResolvedMetrics:
        try:
            resolver = await MetricResolver.load(self.client)
        except KlaviyoError as e:
            raise ReportError("metrics", e) from e

        cfg = self.report_config
        conversion = resolver.resolve_any((cfg.conversion_metric,) + tuple(cfg.conversion_metric_aliases))
        if conversion is None:
            self._warn(f"Conversion metric '{cfg.conversion_metric}' not found; revenue is reported as 0")

        engagement = {
            "opens": resolver.resolve(cfg.opened_metric),
            "clicks": resolver.resolve(cfg.clicked_metric),
            "recipients": resolver.resolve(cfg.received_metric),
        }
        for kind, metric_id in engagement.items():
            if metric_id is None:
                logger.info(f"No metric for {kind}; reported as 0")
        return ResolvedMetrics(conversion=conversion, engagement=engagement)

    async def fetch_entities(self) -> Entities:
        fetcher = EntityFetcher(self.client, self.report_config)
        try:
            campaigns = await fetcher.list_campaigns(self.window.start)
        except KlaviyoError as e:
            raise ReportError("campaigns", e) from e
        try:
            flows = await fetcher.list_flows()
        except KlaviyoError as e:
            raise ReportError("flows", e) from e
        self.warnings.extend(fetcher.warnings)
        return Entities(campaigns=campaigns, flows=flows)

    async def fetch_engagement(self, metric_ids: Dict[str, Optional[str]]) -> Dict[str, EventBatch]:
        batches: Dict[str, EventBatch] = {}
        for kind, metric_id in metric_ids.items():
            if metric_id is None:
                continue
            try:
                batches[kind] = await self.aggregator.fetch_events(metric_id)
            except KlaviyoError as e:
                self._warn(f"Engagement events for {kind} unavailable", e)
        return batches

    async def fetch_total(self, metric_id: str) -> Optional[float]:
        try:
            return await self.aggregator.fetch_total_revenue(metric_id)
        except KlaviyoError as e:
            self._warn("Total revenue aggregate unavailable, using conversion events", e)
            return None

    async def fetch_conversions(self, metric_id: str) -> EventBatch:
        try:
            return await self.aggregator.fetch_events(metric_id)
        except KlaviyoError as e:
            raise ReportError("conversions", e) from e

    @staticmethod
    def attribution_resolver(
        entities: Entities,
        conversions: EventBatch,
        engagement_batches: Dict[str, EventBatch],
    ) -> AttributionResolver:
        """Resolver limited to the in-window campaigns and non-draft flows."""
        context = AttributionContext.build(
            EntityFetcher.build_message_map(entities.campaigns),
            included=conversions.included,
            message_flows=EventAggregator.learn_message_flows(
                *(b.events for b in engagement_batches.values())
            ),
            campaign_ids=[c.id for c in entities.campaigns],
            flow_ids=[f.id for f in entities.flows],
        )
        return AttributionResolver(context)

    async def run(self) -> Dict[str, Any]:
        with Timer("report_build", logger, warn_after_ms=600_000) as timer:
            await self._stage("metrics")
            resolved = await self.resolve_metrics()
            pending = 1 if resolved.conversion else 0

            await self._stage("entities", pending_report_calls=pending)
            entities = await self.fetch_entities()

            await self._stage(
                "engagement",
                campaigns=len(entities.campaigns),
                flows=len(entities.flows),
                pending_report_calls=pending,
            )
            engagement_batches = await self.fetch_engagement(resolved.engagement)
            engagement = {
                kind: EventAggregator.aggregate_engagement(batch.events)
                for kind, batch in engagement_batches.items()
            }

            inputs = ReportInputs(
                campaigns=entities.campaigns,
                flows=entities.flows,
                engagement=engagement,
                warnings=self.warnings,
            )

            if resolved.conversion:
                await self._stage("total", pending_report_calls=pending)
                total = await self.fetch_total(resolved.conversion)

                await self._stage("conversions")
                batch = await self.fetch_conversions(resolved.conversion)
                inputs.conversions = self.aggregator.aggregate_conversions(
                    batch.events,
                    self.attribution_resolver(entities, batch, engagement_batches),
                    ambiguous=self.report_config.ambiguous_attribution,
                )
                if total is None:
                    inputs.total_revenue = inputs.conversions.coverage.revenue
                    inputs.total_revenue_source = "events"
                else:
                    inputs.total_revenue = total
                    inputs.total_revenue_source = "aggregate"

            await self._stage("assemble")
            report = ReportAssembler(self.report_config).assemble(inputs)

        duration_ms = timer.elapsed_ms
        metrics.record_timing("report", duration_ms)
        report["window"] = {"start": self.window.start_str, "end": self.window.end_str}
        report["durationMs"] = round(duration_ms, 1)
        logger.info(
            "Report built",
            extra={
                "campaigns": report["totalCampaigns"],
                "flows": report["totalFlows"],
                "total_revenue": report["totalRevenue"],
                "duration_ms": report["durationMs"],
            },
        )
        return report

    # ─── Read-only views ─────────────────────────────────────────────────────

    async def conversions(self, entity: str = "campaign") -> Dict[str, Any]:
        """Conversion events of the window with their resolved owner."""
        resolved = await self.resolve_metrics()
        if resolved.conversion is None:
            return {"entity": entity, "events": [], "owners": {}, "warnings": self.warnings}

        entities = await self.fetch_entities()
        engagement_batches = await self.fetch_engagement(resolved.engagement)
        batch = await self.fetch_conversions(resolved.conversion)
        rows = EventAggregator.resolve_conversions(
            batch.events,
            self.attribution_resolver(entities, batch, engagement_batches),
            ambiguous=self.report_config.ambiguous_attribution,
        )

        owners: Dict[str, Dict[str, Any]] = {}
        events = []
        for row in rows:
            owner = row.campaign_id if entity == "campaign" else row.flow_id
            events.append({
                "id": row.event.id,
                "datetime": _iso(row.event.datetime),
                "revenue": round(row.revenue, 2),
                "ownerId": owner,
            })
            if owner:
                summary = owners.setdefault(owner, {"conversions": 0, "revenue": 0.0})
                summary["conversions"] += 1
                summary["revenue"] = round(summary["revenue"] + row.revenue, 2)

        return {"entity": entity, "events": events, "owners": owners, "warnings": self.warnings}

    async def owner_attribution(self, entity: str, owner_id: str) -> Dict[str, Any]:
        """Conversions and revenue attributed to one campaign or flow."""
        view = await self.conversions(entity)
        events = [e for e in view["events"] if e["ownerId"] == owner_id]
        summary = view["owners"].get(owner_id, {"conversions": 0, "revenue": 0.0})
        return {
            "entity": entity,
            "id": owner_id,
            "conversions": summary["conversions"],
            "revenue": summary["revenue"],
            "events": events,
            "warnings": view["warnings"],
        }
