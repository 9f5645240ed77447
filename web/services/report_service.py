"""
Report service: wires core components together for one HTTP request.

Every call builds its own KlaviyoClient and closes it when done. The
reporting-endpoint throttle is the one exception: the upstream quota is
per account, so all clients using the same API key share one throttle
for the life of the process.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from core.aggregation import sum_statistics
from core.config import APIConfig, AppConfig, config as app_config
from core.klaviyo import KlaviyoClient
from core.report import ProgressCallback, ReportPipeline
from core.throttle import ReportThrottle

logger = logging.getLogger(__name__)

VALUES_STATISTICS = {
    "campaign": ["opens", "clicks", "recipients", "conversions", "conversion_value"],
    "flow": ["recipients", "opens", "clicks", "conversions", "conversion_value", "conversion_uniques"],
}

# Tests swap in an httpx.MockTransport here
_transport: Optional[httpx.AsyncBaseTransport] = None

# API key -> throttle shared by every request for that account
_throttles: Dict[str, ReportThrottle] = {}


def set_transport(transport: Optional[httpx.AsyncBaseTransport]) -> None:
    """Route upstream traffic through a custom transport (None restores the default)."""
    global _transport
    _transport = transport


def throttle_for(api_config: APIConfig) -> ReportThrottle:
    """The process-wide report throttle for one API key."""
    throttle = _throttles.get(api_config.key)
    if throttle is None:
        throttle = ReportThrottle(api_config.report_call_delay)
        _throttles[api_config.key] = throttle
    return throttle


def reset_throttles() -> None:
    """Forget all shared throttles (tests, config reloads)."""
    _throttles.clear()


def _client(cfg: AppConfig) -> KlaviyoClient:
    return KlaviyoClient(api_config=cfg.api, transport=_transport, throttle=throttle_for(cfg.api))


async def build_summary(
    progress: Optional[ProgressCallback] = None,
    cfg: AppConfig = None,
) -> Dict[str, Any]:
    """Full campaign & flow report. Raises ReportError on mandatory failures."""
    cfg = cfg or app_config
    async with _client(cfg) as client:
        return await ReportPipeline(client, cfg.report, progress=progress).run()


async def list_metrics(cfg: AppConfig = None) -> List[Dict[str, Any]]:
    cfg = cfg or app_config
    async with _client(cfg) as client:
        metrics = await client.get_metrics()
    return [{"id": m.id, "name": m.name, "integration": m.integration} for m in metrics]


async def list_conversions(entity: str, cfg: AppConfig = None) -> Dict[str, Any]:
    cfg = cfg or app_config
    async with _client(cfg) as client:
        return await ReportPipeline(client, cfg.report).conversions(entity)


async def owner_attribution(entity: str, owner_id: str, cfg: AppConfig = None) -> Dict[str, Any]:
    """Locally attributed conversions of one campaign or flow."""
    cfg = cfg or app_config
    async with _client(cfg) as client:
        return await ReportPipeline(client, cfg.report).owner_attribution(entity, owner_id)


async def _values(kind: str, entity_id: str, cfg: AppConfig) -> Dict[str, Any]:
    async with _client(cfg) as client:
        resolved = await ReportPipeline(client, cfg.report).resolve_metrics()
        response = await client.get_values_report(
            kind,
            entity_id,
            statistics=VALUES_STATISTICS[kind],
            conversion_metric_id=resolved.conversion,
        )
        waited = client.report_wait

    results = ((response.get("data") or {}).get("attributes") or {}).get("results") or []
    logger.info(f"{kind.capitalize()} values for {entity_id}: {len(results)} result rows")
    return {
        f"{kind}Id": entity_id,
        "results": results,
        "totals": sum_statistics(results),
        "waitedSeconds": round(waited, 1),
    }


async def campaign_values(campaign_id: str, cfg: AppConfig = None) -> Dict[str, Any]:
    """Upstream campaign values report for one campaign."""
    return await _values("campaign", campaign_id, cfg or app_config)


async def flow_values(flow_id: str, cfg: AppConfig = None) -> Dict[str, Any]:
    """Upstream flow values report, summed over the flow's messages."""
    return await _values("flow", flow_id, cfg or app_config)
