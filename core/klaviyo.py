"""
Async HTTP client for the Klaviyo API.

One client instance serves one report computation and owns its HTTP
connection pool. The report-endpoint throttle can be passed in, so
clients using the same API key can share one quota.

Features:
- Connection pooling with httpx (or an injected transport for tests)
- Cursor pagination over `links.next`
- Serialized, spaced calls to rate-limited reporting endpoints
- Upstream error bodies surfaced unmodified; no retries
- Request correlation IDs forwarded as X-Request-ID
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from core.config import APIConfig, config as app_config
from core.exceptions import KlaviyoAPIError, KlaviyoConnectionError, KlaviyoDataError
from core.models import Metric, Page, ReportWindow, format_timestamp
from core.observability import Timer, get_correlation_id, get_logger, metrics
from core.pagination import CURSOR_PARAM, CursorPaginator, parse_page
from core.throttle import ReportThrottle

logger = get_logger(__name__)

CAMPAIGN_FIELDS = "name,status,created_at,updated_at,scheduled_at,send_time,archived"
CAMPAIGN_MESSAGE_FIELDS = "label,channel"
FLOW_FIELDS = "name,status,archived,created,updated,trigger_type"
EVENT_FIELDS = "datetime,event_properties"
VALUES_REPORT_KINDS = ("campaign", "flow")


class KlaviyoClient:
    """
    Async HTTP client for the Klaviyo API.

    Usage:
        async with KlaviyoClient(api_key="sk_...") as client:
            metrics = await client.get_metrics()

        # Or with manual lifecycle:
        client = KlaviyoClient()
        await client.connect()
        try:
            page = await client.fetch_all("flows", {})
        finally:
            await client.close()
    """

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        timeout: float = None,
        api_config: APIConfig = None,
        transport: httpx.AsyncBaseTransport = None,
        throttle: ReportThrottle = None,
    ):
        """
        Initialize Klaviyo client.

        Args:
            api_key: Private API key (defaults to KLAVIYO_API_KEY)
            base_url: API base URL (defaults to KLAVIYO_BASE_URL)
            timeout: Request timeout in seconds
            api_config: API settings (defaults to the global config)
            transport: httpx transport override, e.g. httpx.MockTransport
            throttle: Spacing for reporting endpoints (built from config if omitted)
        """
        self.api_config = api_config or app_config.api
        self.api_key = api_key or self.api_config.key
        self.base_url = (base_url or self.api_config.base_url).rstrip("/")
        self.timeout = timeout or self.api_config.request_timeout
        self.throttle = throttle or ReportThrottle(self.api_config.report_call_delay)
        self.report_wait = 0.0  # seconds this client spent waiting on the throttle
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.api_key:
            raise ValueError("KLAVIYO_API_KEY is required")

    @property
    def headers(self) -> Dict[str, str]:
        """Request headers with auth and API revision."""
        return {
            "Authorization": f"Klaviyo-API-Key {self.api_key}",
            "revision": self.api_config.revision,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                ),
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "KlaviyoClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.strip('/')}/"

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make one HTTP request, spacing it if the endpoint is rate-limited.

        Raises:
            KlaviyoConnectionError: Network/timeout errors
            KlaviyoAPIError: API returned a non-2xx response
        """
        if self.api_config.is_throttled(endpoint):
            async with self.throttle.slot(endpoint) as waited:
                self.report_wait += waited
                return await self._do_request(method, endpoint, params, json)
        return await self._do_request(method, endpoint, params, json)

    async def _do_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self._client:
            await self.connect()

        request_headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        metrics.record_upstream_call(endpoint.strip("/").split("/")[0])

        try:
            with Timer(f"klaviyo_{endpoint}", logger):
                response = await self._client.request(
                    method=method,
                    url=self._url(endpoint),
                    params=params,
                    json=json,
                    headers=request_headers or None,
                )
        except httpx.TimeoutException as e:
            logger.error(
                f"Request timeout: {method} {endpoint}",
                extra={"endpoint": endpoint, "timeout": self.timeout}
            )
            raise KlaviyoConnectionError(f"Request timeout after {self.timeout}s") from e
        except httpx.RequestError as e:
            logger.error(
                f"Request failed: {method} {endpoint} - {e}",
                extra={"endpoint": endpoint, "error": str(e)}
            )
            raise KlaviyoConnectionError(str(e)) from e

        if response.status_code >= 400:
            raise self._api_error(endpoint, response)

        if response.content:
            return response.json()
        return {}

    @staticmethod
    def _api_error(endpoint: str, response: httpx.Response) -> KlaviyoAPIError:
        """Build an error carrying the upstream body unmodified."""
        text = response.text
        try:
            body = response.json()
        except ValueError:
            body = None
        upstream = body.get("errors", body) if isinstance(body, dict) else (body or text)

        logger.error(
            f"API error {response.status_code}: {text[:500]}",
            extra={"endpoint": endpoint, "status_code": response.status_code}
        )
        return KlaviyoAPIError(
            f"API returned {response.status_code}",
            details=text[:500],
            status_code=response.status_code,
            upstream=upstream,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # GENERIC ACCESS
    # ═══════════════════════════════════════════════════════════════════════════

    async def fetch_page(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        """Fetch one page of a list endpoint."""
        page_params = dict(params or {})
        if cursor:
            page_params[CURSOR_PARAM] = cursor
        response = await self._request("GET", endpoint, params=page_params)
        return parse_page(response)

    async def fetch_all(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> Page:
        """
        Drain a list endpoint by following cursors until none is left.

        Items come back in page order, not de-duplicated.
        """
        paginator = CursorPaginator(
            lambda page_params, cursor: self.fetch_page(endpoint, page_params, cursor),
            max_pages=max_pages,
        )
        return await paginator.fetch_all(params or {})

    async def post(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST a query document (aggregates, values reports)."""
        return await self._request("POST", endpoint, json=body)

    # ═══════════════════════════════════════════════════════════════════════════
    # METRICS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_metrics(self) -> List[Metric]:
        """All metric definitions of the account."""
        page = await self.fetch_all("metrics", {"fields[metric]": "name,integration"})
        return [Metric.from_api(item) for item in page.items]

    async def query_metric_aggregate(
        self,
        metric_id: str,
        measurements: Sequence[str],
        window: ReportWindow,
        by: Optional[Sequence[str]] = None,
        extra_filters: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run a metric-aggregates query over the window.

        Returns the grouped rows: [{"dimensions": [...], "measurements": {...}}].
        """
        attributes: Dict[str, Any] = {
            "metric_id": metric_id,
            "measurements": list(measurements),
            "filter": window.datetime_predicates() + list(extra_filters or []),
            "timezone": "UTC",
        }
        if by:
            attributes["by"] = list(by)

        response = await self.post(
            "metric-aggregates",
            {"data": {"type": "metric-aggregate", "attributes": attributes}},
        )
        rows = ((response.get("data") or {}).get("attributes") or {}).get("data")
        if not isinstance(rows, list):
            raise KlaviyoDataError(
                "Metric aggregate response missing rows",
                expected="data.attributes.data list",
                got=type(rows).__name__,
            )
        return rows

    # ═══════════════════════════════════════════════════════════════════════════
    # CAMPAIGNS & FLOWS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_campaigns(self, channel: str, updated_after: datetime) -> Page:
        """
        Campaigns of one channel updated after a timestamp, with their messages.

        Klaviyo rejects campaign listings without a channel filter.
        """
        params = {
            "filter": (
                f"equals(messages.channel,'{channel}'),"
                f"greater-than(updated_at,{format_timestamp(updated_after)})"
            ),
            "fields[campaign]": CAMPAIGN_FIELDS,
            "fields[campaign-message]": CAMPAIGN_MESSAGE_FIELDS,
            "include": "campaign-messages",
            "sort": "-updated_at",
        }
        return await self.fetch_all("campaigns", params)

    async def get_flows(self) -> Page:
        """All flows of the account."""
        return await self.fetch_all("flows", {"fields[flow]": FLOW_FIELDS})

    async def get_values_report(
        self,
        kind: str,
        entity_id: str,
        statistics: Sequence[str],
        conversion_metric_id: Optional[str] = None,
        timeframe_key: str = "last_30_days",
    ) -> Dict[str, Any]:
        """
        Values report for one campaign or flow (reporting endpoint).

        Args:
            kind: "campaign" or "flow"
            entity_id: Campaign or flow id
            statistics: Statistic names, e.g. ["opens", "clicks"]
            conversion_metric_id: Required upstream for conversion statistics
            timeframe_key: Predefined upstream timeframe
        """
        if kind not in VALUES_REPORT_KINDS:
            raise ValueError(f"Unknown values report kind: {kind}")
        attributes: Dict[str, Any] = {
            "statistics": list(statistics),
            "timeframe": {"key": timeframe_key},
            "filter": f'equals({kind}_id,"{entity_id}")',
        }
        if conversion_metric_id:
            attributes["conversion_metric_id"] = conversion_metric_id
        return await self.post(
            f"{kind}-values-reports",
            {"data": {"type": f"{kind}-values-report", "attributes": attributes}},
        )

    async def get_campaign_values_report(self, campaign_id: str, statistics: Sequence[str], **kwargs) -> Dict[str, Any]:
        return await self.get_values_report("campaign", campaign_id, statistics, **kwargs)

    async def get_flow_values_report(self, flow_id: str, statistics: Sequence[str], **kwargs) -> Dict[str, Any]:
        """Flow values report; results come back grouped per flow message."""
        return await self.get_values_report("flow", flow_id, statistics, **kwargs)

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENTS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_events(self, metric_id: str, window: ReportWindow) -> Page:
        """Every event of a metric inside the window, with attribution records."""
        predicates = [f'equals(metric_id,"{metric_id}")'] + window.datetime_predicates()
        params = {
            "filter": ",".join(predicates),
            "fields[event]": EVENT_FIELDS,
            "include": "attributions",
            "sort": "datetime",
        }
        return await self.fetch_all("events", params)
