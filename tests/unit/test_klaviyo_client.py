"""
Tests for core.klaviyo module.
"""
import json
from datetime import datetime, timezone

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from core.config import APIConfig
from core.exceptions import KlaviyoAPIError, KlaviyoConnectionError, KlaviyoDataError
from core.klaviyo import KlaviyoClient
from core.models import ReportWindow
from core.observability import correlation_context
from core.throttle import ReportThrottle
from tests.fakes import BASE_URL, FakeKlaviyo, campaign_resource, message_resource

WINDOW = ReportWindow.last_days(30, now=datetime(2026, 3, 31, tzinfo=timezone.utc))


def _client_for(handler, **kwargs) -> KlaviyoClient:
    api_config = APIConfig(base_url=BASE_URL, key="sk_test_key", report_call_delay=0.0)
    return KlaviyoClient(api_config=api_config, transport=httpx.MockTransport(handler), **kwargs)


class TestKlaviyoClient:
    """Tests for KlaviyoClient class."""

    def test_init_without_api_key_raises(self):
        with pytest.raises(ValueError, match="KLAVIYO_API_KEY is required"):
            KlaviyoClient(api_config=APIConfig(key=""))

    def test_headers(self):
        client = KlaviyoClient(api_key="sk_secret", api_config=APIConfig(key=""))
        headers = client.headers
        assert headers["Authorization"] == "Klaviyo-API-Key sk_secret"
        assert headers["revision"] == "2024-10-15"
        assert headers["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_context_manager(self):
        client = _client_for(lambda request: httpx.Response(200, json={"data": []}))
        async with client:
            assert client._client is not None
        assert client._client is None

    @pytest.mark.asyncio
    async def test_request_headers_and_url(self):
        """Auth, revision and correlation id reach the upstream."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": []})

        async with _client_for(handler) as client:
            with correlation_context("req12345"):
                await client.fetch_page("flows", {"fields[flow]": "name"})

        request = seen[0]
        assert str(request.url).startswith(f"{BASE_URL}/flows/")
        assert request.headers["Authorization"] == "Klaviyo-API-Key sk_test_key"
        assert request.headers["revision"] == "2024-10-15"
        assert request.headers["X-Request-ID"] == "req12345"

    @pytest.mark.asyncio
    async def test_api_error_surfaces_upstream_body(self):
        """Non-2xx responses raise with the upstream errors array unmodified."""
        errors = [{"id": "e1", "status": 400, "code": "invalid", "detail": "bad filter"}]

        async with _client_for(lambda request: httpx.Response(400, json={"errors": errors})) as client:
            with pytest.raises(KlaviyoAPIError) as exc_info:
                await client.fetch_page("events", {})

        assert exc_info.value.status_code == 400
        assert exc_info.value.payload == errors

    @pytest.mark.asyncio
    async def test_api_error_plain_text(self):
        async with _client_for(lambda request: httpx.Response(502, text="Bad Gateway")) as client:
            with pytest.raises(KlaviyoAPIError) as exc_info:
                await client.fetch_page("events", {})

        assert exc_info.value.payload == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_rate_limit_not_retried(self):
        """A 429 fails the call once; nothing retries it."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, json={"errors": [{"status": 429, "detail": "throttled"}]})

        async with _client_for(handler) as client:
            with pytest.raises(KlaviyoAPIError) as exc_info:
                await client.post("metric-aggregates", {"data": {}})

        assert exc_info.value.is_rate_limited
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_maps_to_connection_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client_for(handler) as client:
            with pytest.raises(KlaviyoConnectionError, match="timeout"):
                await client.fetch_page("metrics", {})

    @pytest.mark.asyncio
    async def test_network_error_maps_to_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client_for(handler) as client:
            with pytest.raises(KlaviyoConnectionError):
                await client.fetch_page("metrics", {})

    @pytest.mark.asyncio
    async def test_mocked_inner_client(self):
        """The inner httpx client can be patched directly."""
        client = KlaviyoClient(api_config=APIConfig(key="sk_test_key", base_url=BASE_URL))

        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.content = b'{"data": [{"id": "F1"}]}'
        mock_response.json.return_value = {"data": [{"id": "F1"}]}

        with patch.object(client, "_client") as mock_client:
            mock_client.request = AsyncMock(return_value=mock_response)
            client._client = mock_client

            page = await client.fetch_page("flows")

        assert page.items == [{"id": "F1"}]


class TestPaginationThroughClient:
    """fetch_all follows links.next cursors."""

    @pytest.mark.asyncio
    async def test_fetch_all_follows_cursors(self):
        fake = FakeKlaviyo(page_size=2)
        fake.flows = [{"type": "flow", "id": f"F{i}", "attributes": {}} for i in range(5)]

        async with KlaviyoClient(
            api_config=APIConfig(base_url=BASE_URL, key="sk_test_key"),
            transport=fake.transport,
        ) as client:
            page = await client.fetch_all("flows")

        assert [item["id"] for item in page.items] == ["F0", "F1", "F2", "F3", "F4"]
        assert len(fake.calls_to("flows")) == 3

    @pytest.mark.asyncio
    async def test_campaigns_filter_and_include(self):
        fake = FakeKlaviyo()
        fake.add_campaign(
            "email",
            campaign_resource("C1", "Sale", "2026-03-20T10:00:00Z", ["M1"]),
            [message_resource("M1", "C1")],
        )

        async with KlaviyoClient(
            api_config=APIConfig(base_url=BASE_URL, key="sk_test_key"),
            transport=fake.transport,
        ) as client:
            page = await client.get_campaigns("email", WINDOW.start)

        params = fake.calls_to("campaigns")[0].url.params
        assert params["filter"] == (
            "equals(messages.channel,'email'),greater-than(updated_at,2026-03-01T00:00:00Z)"
        )
        assert params["include"] == "campaign-messages"
        assert [item["id"] for item in page.items] == ["C1"]
        assert page.included[0]["id"] == "M1"


class TestReportEndpoints:
    """metric-aggregates and values reports."""

    @pytest.mark.asyncio
    async def test_query_metric_aggregate_body(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={
                "data": {"attributes": {"data": [{"dimensions": [], "measurements": {"sum_value": [1.5, 2.5]}}]}}
            })

        async with _client_for(handler) as client:
            rows = await client.query_metric_aggregate("m_order", ["sum_value"], WINDOW, by=["$attributed_flow"])

        attributes = seen[0]["data"]["attributes"]
        assert seen[0]["data"]["type"] == "metric-aggregate"
        assert attributes["metric_id"] == "m_order"
        assert attributes["measurements"] == ["sum_value"]
        assert attributes["by"] == ["$attributed_flow"]
        assert attributes["filter"] == WINDOW.datetime_predicates()
        assert attributes["timezone"] == "UTC"
        assert rows == [{"dimensions": [], "measurements": {"sum_value": [1.5, 2.5]}}]

    @pytest.mark.asyncio
    async def test_query_metric_aggregate_missing_rows(self):
        async with _client_for(lambda request: httpx.Response(200, json={"data": {}})) as client:
            with pytest.raises(KlaviyoDataError):
                await client.query_metric_aggregate("m_order", ["sum_value"], WINDOW)

    @pytest.mark.asyncio
    async def test_report_calls_are_spaced(self):
        """Only report endpoints go through the throttle."""
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        throttle = ReportThrottle(31, sleep=fake_sleep)

        def handler(request):
            if request.url.path.endswith("/events/"):
                return httpx.Response(200, json={"data": []})
            return httpx.Response(200, json={"data": {"attributes": {"data": []}}})

        async with _client_for(handler, throttle=throttle) as client:
            await client.query_metric_aggregate("m1", ["count"], WINDOW)
            await client.fetch_page("events", {})
            await client.query_metric_aggregate("m2", ["count"], WINDOW)

        assert throttle.calls == 2
        assert len(sleeps) == 1
        assert 0 < sleeps[0] <= 31
        assert client.report_wait == pytest.approx(sleeps[0])

    @pytest.mark.asyncio
    async def test_campaign_values_report(self):
        fake = FakeKlaviyo()
        async with KlaviyoClient(
            api_config=APIConfig(base_url=BASE_URL, key="sk_test_key", report_call_delay=0.0),
            transport=fake.transport,
        ) as client:
            response = await client.get_campaign_values_report("C1", ["opens"], conversion_metric_id="m_order")

        body = json.loads(fake.calls_to("campaign-values-reports")[0].content)
        assert body["data"]["attributes"]["filter"] == 'equals(campaign_id,"C1")'
        assert body["data"]["attributes"]["conversion_metric_id"] == "m_order"
        assert response["data"]["attributes"]["results"][0]["groupings"]["campaign_id"] == "C1"

    @pytest.mark.asyncio
    async def test_flow_values_report(self):
        fake = FakeKlaviyo()
        async with _client_for(fake.handler) as client:
            response = await client.get_flow_values_report(
                "F1", ["opens", "conversion_value"], conversion_metric_id="m_order"
            )

        body = json.loads(fake.calls_to("flow-values-reports")[0].content)
        assert body["data"]["type"] == "flow-values-report"
        assert body["data"]["attributes"]["filter"] == 'equals(flow_id,"F1")'
        assert body["data"]["attributes"]["statistics"] == ["opens", "conversion_value"]
        assert body["data"]["attributes"]["timeframe"] == {"key": "last_30_days"}
        results = response["data"]["attributes"]["results"]
        assert [r["groupings"]["flow_message_id"] for r in results] == ["FM1", "FM2"]

    @pytest.mark.asyncio
    async def test_flow_values_report_is_throttled(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        throttle = ReportThrottle(31, sleep=fake_sleep)
        fake = FakeKlaviyo()
        async with _client_for(fake.handler, throttle=throttle) as client:
            await client.get_flow_values_report("F1", ["opens"])
            await client.get_campaign_values_report("C1", ["opens"])

        assert throttle.calls == 2
        assert len(sleeps) == 1

    @pytest.mark.asyncio
    async def test_unknown_values_report_kind(self):
        async with _client_for(FakeKlaviyo().handler) as client:
            with pytest.raises(ValueError, match="segment"):
                await client.get_values_report("segment", "S1", ["opens"])
