"""
Pytest configuration and shared fixtures.
"""
import os

os.environ.setdefault("KLAVIYO_API_KEY", "sk_test_key")
os.environ.setdefault("KLAVIYO_REPORT_CALL_DELAY", "0")

import pytest

from core.config import APIConfig, AppConfig, ReportConfig, WebConfig
from core.klaviyo import KlaviyoClient
from tests.fakes import BASE_URL, FakeKlaviyo, seed_account


# ─── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def api_config() -> APIConfig:
    """API settings pointing at the fake upstream, without report spacing."""
    return APIConfig(base_url=BASE_URL, key="sk_test_key", report_call_delay=0.0)


@pytest.fixture
def report_config() -> ReportConfig:
    return ReportConfig(engagement_revenue_mode="exclusive", ambiguous_attribution="campaign")


@pytest.fixture
def app_config(api_config, report_config) -> AppConfig:
    return AppConfig(api=api_config, report=report_config, web=WebConfig())


@pytest.fixture
def fake_upstream() -> FakeKlaviyo:
    return FakeKlaviyo()


@pytest.fixture
def seeded_upstream(fake_upstream) -> FakeKlaviyo:
    return seed_account(fake_upstream)


@pytest.fixture
def make_client(api_config):
    """Factory for clients wired to a FakeKlaviyo."""
    def _make(fake: FakeKlaviyo, **kwargs) -> KlaviyoClient:
        return KlaviyoClient(api_config=api_config, transport=fake.transport, **kwargs)
    return _make
