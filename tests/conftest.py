"""
Pytest fixtures and configuration for the ChangeLink test suite.
"""

import pytest
from pathlib import Path
from typing import Dict, List, Union
from unittest.mock import AsyncMock, MagicMock

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from changelink.ad_mapping import AdMappingEngine
from changelink.ads_integration import AdsApi, AdvertisingApiIntegration
from changelink.browser_client import BrowserSession
from changelink.clock import ManualClock
from changelink.errors import AdsApiError, ErrorType
from changelink.models import (
    AdMappingEntry,
    AdsAccount,
    AdsCredentials,
    AdSnapshot,
    TrackingConfiguration,
    ValidationResult,
)
from changelink.navigator import NavigationResult, Navigator
from changelink.orchestrator import WorkflowOrchestrator
from changelink.retry_manager import RetryManager
from changelink.url_extraction import UrlExtractionEngine


ORIGINAL_LINK = "https://aff.example/go?id=1"
FINAL_URL_1 = "https://www.homedepot.com/p/123?utm_source=aff&clickid=abc"
FINAL_URL_2 = "https://www.homedepot.com/p/456?utm_source=aff&clickid=def"


# === Fakes ===

class FakeNavigator(Navigator):
    """
    Scripted navigation.

    routes maps an original URL to a final URL, or to a list of outcomes
    consumed in order (the last one repeats). An outcome that is an
    exception is raised instead of returned.
    """

    def __init__(self, routes: Dict[str, Union[str, Exception, List]] = None):
        self.routes = {url: list(v) if isinstance(v, list) else [v] for url, v in (routes or {}).items()}
        self.calls: List[str] = []

    async def navigate(self, session, url, timeout):
        self.calls.append(url)
        outcomes = self.routes[url]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return NavigationResult(final_url=outcome, redirect_chain=[url, outcome])


class InMemoryAdsApi(AdsApi):
    """Advertising API double that records every call."""

    def __init__(self):
        self.ads: Dict[str, AdSnapshot] = {}
        self.failing_ads = set()
        self.failing_customers = set()
        self.denied_customers = set()
        self.validations: List[str] = []
        self.updates: List[tuple] = []

    async def validate_access(self, credentials, customer_id):
        self.validations.append(customer_id)
        if customer_id in self.denied_customers:
            raise AdsApiError(f"Customer {customer_id} is not accessible", ErrorType.AUTH_ERROR)
        return {"customer_id": customer_id, "name": "Test Account", "currency": "USD"}

    async def get_ad(self, credentials, customer_id, ad_id):
        if ad_id in self.failing_ads or customer_id in self.failing_customers:
            raise AdsApiError(f"Ad {ad_id} not found in customer {customer_id}", ErrorType.CLIENT_ERROR)
        return self.ads.get(ad_id, AdSnapshot(final_urls=[f"https://old.example/{ad_id}"], final_url_suffix=""))

    async def update_ad_final_url(self, credentials, customer_id, ad_id, final_url, final_url_suffix):
        self.updates.append((customer_id, ad_id, final_url, final_url_suffix))
        snapshot = AdSnapshot(final_urls=[final_url], final_url_suffix=final_url_suffix)
        self.ads[ad_id] = snapshot
        return snapshot


# === Core Fixtures ===

@pytest.fixture
def clock():
    """Virtual clock; every sleep is recorded and returns immediately."""
    return ManualClock()


@pytest.fixture
def retry_manager(clock):
    return RetryManager(clock=clock)


@pytest.fixture
def navigator():
    return FakeNavigator({ORIGINAL_LINK: [FINAL_URL_1, FINAL_URL_2]})


@pytest.fixture
def mock_browser_client():
    """Mock AdsPower client with a usable environment."""
    mock = MagicMock()
    mock.validate_environment = AsyncMock(return_value=ValidationResult.ok())
    mock.smart_start_browser = AsyncMock(
        side_effect=lambda user_id, **kwargs: BrowserSession(
            user_id=user_id,
            ws_endpoint=f"ws://127.0.0.1:9222/devtools/browser/{user_id}",
        )
    )
    mock.smart_stop_browser = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def extraction_engine(mock_browser_client, navigator, retry_manager, clock):
    return UrlExtractionEngine(
        mock_browser_client,
        navigator,
        retry_manager=retry_manager,
        clock=clock,
    )


@pytest.fixture
def ads_api():
    return InMemoryAdsApi()


@pytest.fixture
def ads_integration(ads_api, retry_manager, clock):
    return AdvertisingApiIntegration(ads_api, retry_manager=retry_manager, clock=clock)


@pytest.fixture
def mock_notifier():
    mock = MagicMock()
    mock.send_execution_report = AsyncMock(return_value={"slack": True})
    return mock


@pytest.fixture
def orchestrator(extraction_engine, ads_integration, mock_notifier, clock):
    return WorkflowOrchestrator(
        extraction_engine,
        AdMappingEngine(),
        ads_integration,
        notifier=mock_notifier,
        clock=clock,
    )


# === Test Data Fixtures ===

@pytest.fixture
def sample_credentials():
    return AdsCredentials(
        client_id="client-id.apps.googleusercontent.com",
        client_secret="client-secret",
        refresh_token="refresh-token",
    )


@pytest.fixture
def sample_account(sample_credentials):
    return AdsAccount(customer_id="1234567890", name="Main account", credentials=sample_credentials)


@pytest.fixture
def sample_configuration(sample_account):
    """One link resolved twice, each execution bound to its own ad."""
    return TrackingConfiguration(
        name="Spring promo",
        environment_id="env1",
        original_links=[ORIGINAL_LINK],
        repeat_count=2,
        ads_accounts=[sample_account],
        ad_mapping={
            ORIGINAL_LINK: [
                AdMappingEntry(ad_id="ad1", execution_number=1, campaign_id="c1", ad_group_id="g1"),
                AdMappingEntry(ad_id="ad2", execution_number=2, campaign_id="c1", ad_group_id="g1"),
            ]
        },
        id="config_test",
    )


# === Markers ===

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Fast isolated tests")
    config.addinivalue_line("markers", "integration: Several components wired together")
    config.addinivalue_line("markers", "resilience: Retry, circuit breaker and failure isolation tests")
    config.addinivalue_line("markers", "storage: Persistence tests against a temporary SQLite file")
