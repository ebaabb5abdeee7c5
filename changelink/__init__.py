"""
ChangeLink orchestration core.

Resolves affiliate links to their final destination through AdsPower browser
profiles and pushes the resolved URLs onto Google Ads ads.

Modules:
- retry_manager: Retry/backoff, circuit breakers and batch execution
- browser_client: AdsPower local API client (cache, pool, smart start/stop)
- navigator: Playwright redirect-chain navigation over a running browser
- url_extraction: Final URL extraction with repeat executions
- ad_mapping: Original URL / execution number to ad mapping
- ads_integration: Google Ads batch updates per account
- orchestrator: The eight-phase workflow
- scheduler: Stored configurations on interval and cron schedules (APScheduler)
- storage: Key-value persistence for configurations and executions
- notifications: Execution reports over webhooks and email
"""

from .ad_mapping import AdMappingEngine
from .ads_integration import AdsApi, AdvertisingApiIntegration, GoogleAdsApi
from .browser_client import BrowserAutomationClient, BrowserSession, Environment
from .clock import Clock, ManualClock, get_clock
from .config import ChangeLinkConfig, get_config
from .errors import ChangeLinkError, ErrorType, ValidationError
from .models import (
    AdMappingConfig,
    AdMappingEntry,
    AdsAccount,
    AdsCredentials,
    ExecutionStatus,
    LinkResult,
    MappingStrategy,
    TrackingConfiguration,
    ValidationResult,
    WorkflowResult,
)
from .navigator import Navigator, PlaywrightNavigator
from .notifications import NotificationManager
from .orchestrator import WorkflowOptions, WorkflowOrchestrator
from .retry_manager import RetryManager, get_retry_manager
from .scheduler import ScheduleConfig, ScheduledTask, ScheduleType, WorkflowScheduler
from .storage import ConfigurationStorage, ExecutionStorage, KeyValueStore
from .url_extraction import FinalUrlHeuristic, UrlExtractionEngine

__all__ = [
    "AdMappingEngine",
    "AdsApi",
    "AdvertisingApiIntegration",
    "GoogleAdsApi",
    "BrowserAutomationClient",
    "BrowserSession",
    "Environment",
    "Clock",
    "ManualClock",
    "get_clock",
    "ChangeLinkConfig",
    "get_config",
    "ChangeLinkError",
    "ErrorType",
    "ValidationError",
    "AdMappingConfig",
    "AdMappingEntry",
    "AdsAccount",
    "AdsCredentials",
    "ExecutionStatus",
    "LinkResult",
    "MappingStrategy",
    "TrackingConfiguration",
    "ValidationResult",
    "WorkflowResult",
    "Navigator",
    "PlaywrightNavigator",
    "NotificationManager",
    "WorkflowOptions",
    "WorkflowOrchestrator",
    "RetryManager",
    "get_retry_manager",
    "ScheduleConfig",
    "ScheduledTask",
    "ScheduleType",
    "WorkflowScheduler",
    "ConfigurationStorage",
    "ExecutionStorage",
    "KeyValueStore",
    "FinalUrlHeuristic",
    "UrlExtractionEngine",
]
