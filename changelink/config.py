"""
Unified Configuration Module for ChangeLink

All configuration settings are centralized here.
Import from this module: from changelink.config import config
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_list(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_float(name: str) -> Optional[float]:
    value = os.getenv(name, "").strip()
    return float(value) if value else None


@dataclass
class ChangeLinkConfig:
    """Unified application configuration."""

    # === Browser automation (AdsPower local API) ===
    ADSPOWER_API_URL: str = os.getenv("ADSPOWER_API_URL", "http://local.adspower.net:50325")
    ADSPOWER_API_KEY: Optional[str] = os.getenv("ADSPOWER_API_KEY")
    ADSPOWER_TIMEOUT_SECONDS: float = float(os.getenv("ADSPOWER_TIMEOUT_SECONDS", "30"))
    ADSPOWER_START_TIMEOUT_SECONDS: float = float(os.getenv("ADSPOWER_START_TIMEOUT_SECONDS", "60"))
    ADSPOWER_MAX_CONNECTIONS: int = int(os.getenv("ADSPOWER_MAX_CONNECTIONS", "10"))
    ADSPOWER_CACHE_TTL_SECONDS: float = float(os.getenv("ADSPOWER_CACHE_TTL_SECONDS", "30"))
    ADSPOWER_CLEANUP_INTERVAL_SECONDS: float = float(os.getenv("ADSPOWER_CLEANUP_INTERVAL_SECONDS", "60"))
    ADSPOWER_IDLE_TIMEOUT_SECONDS: float = float(os.getenv("ADSPOWER_IDLE_TIMEOUT_SECONDS", "300"))

    # === URL extraction ===
    EXTRACTION_TIMEOUT_SECONDS: float = float(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "60"))
    EXTRACTION_MAX_RETRIES: int = int(os.getenv("EXTRACTION_MAX_RETRIES", "3"))
    EXTRACTION_RETRY_DELAY_SECONDS: float = float(os.getenv("EXTRACTION_RETRY_DELAY_SECONDS", "5"))
    EXECUTION_DELAY_SECONDS: float = float(os.getenv("EXECUTION_DELAY_SECONDS", "35"))
    EXECUTION_JITTER_MIN_SECONDS: float = float(os.getenv("EXECUTION_JITTER_MIN_SECONDS", "1"))
    EXECUTION_JITTER_MAX_SECONDS: float = float(os.getenv("EXECUTION_JITTER_MAX_SECONDS", "5"))
    EXTRACTION_BATCH_CONCURRENCY: int = int(os.getenv("EXTRACTION_BATCH_CONCURRENCY", "5"))
    EXTRACTION_BATCH_DELAY_SECONDS: float = float(os.getenv("EXTRACTION_BATCH_DELAY_SECONDS", "1"))

    # Empty lists mean "use the built-in heuristic defaults"
    KNOWN_DESTINATION_DOMAINS: List[str] = field(default_factory=lambda: _env_list("KNOWN_DESTINATION_DOMAINS"))
    INTERMEDIARY_HOST_KEYWORDS: List[str] = field(default_factory=lambda: _env_list("INTERMEDIARY_HOST_KEYWORDS"))
    TRACKING_PARAMETERS: List[str] = field(default_factory=lambda: _env_list("TRACKING_PARAMETERS"))

    # === Google Ads ===
    GOOGLE_ADS_DEVELOPER_TOKEN: Optional[str] = os.getenv("GOOGLE_ADS_DEVELOPER_TOKEN")
    GOOGLE_ADS_LOGIN_CUSTOMER_ID: Optional[str] = os.getenv("GOOGLE_ADS_LOGIN_CUSTOMER_ID")
    ADS_BATCH_SIZE: int = int(os.getenv("ADS_BATCH_SIZE", "10"))
    ADS_BATCH_DELAY_SECONDS: float = float(os.getenv("ADS_BATCH_DELAY_SECONDS", "1"))
    ADS_ACCOUNT_CONCURRENCY: int = int(os.getenv("ADS_ACCOUNT_CONCURRENCY", "1"))

    # === Storage ===
    CHANGELINK_DB_PATH: str = os.getenv("CHANGELINK_DB_PATH", "./data/changelink.db")
    CHANGELINK_ENCRYPTION_KEY: Optional[str] = os.getenv("CHANGELINK_ENCRYPTION_KEY")
    MAX_STORED_EXECUTIONS: int = int(os.getenv("MAX_STORED_EXECUTIONS", "1000"))
    EXECUTION_RETENTION_DAYS: int = int(os.getenv("EXECUTION_RETENTION_DAYS", "30"))

    # === Workflow ===
    # unset: no whole-run limit
    WORKFLOW_TIMEOUT_SECONDS: Optional[float] = _env_optional_float("WORKFLOW_TIMEOUT_SECONDS")
    WORKFLOW_DRY_RUN: bool = _env_bool("WORKFLOW_DRY_RUN", "false")
    WORKFLOW_NOTIFICATIONS: bool = _env_bool("WORKFLOW_NOTIFICATIONS", "true")

    # === Paths ===
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def jitter_range(self) -> tuple:
        return (self.EXECUTION_JITTER_MIN_SECONDS, self.EXECUTION_JITTER_MAX_SECONDS)

    def validate(self) -> List[str]:
        """Validate configuration and return list of missing required settings."""
        missing = []

        if not self.ADSPOWER_API_URL:
            missing.append("ADSPOWER_API_URL")

        # Dry runs never reach the ads API
        if not self.WORKFLOW_DRY_RUN and not self.GOOGLE_ADS_DEVELOPER_TOKEN:
            missing.append("GOOGLE_ADS_DEVELOPER_TOKEN")

        return missing


# Global config instance
config = ChangeLinkConfig()


def get_config() -> ChangeLinkConfig:
    """Get the application configuration."""
    return config
