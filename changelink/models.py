#!/usr/bin/env python3
"""
Shared data models for the ChangeLink orchestration core.

Configurations flow in from storage, LinkResults flow out of URL extraction,
mapping results and ad updates flow into the workflow result.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ============== Enums ==============

class ExecutionStatus(str, Enum):
    """Terminal/current status of one workflow execution."""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MappingStrategy(str, Enum):
    """How extracted URLs are spread over ads."""
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"


class ExecutionOrder(str, Enum):
    SEQUENTIAL = "sequential"
    RANDOM = "random"


# ============== Validation ==============

@dataclass
class ValidationResult:
    """
    Outcome of a local validation.

    Either valid (no errors) or invalid with one message per violated rule.
    Warnings never make a result invalid.
    """
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls, warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(valid=True, errors=[], warnings=list(warnings or []))

    @classmethod
    def invalid(cls, errors: List[str], warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(valid=False, errors=list(errors), warnings=list(warnings or []))

    @classmethod
    def from_errors(cls, errors: List[str], warnings: Optional[List[str]] = None) -> "ValidationResult":
        if errors:
            return cls.invalid(errors, warnings)
        return cls.ok(warnings)

    def __bool__(self) -> bool:
        return self.valid

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


# ============== Configuration ==============

@dataclass
class AdsCredentials:
    """OAuth credentials for one advertising account."""
    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""
    developer_token: str = ""
    login_customer_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "developer_token": self.developer_token,
            "login_customer_id": self.login_customer_id,
        }


@dataclass
class AdsAccount:
    """A target advertising account of a TrackingConfiguration."""
    customer_id: str
    name: str = ""
    credentials: AdsCredentials = field(default_factory=AdsCredentials)
    account_id: Optional[str] = None

    @property
    def label(self) -> str:
        return self.account_id or self.customer_id or "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "name": self.name,
            "account_id": self.account_id,
            "credentials": self.credentials.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdsAccount":
        return cls(
            customer_id=str(data.get("customer_id", "")).replace("-", ""),
            name=data.get("name", ""),
            account_id=data.get("account_id"),
            credentials=AdsCredentials(**(data.get("credentials") or {})),
        )


@dataclass
class AdMappingEntry:
    """One row of a configuration's ad-mapping table."""
    ad_id: str
    execution_number: int
    campaign_id: str = ""
    ad_group_id: str = ""
    # Restrict the row to one account; None applies it to every account
    customer_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ad_id": self.ad_id,
            "execution_number": self.execution_number,
            "campaign_id": self.campaign_id,
            "ad_group_id": self.ad_group_id,
            "customer_id": self.customer_id,
        }


@dataclass
class TrackingConfiguration:
    """A named automation job."""
    name: str
    environment_id: str
    original_links: List[str] = field(default_factory=list)
    repeat_count: int = 1
    ads_accounts: List[AdsAccount] = field(default_factory=list)
    ad_mapping: Dict[str, List[AdMappingEntry]] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"config_{uuid.uuid4().hex[:12]}")
    status: str = "active"
    notification_email: Optional[str] = None
    last_executed: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def validate(self) -> ValidationResult:
        """Check the ad-mapping table against the repeat count."""
        errors = []
        if self.repeat_count < 1:
            errors.append(f"Repeat count must be >= 1 (got {self.repeat_count})")

        for original_url, entries in self.ad_mapping.items():
            seen = set()
            for entry in entries:
                n = entry.execution_number
                if n < 1 or n > self.repeat_count:
                    errors.append(
                        f"Execution number {n} for ad {entry.ad_id} ({original_url}) "
                        f"must be between 1 and repeat count ({self.repeat_count})"
                    )
                if n in seen:
                    errors.append(f"Duplicate execution number {n} in mapping for {original_url}")
                seen.add(n)

        return ValidationResult.from_errors(errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "environment_id": self.environment_id,
            "original_links": list(self.original_links),
            "repeat_count": self.repeat_count,
            "ads_accounts": [a.to_dict() for a in self.ads_accounts],
            "ad_mapping": {
                url: [e.to_dict() for e in entries]
                for url, entries in self.ad_mapping.items()
            },
            "status": self.status,
            "notification_email": self.notification_email,
            "last_executed": self.last_executed.isoformat() if self.last_executed else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackingConfiguration":
        """Build from a stored dict or a YAML document."""
        def _dt(value):
            if isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value) if value else None

        ad_mapping = {}
        for url, entries in (data.get("ad_mapping") or {}).items():
            ad_mapping[url] = [
                AdMappingEntry(
                    ad_id=str(e["ad_id"]),
                    execution_number=int(e["execution_number"]),
                    campaign_id=str(e.get("campaign_id") or ""),
                    ad_group_id=str(e.get("ad_group_id") or ""),
                    customer_id=e.get("customer_id"),
                )
                for e in entries
            ]

        kwargs = dict(
            name=data.get("name", ""),
            environment_id=str(data.get("environment_id") or ""),
            original_links=list(data.get("original_links") or []),
            repeat_count=int(data.get("repeat_count", 1)),
            ads_accounts=[AdsAccount.from_dict(a) for a in data.get("ads_accounts") or []],
            ad_mapping=ad_mapping,
            status=data.get("status", "active"),
            notification_email=data.get("notification_email"),
            last_executed=_dt(data.get("last_executed")),
        )
        if data.get("id"):
            kwargs["id"] = data["id"]
        if data.get("created_at"):
            kwargs["created_at"] = _dt(data["created_at"])
        if data.get("updated_at"):
            kwargs["updated_at"] = _dt(data["updated_at"])
        return cls(**kwargs)


# ============== Extraction ==============

@dataclass(frozen=True)
class LinkResult:
    """
    One resolution of one original URL.

    For the per-URL result returned by the extraction engine, `executions`
    holds one LinkResult per execution and the top-level fields describe the
    best candidate across them.
    """
    original_url: str
    success: bool
    final_url: str = ""
    final_url_base: str = ""
    final_url_suffix: str = ""
    parameters: Dict[str, str] = field(default_factory=dict)
    redirect_chain: List[str] = field(default_factory=list)
    validated: bool = False
    error: Optional[str] = None
    execution_time: float = 0.0
    attempts: int = 0
    execution_number: int = 1
    executions: List["LinkResult"] = field(default_factory=list)
    id: str = field(default_factory=lambda: f"link_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=datetime.now)

    def per_execution(self) -> List["LinkResult"]:
        """Results to feed downstream mapping, one per execution."""
        return list(self.executions) if self.executions else [self]

    def with_execution_number(self, n: int) -> "LinkResult":
        return replace(self, execution_number=n)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "original_url": self.original_url,
            "final_url": self.final_url,
            "final_url_base": self.final_url_base,
            "final_url_suffix": self.final_url_suffix,
            "parameters": dict(self.parameters),
            "redirect_chain": list(self.redirect_chain),
            "success": self.success,
            "validated": self.validated,
            "error": self.error,
            "execution_time": round(self.execution_time, 3),
            "attempts": self.attempts,
            "execution_number": self.execution_number,
            "timestamp": self.timestamp.isoformat(),
        }


# ============== Ad mapping ==============

@dataclass
class AdMappingRule:
    """Binds one execution number to one ad."""
    execution_number: int
    ad_id: str
    ad_name: str = ""
    campaign_id: str = ""
    campaign_name: str = ""
    ad_group_id: str = ""
    ad_group_name: str = ""
    current_final_url: Optional[str] = None
    current_final_url_suffix: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_number": self.execution_number,
            "ad_id": self.ad_id,
            "ad_name": self.ad_name,
            "campaign_id": self.campaign_id,
            "campaign_name": self.campaign_name,
            "ad_group_id": self.ad_group_id,
            "ad_group_name": self.ad_group_name,
            "current_final_url": self.current_final_url,
            "current_final_url_suffix": self.current_final_url_suffix,
        }


@dataclass
class AdMappingConfig:
    """Binds an original URL to ad identifiers under a strategy."""
    original_url: str
    ad_group_id: str
    ad_ids: List[str]
    execution_count: int
    mapping_strategy: MappingStrategy = MappingStrategy.ONE_TO_ONE
    execution_order: ExecutionOrder = ExecutionOrder.SEQUENTIAL
    mapping_rules: List[AdMappingRule] = field(default_factory=list)
    validation: ValidationResult = field(default_factory=ValidationResult.ok)

    @property
    def ad_count(self) -> int:
        return len(self.ad_ids)

    @property
    def is_valid(self) -> bool:
        return self.validation.valid

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_url": self.original_url,
            "ad_group_id": self.ad_group_id,
            "ad_ids": list(self.ad_ids),
            "execution_count": self.execution_count,
            "ad_count": self.ad_count,
            "mapping_strategy": self.mapping_strategy.value,
            "execution_order": self.execution_order.value,
            "mapping_rules": [r.to_dict() for r in self.mapping_rules],
            "validation": self.validation.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdMappingConfig":
        validation = data.get("validation") or {}
        return cls(
            original_url=data["original_url"],
            ad_group_id=data.get("ad_group_id", ""),
            ad_ids=list(data.get("ad_ids") or []),
            execution_count=int(data.get("execution_count", 0)),
            mapping_strategy=MappingStrategy(data.get("mapping_strategy", MappingStrategy.ONE_TO_ONE.value)),
            execution_order=ExecutionOrder(data.get("execution_order", ExecutionOrder.SEQUENTIAL.value)),
            mapping_rules=[AdMappingRule(**r) for r in data.get("mapping_rules") or []],
            validation=ValidationResult(
                valid=validation.get("valid", True),
                errors=list(validation.get("errors") or []),
                warnings=list(validation.get("warnings") or []),
            ),
        )


@dataclass
class MappedAd:
    ad_id: str
    execution_number: int
    final_url: str
    final_url_suffix: str


@dataclass
class AdMappingResult:
    """Extracted URLs attached to the ads of one original URL."""
    original_url: str
    mapped_ads: List[MappedAd] = field(default_factory=list)
    execution_order: List[int] = field(default_factory=list)
    mapping_distribution: Dict[int, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_url": self.original_url,
            "mapped_ads": [
                {
                    "ad_id": m.ad_id,
                    "execution_number": m.execution_number,
                    "final_url": m.final_url,
                    "final_url_suffix": m.final_url_suffix,
                }
                for m in self.mapped_ads
            ],
            "execution_order": list(self.execution_order),
            "mapping_distribution": {str(k): v for k, v in self.mapping_distribution.items()},
        }


# ============== Ad updates ==============

@dataclass
class AdUpdateRequest:
    """Set one ad's final URL (+ suffix)."""
    ad_id: str
    final_url: str
    final_url_suffix: str = ""
    ad_group_id: str = ""
    execution_number: Optional[int] = None
    original_url: Optional[str] = None


@dataclass
class AdSnapshot:
    final_urls: List[str] = field(default_factory=list)
    final_url_suffix: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"final_urls": list(self.final_urls), "final_url_suffix": self.final_url_suffix}


@dataclass
class AdUpdateResult:
    ad_id: str
    success: bool
    error: Optional[str] = None
    before_update: Optional[AdSnapshot] = None
    after_update: Optional[AdSnapshot] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ad_id": self.ad_id,
            "success": self.success,
            "error": self.error,
            "before_update": self.before_update.to_dict() if self.before_update else None,
            "after_update": self.after_update.to_dict() if self.after_update else None,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class BatchUpdateResult:
    account_id: str
    total_updates: int = 0
    successful_updates: int = 0
    failed_updates: int = 0
    results: List[AdUpdateResult] = field(default_factory=list)
    execution_time: float = 0.0


@dataclass
class AdUpdateSummary:
    """Per-account outcome of the ads update phase."""
    account_id: str
    total_ads: int = 0
    updated_ads: int = 0
    failed_ads: int = 0
    execution_time: float = 0.0
    errors: List[str] = field(default_factory=list)
    results: List[AdUpdateResult] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_ads == 0:
            return 0.0
        return self.updated_ads / self.total_ads

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "total_ads": self.total_ads,
            "updated_ads": self.updated_ads,
            "failed_ads": self.failed_ads,
            "success_rate": self.success_rate,
            "execution_time": round(self.execution_time, 3),
            "errors": list(self.errors),
            "results": [r.to_dict() for r in self.results],
        }


# ============== Workflow ==============

@dataclass
class WorkflowPhase:
    """One stage of the pipeline and its audit trail entry."""
    name: str
    description: str
    status: PhaseStatus = PhaseStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
            "error": self.error,
        }


@dataclass
class ExecutionContext:
    """One in-flight run of a TrackingConfiguration."""
    execution_id: str
    configuration_id: str
    start_time: datetime = field(default_factory=datetime.now)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    progress: int = 0
    current_phase: str = "initialization"
    link_results: List[LinkResult] = field(default_factory=list)
    ad_update_results: List[AdUpdateSummary] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.status == ExecutionStatus.CANCELLED

    def snapshot(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "configuration_id": self.configuration_id,
            "start_time": self.start_time.isoformat(),
            "status": self.status.value,
            "progress": self.progress,
            "current_phase": self.current_phase,
            "link_results": len(self.link_results),
            "ad_update_results": len(self.ad_update_results),
            "error": self.error,
        }


@dataclass
class WorkflowEvent:
    """Published on the orchestrator's event stream."""
    kind: str  # "phase" | "context"
    execution_id: str
    context: Dict[str, Any]
    phase: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class WorkflowSummary:
    total_links: int = 0
    successful_links: int = 0
    failed_links: int = 0
    total_ads_updated: int = 0
    successful_ads_updated: int = 0
    failed_ads_updated: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_links == 0:
            return 0.0
        return self.successful_links / self.total_links

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_links": self.total_links,
            "successful_links": self.successful_links,
            "failed_links": self.failed_links,
            "total_ads_updated": self.total_ads_updated,
            "successful_ads_updated": self.successful_ads_updated,
            "failed_ads_updated": self.failed_ads_updated,
            "success_rate": self.success_rate,
        }


@dataclass
class WorkflowResult:
    execution_id: str
    configuration_id: str
    success: bool
    status: ExecutionStatus
    start_time: datetime
    end_time: datetime
    phases: List[WorkflowPhase] = field(default_factory=list)
    link_results: List[LinkResult] = field(default_factory=list)
    ad_mappings: List[AdMappingResult] = field(default_factory=list)
    ad_update_results: List[AdUpdateSummary] = field(default_factory=list)
    summary: WorkflowSummary = field(default_factory=WorkflowSummary)
    errors: List[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "configuration_id": self.configuration_id,
            "success": self.success,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration": self.duration,
            "phases": [p.to_dict() for p in self.phases],
            "link_results": [r.to_dict() for r in self.link_results],
            "ad_mappings": [m.to_dict() for m in self.ad_mappings],
            "ad_update_results": [s.to_dict() for s in self.ad_update_results],
            "summary": self.summary.to_dict(),
            "errors": list(self.errors),
        }
