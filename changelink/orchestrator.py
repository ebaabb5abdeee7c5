#!/usr/bin/env python3
"""
Workflow Orchestrator - runs one TrackingConfiguration end to end.

Phases, strictly sequential:
    initialization -> link_processing -> url_extraction -> ad_mapping
    -> google_ads_update -> verification -> notification -> completion

A phase that raises marks itself failed, stops the pipeline and fails the
execution. Cancellation is cooperative: stop_execution() flags the context
and the run stops at the next phase boundary, the one after
the last phase included.

Usage:
    orchestrator = WorkflowOrchestrator(extraction, mapping, ads)
    async with orchestrator.subscribe() as events:
        ...
    result = await orchestrator.execute_workflow(configuration)
"""

import asyncio
import logging
import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .ad_mapping import AdMappingEngine
from .ads_integration import AdvertisingApiIntegration
from .clock import Clock, get_clock
from .errors import ExecutionCancelledError, OperationTimeoutError, ValidationError
from .logging_config import log_audit, log_performance
from .models import (
    AdMappingResult,
    AdUpdateSummary,
    ExecutionContext,
    ExecutionStatus,
    LinkResult,
    PhaseStatus,
    TrackingConfiguration,
    WorkflowEvent,
    WorkflowPhase,
    WorkflowResult,
    WorkflowSummary,
)
from .notifications import ExecutionReport, NotificationManager
from .storage import ConfigurationStorage, ExecutionStorage
from .url_extraction import UrlExtractionEngine

logger = logging.getLogger(__name__)


# (name, description, progress once completed)
PHASES = [
    ("initialization", "Validate configuration", 10),
    ("link_processing", "Resolve original links", 30),
    ("url_extraction", "Collect extracted final URLs", 50),
    ("ad_mapping", "Map final URLs to ads", 60),
    ("google_ads_update", "Push final URLs to ads", 80),
    ("verification", "Verify ad updates", 90),
    ("notification", "Send execution report", 95),
    ("completion", "Finalize execution", 100),
]

_BASE36 = string.digits + string.ascii_lowercase


@dataclass
class WorkflowOptions:
    enable_notifications: bool = True
    dry_run: bool = False
    # whole-run limit in seconds; None leaves the run unbounded (HTTP calls
    # and browser starts carry their own timeouts)
    timeout: Optional[float] = None
    extraction_max_retries: int = 3
    extraction_timeout: float = 60.0
    extraction_retry_delay: float = 5.0


@dataclass
class _Run:
    """Mutable state of one execution, private to the orchestrator."""
    configuration: TrackingConfiguration
    options: WorkflowOptions
    context: ExecutionContext
    phases: List[WorkflowPhase]
    started: float
    link_results: List[LinkResult] = field(default_factory=list)
    ad_mappings: List[AdMappingResult] = field(default_factory=list)
    ad_update_results: List[AdUpdateSummary] = field(default_factory=list)
    planned_updates: int = 0
    errors: List[str] = field(default_factory=list)


class WorkflowSubscription:
    """Async iterator over WorkflowEvents; close() ends the iteration."""

    _CLOSED = object()

    def __init__(self, owner: "WorkflowOrchestrator"):
        self._owner = owner
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _put(self, event: WorkflowEvent):
        if not self.closed:
            self._queue.put_nowait(event)

    def close(self):
        if not self.closed:
            self.closed = True
            self._owner._subscribers.discard(self)
            self._queue.put_nowait(self._CLOSED)

    def pending(self) -> List[WorkflowEvent]:
        """Drain already-published events without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is self._CLOSED:
                self._queue.put_nowait(item)
                break
            events.append(item)
        return events

    def __aiter__(self):
        return self

    async def __anext__(self) -> WorkflowEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            self._queue.put_nowait(item)
            raise StopAsyncIteration
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class WorkflowOrchestrator:
    """
    Sequences extraction, mapping and ad updates for one configuration.

    Owns the live-execution table: one ExecutionContext per running
    execution id, removed when the run ends however it ends.
    """

    def __init__(
        self,
        extraction_engine: UrlExtractionEngine,
        mapping_engine: AdMappingEngine,
        ads_integration: AdvertisingApiIntegration,
        notifier: Optional[NotificationManager] = None,
        execution_storage: Optional[ExecutionStorage] = None,
        configuration_storage: Optional[ConfigurationStorage] = None,
        clock: Optional[Clock] = None,
        options: Optional[WorkflowOptions] = None
    ):
        self.extraction = extraction_engine
        self.mapping = mapping_engine
        self.ads = ads_integration
        self.notifier = notifier
        self.execution_storage = execution_storage
        self.configuration_storage = configuration_storage
        self.clock = clock or get_clock()
        self.default_options = options or WorkflowOptions()

        self._active: Dict[str, ExecutionContext] = {}
        self._subscribers: Set[WorkflowSubscription] = set()
        self.stats = {
            'executions': 0,
            'completed': 0,
            'failed': 0,
            'cancelled': 0,
        }

    # ============== Events ==============

    def subscribe(self) -> WorkflowSubscription:
        subscription = WorkflowSubscription(self)
        self._subscribers.add(subscription)
        return subscription

    def _publish(self, kind: str, context: ExecutionContext, phase: Optional[WorkflowPhase] = None):
        event = WorkflowEvent(
            kind=kind,
            execution_id=context.execution_id,
            context=context.snapshot(),
            phase=phase.to_dict() if phase else None,
        )
        for subscription in list(self._subscribers):
            subscription._put(event)

    # ============== Public API ==============

    def generate_execution_id(self) -> str:
        suffix = ''.join(random.choice(_BASE36) for _ in range(9))
        return f"exec_{int(self.clock.time() * 1000)}_{suffix}"

    async def execute_workflow(
        self,
        configuration: TrackingConfiguration,
        options: Optional[WorkflowOptions] = None
    ) -> WorkflowResult:
        options = options or self.default_options
        execution_id = self.generate_execution_id()
        context = ExecutionContext(
            execution_id=execution_id, configuration_id=configuration.id, start_time=self.clock.now()
        )
        run = _Run(
            configuration=configuration,
            options=options,
            context=context,
            phases=[WorkflowPhase(name=name, description=desc) for name, desc, _ in PHASES],
            started=self.clock.monotonic(),
        )

        self.stats['executions'] += 1
        self._active[execution_id] = context
        self._publish("context", context)
        logger.info(f"[Workflow] Starting {execution_id} for configuration {configuration.id} ({configuration.name})")

        try:
            try:
                await asyncio.wait_for(self._run_phases(run), timeout=options.timeout)
            except asyncio.TimeoutError:
                self._fail_running_phase(run, f"Workflow timed out after {options.timeout}s")
                raise OperationTimeoutError(f"Workflow timed out after {options.timeout}s")
            context.status = ExecutionStatus.COMPLETED
            context.progress = 100
            context.current_phase = "completed"
            self.stats['completed'] += 1

        except ExecutionCancelledError as e:
            context.status = ExecutionStatus.CANCELLED
            context.error = str(e)
            run.errors.append(str(e))
            self.stats['cancelled'] += 1
            logger.warning(f"[Workflow] {execution_id} cancelled during {context.current_phase}")

        except Exception as e:
            context.status = ExecutionStatus.FAILED
            context.error = str(e)
            run.errors.append(str(e))
            self.stats['failed'] += 1
            logger.error(f"[Workflow] {execution_id} failed in {context.current_phase}: {e}")

        finally:
            self._active.pop(execution_id, None)

        result = self._build_result(run)
        self._publish("context", context)
        await self._persist(result, configuration)

        log_performance(
            "workflow_execution", result.duration * 1000,
            execution_id=execution_id, status=result.status.value,
            links=result.summary.total_links, ads_updated=result.summary.successful_ads_updated
        )
        logger.info(
            f"[Workflow] {execution_id} {result.status.value}: "
            f"{result.summary.successful_links}/{result.summary.total_links} links, "
            f"{result.summary.successful_ads_updated} ads updated in {result.duration:.1f}s"
        )
        return result

    async def stop_execution(self, execution_id: str) -> bool:
        """Cooperative cancel; the run stops at its next phase boundary."""
        context = self._active.pop(execution_id, None)
        if context is None:
            return False
        context.status = ExecutionStatus.CANCELLED
        self._publish("context", context)
        logger.info(f"[Workflow] Execution {execution_id} stopped")
        return True

    def get_execution_status(self, execution_id: str) -> Optional[ExecutionContext]:
        return self._active.get(execution_id)

    def get_active_executions(self) -> List[ExecutionContext]:
        return list(self._active.values())

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'active': len(self._active)}

    # ============== Pipeline ==============

    async def _run_phases(self, run: _Run):
        steps: List[Callable[[_Run], Awaitable[None]]] = [
            self._initialize,
            self._process_links,
            self._review_extraction,
            self._map_ads,
            self._update_ads,
            self._verify_updates,
            self._notify,
            self._complete,
        ]
        for phase, (_, _, progress), step in zip(run.phases, PHASES, steps):
            self._check_cancelled(run)
            await self._execute_phase(run, phase, progress, step)
        # a stop that arrives during the last phase still wins
        self._check_cancelled(run)

    @staticmethod
    def _check_cancelled(run: _Run):
        if run.context.cancelled:
            raise ExecutionCancelledError(f"Execution {run.context.execution_id} was cancelled")

    async def _execute_phase(self, run: _Run, phase: WorkflowPhase, progress: int, step):
        context = run.context
        context.current_phase = phase.name
        phase.status = PhaseStatus.RUNNING
        phase.start_time = self.clock.now()
        self._publish("phase", context, phase)
        logger.info(f"[Workflow] Phase {phase.name} started ({context.execution_id})")

        try:
            await step(run)
        except Exception as e:
            phase.status = PhaseStatus.FAILED
            phase.error = str(e)
            phase.end_time = self.clock.now()
            self._publish("phase", context, phase)
            raise

        phase.status = PhaseStatus.COMPLETED
        phase.end_time = self.clock.now()
        context.progress = progress
        self._publish("phase", context, phase)
        logger.debug(f"[Workflow] Phase {phase.name} completed in {phase.duration:.2f}s")

    def _fail_running_phase(self, run: _Run, error: str):
        for phase in run.phases:
            if phase.status == PhaseStatus.RUNNING:
                phase.status = PhaseStatus.FAILED
                phase.error = error
                phase.end_time = self.clock.now()
                self._publish("phase", run.context, phase)

    # ============== Phases ==============

    async def _initialize(self, run: _Run):
        configuration = run.configuration
        errors = []
        if not configuration.environment_id:
            errors.append("Environment ID is required")
        if not configuration.original_links:
            errors.append("At least one original link is required")
        if not configuration.ads_accounts:
            errors.append("At least one Google Ads account is required")
        errors.extend(configuration.validate().errors)

        if errors:
            raise ValidationError(f"Invalid configuration: {'; '.join(errors)}", errors)

        logger.info(
            f"[Workflow] Configuration {configuration.id}: {len(configuration.original_links)} links x "
            f"{configuration.repeat_count}, {len(configuration.ads_accounts)} accounts"
        )

    async def _process_links(self, run: _Run):
        """One extraction per original link; repetition happens inside the engine."""
        configuration = run.configuration
        options = run.options

        for original_url in configuration.original_links:
            try:
                result = await self.extraction.extract_final_url(
                    configuration.environment_id,
                    original_url,
                    repeat_count=configuration.repeat_count,
                    max_retries=options.extraction_max_retries,
                    timeout=options.extraction_timeout,
                    delay_between_retries=options.extraction_retry_delay,
                )
            except Exception as e:
                logger.error(f"[Workflow] Failed to process link {original_url}: {e}")
                for n in range(1, configuration.repeat_count + 1):
                    run.link_results.append(LinkResult(
                        original_url=original_url,
                        success=False,
                        error=str(e),
                        execution_number=n,
                    ))
                continue

            run.link_results.extend(result.per_execution())

        run.context.link_results = list(run.link_results)
        successful = sum(1 for r in run.link_results if r.success)
        logger.info(f"[Workflow] Links processed: {successful}/{len(run.link_results)} resolved")

    async def _review_extraction(self, run: _Run):
        unconfirmed = [r for r in run.link_results if r.success and not r.validated]
        for result in unconfirmed:
            logger.warning(
                f"[Workflow] Execution {result.execution_number} of {result.original_url} "
                f"produced an unconfirmed final URL: {result.final_url}"
            )
        log_audit(
            "url_extraction", f"configuration:{run.configuration.id}", None,
            {r.original_url: r.final_url for r in run.link_results if r.success}, True,
            execution_id=run.context.execution_id, unconfirmed=len(unconfirmed)
        )

    async def _map_ads(self, run: _Run):
        run.ad_mappings = self.mapping.map_configuration_results(run.configuration, run.link_results)
        mapped = sum(len(m.mapped_ads) for m in run.ad_mappings)
        logger.info(f"[Workflow] {mapped} ads mapped across {len(run.ad_mappings)} original links")

    async def _update_ads(self, run: _Run):
        if run.options.dry_run:
            run.planned_updates = sum(
                len(self.ads.build_update_requests(run.configuration, account, run.link_results))
                for account in run.configuration.ads_accounts
            )
            logger.info(f"[Workflow] Dry run: skipping {run.planned_updates} ad updates")
            return

        run.ad_update_results = await self.ads.execute_ad_updates(run.configuration, run.link_results)
        run.context.ad_update_results = list(run.ad_update_results)

    async def _verify_updates(self, run: _Run):
        for summary in run.ad_update_results:
            if summary.errors:
                message = (
                    f"Account {summary.account_id}: {summary.failed_ads}/{summary.total_ads} ad updates failed"
                    if summary.total_ads else f"Account {summary.account_id}: {summary.errors[0]}"
                )
                run.errors.append(message)
                logger.warning(f"[Workflow] {message}")

            for update in summary.results:
                if update.success and update.after_update is not None and not update.after_update.final_urls:
                    run.errors.append(f"Ad {update.ad_id} reports no final URL after update")

    async def _notify(self, run: _Run):
        if not run.options.enable_notifications or self.notifier is None:
            logger.info("[Workflow] Notifications disabled - skipping")
            return

        summary = self._summarize(run)
        report = ExecutionReport(
            execution_id=run.context.execution_id,
            configuration_id=run.configuration.id,
            configuration_name=run.configuration.name,
            status=ExecutionStatus.COMPLETED.value,
            duration=self.clock.monotonic() - run.started,
            total_links=summary.total_links,
            successful_links=summary.successful_links,
            failed_links=summary.failed_links,
            ads_updated=summary.successful_ads_updated,
            ads_failed=summary.failed_ads_updated,
            success_rate=summary.success_rate,
            errors=list(run.errors),
            recipient=run.configuration.notification_email,
            timestamp=datetime.fromtimestamp(self.clock.time(), timezone.utc),
        )
        try:
            await self.notifier.send_execution_report(report)
        except Exception as e:
            logger.warning(f"[Workflow] Notification failed for {run.context.execution_id}: {e}")

    async def _complete(self, run: _Run):
        summary = self._summarize(run)
        log_audit(
            "workflow_complete", f"configuration:{run.configuration.id}", None, summary.to_dict(), True,
            execution_id=run.context.execution_id
        )

    # ============== Results ==============

    @staticmethod
    def _summarize(run: _Run) -> WorkflowSummary:
        successful = sum(1 for r in run.link_results if r.success)
        return WorkflowSummary(
            total_links=len(run.link_results),
            successful_links=successful,
            failed_links=len(run.link_results) - successful,
            total_ads_updated=sum(s.total_ads for s in run.ad_update_results),
            successful_ads_updated=sum(s.updated_ads for s in run.ad_update_results),
            failed_ads_updated=sum(s.failed_ads for s in run.ad_update_results),
        )

    def _build_result(self, run: _Run) -> WorkflowResult:
        context = run.context
        return WorkflowResult(
            execution_id=context.execution_id,
            configuration_id=run.configuration.id,
            success=context.status == ExecutionStatus.COMPLETED,
            status=context.status,
            start_time=context.start_time,
            end_time=self.clock.now(),
            phases=run.phases,
            link_results=run.link_results,
            ad_mappings=run.ad_mappings,
            ad_update_results=run.ad_update_results,
            summary=self._summarize(run),
            errors=run.errors,
        )

    async def _persist(self, result: WorkflowResult, configuration: TrackingConfiguration):
        """Storage is optional; a storage failure never changes the result."""
        try:
            if self.execution_storage is not None:
                await self.execution_storage.save(result.to_dict())
            if self.configuration_storage is not None and result.status != ExecutionStatus.CANCELLED:
                await self.configuration_storage.mark_executed(
                    configuration.id, "active" if result.success else "error", result.end_time
                )
        except Exception as e:
            logger.error(f"[Workflow] Could not save execution {result.execution_id}: {e}")
