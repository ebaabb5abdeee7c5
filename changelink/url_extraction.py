#!/usr/bin/env python3
"""
URL Extraction Engine - resolve affiliate links to their final destination.

Per original URL:
    for execution in 1..repeat_count:
        wait (base delay + jitter) unless first execution
        up to max_retries attempts (RetryManager, no circuit breaker):
            validate environment -> start browser -> follow redirects
            -> judge final URL -> ALWAYS stop browser
    keep the best final URL across executions

Batch mode runs URLs in fixed-size concurrency groups with a delay between
groups; a crashed extraction becomes a failed LinkResult.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit

from .browser_client import BrowserAutomationClient
from .clock import Clock, get_clock
from .errors import ErrorType, ValidationError
from .models import LinkResult
from .navigator import NavigationResult, Navigator
from .retry_manager import RetryManager, get_retry_manager

logger = logging.getLogger(__name__)


DEFAULT_TRACKING_PARAMETERS = (
    'clickid', 'utm_', 'ref', 'affiliate', 'partner', 'campaign', 'irgwc', 'cm_mmc',
)

DEFAULT_DESTINATION_DOMAINS = (
    'homedepot.com', 'amazon.com', 'walmart.com', 'target.com', 'bestbuy.com',
    'lowes.com', 'macys.com', 'nordstrom.com', 'wayfair.com', 'overstock.com', 'ebay.com',
)

DEFAULT_INTERMEDIARY_KEYWORDS = (
    'tracking', 'redirect', 'click', 'affiliate', 'partner',
)


def split_final_url(url: str) -> Tuple[str, str, Dict[str, str]]:
    """Split into (scheme://host/path, query without '?', parsed params)."""
    parts = urlsplit(url)
    base = f"{parts.scheme}://{parts.netloc}{parts.path}" if parts.scheme else parts.path
    suffix = parts.query
    params = dict(parse_qsl(suffix, keep_blank_values=True))
    return base, suffix, params


@dataclass
class FinalUrlHeuristic:
    """
    Decides whether a URL is a genuine final destination.

    Final = tracking-style parameters present
            AND (recognized destination domain OR complex query)
            AND host is not a known intermediary.

    The lists are configuration, not constants.
    """
    tracking_parameters: Iterable[str] = DEFAULT_TRACKING_PARAMETERS
    destination_domains: Iterable[str] = DEFAULT_DESTINATION_DOMAINS
    intermediary_keywords: Iterable[str] = DEFAULT_INTERMEDIARY_KEYWORDS
    min_query_length: int = 30

    def __post_init__(self):
        self.tracking_parameters = tuple(p.lower() for p in self.tracking_parameters)
        self.destination_domains = tuple(d.lower() for d in self.destination_domains)
        self.intermediary_keywords = tuple(k.lower() for k in self.intermediary_keywords)

    def has_tracking_parameters(self, url: str) -> bool:
        parts = urlsplit(url)
        haystack = f"{parts.query}|{parts.path}".lower()
        return any(p in haystack for p in self.tracking_parameters)

    def is_known_destination(self, url: str) -> bool:
        host = (urlsplit(url).hostname or "").lower()
        return any(host == d or host.endswith("." + d) for d in self.destination_domains)

    def is_intermediary(self, url: str) -> bool:
        host = (urlsplit(url).hostname or "").lower()
        return any(k in host for k in self.intermediary_keywords)

    def has_complex_query(self, url: str) -> bool:
        # length of the search part, leading "?" included
        query = urlsplit(url).query
        return bool(query) and len(query) + 1 > self.min_query_length

    def is_final(self, url: str) -> bool:
        if not url:
            return False
        return (
            self.has_tracking_parameters(url)
            and (self.is_known_destination(url) or self.has_complex_query(url))
            and not self.is_intermediary(url)
        )

    @staticmethod
    def parameter_count(url: str) -> int:
        return len([p for p in urlsplit(url).query.split('&') if p])

    def is_better(self, candidate: str, current: Optional[str]) -> bool:
        """More query parameters wins; ties go to recognized destinations."""
        if not candidate:
            return False
        if not current:
            return True
        a, b = self.parameter_count(candidate), self.parameter_count(current)
        if a != b:
            return a > b
        return self.is_known_destination(candidate) and not self.is_known_destination(current)


@dataclass
class ExtractionRequest:
    environment_id: str
    original_url: str
    repeat_count: int = 1
    max_retries: int = 3
    timeout: float = 60.0
    delay_between_retries: float = 5.0


@dataclass
class BatchExtractionResult:
    results: List[LinkResult] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _Candidate:
    final_url: str
    redirect_chain: List[str]
    validated: bool


class UrlExtractionEngine:
    """
    Drives browser sessions to resolve affiliate URLs.

    Delays go through the injected clock; navigation through the injected
    Navigator (PlaywrightNavigator in production).
    """

    def __init__(
        self,
        browser_client: BrowserAutomationClient,
        navigator: Navigator,
        retry_manager: Optional[RetryManager] = None,
        heuristic: Optional[FinalUrlHeuristic] = None,
        clock: Optional[Clock] = None,
        execution_delay: float = 35.0,
        jitter_range: Tuple[float, float] = (1.0, 5.0),
        batch_concurrency: int = 5,
        batch_delay: float = 1.0
    ):
        self.client = browser_client
        self.navigator = navigator
        self.retry_manager = retry_manager or get_retry_manager()
        self.heuristic = heuristic or FinalUrlHeuristic()
        self.clock = clock or get_clock()
        self.execution_delay = execution_delay
        self.jitter_range = jitter_range
        self.batch_concurrency = batch_concurrency
        self.batch_delay = batch_delay

        self.stats = {
            'extractions': 0,
            'validated': 0,
            'unconfirmed': 0,
            'failed': 0,
            'browser_starts': 0,
        }

    def inter_execution_delay(self) -> float:
        return self.execution_delay + random.uniform(*self.jitter_range)

    async def extract_final_url(
        self,
        environment_id: str,
        original_url: str,
        repeat_count: int = 1,
        max_retries: int = 3,
        timeout: float = 60.0,
        delay_between_retries: float = 5.0
    ) -> LinkResult:
        """
        Resolve one original URL `repeat_count` times.

        Returns the best result; its `executions` hold one LinkResult per
        execution, in order.
        """
        request = ExtractionRequest(
            environment_id=environment_id,
            original_url=original_url,
            repeat_count=max(1, repeat_count),
            max_retries=max(1, max_retries),
            timeout=timeout,
            delay_between_retries=delay_between_retries,
        )
        started = self.clock.monotonic()
        self.stats['extractions'] += 1
        logger.info(
            f"[UrlExtraction] Extracting {original_url} via {environment_id} "
            f"({request.repeat_count} executions, {request.max_retries} attempts each)"
        )

        executions: List[LinkResult] = []
        best: Optional[LinkResult] = None

        for execution_number in range(1, request.repeat_count + 1):
            if execution_number > 1:
                delay = self.inter_execution_delay()
                logger.debug(f"[UrlExtraction] Waiting {delay:.1f}s before execution {execution_number}")
                await self.clock.sleep(delay)

            result = await self._run_execution(request, execution_number)
            executions.append(result)

            if result.success and self._outranks(result, best):
                best = result

        elapsed = self.clock.monotonic() - started
        attempts = sum(r.attempts for r in executions)

        if best is None:
            self.stats['failed'] += 1
            last_error = next((r.error for r in reversed(executions) if r.error), None)
            logger.warning(f"[UrlExtraction] No final URL for {original_url}: {last_error}")
            return LinkResult(
                original_url=original_url,
                success=False,
                error=last_error or "No final URL extracted",
                execution_time=elapsed,
                attempts=attempts,
                executions=executions,
            )

        if best.validated:
            self.stats['validated'] += 1
        else:
            self.stats['unconfirmed'] += 1
            logger.warning(f"[UrlExtraction] Returning unconfirmed best candidate for {original_url}: {best.final_url}")

        return LinkResult(
            original_url=original_url,
            success=True,
            final_url=best.final_url,
            final_url_base=best.final_url_base,
            final_url_suffix=best.final_url_suffix,
            parameters=dict(best.parameters),
            redirect_chain=list(best.redirect_chain),
            validated=best.validated,
            error=best.error,
            execution_time=elapsed,
            attempts=attempts,
            execution_number=best.execution_number,
            executions=executions,
        )

    def _outranks(self, candidate: LinkResult, current: Optional[LinkResult]) -> bool:
        if current is None:
            return True
        if candidate.validated != current.validated:
            return candidate.validated
        return self.heuristic.is_better(candidate.final_url, current.final_url)

    async def _run_execution(self, request: ExtractionRequest, execution_number: int) -> LinkResult:
        """
        One execution: up to max_retries attempts through the RetryManager.

        Attempts bypass the circuit breaker: failures of one link must not
        cut short the attempts of another link on the same environment.
        """
        started = self.clock.monotonic()
        state: Dict[str, Any] = {'best': None}

        async def attempt() -> _Candidate:
            navigation = await self._perform_single_extraction(request)
            candidate = _Candidate(
                final_url=navigation.final_url,
                redirect_chain=navigation.redirect_chain,
                validated=self.heuristic.is_final(navigation.final_url),
            )
            best = state['best']
            if (
                best is None
                or (candidate.validated and not best.validated)
                or (candidate.validated == best.validated
                    and self.heuristic.is_better(candidate.final_url, best.final_url))
            ):
                state['best'] = candidate
            return candidate

        outcome = await self.retry_manager.run_with_retry(
            attempt,
            f"url_extraction_{request.environment_id}",
            ErrorType.BROWSER_ERROR,
            strategy_overrides={
                "max_retries": request.max_retries - 1,
                "base_delay": request.delay_between_retries,
                "backoff_multiplier": 1.0,
                "max_delay": request.delay_between_retries,
                "jitter": False,
            },
            retry_on_result=lambda c: not c.validated,
            use_circuit_breaker=False,
        )

        elapsed = self.clock.monotonic() - started
        best: Optional[_Candidate] = state['best']

        if best is None:
            error = str(outcome.error) if outcome.error else "No final URL extracted"
            return LinkResult(
                original_url=request.original_url,
                success=False,
                error=error,
                execution_time=elapsed,
                attempts=outcome.attempts,
                execution_number=execution_number,
            )

        base, suffix, params = split_final_url(best.final_url)
        return LinkResult(
            original_url=request.original_url,
            success=True,
            final_url=best.final_url,
            final_url_base=base,
            final_url_suffix=suffix,
            parameters=params,
            redirect_chain=list(best.redirect_chain),
            validated=best.validated,
            error=None if best.validated else "Final URL not confirmed by heuristic",
            execution_time=elapsed,
            attempts=outcome.attempts,
            execution_number=execution_number,
        )

    async def _perform_single_extraction(self, request: ExtractionRequest) -> NavigationResult:
        """validate -> start -> navigate; the browser is stopped on every path."""
        validation = await self.client.validate_environment(request.environment_id)
        if not validation:
            raise ValidationError(
                f"Environment {request.environment_id} is not usable: {'; '.join(validation.errors)}",
                validation.errors
            )

        session = await self.client.smart_start_browser(request.environment_id)
        self.stats['browser_starts'] += 1
        try:
            navigation = await self.navigator.navigate(session, request.original_url, request.timeout)
            logger.debug(
                f"[UrlExtraction] {request.original_url} -> {navigation.final_url} "
                f"({len(navigation.redirect_chain) - 1} redirects)"
            )
            return navigation
        finally:
            await self.client.smart_stop_browser(request.environment_id, force_kill=True)

    async def extract_urls_batch(
        self,
        environment_id: str,
        urls: List[str],
        concurrency: Optional[int] = None,
        repeat_count: int = 1,
        max_retries: int = 3,
        timeout: float = 60.0,
        delay_between_requests: Optional[float] = None
    ) -> BatchExtractionResult:
        """Extract many URLs in concurrency groups."""
        concurrency = max(1, concurrency or self.batch_concurrency)
        delay = self.batch_delay if delay_between_requests is None else delay_between_requests
        started = self.clock.monotonic()
        results: List[LinkResult] = []
        total_groups = (len(urls) + concurrency - 1) // concurrency

        for group_start in range(0, len(urls), concurrency):
            group = urls[group_start:group_start + concurrency]
            logger.info(f"[UrlExtraction] Batch group {group_start // concurrency + 1}/{total_groups} ({len(group)} URLs)")

            outcomes = await asyncio.gather(
                *[
                    self.extract_final_url(
                        environment_id, url,
                        repeat_count=repeat_count, max_retries=max_retries, timeout=timeout
                    )
                    for url in group
                ],
                return_exceptions=True
            )

            for url, outcome in zip(group, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"[UrlExtraction] Extraction crashed for {url}: {outcome}")
                    results.append(LinkResult(original_url=url, success=False, error=str(outcome)))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(outcome)

            if group_start + concurrency < len(urls) and delay > 0:
                await self.clock.sleep(delay)

        total_time = self.clock.monotonic() - started
        successful = sum(1 for r in results if r.success)
        summary = {
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "total_time": round(total_time, 3),
            "average_time": round(total_time / len(results), 3) if results else 0.0,
        }
        logger.info(f"[UrlExtraction] Batch complete: {successful}/{len(results)} resolved")
        return BatchExtractionResult(results=results, summary=summary)

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
