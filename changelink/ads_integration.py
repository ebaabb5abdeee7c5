#!/usr/bin/env python3
"""
Advertising API integration - push resolved final URLs onto ads.

    link results ──(configuration ad mapping)──> per-account update lists
                 ──(chunks of batch_size, sequential inside a chunk)──> AdsApi

The AdsApi capability is abstract; GoogleAdsApi implements it with the
google-ads client. Every call goes through the RetryManager.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Optional

from google.ads.googleads.client import GoogleAdsClient
from google.ads.googleads.errors import GoogleAdsException
from google.protobuf import field_mask_pb2

from .clock import Clock, get_clock
from .errors import AdsApiError, ErrorType, ValidationError
from .logging_config import log_audit, log_performance
from .models import (
    AdMappingEntry,
    AdsAccount,
    AdsCredentials,
    AdSnapshot,
    AdUpdateRequest,
    AdUpdateResult,
    AdUpdateSummary,
    BatchUpdateResult,
    LinkResult,
    TrackingConfiguration,
    ValidationResult,
)
from .retry_manager import RetryManager, get_retry_manager

logger = logging.getLogger(__name__)


# ============== Capability ==============

class AdsApi:
    """What the integration needs from an advertising API."""

    async def validate_access(self, credentials: AdsCredentials, customer_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def get_ad(self, credentials: AdsCredentials, customer_id: str, ad_id: str) -> AdSnapshot:
        raise NotImplementedError

    async def update_ad_final_url(
        self,
        credentials: AdsCredentials,
        customer_id: str,
        ad_id: str,
        final_url: str,
        final_url_suffix: str
    ) -> AdSnapshot:
        raise NotImplementedError


# gRPC status names reported by GoogleAdsException
_STATUS_ERROR_TYPES = {
    'UNAUTHENTICATED': ErrorType.AUTH_ERROR,
    'PERMISSION_DENIED': ErrorType.AUTH_ERROR,
    'INVALID_ARGUMENT': ErrorType.CLIENT_ERROR,
    'NOT_FOUND': ErrorType.CLIENT_ERROR,
    'RESOURCE_EXHAUSTED': ErrorType.RATE_LIMIT_ERROR,
    'DEADLINE_EXCEEDED': ErrorType.TIMEOUT_ERROR,
    'UNAVAILABLE': ErrorType.NETWORK_ERROR,
}


class GoogleAdsApi(AdsApi):
    """
    google-ads implementation.

    The client library is synchronous; every call runs in the loop's
    default executor.
    """

    def __init__(self, developer_token: str = "", login_customer_id: Optional[str] = None):
        self.developer_token = developer_token
        self.login_customer_id = login_customer_id
        self._clients: Dict[str, GoogleAdsClient] = {}

    def _client(self, credentials: AdsCredentials) -> GoogleAdsClient:
        key = f"{credentials.client_id}:{credentials.refresh_token}"
        client = self._clients.get(key)
        if client is None:
            settings = {
                "developer_token": credentials.developer_token or self.developer_token,
                "client_id": credentials.client_id,
                "client_secret": credentials.client_secret,
                "refresh_token": credentials.refresh_token,
                "use_proto_plus": True,
            }
            login_customer_id = credentials.login_customer_id or self.login_customer_id
            if login_customer_id:
                settings["login_customer_id"] = str(login_customer_id).replace("-", "")
            client = GoogleAdsClient.load_from_dict(settings)
            self._clients[key] = client
        return client

    @staticmethod
    def _wrap(ex: GoogleAdsException, action: str) -> AdsApiError:
        status = ex.error.code().name if ex.error is not None else ""
        messages = [e.message for e in ex.failure.errors] if ex.failure is not None else [str(ex)]
        return AdsApiError(
            f"Google Ads {action} failed ({status}): {'; '.join(messages)}",
            _STATUS_ERROR_TYPES.get(status, ErrorType.SERVER_ERROR),
            {"request_id": ex.request_id, "status": status},
        )

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    def _search(self, credentials: AdsCredentials, customer_id: str, query: str):
        service = self._client(credentials).get_service("GoogleAdsService")
        return list(service.search(customer_id=customer_id, query=query))

    async def validate_access(self, credentials: AdsCredentials, customer_id: str) -> Dict[str, Any]:
        query = "SELECT customer.id, customer.descriptive_name, customer.currency_code FROM customer LIMIT 1"
        try:
            rows = await self._run(self._search, credentials, customer_id, query)
        except GoogleAdsException as ex:
            raise self._wrap(ex, "access check")

        if not rows:
            raise AdsApiError(f"Customer {customer_id} is not accessible", ErrorType.AUTH_ERROR)
        customer = rows[0].customer
        return {
            "customer_id": str(customer.id),
            "name": customer.descriptive_name,
            "currency": customer.currency_code,
        }

    async def get_ad(self, credentials: AdsCredentials, customer_id: str, ad_id: str) -> AdSnapshot:
        query = (
            "SELECT ad_group_ad.ad.id, ad_group_ad.ad.final_urls, ad_group_ad.ad.final_url_suffix "
            f"FROM ad_group_ad WHERE ad_group_ad.ad.id = {int(ad_id)}"
        )
        try:
            rows = await self._run(self._search, credentials, customer_id, query)
        except GoogleAdsException as ex:
            raise self._wrap(ex, "ad lookup")

        if not rows:
            raise AdsApiError(f"Ad {ad_id} not found in customer {customer_id}", ErrorType.CLIENT_ERROR)
        ad = rows[0].ad_group_ad.ad
        return AdSnapshot(final_urls=list(ad.final_urls), final_url_suffix=ad.final_url_suffix or "")

    def _mutate_ad(self, credentials, customer_id, ad_id, final_url, final_url_suffix):
        client = self._client(credentials)
        service = client.get_service("AdService")

        operation = client.get_type("AdOperation")
        ad = operation.update
        ad.resource_name = service.ad_path(customer_id, ad_id)
        ad.final_urls.append(final_url)
        ad.final_url_suffix = final_url_suffix
        operation.update_mask.CopyFrom(field_mask_pb2.FieldMask(paths=["final_urls", "final_url_suffix"]))

        return service.mutate_ads(customer_id=customer_id, operations=[operation])

    async def update_ad_final_url(
        self,
        credentials: AdsCredentials,
        customer_id: str,
        ad_id: str,
        final_url: str,
        final_url_suffix: str
    ) -> AdSnapshot:
        try:
            await self._run(self._mutate_ad, credentials, customer_id, ad_id, final_url, final_url_suffix)
        except GoogleAdsException as ex:
            raise self._wrap(ex, "ad update")
        return AdSnapshot(final_urls=[final_url], final_url_suffix=final_url_suffix)


# ============== Integration ==============

class AdvertisingApiIntegration:
    """
    Usage:
        integration = AdvertisingApiIntegration(GoogleAdsApi(developer_token))
        summaries = await integration.execute_ad_updates(configuration, link_results)
    """

    def __init__(
        self,
        ads_api: AdsApi,
        retry_manager: Optional[RetryManager] = None,
        clock: Optional[Clock] = None,
        batch_size: int = 10,
        batch_delay: float = 1.0,
        account_concurrency: int = 1
    ):
        self.ads_api = ads_api
        self.retry_manager = retry_manager or get_retry_manager()
        self.clock = clock or get_clock()
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self.account_concurrency = max(1, account_concurrency)

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_time': 0.0,
        }

    # ============== Accounts ==============

    @staticmethod
    def check_credentials(credentials: AdsCredentials) -> ValidationResult:
        errors = []
        if not credentials.client_id:
            errors.append("Client ID is required")
        if not credentials.client_secret:
            errors.append("Client secret is required")
        if not credentials.refresh_token:
            errors.append("Refresh token is required")
        return ValidationResult.from_errors(errors)

    async def validate_account(self, account: AdsAccount) -> ValidationResult:
        """Local credential check first; only complete credentials reach the API."""
        local = self.check_credentials(account.credentials)
        if not local:
            return local

        try:
            info = await self.retry_manager.execute_with_retry(
                lambda: self.ads_api.validate_access(account.credentials, account.customer_id),
                f"google_ads_api_validate_{account.customer_id}",
                ErrorType.SERVER_ERROR
            )
        except Exception as e:
            logger.warning(f"[GoogleAds] Account {account.label} failed validation: {e}")
            return ValidationResult.invalid([str(e)])

        logger.info(f"[GoogleAds] Account {account.label} validated ({info.get('name', '')})")
        return ValidationResult.ok()

    # ============== Mapping helpers ==============

    def validate_ad_mapping(self, original_url: str, entries: List[AdMappingEntry], repeat_count: int) -> Dict[str, Any]:
        """Errors block the mapping; suggestions never do."""
        errors, suggestions = [], []

        if not original_url:
            errors.append("Original URL is required")
        if not entries:
            errors.append("Ad mapping must not be empty")

        numbers = [e.execution_number for e in entries]
        if len(numbers) != len(set(numbers)):
            errors.append("Execution numbers must not repeat")
        if numbers and (max(numbers) > repeat_count or min(numbers) < 1):
            errors.append(f"Execution numbers must be between 1 and {repeat_count}")
        if len(set(numbers)) < repeat_count:
            suggestions.append(f"Consider mapping an ad to each of the {repeat_count} executions")

        return {
            "valid": not errors,
            "errors": errors,
            "warnings": [],
            "suggestions": suggestions,
        }

    async def create_ad_mapping(
        self,
        account: AdsAccount,
        original_url: str,
        selections: List[Dict[str, Any]],
        campaign_id: str = "",
        ad_group_id: str = ""
    ) -> Dict[str, List[AdMappingEntry]]:
        """Build one ad-mapping table entry; selections are {ad_id, execution_number}."""
        if not selections:
            raise ValidationError("Ad mapping must not be empty")

        entries = [
            AdMappingEntry(
                ad_id=str(s["ad_id"]),
                execution_number=int(s["execution_number"]),
                campaign_id=campaign_id,
                ad_group_id=ad_group_id,
                customer_id=account.customer_id,
            )
            for s in selections
        ]
        logger.info(f"[GoogleAds] Created mapping for {original_url} with {len(entries)} ads")
        return {original_url: entries}

    # ============== Updates ==============

    async def update_ad(self, account: AdsAccount, update: AdUpdateRequest) -> AdUpdateResult:
        """Update one ad: snapshot, update, snapshot. Never raises."""
        credentials = account.credentials
        name = f"google_ads_api_update_{account.customer_id}"
        self.stats['total_requests'] += 1

        try:
            before = await self.retry_manager.execute_with_retry(
                lambda: self.ads_api.get_ad(credentials, account.customer_id, update.ad_id),
                f"google_ads_api_get_{account.customer_id}",
                ErrorType.SERVER_ERROR
            )
            after = await self.retry_manager.execute_with_retry(
                lambda: self.ads_api.update_ad_final_url(
                    credentials, account.customer_id, update.ad_id,
                    update.final_url, update.final_url_suffix
                ),
                name,
                ErrorType.SERVER_ERROR
            )
        except Exception as e:
            self.stats['failed_requests'] += 1
            logger.error(f"[GoogleAds] Update failed for ad {update.ad_id} ({account.label}): {e}")
            log_audit("ad_update", f"ad:{update.ad_id}", None, update.final_url, False, error=str(e))
            return AdUpdateResult(ad_id=update.ad_id, success=False, error=str(e))

        self.stats['successful_requests'] += 1
        log_audit(
            "ad_update", f"ad:{update.ad_id}", before.to_dict(), after.to_dict(), True,
            customer_id=account.customer_id, execution_number=update.execution_number
        )
        return AdUpdateResult(ad_id=update.ad_id, success=True, before_update=before, after_update=after)

    async def batch_update_ads(self, account: AdsAccount, updates: List[AdUpdateRequest]) -> BatchUpdateResult:
        """
        Apply updates in chunks of batch_size.

        Updates inside a chunk run sequentially, chunks are separated by
        batch_delay, and a failed update never stops the remaining ones.
        """
        started = self.clock.monotonic()
        result = BatchUpdateResult(account_id=account.label, total_updates=len(updates))
        logger.info(f"[GoogleAds] Updating {len(updates)} ads for {account.label}")

        for chunk_start in range(0, len(updates), self.batch_size):
            for update in updates[chunk_start:chunk_start + self.batch_size]:
                outcome = await self.update_ad(account, update)
                result.results.append(outcome)
                if outcome.success:
                    result.successful_updates += 1
                else:
                    result.failed_updates += 1

            if chunk_start + self.batch_size < len(updates) and self.batch_delay > 0:
                await self.clock.sleep(self.batch_delay)

        result.execution_time = self.clock.monotonic() - started
        self.stats['total_time'] += result.execution_time
        log_performance(
            "google_ads_batch_update", result.execution_time * 1000,
            account=account.label, updates=len(updates), failed=result.failed_updates
        )
        logger.info(
            f"[GoogleAds] {account.label}: {result.successful_updates}/{result.total_updates} ads updated "
            f"in {result.execution_time:.1f}s"
        )
        return result

    def build_update_requests(
        self,
        configuration: TrackingConfiguration,
        account: AdsAccount,
        link_results: List[LinkResult]
    ) -> List[AdUpdateRequest]:
        """Resolve (original URL, execution number) to the account's mapped ads."""
        updates = []
        for link in link_results:
            if not link.success or not link.final_url:
                continue
            for entry in configuration.ad_mapping.get(link.original_url, []):
                if entry.execution_number != link.execution_number:
                    continue
                if entry.customer_id and entry.customer_id.replace("-", "") != account.customer_id:
                    continue
                updates.append(AdUpdateRequest(
                    ad_id=entry.ad_id,
                    final_url=link.final_url_base or link.final_url.split('?', 1)[0],
                    final_url_suffix=link.final_url_suffix,
                    ad_group_id=entry.ad_group_id,
                    execution_number=link.execution_number,
                    original_url=link.original_url,
                ))
        return updates

    async def _update_account(
        self,
        configuration: TrackingConfiguration,
        account: AdsAccount,
        link_results: List[LinkResult]
    ) -> Optional[AdUpdateSummary]:
        try:
            updates = self.build_update_requests(configuration, account, link_results)
            if not updates:
                logger.info(f"[GoogleAds] No mapped ads to update for {account.label}")
                return None

            batch = await self.batch_update_ads(account, updates)
            return AdUpdateSummary(
                account_id=account.label,
                total_ads=batch.total_updates,
                updated_ads=batch.successful_updates,
                failed_ads=batch.failed_updates,
                execution_time=batch.execution_time,
                errors=[r.error or "Unknown error" for r in batch.results if not r.success],
                results=batch.results,
            )
        except Exception as e:
            logger.error(f"[GoogleAds] Account {account.label} update failed: {e}")
            return AdUpdateSummary(account_id=account.label, errors=[str(e)])

    async def execute_ad_updates(
        self,
        configuration: TrackingConfiguration,
        link_results: List[LinkResult]
    ) -> List[AdUpdateSummary]:
        """One summary per account that had updates or failed; accounts are isolated."""
        semaphore = asyncio.Semaphore(self.account_concurrency)

        async def run(account: AdsAccount):
            async with semaphore:
                return await self._update_account(configuration, account, link_results)

        outcomes = await asyncio.gather(*[run(a) for a in configuration.ads_accounts])
        summaries = [s for s in outcomes if s is not None]

        logger.info(
            f"[GoogleAds] Configuration {configuration.id}: "
            f"{sum(s.updated_ads for s in summaries)} ads updated across {len(summaries)} accounts"
        )
        return summaries

    def get_performance_metrics(self) -> Dict[str, Any]:
        total = self.stats['total_requests']
        return {
            **self.stats,
            'success_rate': self.stats['successful_requests'] / total if total else 0.0,
        }
