"""
Advertising API Integration Tests
Credential checks, chunked batch updates and per-account isolation.
"""

from unittest.mock import patch

import pytest

from changelink.errors import ValidationError
from changelink.models import (
    AdMappingEntry,
    AdsAccount,
    AdsCredentials,
    AdUpdateRequest,
    AdUpdateSummary,
    LinkResult,
)

from conftest import ORIGINAL_LINK


def requests(n):
    return [
        AdUpdateRequest(ad_id=f"ad{i}", final_url=f"https://shop.example/p/{i}", final_url_suffix=f"n={i}")
        for i in range(1, n + 1)
    ]


def resolved(execution_number, final_url):
    base, _, suffix = final_url.partition("?")
    return LinkResult(
        original_url=ORIGINAL_LINK,
        success=True,
        final_url=final_url,
        final_url_base=base,
        final_url_suffix=suffix,
        validated=True,
        execution_number=execution_number,
    )


# === Accounts ===

@pytest.mark.unit
class TestAccountValidation:

    @pytest.mark.asyncio
    async def test_missing_credentials_never_reach_the_api(self, ads_integration, ads_api):
        account = AdsAccount(customer_id="1234567890", credentials=AdsCredentials())

        result = await ads_integration.validate_account(account)

        assert not result.valid
        assert result.errors == [
            "Client ID is required",
            "Client secret is required",
            "Refresh token is required",
        ]
        assert ads_api.validations == []

    @pytest.mark.asyncio
    async def test_complete_credentials_are_checked_remotely(self, ads_integration, ads_api, sample_account):
        result = await ads_integration.validate_account(sample_account)

        assert result.valid
        assert ads_api.validations == ["1234567890"]

    @pytest.mark.asyncio
    async def test_denied_account_is_invalid(self, ads_integration, ads_api, sample_account):
        ads_api.denied_customers.add("1234567890")

        result = await ads_integration.validate_account(sample_account)

        assert not result.valid
        assert "not accessible" in result.errors[0]
        # auth failures are not retried
        assert ads_api.validations == ["1234567890"]


# === Mapping Helpers ===

@pytest.mark.unit
class TestMappingHelpers:

    def test_validate_ad_mapping(self, ads_integration):
        entries = [
            AdMappingEntry(ad_id="ad1", execution_number=1),
            AdMappingEntry(ad_id="ad2", execution_number=1),
            AdMappingEntry(ad_id="ad3", execution_number=4),
        ]

        result = ads_integration.validate_ad_mapping(ORIGINAL_LINK, entries, 3)

        assert not result["valid"]
        assert "Execution numbers must not repeat" in result["errors"]
        assert "Execution numbers must be between 1 and 3" in result["errors"]

    def test_sparse_mapping_only_suggests(self, ads_integration):
        result = ads_integration.validate_ad_mapping(
            ORIGINAL_LINK, [AdMappingEntry(ad_id="ad1", execution_number=1)], 3
        )

        assert result["valid"]
        assert result["suggestions"]

    @pytest.mark.asyncio
    async def test_create_ad_mapping(self, ads_integration, sample_account):
        mapping = await ads_integration.create_ad_mapping(
            sample_account, ORIGINAL_LINK,
            [{"ad_id": 111, "execution_number": "1"}, {"ad_id": "222", "execution_number": 2}],
            campaign_id="c1", ad_group_id="g1",
        )

        entries = mapping[ORIGINAL_LINK]
        assert [(e.ad_id, e.execution_number) for e in entries] == [("111", 1), ("222", 2)]
        assert all(e.customer_id == "1234567890" for e in entries)

    @pytest.mark.asyncio
    async def test_create_empty_mapping_is_rejected(self, ads_integration, sample_account):
        with pytest.raises(ValidationError):
            await ads_integration.create_ad_mapping(sample_account, ORIGINAL_LINK, [])

    def test_update_requests_follow_execution_numbers(self, ads_integration, sample_configuration, sample_account):
        links = [
            resolved(1, "https://www.homedepot.com/p/123?utm_source=aff"),
            resolved(2, "https://www.homedepot.com/p/456?clickid=def"),
        ]

        updates = ads_integration.build_update_requests(sample_configuration, sample_account, links)

        assert [(u.ad_id, u.final_url, u.final_url_suffix) for u in updates] == [
            ("ad1", "https://www.homedepot.com/p/123", "utm_source=aff"),
            ("ad2", "https://www.homedepot.com/p/456", "clickid=def"),
        ]

    def test_update_requests_respect_account_restriction(self, ads_integration, sample_configuration, sample_account):
        sample_configuration.ad_mapping[ORIGINAL_LINK][1].customer_id = "999-999-9999"

        updates = ads_integration.build_update_requests(
            sample_configuration, sample_account,
            [resolved(1, "https://x.com/a?x=1"), resolved(2, "https://x.com/b?y=2")],
        )

        assert [u.ad_id for u in updates] == ["ad1"]


# === Batch Updates ===

@pytest.mark.resilience
class TestBatchUpdates:

    @pytest.mark.asyncio
    async def test_chunks_are_separated_by_delay(self, ads_integration, ads_api, sample_account, clock):
        ads_integration.batch_size = 2

        result = await ads_integration.batch_update_ads(sample_account, requests(5))

        assert result.total_updates == 5
        assert result.successful_updates == 5
        assert [u[1] for u in ads_api.updates] == ["ad1", "ad2", "ad3", "ad4", "ad5"]
        assert clock.sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_failed_update_does_not_stop_the_batch(self, ads_integration, ads_api, sample_account):
        ads_api.failing_ads.add("ad2")

        result = await ads_integration.batch_update_ads(sample_account, requests(3))

        assert (result.successful_updates, result.failed_updates) == (2, 1)
        assert not result.results[1].success
        assert "not found" in result.results[1].error
        assert [u[1] for u in ads_api.updates] == ["ad1", "ad3"]

    @pytest.mark.asyncio
    async def test_update_records_before_and_after(self, ads_integration, sample_account):
        outcome = await ads_integration.update_ad(sample_account, requests(1)[0])

        assert outcome.success
        assert outcome.before_update.final_urls == ["https://old.example/ad1"]
        assert outcome.after_update.final_urls == ["https://shop.example/p/1"]
        assert outcome.after_update.final_url_suffix == "n=1"

    @pytest.mark.asyncio
    async def test_accounts_are_isolated(self, ads_integration, ads_api, sample_configuration, sample_credentials):
        sample_configuration.ads_accounts.append(
            AdsAccount(customer_id="2222222222", name="Second", credentials=sample_credentials)
        )
        ads_api.failing_customers.add("2222222222")
        links = [resolved(1, "https://x.com/a?x=1"), resolved(2, "https://x.com/b?y=2")]

        summaries = await ads_integration.execute_ad_updates(sample_configuration, links)

        by_account = {s.account_id: s for s in summaries}
        assert by_account["1234567890"].updated_ads == 2
        assert by_account["1234567890"].success_rate == 1.0
        assert by_account["2222222222"].failed_ads == 2
        assert len(by_account["2222222222"].errors) == 2

    @pytest.mark.asyncio
    async def test_crashed_account_yields_zeroed_summary(self, ads_integration, sample_configuration):
        async def crash(account, updates):
            raise RuntimeError("quota exhausted")

        with patch.object(ads_integration, "batch_update_ads", side_effect=crash):
            summaries = await ads_integration.execute_ad_updates(
                sample_configuration, [resolved(1, "https://x.com/a?x=1")]
            )

        assert len(summaries) == 1
        assert summaries[0].total_ads == 0
        assert summaries[0].errors == ["quota exhausted"]
        assert summaries[0].success_rate == 0.0

    @pytest.mark.asyncio
    async def test_account_without_mapped_ads_is_skipped(self, ads_integration, sample_configuration):
        failed = LinkResult(original_url=ORIGINAL_LINK, success=False, error="timeout", execution_number=1)

        assert await ads_integration.execute_ad_updates(sample_configuration, [failed]) == []

    def test_empty_summary_success_rate(self):
        assert AdUpdateSummary(account_id="1234567890").success_rate == 0.0

    @pytest.mark.asyncio
    async def test_performance_metrics(self, ads_integration, ads_api, sample_account):
        ads_api.failing_ads.add("ad1")
        await ads_integration.batch_update_ads(sample_account, requests(2))

        metrics = ads_integration.get_performance_metrics()

        assert metrics["total_requests"] == 2
        assert metrics["success_rate"] == 0.5
