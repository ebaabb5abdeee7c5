"""
Ad Mapping Tests
Strategy validation, rule generation and result mapping.
"""

import json

import pytest

from changelink.ad_mapping import AdMappingEngine
from changelink.errors import ValidationError
from changelink.models import (
    AdMappingConfig,
    AdMappingEntry,
    LinkResult,
    MappedAd,
    MappingStrategy,
    TrackingConfiguration,
)

URL = "https://aff.example/go?id=1"


def make_config(ad_ids, execution_count, strategy=MappingStrategy.ONE_TO_ONE, **kwargs):
    return AdMappingConfig(
        original_url=kwargs.pop("original_url", URL),
        ad_group_id=kwargs.pop("ad_group_id", "g1"),
        ad_ids=ad_ids,
        execution_count=execution_count,
        mapping_strategy=strategy,
        **kwargs
    )


@pytest.fixture
def engine():
    return AdMappingEngine()


# === Validation ===

@pytest.mark.unit
class TestValidateConfig:

    def test_one_to_one_with_matching_counts_is_valid(self, engine):
        assert engine.validate_config(make_config(["ad1", "ad2"], 2)).valid

    def test_fewer_executions_than_ads(self, engine):
        result = engine.validate_config(make_config(["ad1", "ad2", "ad3"], 2))

        assert not result.valid
        assert "Execution count (2) must be >= ad count (3)" in result.errors

    def test_one_to_one_needs_equal_counts(self, engine):
        result = engine.validate_config(make_config(["ad1", "ad2", "ad3"], 4))

        assert result.errors == [
            "One-to-one mapping requires execution count (4) to equal ad count (3)"
        ]

    def test_one_to_many_with_fewer_executions_than_ads(self, engine):
        config = make_config(["a1", "a2", "a3", "a4", "a5"], 3, MappingStrategy.ONE_TO_MANY)

        assert not engine.validate_config(config).valid

    def test_one_to_many_needs_two_ads(self, engine):
        result = engine.validate_config(make_config(["ad1"], 3, MappingStrategy.ONE_TO_MANY))

        assert "One-to-many mapping requires at least 2 ads" in result.errors

    def test_required_fields(self, engine):
        result = engine.validate_config(make_config([], 1, original_url="", ad_group_id=""))

        assert result.errors[:3] == [
            "Original URL is required",
            "Ad Group ID is required",
            "At least one ad ID is required",
        ]

    def test_mapping_rules_are_checked(self, engine):
        config = make_config(["ad1", "ad2"], 2)
        config.mapping_rules = engine.create_mapping_rules(URL, ["ad1", "ad2"], 2, MappingStrategy.ONE_TO_ONE)
        config.mapping_rules[1].execution_number = 3

        result = engine.validate_config(config)

        assert "Execution number exceeds configured execution count" in result.errors

    def test_execution_count_warning(self, engine):
        engine.configure_ad_mapping(make_config(["ad1", "ad2"], 7, MappingStrategy.ONE_TO_MANY))

        result = engine.validate_execution_count(URL, 7)

        assert result.valid
        assert len(result.warnings) == 1
        assert "High execution count (7)" in result.warnings[0]

    def test_execution_count_without_configuration(self, engine):
        result = engine.validate_execution_count("https://unknown.example", 2)

        assert result.errors == ["No mapping configuration found for URL"]


# === Configuration Table ===

@pytest.mark.unit
class TestConfigureAdMapping:

    def test_configuring_twice_overwrites(self, engine):
        engine.configure_ad_mapping(make_config(["ad1"], 1))
        engine.configure_ad_mapping(make_config(["ad1", "ad2"], 2))

        assert len(engine.get_all_mappings()) == 1
        assert engine.get_mapping(URL).ad_ids == ["ad1", "ad2"]

    def test_invalid_configuration_is_stored_with_errors(self, engine):
        config = engine.configure_ad_mapping(make_config(["ad1", "ad2", "ad3"], 2))

        assert not config.is_valid
        assert engine.get_mapping(URL) is config

    def test_statistics(self, engine):
        engine.configure_ad_mapping(make_config(["ad1", "ad2"], 2))
        engine.configure_ad_mapping(make_config(["ad3", "ad4"], 4, MappingStrategy.ONE_TO_MANY, original_url="https://aff.example/b"))
        engine.configure_ad_mapping(make_config(["ad5"], 3, original_url="https://aff.example/c"))

        stats = engine.get_mapping_statistics()

        assert stats["total_mappings"] == 3
        assert stats["valid_mappings"] == 2
        assert stats["invalid_mappings"] == 1
        assert stats["total_ads"] == 4
        assert stats["mapping_strategies"] == {"one-to-one": 2, "one-to-many": 1}

    def test_remove_and_clear(self, engine):
        engine.configure_ad_mapping(make_config(["ad1"], 1))

        assert engine.remove_mapping(URL)
        assert not engine.remove_mapping(URL)

        engine.configure_ad_mapping(make_config(["ad1"], 1))
        engine.clear_all_mappings()
        assert engine.get_all_mappings() == []

    def test_export_then_import_into_new_engine(self, engine):
        engine.configure_ad_mapping(make_config(["ad1", "ad2"], 2))
        exported = engine.export_mappings(URL)

        other = AdMappingEngine()
        imported = other.import_mappings(exported)

        assert len(imported) == 1
        assert other.get_mapping(URL).ad_ids == ["ad1", "ad2"]
        assert other.get_mapping(URL).is_valid
        assert json.loads(engine.export_mappings())[0]["original_url"] == URL

    def test_import_rejects_malformed_payload(self, engine):
        with pytest.raises(ValidationError):
            engine.import_mappings("{not json")
        with pytest.raises(ValidationError):
            engine.import_mappings(json.dumps({"ad_ids": ["ad1"]}))

    def test_export_unknown_url(self, engine):
        with pytest.raises(ValidationError):
            engine.export_mappings("https://unknown.example")


# === Rules ===

@pytest.mark.unit
class TestMappingRules:

    def test_one_to_one_rules(self, engine):
        rules = engine.create_mapping_rules(URL, ["ad1", "ad2", "ad3"], 3, MappingStrategy.ONE_TO_ONE)

        assert [(r.execution_number, r.ad_id) for r in rules] == [(1, "ad1"), (2, "ad2"), (3, "ad3")]

    def test_one_to_many_groups_are_contiguous(self, engine):
        rules = engine.create_mapping_rules(URL, ["ad1", "ad2", "ad3", "ad4"], 2, MappingStrategy.ONE_TO_MANY)

        assert [(r.execution_number, r.ad_id) for r in rules] == [
            (1, "ad1"), (1, "ad2"), (2, "ad3"), (2, "ad4"),
        ]

    def test_rules_carry_hierarchy_details(self, engine):
        engine.get_advertisement_hierarchy([{
            "id": "c1",
            "name": "Spring campaign",
            "ad_groups": [{
                "id": "g1",
                "name": "Tools",
                "ads": [
                    {"id": "ad1", "name": "Drill ad", "status": "ENABLED", "final_url": "https://old.example/1"},
                    {"id": "ad2", "name": "Saw ad", "status": "PAUSED"},
                ],
            }],
        }])

        rules = engine.create_mapping_rules(URL, ["ad1", "ad2"], 2, MappingStrategy.ONE_TO_ONE)

        assert rules[0].ad_name == "Drill ad"
        assert rules[0].campaign_name == "Spring campaign"
        assert rules[0].ad_group_name == "Tools"
        assert rules[0].current_final_url == "https://old.example/1"

    def test_hierarchy_counts_enabled_ads(self, engine):
        hierarchy = engine.get_advertisement_hierarchy([{
            "id": "c1",
            "ad_groups": [{"id": "g1", "ads": [{"id": "ad1", "status": "ENABLED"}, {"id": "ad2", "status": "PAUSED"}]}],
        }])[0]

        assert hierarchy.total_ads == 2
        assert hierarchy.available_ads == 1


# === Result Mapping ===

@pytest.mark.unit
class TestMapExecutionResults:

    def test_final_urls_split_into_base_and_suffix(self, engine):
        engine.configure_ad_mapping(make_config(["ad1", "ad2"], 2))

        result = engine.map_execution_results_to_ads(
            URL, ["https://x.com/a?x=1", "https://x.com/b?y=2"], 2
        )

        assert result.mapped_ads == [
            MappedAd(ad_id="ad1", execution_number=1, final_url="https://x.com/a", final_url_suffix="x=1"),
            MappedAd(ad_id="ad2", execution_number=2, final_url="https://x.com/b", final_url_suffix="y=2"),
        ]
        assert result.execution_order == [1, 2]
        assert result.mapping_distribution == {1: ["ad1"], 2: ["ad2"]}
        assert engine.get_mapping_result(URL) is result

    def test_url_without_query_has_empty_suffix(self, engine):
        engine.configure_ad_mapping(make_config(["ad1"], 1))

        result = engine.map_execution_results_to_ads(URL, ["https://x.com/a"], 1)

        assert result.mapped_ads[0].final_url_suffix == ""

    def test_unconfigured_url_is_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.map_execution_results_to_ads(URL, ["https://x.com/a"], 1)

    def test_invalid_configuration_is_rejected(self, engine):
        engine.configure_ad_mapping(make_config(["ad1", "ad2", "ad3"], 2))

        with pytest.raises(ValidationError):
            engine.map_execution_results_to_ads(URL, ["https://x.com/a", "https://x.com/b"], 2)

    def test_execution_count_mismatch_is_rejected(self, engine):
        engine.configure_ad_mapping(make_config(["ad1", "ad2"], 2))

        with pytest.raises(ValidationError) as exc:
            engine.map_execution_results_to_ads(URL, ["https://x.com/a"], 1)

        assert "Execution count validation failed" in str(exc.value)

    def test_configuration_table_maps_successful_executions_only(self, engine):
        configuration = TrackingConfiguration(
            name="promo",
            environment_id="env1",
            original_links=[URL],
            repeat_count=3,
            ad_mapping={URL: [
                AdMappingEntry(ad_id="ad1", execution_number=1),
                AdMappingEntry(ad_id="ad2", execution_number=2),
                AdMappingEntry(ad_id="ad3", execution_number=3),
            ]},
        )
        links = [
            LinkResult(original_url=URL, success=True, final_url="https://x.com/a?x=1", execution_number=1),
            LinkResult(original_url=URL, success=False, error="timeout", execution_number=2),
            LinkResult(original_url=URL, success=True, final_url="https://x.com/c?z=3", execution_number=3),
        ]

        results = engine.map_configuration_results(configuration, links)

        assert len(results) == 1
        assert [(m.ad_id, m.final_url, m.final_url_suffix) for m in results[0].mapped_ads] == [
            ("ad1", "https://x.com/a", "x=1"),
            ("ad3", "https://x.com/c", "z=3"),
        ]
        assert results[0].execution_order == [1, 3]
