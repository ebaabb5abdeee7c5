#!/usr/bin/env python3
"""
Ad Mapping Engine - binds original URLs and their execution numbers to ads.

Strategies:
    one-to-one   execution i -> ad i (execution count == ad count)
    one-to-many  ads split into ceil(ads / executions) contiguous groups,
                 group i -> execution i (execution count >= ad count)

Configurations and mapping results live in in-memory tables keyed by
original URL. Configuring the same URL again overwrites the entry.
"""

import json
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .models import (
    AdMappingConfig,
    AdMappingResult,
    AdMappingRule,
    ExecutionOrder,
    LinkResult,
    MappedAd,
    MappingStrategy,
    TrackingConfiguration,
    ValidationResult,
)

logger = logging.getLogger(__name__)


def split_at_query(url: str):
    """'https://x.com/a?x=1' -> ('https://x.com/a', 'x=1')"""
    base, _, suffix = url.partition('?')
    return base, suffix


@dataclass
class AdGroupHierarchy:
    campaign_id: str
    campaign_name: str
    ad_group_id: str
    ad_group_name: str
    ads: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_ads(self) -> int:
        return len(self.ads)

    @property
    def available_ads(self) -> int:
        return sum(1 for ad in self.ads if ad.get('status') == 'ENABLED')

    def find_ad(self, ad_id: str) -> Optional[Dict[str, Any]]:
        return next((ad for ad in self.ads if str(ad.get('id')) == ad_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'campaign_id': self.campaign_id,
            'campaign_name': self.campaign_name,
            'ad_group_id': self.ad_group_id,
            'ad_group_name': self.ad_group_name,
            'ads': list(self.ads),
            'total_ads': self.total_ads,
            'available_ads': self.available_ads,
        }


class AdMappingEngine:
    """
    Usage:
        engine = AdMappingEngine()
        engine.configure_ad_mapping(AdMappingConfig(
            original_url="https://aff.example/x", ad_group_id="g1",
            ad_ids=["ad1", "ad2"], execution_count=2,
        ))
        result = engine.map_execution_results_to_ads(
            "https://aff.example/x", ["https://shop.com/a?x=1", "https://shop.com/b?y=2"], 2
        )
    """

    def __init__(self):
        self._mappings: Dict[str, AdMappingConfig] = {}
        self._results: Dict[str, AdMappingResult] = {}
        self._hierarchies: Dict[str, AdGroupHierarchy] = {}

    # ============== Configuration ==============

    def validate_config(self, config: AdMappingConfig) -> ValidationResult:
        errors = []

        if not config.original_url:
            errors.append('Original URL is required')
        if not config.ad_group_id:
            errors.append('Ad Group ID is required')
        if not config.ad_ids:
            errors.append('At least one ad ID is required')
        if config.mapping_strategy == MappingStrategy.ONE_TO_MANY and len(config.ad_ids) < 2:
            errors.append('One-to-many mapping requires at least 2 ads')
        if config.execution_count < config.ad_count:
            errors.append(
                f"Execution count ({config.execution_count}) must be >= ad count ({config.ad_count})"
            )
        if (config.mapping_strategy == MappingStrategy.ONE_TO_ONE
                and config.execution_count != config.ad_count):
            errors.append(
                f"One-to-one mapping requires execution count ({config.execution_count}) "
                f"to equal ad count ({config.ad_count})"
            )

        if config.mapping_rules:
            numbers = [r.execution_number for r in config.mapping_rules]
            if len(numbers) != len(set(numbers)):
                errors.append('Duplicate execution numbers found in mapping rules')
            if max(numbers) > config.execution_count:
                errors.append('Execution number exceeds configured execution count')

        return ValidationResult.from_errors(errors)

    def configure_ad_mapping(self, config: AdMappingConfig) -> AdMappingConfig:
        """Validate and store; invalid configs are kept with their errors."""
        config.validation = self.validate_config(config)
        self._mappings[config.original_url] = config

        if config.is_valid:
            logger.info(
                f"[AdMapping] Configured {config.original_url}: {config.ad_count} ads, "
                f"{config.execution_count} executions ({config.mapping_strategy.value})"
            )
        else:
            logger.warning(
                f"[AdMapping] Stored invalid mapping for {config.original_url}: "
                f"{'; '.join(config.validation.errors)}"
            )
        return config

    # ============== Hierarchy ==============

    def get_advertisement_hierarchy(self, campaigns: List[Dict[str, Any]]) -> List[AdGroupHierarchy]:
        """Flatten campaign -> ad group -> ads and remember each ad group."""
        hierarchies = []
        for campaign in campaigns:
            for ad_group in campaign.get('ad_groups') or []:
                hierarchy = AdGroupHierarchy(
                    campaign_id=str(campaign.get('id', '')),
                    campaign_name=campaign.get('name', ''),
                    ad_group_id=str(ad_group.get('id', '')),
                    ad_group_name=ad_group.get('name', ''),
                    ads=list(ad_group.get('ads') or []),
                )
                hierarchies.append(hierarchy)
                self._hierarchies[hierarchy.ad_group_id] = hierarchy
        return hierarchies

    def _find_hierarchy(self, ad_ids: List[str]) -> Optional[AdGroupHierarchy]:
        for hierarchy in self._hierarchies.values():
            if any(hierarchy.find_ad(ad_id) for ad_id in ad_ids):
                return hierarchy
        return None

    def _rule(self, execution_number: int, ad_id: str, hierarchy: Optional[AdGroupHierarchy]) -> AdMappingRule:
        if hierarchy is None:
            return AdMappingRule(execution_number=execution_number, ad_id=ad_id, ad_name=f"Ad {ad_id}")

        ad = hierarchy.find_ad(ad_id) or {}
        return AdMappingRule(
            execution_number=execution_number,
            ad_id=ad_id,
            ad_name=ad.get('name') or f"Ad {ad_id}",
            campaign_id=hierarchy.campaign_id,
            campaign_name=hierarchy.campaign_name,
            ad_group_id=hierarchy.ad_group_id,
            ad_group_name=hierarchy.ad_group_name,
            current_final_url=ad.get('final_url'),
            current_final_url_suffix=ad.get('final_url_suffix'),
        )

    # ============== Rules ==============

    def create_mapping_rules(
        self,
        original_url: str,
        ad_ids: List[str],
        execution_count: int,
        strategy: MappingStrategy
    ) -> List[AdMappingRule]:
        rules: List[AdMappingRule] = []
        if not ad_ids or execution_count < 1:
            return rules

        hierarchy = self._find_hierarchy(ad_ids)
        strategy = MappingStrategy(strategy)

        if strategy == MappingStrategy.ONE_TO_ONE:
            for i in range(min(execution_count, len(ad_ids))):
                rules.append(self._rule(i + 1, ad_ids[i], hierarchy))
        else:
            group_size = math.ceil(len(ad_ids) / execution_count)
            for i in range(execution_count):
                for ad_id in ad_ids[i * group_size:(i + 1) * group_size]:
                    rules.append(self._rule(i + 1, ad_id, hierarchy))

        logger.debug(f"[AdMapping] {len(rules)} rules for {original_url} ({strategy.value})")
        return rules

    def validate_execution_count(self, original_url: str, execution_count: int) -> ValidationResult:
        config = self._mappings.get(original_url)
        if config is None:
            return ValidationResult.invalid(['No mapping configuration found for URL'])

        errors, warnings = [], []
        if config.mapping_strategy == MappingStrategy.ONE_TO_ONE and execution_count != config.ad_count:
            errors.append(
                f"One-to-one mapping requires execution count ({execution_count}) "
                f"to equal ad count ({config.ad_count})"
            )
        if config.mapping_strategy == MappingStrategy.ONE_TO_MANY and execution_count < config.ad_count:
            errors.append(
                f"One-to-many mapping requires execution count ({execution_count}) "
                f"to be >= ad count ({config.ad_count})"
            )
        if execution_count > config.ad_count * 3:
            warnings.append(
                f"High execution count ({execution_count}) compared to ad count "
                f"({config.ad_count}) may cause inefficient mapping"
            )
        return ValidationResult.from_errors(errors, warnings)

    # ============== Results ==============

    def map_execution_results_to_ads(
        self,
        original_url: str,
        final_urls: List[str],
        execution_count: int
    ) -> AdMappingResult:
        """Attach final URL i to the ad(s) of execution i."""
        config = self._mappings.get(original_url)
        if config is None:
            raise ValidationError(f"No mapping configuration found for URL: {original_url}")
        if not config.is_valid:
            raise ValidationError(
                f"Mapping configuration for {original_url} is invalid",
                config.validation.errors
            )

        validation = self.validate_execution_count(original_url, execution_count)
        if not validation:
            raise ValidationError(
                f"Execution count validation failed: {', '.join(validation.errors)}",
                validation.errors
            )

        result = AdMappingResult(original_url=original_url)

        if config.mapping_strategy == MappingStrategy.ONE_TO_ONE:
            groups = [[ad_id] for ad_id in config.ad_ids[:len(final_urls)]]
        else:
            size = math.ceil(config.ad_count / len(final_urls)) if final_urls else 0
            groups = [config.ad_ids[i * size:(i + 1) * size] for i in range(len(final_urls))]

        for i, (final_url, ad_ids) in enumerate(zip(final_urls, groups)):
            execution_number = i + 1
            base, suffix = split_at_query(final_url)
            for ad_id in ad_ids:
                result.mapped_ads.append(MappedAd(
                    ad_id=ad_id,
                    execution_number=execution_number,
                    final_url=base,
                    final_url_suffix=suffix,
                ))
            result.execution_order.append(execution_number)
            result.mapping_distribution[execution_number] = list(ad_ids)

        self._results[original_url] = result
        logger.info(f"[AdMapping] Mapped {len(result.mapped_ads)} ads for {original_url}")
        return result

    def map_configuration_results(
        self,
        configuration: TrackingConfiguration,
        link_results: List[LinkResult]
    ) -> List[AdMappingResult]:
        """
        Apply a configuration's own mapping table to per-execution link results.

        Only successful executions that produced a final URL are mapped.
        """
        by_key: Dict[tuple, LinkResult] = {}
        for link in link_results:
            if link.success and link.final_url:
                by_key[(link.original_url, link.execution_number)] = link

        results = []
        for original_url, entries in configuration.ad_mapping.items():
            result = AdMappingResult(original_url=original_url)
            distribution: Dict[int, List[str]] = defaultdict(list)

            for entry in sorted(entries, key=lambda e: e.execution_number):
                link = by_key.get((original_url, entry.execution_number))
                if link is None:
                    continue
                base, suffix = split_at_query(link.final_url)
                result.mapped_ads.append(MappedAd(
                    ad_id=entry.ad_id,
                    execution_number=entry.execution_number,
                    final_url=base,
                    final_url_suffix=suffix,
                ))
                distribution[entry.execution_number].append(entry.ad_id)

            result.execution_order = sorted(distribution)
            result.mapping_distribution = dict(distribution)
            self._results[original_url] = result
            results.append(result)

        return results

    def get_mapping(self, original_url: str) -> Optional[AdMappingConfig]:
        return self._mappings.get(original_url)

    def get_mapping_result(self, original_url: str) -> Optional[AdMappingResult]:
        return self._results.get(original_url)

    def get_all_mappings(self) -> List[AdMappingConfig]:
        return list(self._mappings.values())

    def remove_mapping(self, original_url: str) -> bool:
        removed_config = self._mappings.pop(original_url, None) is not None
        removed_result = self._results.pop(original_url, None) is not None
        return removed_config or removed_result

    def clear_all_mappings(self):
        self._mappings.clear()
        self._results.clear()

    def get_mapping_statistics(self) -> Dict[str, Any]:
        total = len(self._mappings)
        valid = sum(1 for c in self._mappings.values() if c.is_valid)
        total_ads = sum(c.ad_count for c in self._mappings.values() if c.is_valid)

        strategies: Dict[str, int] = defaultdict(int)
        orders: Dict[str, int] = defaultdict(int)
        for config in self._mappings.values():
            strategies[config.mapping_strategy.value] += 1
            orders[config.execution_order.value] += 1

        return {
            'total_mappings': total,
            'valid_mappings': valid,
            'invalid_mappings': total - valid,
            'total_ads': total_ads,
            'average_ads_per_mapping': total_ads / total if total else 0.0,
            'mapping_strategies': dict(strategies),
            'execution_orders': dict(orders),
        }

    # ============== Import / export ==============

    def export_mappings(self, original_url: Optional[str] = None) -> str:
        if original_url is not None:
            config = self._mappings.get(original_url)
            if config is None:
                raise ValidationError(f"No mapping configuration found for URL: {original_url}")
            return json.dumps(config.to_dict(), indent=2)
        return json.dumps([c.to_dict() for c in self._mappings.values()], indent=2)

    def import_mappings(self, payload: str) -> List[AdMappingConfig]:
        """Accepts one exported config or a list of them; each is re-validated."""
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Failed to import mapping configuration: {e}")

        items = data if isinstance(data, list) else [data]
        imported = []
        for item in items:
            try:
                config = AdMappingConfig.from_dict(item)
            except (KeyError, ValueError, TypeError) as e:
                raise ValidationError(f"Failed to import mapping configuration: {e}")
            imported.append(self.configure_ad_mapping(config))
        return imported
