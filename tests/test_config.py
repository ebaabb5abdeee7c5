"""
Configuration, logging and entry point tests.
"""

import json
import logging

import pytest
import yaml

import main
from changelink.config import ChangeLinkConfig, _env_optional_float
from changelink.logging_config import (
    AUDIT_LOGGER,
    PERFORMANCE_LOGGER,
    ColoredFormatter,
    log_audit,
    log_performance,
    setup_logging,
)


# === Settings ===

@pytest.mark.unit
class TestChangeLinkConfig:

    def test_developer_token_is_required_for_live_runs(self):
        cfg = ChangeLinkConfig(GOOGLE_ADS_DEVELOPER_TOKEN=None, WORKFLOW_DRY_RUN=False)

        assert cfg.validate() == ["GOOGLE_ADS_DEVELOPER_TOKEN"]

    def test_dry_run_needs_no_developer_token(self):
        cfg = ChangeLinkConfig(GOOGLE_ADS_DEVELOPER_TOKEN=None, WORKFLOW_DRY_RUN=True)

        assert cfg.validate() == []

    def test_jitter_range(self):
        cfg = ChangeLinkConfig(EXECUTION_JITTER_MIN_SECONDS=2.0, EXECUTION_JITTER_MAX_SECONDS=4.0)

        assert cfg.jitter_range == (2.0, 4.0)

    def test_workflow_timeout_is_optional(self, monkeypatch):
        monkeypatch.delenv("WORKFLOW_TIMEOUT_SECONDS", raising=False)
        assert _env_optional_float("WORKFLOW_TIMEOUT_SECONDS") is None

        monkeypatch.setenv("WORKFLOW_TIMEOUT_SECONDS", "7200")
        assert _env_optional_float("WORKFLOW_TIMEOUT_SECONDS") == 7200.0

    def test_check_environment_reports_missing(self, capsys):
        cfg = ChangeLinkConfig(ADSPOWER_API_URL="", GOOGLE_ADS_DEVELOPER_TOKEN="token")

        assert main.check_environment(cfg) is False
        assert "ADSPOWER_API_URL" in capsys.readouterr().out

    def test_heuristic_lists_come_from_settings(self):
        cfg = ChangeLinkConfig(KNOWN_DESTINATION_DOMAINS=["shop.example"], TRACKING_PARAMETERS=[], INTERMEDIARY_HOST_KEYWORDS=[])

        heuristic = main.build_heuristic(cfg)

        assert heuristic.destination_domains == ("shop.example",)
        assert "clickid" in heuristic.tracking_parameters


# === Entry Point ===

@pytest.mark.unit
class TestLoadConfiguration:

    def test_yaml_configuration(self, tmp_path):
        path = tmp_path / "tracking.yaml"
        path.write_text(yaml.safe_dump({
            "id": "config_spring",
            "name": "Spring promo",
            "environment_id": "k1abc",
            "original_links": ["https://aff.example/go?id=1"],
            "repeat_count": 2,
            "ads_accounts": [{
                "customer_id": "123-456-7890",
                "credentials": {"client_id": "cid", "client_secret": "secret", "refresh_token": "rt"},
            }],
            "ad_mapping": {
                "https://aff.example/go?id=1": [
                    {"ad_id": 111, "execution_number": 1},
                    {"ad_id": 222, "execution_number": 2},
                ],
            },
        }))

        configuration = main.load_configuration(str(path))

        assert configuration.id == "config_spring"
        assert configuration.ads_accounts[0].customer_id == "1234567890"
        assert [e.ad_id for e in configuration.ad_mapping["https://aff.example/go?id=1"]] == ["111", "222"]
        assert configuration.validate().valid


# === Logging ===

@pytest.mark.unit
class TestStructuredLogging:

    def test_audit_entry(self, caplog):
        with caplog.at_level(logging.INFO, logger=AUDIT_LOGGER):
            log_audit("ad_update", "ad:111", {"final_urls": []}, {"final_urls": ["https://x.com"]}, True, customer_id="123")

        record = caplog.records[-1]
        assert record.message.startswith("AUDIT ")
        entry = json.loads(record.message[len("AUDIT "):])
        assert entry["resource"] == "ad:111"
        assert entry["details"] == {"customer_id": "123"}

    def test_failed_audit_is_a_warning(self, caplog):
        with caplog.at_level(logging.INFO, logger=AUDIT_LOGGER):
            log_audit("ad_update", "ad:111", success=False, error="quota")

        assert caplog.records[-1].levelno == logging.WARNING

    def test_performance_entry(self, caplog):
        with caplog.at_level(logging.INFO, logger=PERFORMANCE_LOGGER):
            log_performance("workflow_execution", 1234.5678, links=2)

        entry = json.loads(caplog.records[-1].message[len("PERF "):])
        assert entry == {"operation": "workflow_execution", "duration_ms": 1234.57, "resources": {"links": 2}}

    def test_setup_logging_is_idempotent(self, tmp_path):
        logger = setup_logging("changelink_test", log_dir=tmp_path, level="debug")
        again = setup_logging("changelink_test", log_dir=tmp_path)

        try:
            assert logger is again
            assert logger.level == logging.DEBUG
            assert len(logger.handlers) == 3
            assert (tmp_path / "changelink_test.log").exists()

            log_audit("configuration_saved", "configuration:config_a")
            assert '"resource": "configuration:config_a"' in (tmp_path / "changelink_test_audit.log").read_text()
        finally:
            structured = logging.getLogger(AUDIT_LOGGER).handlers[-1]
            for channel in (AUDIT_LOGGER, PERFORMANCE_LOGGER):
                logging.getLogger(channel).removeHandler(structured)
            structured.close()
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)

    def test_console_colors_do_not_leak_into_files(self):
        formatter = ColoredFormatter('%(levelname)s %(message)s')
        record = logging.makeLogRecord({"levelno": logging.ERROR, "levelname": "ERROR", "msg": "boom"})

        assert formatter.format(record) == "\033[31mERROR\033[0m boom"
        assert record.levelname == "ERROR"


# === Models ===

@pytest.mark.unit
class TestTrackingConfigurationValidation:

    def test_duplicate_execution_numbers(self, sample_configuration):
        sample_configuration.ad_mapping["https://aff.example/go?id=1"][1].execution_number = 1

        result = sample_configuration.validate()

        assert not result.valid
        assert any("Duplicate execution number 1" in e for e in result.errors)

    def test_round_trip_through_dict(self, sample_configuration):
        restored = type(sample_configuration).from_dict(sample_configuration.to_dict())

        assert restored.id == sample_configuration.id
        assert restored.ad_mapping.keys() == sample_configuration.ad_mapping.keys()
