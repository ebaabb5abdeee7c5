"""
Notification Tests
Execution reports over webhooks and SMTP, best-effort delivery.
"""

import smtplib
from datetime import timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from changelink.notifications import ExecutionReport, NotificationConfig, NotificationManager


@pytest.fixture
def report():
    return ExecutionReport(
        execution_id="exec_1700000000000_abc123xyz",
        configuration_id="config_test",
        configuration_name="Spring promo",
        status="COMPLETED",
        duration=72.5,
        total_links=2,
        successful_links=2,
        ads_updated=1,
        ads_failed=1,
        success_rate=1.0,
        errors=["Account 1234567890: 1/2 ad updates failed"],
    )


def manager(**settings):
    fields = {
        "slack_webhook_url": "",
        "discord_webhook_url": "",
        "webhook_url": "",
        "smtp_host": "",
        "smtp_from": "",
        "email_to": "",
    }
    fields.update(settings)
    return NotificationManager(NotificationConfig(**fields))


@pytest.mark.unit
class TestExecutionReport:

    def test_text_summary(self, report):
        text = report.to_text()

        assert text.splitlines()[0] == "[ChangeLink] Spring promo: COMPLETED (2/2 links, 1 ads updated)"
        assert "Ad updates failed: 1" in text
        assert "  - Account 1234567890: 1/2 ad updates failed" in text

    def test_timestamp_is_timezone_aware(self, report):
        assert report.timestamp.tzinfo == timezone.utc
        assert report.to_dict()["timestamp"].endswith("+00:00")

    def test_payload_has_no_credentials(self, report):
        payload = report.to_dict()

        assert payload["execution_id"] == report.execution_id
        assert "recipient" not in payload


@pytest.mark.unit
class TestNotificationManager:

    @pytest.mark.asyncio
    async def test_nothing_configured_sends_nothing(self, report):
        notifier = manager()

        assert not notifier.enabled()
        assert await notifier.send_execution_report(report) == {}

    @pytest.mark.asyncio
    async def test_webhooks_receive_report(self, report):
        notifier = manager(slack_webhook_url="https://hooks.slack.test/x", webhook_url="https://ops.test/hook")

        with patch.object(notifier, "_post_json", AsyncMock(return_value=True)) as post:
            delivered = await notifier.send_execution_report(report)

        assert delivered == {"slack": True, "webhook": True}
        payloads = {call.args[0]: call.args[1] for call in post.call_args_list}
        assert payloads["https://hooks.slack.test/x"]["text"].startswith("[ChangeLink] Spring promo")
        assert payloads["https://ops.test/hook"] == report.to_dict()

    @pytest.mark.asyncio
    async def test_failed_channel_is_reported_not_raised(self, report):
        notifier = manager(discord_webhook_url="https://discord.test/x")

        with patch.object(notifier, "_post_json", AsyncMock(side_effect=RuntimeError("boom"))):
            delivered = await notifier.send_execution_report(report)

        assert delivered == {"discord": False}

    @pytest.mark.asyncio
    async def test_email_uses_report_recipient(self, report):
        report.recipient = "ops@example.com"
        notifier = manager(smtp_host="smtp.example.com", smtp_from="changelink@example.com")

        with patch("changelink.notifications.smtplib.SMTP") as smtp:
            delivered = await notifier.send_execution_report(report)

        assert delivered == {"email": True}
        message = smtp.return_value.__enter__.return_value.send_message.call_args.args[0]
        assert message["To"] == "ops@example.com"
        assert message["Subject"] == report.headline

    @pytest.mark.asyncio
    async def test_smtp_failure_returns_false(self):
        notifier = manager(smtp_host="smtp.example.com", smtp_from="changelink@example.com")

        with patch("changelink.notifications.smtplib.SMTP", MagicMock(side_effect=smtplib.SMTPConnectError(421, "busy"))):
            assert await notifier.send_email("ops@example.com", "subject", "body") is False
