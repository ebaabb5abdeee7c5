#!/usr/bin/env python3
"""
Execution notifications: Slack/Discord/generic webhooks and optional SMTP email.

- Zero-config by default (nothing is sent when no channel is configured).
- Best-effort: a failed channel is logged and reported, never raised.
- Payloads carry counts and error messages only, never credentials.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import smtplib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


@dataclass
class NotificationConfig:
    slack_webhook_url: str = os.getenv("SLACK_WEBHOOK_URL", "")
    discord_webhook_url: str = os.getenv("DISCORD_WEBHOOK_URL", "")
    webhook_url: str = os.getenv("NOTIFICATION_WEBHOOK_URL", "")

    smtp_host: str = os.getenv("SMTP_HOST", "")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: str = os.getenv("SMTP_USERNAME", "")
    smtp_password: str = os.getenv("SMTP_PASSWORD", "")
    smtp_tls: bool = os.getenv("SMTP_TLS", "true").lower() == "true"
    smtp_from: str = os.getenv("SMTP_FROM", "")
    email_to: str = os.getenv("NOTIFICATION_EMAIL_TO", "")


@dataclass
class ExecutionReport:
    """Summary of one workflow execution, as delivered to humans."""
    execution_id: str
    configuration_id: str
    configuration_name: str
    status: str
    duration: float
    total_links: int = 0
    successful_links: int = 0
    failed_links: int = 0
    ads_updated: int = 0
    ads_failed: int = 0
    success_rate: float = 0.0
    errors: List[str] = field(default_factory=list)
    recipient: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def headline(self) -> str:
        return (
            f"[ChangeLink] {self.configuration_name or self.configuration_id}: {self.status} "
            f"({self.successful_links}/{self.total_links} links, {self.ads_updated} ads updated)"
        )

    def to_text(self) -> str:
        lines = [
            self.headline,
            f"Execution: {self.execution_id}",
            f"Duration: {self.duration:.1f}s",
            f"Success rate: {self.success_rate:.0%}",
        ]
        if self.ads_failed:
            lines.append(f"Ad updates failed: {self.ads_failed}")
        if self.errors:
            lines.append("Errors:")
            lines.extend(f"  - {e}" for e in self.errors[:10])
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "configuration_id": self.configuration_id,
            "configuration_name": self.configuration_name,
            "status": self.status,
            "duration": round(self.duration, 3),
            "total_links": self.total_links,
            "successful_links": self.successful_links,
            "failed_links": self.failed_links,
            "ads_updated": self.ads_updated,
            "ads_failed": self.ads_failed,
            "success_rate": self.success_rate,
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationManager:
    def __init__(self, config: Optional[NotificationConfig] = None):
        self.config = config or NotificationConfig()

    def enabled(self) -> bool:
        return bool(
            self.config.slack_webhook_url
            or self.config.discord_webhook_url
            or self.config.webhook_url
            or self.config.smtp_host
        )

    async def _post_json(self, url: str, payload: dict) -> bool:
        if not url:
            return False
        try:
            timeout = aiohttp.ClientTimeout(total=12)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as resp:
                    if 200 <= resp.status < 300:
                        return True
                    text = await resp.text()
                    logger.warning(f"[Notify] Webhook failed ({resp.status}): {text[:200]}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[Notify] Webhook error: {e}")
            return False

    async def send_execution_report(self, report: ExecutionReport) -> Dict[str, bool]:
        """Deliver the report on every configured channel; returns channel -> delivered."""
        text = report.to_text()
        channels: Dict[str, Any] = {}

        if self.config.slack_webhook_url:
            channels["slack"] = self._post_json(self.config.slack_webhook_url, {"text": text})
        if self.config.discord_webhook_url:
            channels["discord"] = self._post_json(self.config.discord_webhook_url, {"content": text[:2000]})
        if self.config.webhook_url:
            channels["webhook"] = self._post_json(self.config.webhook_url, report.to_dict())

        recipient = report.recipient or self.config.email_to
        if self.config.smtp_host and recipient:
            channels["email"] = self.send_email(recipient, report.headline, text)

        if not channels:
            logger.debug(f"[Notify] No channels configured, skipping report for {report.execution_id}")
            return {}

        outcomes = await asyncio.gather(*channels.values(), return_exceptions=True)
        delivered = {
            name: outcome is True
            for name, outcome in zip(channels, outcomes)
        }
        for name, outcome in zip(channels, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(f"[Notify] {name} channel raised: {outcome}")

        logger.info(f"[Notify] Report {report.execution_id}: {json.dumps(delivered)}")
        return delivered

    async def send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send a plain-text email via SMTP. Best-effort."""
        if not (self.config.smtp_host and self.config.smtp_from and to_email):
            return False

        msg = EmailMessage()
        msg["From"] = self.config.smtp_from
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body)

        def _send():
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=20) as s:
                if self.config.smtp_tls:
                    s.starttls()
                if self.config.smtp_username:
                    s.login(self.config.smtp_username, self.config.smtp_password)
                s.send_message(msg)

        try:
            await asyncio.to_thread(_send)
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"[Notify] Email send failed: {e}")
            return False
