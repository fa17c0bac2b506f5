"""
Budget alert dispatcher.

Writes the alert record to the de-duplication ledger first, then fans the
alert out to every configured channel. Supported channels: the Python
logger, webhook (JSON POST, optionally HMAC-signed) and email over SMTP.

A channel failure is logged and isolated: it never rolls back the ledger
write and never prevents delivery on the other channels.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Sequence

import httpx

from spend_governor.core.aggregator import month_key
from spend_governor.core.status import BudgetStatus
from spend_governor.storage.models import AlertRecord, AlertSeverity, BudgetWindow
from spend_governor.storage.repository import GovernanceRepository

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("spend_governor.alerts")

WEBHOOK_TIMEOUT_SECONDS = 10
SIGNATURE_HEADER = "X-Spend-Governor-Signature"
TIMESTAMP_HEADER = "X-Spend-Governor-Timestamp"


def severity_for(threshold: int) -> AlertSeverity:
    if threshold >= 100:
        return AlertSeverity.EMERGENCY
    if threshold >= 90:
        return AlertSeverity.CRITICAL
    return AlertSeverity.WARNING


def build_alert(status: BudgetStatus, threshold: int, now: datetime) -> AlertRecord:
    """Compose the ledger record for a crossed monthly threshold."""
    scope = f"user {status.principal}" if status.principal else "system"
    lines = [
        f"Budget Alert: {threshold}% of {scope} monthly API budget used",
        "",
        "Current Spend:",
        f"- Hourly: ${status.spend.hourly:.2f} / ${status.limits.hourly:.2f}",
        f"- Daily: ${status.spend.daily:.2f} / ${status.limits.daily:.2f}",
        f"- Monthly: ${status.spend.monthly:.2f} / ${status.limits.monthly:.2f}",
        "",
        f"Projected Monthly: ${status.projected_monthly:.2f}",
        f"Days into month: {status.days_elapsed}",
    ]
    if status.reason:
        lines.extend(["", status.reason])

    return AlertRecord(
        severity=severity_for(threshold),
        threshold_crossed=threshold,
        window=BudgetWindow.MONTHLY,
        principal=status.principal,
        message="\n".join(lines),
        timestamp=now,
        period=month_key(now),
    )


def alert_payload(alert: AlertRecord, status: Optional[BudgetStatus] = None) -> Dict[str, Any]:
    return {
        "type": "cost_alert",
        "severity": alert.severity.value,
        "threshold": alert.threshold_crossed,
        "window": alert.window.value,
        "principal": alert.principal,
        "period": alert.period,
        "message": alert.message,
        "timestamp": alert.timestamp.isoformat(),
        "status": status.to_dict() if status is not None else None,
    }


class AlertChannel:
    """Base class for alert delivery channels."""

    name = "channel"

    async def deliver(self, alert: AlertRecord, status: Optional[BudgetStatus] = None) -> None:
        raise NotImplementedError


class LogChannel(AlertChannel):
    """Writes alerts to the ``spend_governor.alerts`` logger."""

    name = "log"

    _LEVELS = {
        AlertSeverity.WARNING: logging.WARNING,
        AlertSeverity.CRITICAL: logging.ERROR,
        AlertSeverity.EMERGENCY: logging.CRITICAL,
    }

    async def deliver(self, alert: AlertRecord, status: Optional[BudgetStatus] = None) -> None:
        alert_logger.log(self._LEVELS[alert.severity], "%s", alert.message)


def sign_payload(secret: str, timestamp: int, body: bytes) -> str:
    """HMAC-SHA256 over ``timestamp.body``."""
    signed_content = f"{timestamp}.".encode() + body
    digest = hmac.new(secret.encode(), signed_content, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class WebhookChannel(AlertChannel):
    """POSTs the alert as JSON (Slack, Zapier, Discord, ...)."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.secret = secret
        self._client = client
        self._timeout = timeout

    async def deliver(self, alert: AlertRecord, status: Optional[BudgetStatus] = None) -> None:
        body = json.dumps(alert_payload(alert, status), separators=(",", ":"), default=str).encode()
        headers = {"Content-Type": "application/json"}
        if self.secret:
            timestamp = int(datetime.now(timezone.utc).timestamp())
            headers[SIGNATURE_HEADER] = sign_payload(self.secret, timestamp, body)
            headers[TIMESTAMP_HEADER] = str(timestamp)

        if self._client is not None:
            response = await self._client.post(self.url, content=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self.url, content=body, headers=headers)
        response.raise_for_status()


class EmailChannel(AlertChannel):
    """Sends a subject/html/text email through an SMTP relay."""

    name = "email"

    def __init__(
        self,
        host: str,
        recipients: Sequence[str],
        sender: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
    ):
        if not recipients:
            raise ValueError("recipients is required and cannot be empty")
        self.host = host
        self.port = port
        self.recipients = list(recipients)
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def build_message(self, alert: AlertRecord, status: Optional[BudgetStatus] = None) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = (
            f"{alert.severity.value.upper()}: API Cost Alert - "
            f"{alert.threshold_crossed}% Budget Used"
        )
        message["From"] = self.sender
        message["To"] = ", ".join(self.recipients)
        message.set_content(alert.message)
        message.add_alternative(self._html(alert, status), subtype="html")
        return message

    @staticmethod
    def _html(alert: AlertRecord, status: Optional[BudgetStatus]) -> str:
        parts = [
            "<h2>API Cost Alert</h2>",
            f"<p><strong>Severity:</strong> {alert.severity.value.upper()}</p>",
            f"<p><strong>Budget Usage:</strong> {alert.threshold_crossed}% of monthly limit</p>",
        ]
        if status is not None:
            parts.extend([
                "<h3>Current Spending</h3>",
                "<ul>",
                f"<li>Hourly: ${status.spend.hourly:.2f} / ${status.limits.hourly:.2f}</li>",
                f"<li>Daily: ${status.spend.daily:.2f} / ${status.limits.daily:.2f}</li>",
                f"<li>Monthly: ${status.spend.monthly:.2f} / ${status.limits.monthly:.2f}</li>",
                "</ul>",
                f"<p><strong>Projected Monthly Cost:</strong> ${status.projected_monthly:.2f}</p>",
                f"<p><strong>Hard Stop Enabled:</strong> {'YES' if status.hard_stop else 'NO'}</p>",
            ])
            if status.reason:
                parts.append(f"<p><strong>Status:</strong> {status.reason}</p>")
        return "\n".join(parts)

    async def deliver(self, alert: AlertRecord, status: Optional[BudgetStatus] = None) -> None:
        message = self.build_message(alert, status)
        await asyncio.to_thread(self._send, message)

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=WEBHOOK_TIMEOUT_SECONDS) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(message)


class AlertDispatcher:
    """Records alerts once and delivers them to all channels.

    Parameters
    ----------
    repository:
        Store holding the alert ledger.
    channels:
        Delivery channels; an empty list only records the alert.
    """

    def __init__(self, repository: GovernanceRepository, channels: Optional[List[AlertChannel]] = None):
        self._repository = repository
        self.channels: List[AlertChannel] = list(channels or [])

    async def send(self, alert: AlertRecord, status: Optional[BudgetStatus] = None) -> bool:
        """Record and deliver an alert.

        Args:
            alert: Alert to record and deliver
            status: Budget snapshot to attach to rich channels

        Returns:
            True if the alert was new and delivery was attempted, False if
            the ledger already held it
        """
        inserted = await asyncio.to_thread(self._repository.insert_alert_record, alert)
        if not inserted:
            logger.debug(
                "Alert %s%% for %s in %s already recorded",
                alert.threshold_crossed, alert.principal or "system", alert.period,
            )
            return False

        await asyncio.gather(*(self._deliver(channel, alert, status) for channel in self.channels))
        return True

    async def _deliver(self, channel: AlertChannel, alert: AlertRecord, status: Optional[BudgetStatus]) -> None:
        try:
            await channel.deliver(alert, status)
        except Exception:
            logger.exception("Failed to deliver budget alert via %s channel", channel.name)
