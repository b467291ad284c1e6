"""
Failure alerts for scheduled backups.

Alerts are posted to a Slack-compatible incoming webhook. Delivery problems
raise AlertDeliveryError; callers log it and carry on.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class AlertDeliveryError(Exception):
    """Raised when a webhook alert cannot be delivered."""
    pass


@dataclass
class AlertEvent:
    """A scheduled-backup failure. Never persisted."""

    type: str
    error: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WebhookAlertSink:
    """
    Posts AlertEvents to a webhook URL.
    """

    def __init__(self, url: str, server_name: str = 'dbsnap-api', timeout: float = 10.0,
                 client: Optional[httpx.Client] = None):
        """
        Initialize webhook sink.

        Args:
            url: Webhook URL
            server_name: Server identity included in every alert
            timeout: Request timeout in seconds
            client: Optional preconfigured httpx client
        """
        self.url = url
        self.server_name = server_name
        self.timeout = timeout
        self._client = client

    def build_payload(self, event: AlertEvent) -> dict:
        return {
            'text': 'Database Backup Failed',
            'attachments': [{
                'color': 'danger',
                'fields': [
                    {'title': 'Backup Type', 'value': event.type, 'short': True},
                    {'title': 'Error', 'value': event.error, 'short': False},
                    {'title': 'Timestamp', 'value': event.timestamp.isoformat(), 'short': True},
                    {'title': 'Server', 'value': self.server_name, 'short': True},
                ]
            }]
        }

    def send(self, event: AlertEvent):
        """
        Deliver one alert.

        Raises:
            AlertDeliveryError: On transport errors or non-2xx responses
        """
        payload = self.build_payload(event)

        try:
            if self._client is not None:
                response = self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise AlertDeliveryError(f"Webhook request failed: {e}") from e

        if not response.is_success:
            raise AlertDeliveryError(f"Webhook request failed: {response.status_code}")

        logger.info(f"Backup failure webhook sent successfully ({event.type})")
