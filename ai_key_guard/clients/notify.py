"""
Notification channels.
"""

import logging
import os
from typing import Optional

import httpx

from .base import NotificationChannel

logger = logging.getLogger(__name__)

SLACK_WEBHOOK_ENV = "SLACK_WEBHOOK_URL"


class SlackWebhookChannel(NotificationChannel):
    """Posts summaries to a Slack incoming webhook."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.webhook_url = webhook_url or os.environ.get(SLACK_WEBHOOK_ENV)
        if not self.webhook_url:
            raise ValueError(f"{SLACK_WEBHOOK_ENV} is required for Slack notifications")
        self._timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, title: str, body: str) -> bool:
        message = {
            "text": title,
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": title[:150]}},
                {"type": "section", "text": {"type": "mrkdwn", "text": body[:3000]}},
            ],
        }
        try:
            response = self._client.post(self.webhook_url, json=message, timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.warning("Slack notification failed: %s", e)
            return False
        if response.status_code != 200:
            logger.warning("Slack notification rejected with %s", response.status_code)
            return False
        return True


class LogChannel(NotificationChannel):
    """Writes summaries to the log. Used when no webhook is configured."""

    def __init__(self, level: int = logging.WARNING):
        self.level = level

    def send(self, title: str, body: str) -> bool:
        logger.log(self.level, "%s\n%s", title, body)
        return True
