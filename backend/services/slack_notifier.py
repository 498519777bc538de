"""
Slack Notifier Service

Sends operator alerts to Slack. Used when a parlay is marked
RESOLUTION_FAILED and needs manual remediation.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

import requests

logger = logging.getLogger(__name__)


class SlackNotifier:
    """Send alerts to Slack"""

    COLORS = {
        "CRITICAL": "#FF0000",
        "WARNING": "#FFA500",
        "INFO": "#0000FF"
    }

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.enabled = bool(webhook_url)
        self.timeout = timeout

    def build_payload(
        self,
        severity: str,
        title: str,
        message: str,
        details: Optional[Dict] = None
    ) -> Dict:
        payload = {
            "attachments": [{
                "color": self.COLORS.get(severity, "#808080"),
                "title": f"[{severity}] {title}",
                "text": message,
                "fields": [],
                "footer": "Streak Resolution Engine",
                "ts": int(datetime.now().timestamp())
            }]
        }

        if details:
            for key, value in details.items():
                payload["attachments"][0]["fields"].append({
                    "title": key,
                    "value": str(value),
                    "short": True
                })
        return payload

    def send_alert(
        self,
        severity: str,
        title: str,
        message: str,
        details: Optional[Dict] = None
    ) -> bool:
        """Send alert to Slack. Returns True when Slack accepted it."""
        if not self.enabled:
            logger.warning(f"[SLACK DISABLED] {severity}: {title} - {message}")
            return False

        payload = self.build_payload(severity, title, message, details)
        try:
            resp = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Slack notification error: {e}")
            return False

        if resp.status_code != 200:
            logger.error(f"Slack notification failed: {resp.status_code}")
            return False
        return True
