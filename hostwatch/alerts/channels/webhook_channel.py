"""
Custom webhook notification channel.
"""

import logging
from datetime import datetime
from typing import Dict

import requests

from hostwatch.alerts.channels.base_channel import BaseChannel
from hostwatch.alerts.storage.base_storage import Incident, IncidentStatus, Severity

logger = logging.getLogger(__name__)


class WebhookChannel(BaseChannel):
    """Custom webhook notification channel"""

    def __init__(self, config: Dict):
        """
        Initialize webhook channel.

        Args:
            config: Webhook configuration dict with url, method, headers
        """
        self.url = config['url']
        self.method = config.get('method', 'POST').upper()
        self.headers = dict(config.get('headers') or {})
        self.timeout = config.get('timeout', 10)

        if self.method not in ('POST', 'PUT'):
            raise ValueError(f"Unsupported HTTP method: {self.method}")

        # Ensure Content-Type is set
        if 'Content-Type' not in self.headers:
            self.headers['Content-Type'] = 'application/json'

        logger.info(f"Webhook channel initialized (url: {self.url}, method: {self.method})")

    def send(self, incident: Incident, rule, event: str) -> bool:
        """Send webhook notification"""
        try:
            message_content = self.format_message(incident, rule, event)
            payload = self._create_webhook_payload(incident, rule, event, message_content)

            response = requests.request(
                self.method,
                self.url,
                json=payload,
                headers=self.headers,
                timeout=self.timeout
            )
            response.raise_for_status()

            logger.info(f"Webhook notification sent for incident {incident.id} ({event})")
            return True

        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send webhook notification for incident {incident.id}: {e}")
            return False

    def _create_webhook_payload(self, incident: Incident, rule, event: str,
                                message_content: Dict[str, str]) -> Dict:
        """Create webhook payload"""
        return {
            "event": event,
            "timestamp": datetime.now().isoformat(),
            "incident": {
                "id": incident.id,
                "alerts_id": incident.alerts_id,
                "host_uuid": incident.host_uuid,
                "hostname": incident.hostname,
                "cid": incident.cid,
                "status": IncidentStatus.LABELS.get(incident.status, incident.status),
                "severity": Severity.label(incident.severity),
                "result": incident.result,
                "started_at": incident.started_at.isoformat(),
                "resolved_at": incident.resolved_at.isoformat() if incident.resolved_at else None,
            },
            "alert": rule.to_dict() if rule is not None else None,
            "annotations": {
                "summary": message_content['summary'],
                "description": message_content['description'],
            }
        }
