"""
Slack notification channel using webhooks.
"""

import logging
from datetime import datetime
from typing import Dict

import requests

from hostwatch.alerts.channels.base_channel import BaseChannel, IncidentEvent
from hostwatch.alerts.storage.base_storage import Incident, Severity

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    Severity.WARNING: '#ff9900',
    Severity.CRITICAL: '#cc0000',
}
RESOLVED_COLOR = '#2eb886'


class SlackChannel(BaseChannel):
    """Slack notification channel via webhooks"""

    def __init__(self, config: Dict):
        """
        Initialize Slack channel.

        Args:
            config: Slack configuration dict with webhook_url
        """
        self.webhook_url = config['webhook_url']
        self.channel = config.get('channel', '#alerts')
        self.username = config.get('username', 'hostwatch')
        self.icon_emoji = config.get('icon_emoji', ':rotating_light:')
        self.timeout = config.get('timeout', 10)

        logger.info(f"Slack channel initialized (channel: {self.channel})")

    def send(self, incident: Incident, rule, event: str) -> bool:
        """Send Slack notification"""
        try:
            message_content = self.format_message(incident, rule, event)
            payload = self._create_slack_payload(incident, rule, event, message_content)

            response = requests.post(
                self.webhook_url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout
            )
            response.raise_for_status()

            logger.info(f"Slack notification sent for incident {incident.id} ({event})")
            return True

        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send Slack notification for incident {incident.id}: {e}")
            return False

    def _create_slack_payload(self, incident: Incident, rule, event: str,
                              message_content: Dict[str, str]) -> Dict:
        """Create Slack webhook payload"""
        if event == IncidentEvent.RESOLVED:
            color = RESOLVED_COLOR
        else:
            color = SEVERITY_COLORS.get(incident.severity, '#666666')

        fields = [
            {
                "title": "Severity",
                "value": Severity.label(incident.severity).upper(),
                "short": True
            },
            {
                "title": "Host",
                "value": incident.hostname or incident.host_uuid,
                "short": True
            },
        ]
        if rule is not None:
            fields.append({
                "title": "Lookup",
                "value": f"{rule.table}: {rule.lookup}",
                "short": True
            })
            fields.append({
                "title": "Thresholds",
                "value": f"warn {rule.warn} / crit {rule.crit} ({rule.direction})",
                "short": True
            })

        attachment = {
            "color": color,
            "title": message_content['summary'],
            "text": message_content['description'],
            "fields": fields,
            "footer": "hostwatch",
            "ts": int(datetime.now().timestamp()),
        }

        # Mention the channel when an incident goes critical
        text = ""
        if incident.severity == Severity.CRITICAL and event != IncidentEvent.RESOLVED:
            text = "<!channel> Critical incident"

        return {
            "channel": self.channel,
            "username": self.username,
            "icon_emoji": self.icon_emoji,
            "text": text,
            "attachments": [attachment]
        }
