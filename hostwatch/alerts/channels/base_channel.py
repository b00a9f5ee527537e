"""
Base notification channel interface.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
import logging

from hostwatch.alerts.storage.base_storage import Incident, Severity

logger = logging.getLogger(__name__)


class IncidentEvent:
    """Lifecycle events that trigger notifications"""
    OPENED = 'opened'
    SEVERITY_CHANGED = 'severity_changed'
    RESOLVED = 'resolved'


class BaseChannel(ABC):
    """Abstract base class for notification channels"""

    @abstractmethod
    def send(self, incident: Incident, rule, event: str) -> bool:
        """
        Send incident notification.

        Args:
            incident: Incident the event happened to
            rule: AlertRule that produced the incident (None if deleted)
            event: One of IncidentEvent

        Returns:
            True if notification sent successfully, False otherwise
        """
        pass

    def format_message(self, incident: Incident, rule, event: str) -> Dict[str, str]:
        """
        Format notification text.

        The rule's info text is used as description when set.

        Returns:
            Dict with 'summary' and 'description' keys
        """
        rule_name = rule.name if rule is not None else f"rule {incident.alerts_id}"
        severity = Severity.label(incident.severity)

        if event == IncidentEvent.RESOLVED:
            summary = f"Resolved: {rule_name} on {incident.hostname}"
        elif event == IncidentEvent.SEVERITY_CHANGED:
            summary = f"{severity.upper()}: {rule_name} on {incident.hostname} changed severity"
        else:
            summary = f"{severity.upper()}: {rule_name} on {incident.hostname}"

        template: Optional[str] = rule.info if rule is not None and rule.info else None
        if template:
            description = self._substitute_template(template, incident, severity)
        else:
            description = incident.result

        return {
            'summary': summary,
            'description': description,
        }

    def _substitute_template(self, template: str, incident: Incident, severity: str) -> str:
        """
        Substitute template variables.

        Supports:
            {{ hostname }} - Host name
            {{ severity }} - Incident severity
            {{ result }} - Evaluation summary
        """
        result = template.replace('{{ hostname }}', incident.hostname)
        result = result.replace('{{ severity }}', severity)
        result = result.replace('{{ result }}', incident.result)
        return result
