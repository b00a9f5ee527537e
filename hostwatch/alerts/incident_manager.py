"""
Incident lifecycle manager.

Turns breach/resolve signals from the evaluator into incident rows and is
the only writer of incident status and resolution. Open incidents are
cached per host so that each host worker only touches its own partition.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from hostwatch.alerts.alert_rule import AlertRule
from hostwatch.alerts.channels.base_channel import BaseChannel, IncidentEvent
from hostwatch.alerts.storage.base_storage import (
    BaseStorage, Incident, IncidentJoined, IncidentStatus, Severity,
)
from hostwatch.errors import DuplicateOpenIncident
from hostwatch.samples.models import Host

logger = logging.getLogger(__name__)


class IncidentManager:
    """Manages incident lifecycle and notifications"""

    def __init__(self, config: Dict, storage: BaseStorage, registry=None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize incident manager.

        Args:
            config: Notifications configuration dict
            storage: Storage backend for incidents
            registry: AlertRegistry used to join incidents with their rule
            clock: Source of incident timestamps
        """
        self.config = config
        self.storage = storage
        self.registry = registry
        self.clock = clock

        # host_uuid -> {alerts_id: open Incident}
        self._open: Dict[str, Dict[int, Incident]] = {}
        self._partition_lock = threading.Lock()

        self.channels = self._init_channels()

        self._restore_open_incidents()

        logger.info("Incident manager initialized")

    def _init_channels(self) -> Dict[str, BaseChannel]:
        """Initialize notification channels based on config"""
        channels = {}
        channel_config = self.config.get('channels', {})

        if channel_config.get('slack', {}).get('enabled', False):
            from hostwatch.alerts.channels.slack_channel import SlackChannel
            channels['slack'] = SlackChannel(channel_config['slack'])
            logger.info("Slack channel initialized")

        if channel_config.get('webhook', {}).get('enabled', False):
            from hostwatch.alerts.channels.webhook_channel import WebhookChannel
            channels['webhook'] = WebhookChannel(channel_config['webhook'])
            logger.info("Webhook channel initialized")

        if not channels:
            logger.warning("No notification channels enabled")

        return channels

    def _restore_open_incidents(self):
        """Load open incidents from storage into the per-host cache"""
        open_incidents = self.storage.get_open_incidents()
        for incident in open_incidents:
            self._partition(incident.host_uuid)[incident.alerts_id] = incident

        logger.info(f"Restored {len(open_incidents)} open incidents from storage")

    def _partition(self, host_uuid: str) -> Dict[int, Incident]:
        with self._partition_lock:
            return self._open.setdefault(host_uuid, {})

    def _find_open(self, alerts_id: int, host_uuid: str) -> Optional[Incident]:
        partition = self._partition(host_uuid)
        incident = partition.get(alerts_id)
        if incident is not None and not incident.is_open:
            partition.pop(alerts_id, None)
            incident = None
        if incident is None:
            incident = self.storage.get_open_incident(alerts_id, host_uuid)
            if incident is not None:
                partition[alerts_id] = incident
        return incident

    def on_breach(self, rule: AlertRule, host: Host, severity: int, result: str = "") -> Incident:
        """
        Record that a rule is breached on a host.

        Opens an incident if none is open for the pair, otherwise updates the
        open one when the severity changed. Repeated signals with the same
        severity are no-ops.

        Args:
            rule: Breached rule
            host: Host the rule was evaluated on
            severity: Severity.WARNING or Severity.CRITICAL
            result: Human readable evaluation summary

        Returns:
            The open incident
        """
        if severity not in (Severity.WARNING, Severity.CRITICAL):
            raise ValueError(f"Invalid breach severity: {severity}")

        partition = self._partition(host.uuid)
        incident = self._find_open(rule.id, host.uuid)
        now = self.clock()

        if incident is None:
            incident = Incident(
                alerts_id=rule.id,
                host_uuid=host.uuid,
                hostname=host.hostname or rule.hostname,
                cid=rule.cid,
                severity=severity,
                started_at=now,
                updated_at=now,
                result=result,
                status=IncidentStatus.OPEN,
            )
            try:
                self.storage.save_incident(incident)
            except DuplicateOpenIncident:
                # Another writer opened it first; continue with theirs
                incident = self.storage.get_open_incident(rule.id, host.uuid)
                if incident is None:
                    raise
                partition[rule.id] = incident
                logger.debug(f"Incident for rule {rule.id} on {host.uuid} was opened concurrently")
            else:
                partition[rule.id] = incident
                logger.info(f"Incident opened: {incident.id} ({rule.name} on {host.hostname}, "
                            f"{Severity.label(severity)})")
                self._notify(incident, rule, IncidentEvent.OPENED)
                return incident

        if incident.severity == severity:
            return incident

        changes = {'severity': severity, 'updated_at': now, 'result': result}
        if severity > incident.severity:
            # Escalation needs attention again even if acknowledged
            changes['status'] = IncidentStatus.OPEN

        updated = self.storage.update_incident(incident.id, changes, open_only=True)
        if updated is None:
            partition.pop(rule.id, None)
            logger.warning(f"Incident {incident.id} is no longer open, reopening")
            return self.on_breach(rule, host, severity, result)

        partition[rule.id] = updated
        logger.info(f"Incident {updated.id} severity changed: "
                    f"{Severity.label(incident.severity)} -> {Severity.label(severity)}")
        self._notify(updated, rule, IncidentEvent.SEVERITY_CHANGED)
        return updated

    def on_resolve(self, rule: AlertRule, host: Host) -> Optional[Incident]:
        """
        Resolve the open incident of a rule on a host.

        No-op when nothing is open, so repeated calls are harmless.

        Returns:
            The resolved incident, or None if nothing was open
        """
        partition = self._partition(host.uuid)
        incident = self._find_open(rule.id, host.uuid)

        if incident is None:
            logger.debug(f"No open incident to resolve for rule {rule.id} on {host.uuid}")
            return None

        now = self.clock()
        resolved = self.storage.update_incident(incident.id, {
            'resolved_at': now,
            'updated_at': now,
            'status': IncidentStatus.RESOLVED,
        }, open_only=True)
        partition.pop(rule.id, None)

        if resolved is None:
            logger.warning(f"Incident {incident.id} was no longer open at resolution")
            return None

        logger.info(f"Incident resolved: {resolved.id} ({rule.name} on {host.hostname})")

        if self.config.get('send_resolved_notifications', False):
            self._notify(resolved, rule, IncidentEvent.RESOLVED)

        return resolved

    def acknowledge(self, incident_id: int) -> Optional[Incident]:
        """
        Acknowledge an open incident.

        Returns:
            The incident (unchanged if already resolved), or None if unknown
        """
        incident = self.storage.get_incident(incident_id)
        if incident is None:
            logger.warning(f"Incident not found: {incident_id}")
            return None

        if not incident.is_open or incident.status == IncidentStatus.ACKNOWLEDGED:
            return incident

        acknowledged = self.storage.update_incident(incident_id, {
            'status': IncidentStatus.ACKNOWLEDGED,
            'updated_at': self.clock(),
        }, open_only=True)
        if acknowledged is None:
            # Resolved between the read and the write
            logger.info(f"Incident {incident_id} resolved before acknowledgement")
            return self.storage.get_incident(incident_id)

        partition = self._partition(acknowledged.host_uuid)
        cached = partition.get(acknowledged.alerts_id)
        if cached is not None and cached.id == acknowledged.id:
            partition[acknowledged.alerts_id] = acknowledged
        logger.info(f"Incident acknowledged: {incident_id}")
        return acknowledged

    def current_severity(self, alerts_id: int, host_uuid: str) -> int:
        """Severity of the open incident for the pair, or Severity.NORMAL"""
        incident = self._find_open(alerts_id, host_uuid)
        return incident.severity if incident is not None else Severity.NORMAL

    def _notify(self, incident: Incident, rule: AlertRule, event: str) -> None:
        """Send an incident event through every configured channel"""
        for channel_name, channel in self.channels.items():
            try:
                if not channel.send(incident, rule, event):
                    logger.error(f"Failed to send {event} notification via {channel_name}")
            except Exception as e:
                logger.error(f"Error sending notification via {channel_name}: {e}", exc_info=True)

    def get_incident(self, incident_id: int) -> Optional[Incident]:
        """Get an incident by id"""
        return self.storage.get_incident(incident_id)

    def list_incidents(self, host_uuid: str, size: int = 50, page: int = 0) -> List[Incident]:
        """Page through a host's incidents, most recently updated first"""
        return self.storage.get_incidents_by_host(host_uuid, size, page)

    def count_incidents(self, host_uuid: str) -> int:
        """Count a host's incidents"""
        return self.storage.count_incidents(host_uuid)

    def list_joined(self, host_uuid: str, size: int = 50, page: int = 0) -> List[IncidentJoined]:
        """Page through a host's incidents paired with their rule"""
        return [
            IncidentJoined(
                incident=incident,
                alert=self.registry.get(incident.alerts_id) if self.registry is not None else None,
            )
            for incident in self.list_incidents(host_uuid, size, page)
        ]

    def get_open_incident_count(self) -> int:
        """Get count of currently open incidents"""
        with self._partition_lock:
            partitions = list(self._open.values())
        return sum(len(partition) for partition in partitions)

    def get_incidents_by_severity(self) -> Dict[str, int]:
        """Get open incident counts by severity"""
        with self._partition_lock:
            partitions = list(self._open.values())

        severity_counts = defaultdict(int)
        for partition in partitions:
            for incident in list(partition.values()):
                severity_counts[Severity.label(incident.severity)] += 1
        return dict(severity_counts)

    def cleanup_old_incidents(self) -> int:
        """Cleanup old resolved incidents from storage"""
        retention_days = self.storage.retention_days
        deleted_count = self.storage.cleanup_old_incidents(retention_days)
        if deleted_count > 0:
            logger.info(f"Cleaned up {deleted_count} old incidents")
        return deleted_count

    def shutdown(self) -> None:
        """Shutdown incident manager and cleanup resources"""
        logger.info("Shutting down incident manager")

        self.storage.close()

        with self._partition_lock:
            self._open.clear()
