"""
Base storage interface for incidents and alert rules.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple


class IncidentStatus:
    """Incident status ordinals"""
    OPEN = 0          # Breach observed, not yet handled
    ACKNOWLEDGED = 1  # Someone is on it, still open
    RESOLVED = 2      # Metric back within bounds

    LABELS = {OPEN: 'open', ACKNOWLEDGED: 'acknowledged', RESOLVED: 'resolved'}


class Severity:
    """Evaluation result and incident severity ordinals"""
    NORMAL = 0
    WARNING = 1
    CRITICAL = 2

    LABELS = {NORMAL: 'normal', WARNING: 'warning', CRITICAL: 'critical'}

    @classmethod
    def label(cls, value: int) -> str:
        return cls.LABELS.get(value, str(value))


@dataclass
class Incident:
    """One occurrence of a rule breach on a host"""
    alerts_id: int
    host_uuid: str
    hostname: str
    cid: str
    severity: int
    started_at: datetime
    updated_at: datetime
    result: str = ""
    status: int = IncidentStatus.OPEN
    resolved_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'id': self.id,
            'result': self.result,
            'started_at': self.started_at.isoformat(timespec='microseconds'),
            'updated_at': self.updated_at.isoformat(timespec='microseconds'),
            'resolved_at': self.resolved_at.isoformat(timespec='microseconds') if self.resolved_at else None,
            'host_uuid': self.host_uuid,
            'hostname': self.hostname,
            'status': self.status,
            'severity': self.severity,
            'alerts_id': self.alerts_id,
            'cid': self.cid,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Incident':
        """Create Incident from dictionary"""
        def parse_time(value):
            if isinstance(value, str):
                return datetime.fromisoformat(value)
            return value

        return cls(
            id=data.get('id'),
            result=data.get('result') or "",
            started_at=parse_time(data['started_at']),
            updated_at=parse_time(data['updated_at']),
            resolved_at=parse_time(data.get('resolved_at')),
            host_uuid=data['host_uuid'],
            hostname=data.get('hostname') or "",
            status=data['status'],
            severity=data['severity'],
            alerts_id=data['alerts_id'],
            cid=data['cid'],
        )


@dataclass
class IncidentJoined:
    """Incident paired with its originating rule (None once the rule is deleted)"""
    incident: Incident
    alert: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self.incident)
        data['alert'] = self.alert.to_dict() if self.alert is not None else None
        return data


class BaseStorage(ABC):
    """Abstract base class for incident and rule storage backends"""

    retention_days = 30

    @abstractmethod
    def save_incident(self, incident: Incident) -> Incident:
        """
        Insert a new incident.

        Args:
            incident: Incident to save (id is assigned by storage)

        Returns:
            The incident with its id set

        Raises:
            DuplicateOpenIncident: If an open incident exists for the same rule and host
            StorageError: On backend failure
        """
        pass

    @abstractmethod
    def get_incident(self, incident_id: int) -> Optional[Incident]:
        """
        Retrieve an incident by id.

        Returns:
            Incident instance or None if not found
        """
        pass

    @abstractmethod
    def get_open_incident(self, alerts_id: int, host_uuid: str) -> Optional[Incident]:
        """
        Get the open incident of a rule on a host.

        Returns:
            Incident instance or None if no incident is open
        """
        pass

    @abstractmethod
    def get_open_incidents(self, host_uuid: Optional[str] = None) -> List[Incident]:
        """
        Get every open incident, optionally for one host.

        Returns:
            List of open Incident instances
        """
        pass

    @abstractmethod
    def update_incident(self, incident_id: int, changes: Dict[str, Any],
                        open_only: bool = False) -> Optional[Incident]:
        """
        Update fields of an incident.

        Args:
            incident_id: Incident identifier
            changes: Field name to new value (datetimes allowed)
            open_only: Only update the incident while it is unresolved

        Returns:
            Updated incident or None if no row was updated
        """
        pass

    @abstractmethod
    def get_incidents_by_host(self, host_uuid: str, size: int = 50, page: int = 0) -> List[Incident]:
        """
        Page through a host's incidents, most recently updated first.

        Returns:
            List of Incident instances
        """
        pass

    @abstractmethod
    def count_incidents(self, host_uuid: str) -> int:
        """Count every incident of a host"""
        pass

    @abstractmethod
    def cleanup_old_incidents(self, days: int) -> int:
        """
        Delete resolved incidents older than specified days.

        Returns:
            Number of incidents deleted
        """
        pass

    @abstractmethod
    def save_rule(self, rule: Dict[str, Any]) -> None:
        """
        Insert or replace an alert rule.

        Args:
            rule: Rule in its row shape (AlertRule.to_dict())
        """
        pass

    @abstractmethod
    def delete_rule(self, rule_id: int) -> bool:
        """Delete an alert rule; False if it was not stored"""
        pass

    @abstractmethod
    def get_rules(self) -> List[Dict[str, Any]]:
        """Every stored alert rule in its row shape"""
        pass

    @abstractmethod
    def record_rule_install(self, host_uuid: str, name: str) -> None:
        """Remember that a template rule was bound to a host"""
        pass

    @abstractmethod
    def get_rule_installs(self) -> Set[Tuple[str, str]]:
        """(host_uuid, name) pairs of every template rule ever installed"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection and cleanup resources"""
        pass
