"""
Storage backends for incidents and alert rules.
"""

from hostwatch.alerts.storage.base_storage import (
    BaseStorage, Incident, IncidentJoined, IncidentStatus, Severity,
)

__all__ = ['BaseStorage', 'Incident', 'IncidentJoined', 'IncidentStatus', 'Severity']
