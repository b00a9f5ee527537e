"""
Notification channels for incident events.
"""

from hostwatch.alerts.channels.base_channel import BaseChannel, IncidentEvent

__all__ = ['BaseChannel', 'IncidentEvent']
