"""Tests for SQLite storage backend"""

import pytest
from datetime import datetime, timedelta

from hostwatch.alerts.storage.base_storage import Incident, IncidentStatus, Severity
from hostwatch.errors import DuplicateOpenIncident


def make_incident(alerts_id=1, host_uuid="host-1", **overrides):
    now = datetime.now()
    values = dict(
        alerts_id=alerts_id,
        host_uuid=host_uuid,
        hostname="web-1",
        cid="cid-1",
        severity=Severity.WARNING,
        started_at=now,
        updated_at=now,
        result="cputimes.cuser = 85.00",
    )
    values.update(overrides)
    return Incident(**values)


class TestSQLiteStorage:
    """Test SQLite storage backend"""

    def test_save_and_get_incident(self, storage):
        """Test saving and retrieving an incident"""
        incident = storage.save_incident(make_incident())

        assert incident.id is not None

        retrieved = storage.get_incident(incident.id)
        assert retrieved is not None
        assert retrieved.alerts_id == 1
        assert retrieved.host_uuid == "host-1"
        assert retrieved.status == IncidentStatus.OPEN
        assert retrieved.severity == Severity.WARNING
        assert retrieved.started_at == incident.started_at
        assert retrieved.resolved_at is None
        assert retrieved.result == "cputimes.cuser = 85.00"

    def test_get_missing_incident(self, storage):
        """Test retrieving an unknown incident"""
        assert storage.get_incident(42) is None

    def test_one_open_incident_per_pair(self, storage):
        """Test that a second open incident for a pair is rejected"""
        storage.save_incident(make_incident())

        with pytest.raises(DuplicateOpenIncident):
            storage.save_incident(make_incident())

        # Other hosts and rules are independent
        storage.save_incident(make_incident(host_uuid="host-2"))
        storage.save_incident(make_incident(alerts_id=2))
        assert len(storage.get_open_incidents()) == 3

    def test_resolved_incident_allows_new_one(self, storage):
        """Test that a resolved incident does not block a new one"""
        first = storage.save_incident(make_incident())
        storage.update_incident(first.id, {
            'resolved_at': datetime.now(),
            'status': IncidentStatus.RESOLVED,
        })

        second = storage.save_incident(make_incident())

        assert second.id != first.id
        assert storage.get_open_incident(1, "host-1").id == second.id

    def test_update_incident(self, storage):
        """Test updating incident fields"""
        incident = storage.save_incident(make_incident())
        later = incident.updated_at + timedelta(seconds=30)

        updated = storage.update_incident(incident.id, {
            'severity': Severity.CRITICAL,
            'updated_at': later,
            'result': "cputimes.cuser = 97.00",
        })

        assert updated.severity == Severity.CRITICAL
        assert updated.updated_at == later
        assert updated.started_at == incident.started_at
        assert updated.result == "cputimes.cuser = 97.00"

    def test_update_rejects_identity_columns(self, storage):
        """Test that identity columns cannot be updated"""
        incident = storage.save_incident(make_incident())

        with pytest.raises(ValueError, match="alerts_id"):
            storage.update_incident(incident.id, {'alerts_id': 5})

    def test_update_missing_incident(self, storage):
        """Test updating an unknown incident"""
        assert storage.update_incident(42, {'severity': Severity.CRITICAL}) is None

    def test_open_only_update_skips_resolved(self, storage):
        """Test that a conditional update leaves a resolved incident untouched"""
        incident = storage.save_incident(make_incident())
        resolved_at = datetime.now()
        storage.update_incident(incident.id, {
            'resolved_at': resolved_at,
            'status': IncidentStatus.RESOLVED,
        })

        result = storage.update_incident(incident.id, {'status': IncidentStatus.ACKNOWLEDGED},
                                         open_only=True)

        assert result is None
        retrieved = storage.get_incident(incident.id)
        assert retrieved.status == IncidentStatus.RESOLVED
        assert retrieved.resolved_at == resolved_at

    def test_open_only_update_on_open_incident(self, storage):
        """Test that a conditional update applies while the incident is open"""
        incident = storage.save_incident(make_incident())

        result = storage.update_incident(incident.id, {'status': IncidentStatus.ACKNOWLEDGED},
                                         open_only=True)

        assert result.status == IncidentStatus.ACKNOWLEDGED
        assert result.is_open

    def test_get_open_incidents(self, storage):
        """Test getting open incidents"""
        storage.save_incident(make_incident(alerts_id=1))
        storage.save_incident(make_incident(alerts_id=2, host_uuid="host-2"))
        resolved = storage.save_incident(make_incident(alerts_id=3))
        storage.update_incident(resolved.id, {
            'resolved_at': datetime.now(),
            'status': IncidentStatus.RESOLVED,
        })

        assert {i.alerts_id for i in storage.get_open_incidents()} == {1, 2}
        assert [i.alerts_id for i in storage.get_open_incidents("host-2")] == [2]

    def test_incidents_by_host(self, storage):
        """Test paging through a host's incidents, most recently updated first"""
        base = datetime.now()
        for index in range(5):
            storage.save_incident(make_incident(
                alerts_id=index,
                started_at=base,
                updated_at=base + timedelta(minutes=index),
            ))
        storage.save_incident(make_incident(host_uuid="host-2"))

        first_page = storage.get_incidents_by_host("host-1", size=2, page=0)
        last_page = storage.get_incidents_by_host("host-1", size=2, page=2)

        assert [i.alerts_id for i in first_page] == [4, 3]
        assert [i.alerts_id for i in last_page] == [0]
        assert storage.count_incidents("host-1") == 5
        assert storage.count_incidents("host-3") == 0

    def test_cleanup_old_incidents(self, storage):
        """Test cleaning up old resolved incidents"""
        old = storage.save_incident(make_incident(alerts_id=1))
        storage.update_incident(old.id, {
            'resolved_at': datetime.now() - timedelta(days=40),
            'status': IncidentStatus.RESOLVED,
        })
        recent = storage.save_incident(make_incident(alerts_id=2))
        storage.update_incident(recent.id, {
            'resolved_at': datetime.now() - timedelta(days=1),
            'status': IncidentStatus.RESOLVED,
        })
        still_open = storage.save_incident(make_incident(alerts_id=3))

        deleted_count = storage.cleanup_old_incidents(days=30)

        assert deleted_count == 1
        assert storage.get_incident(old.id) is None
        assert storage.get_incident(recent.id) is not None
        assert storage.get_incident(still_open.id) is not None
