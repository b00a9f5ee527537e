"""Shared fixtures for hostwatch tests"""

import os
import tempfile
from collections import defaultdict
from datetime import datetime, timedelta

import pytest

from hostwatch.alerts.alert_evaluator import AlertEvaluator
from hostwatch.alerts.incident_manager import IncidentManager
from hostwatch.alerts.registry import AlertRegistry
from hostwatch.alerts.storage.sqlite_storage import SQLiteStorage
from hostwatch.samples.base_store import BaseSampleStore
from hostwatch.samples.models import Host, resolve_table

T0 = datetime(2026, 1, 1, 12, 0, 0)


class FakeSampleStore(BaseSampleStore):
    """In-memory sample store holding rows as dicts"""

    def __init__(self):
        self.hosts = {}
        self.rows = defaultdict(list)

    def add_host(self, uuid, hostname=None):
        host = Host(uuid=uuid, hostname=hostname or uuid)
        self.hosts[uuid] = host
        return host

    def add(self, table, host_uuid, created_at, **values):
        row = {'host_uuid': host_uuid, 'created_at': created_at}
        row.update(values)
        self.rows[(resolve_table(table), host_uuid)].append(row)

    def get_hosts(self):
        return [self.hosts[uuid] for uuid in sorted(self.hosts)]

    def get_host(self, uuid):
        return self.hosts.get(uuid)

    def get_recent_samples(self, table, host_uuid, window_seconds=0):
        rows = self.rows.get((resolve_table(table), host_uuid), [])
        if not rows:
            return []
        latest = max(row['created_at'] for row in rows)
        cutoff = latest - timedelta(seconds=window_seconds)
        return [row for row in rows if row['created_at'] >= cutoff]


def rule_definition(**overrides):
    """Full rule definition with sensible defaults"""
    definition = {
        'name': 'cpu_user_high',
        'table': 'cputimes',
        'lookup': 'cuser',
        'timing': 60,
        'warn': 80,
        'crit': 90,
        'host_uuid': 'host-1',
        'cid': 'cid-1',
        'hostname': 'web-1',
    }
    definition.update(overrides)
    return definition


@pytest.fixture
def storage():
    """Create temporary SQLite incident storage"""
    temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    temp_db.close()

    storage = SQLiteStorage({'sqlite_path': temp_db.name, 'retention_days': 30})

    yield storage

    storage.close()
    os.unlink(temp_db.name)


@pytest.fixture
def sample_store():
    return FakeSampleStore()


@pytest.fixture
def registry():
    return AlertRegistry()


@pytest.fixture
def clock():
    """Deterministic clock advancing one second per call"""
    state = {'now': T0}

    def tick():
        state['now'] = state['now'] + timedelta(seconds=1)
        return state['now']

    return tick


@pytest.fixture
def incident_manager(storage, registry, clock):
    return IncidentManager({}, storage, registry=registry, clock=clock)


@pytest.fixture
def evaluator(registry, sample_store, incident_manager):
    evaluator = AlertEvaluator(registry, sample_store, incident_manager, workers=4)
    yield evaluator
    evaluator.shutdown()
