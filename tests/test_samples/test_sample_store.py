"""Tests for the SQLite sample store"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from hostwatch.samples.models import CpuTimes, Disk, Host, Memory, fields_of, resolve_table, sample_columns
from hostwatch.samples.sqlite_store import SQLiteSampleStore

T0 = datetime(2026, 3, 1, 8, 0, 0)


class TestSampleModels:
    """Test sample table helpers"""

    def test_resolve_table_aliases(self):
        """Test that aliases map to canonical tables"""
        assert resolve_table("cpu_times") == "cputimes"
        assert resolve_table("Disk") == "disks"
        assert resolve_table("memory") == "memory"

    def test_resolve_unknown_table(self):
        """Test that unknown tables raise KeyError"""
        with pytest.raises(KeyError):
            resolve_table("gpu")

    def test_sample_columns(self):
        """Test that the row id is not a column to write"""
        columns = sample_columns("swap")
        assert columns == ["host_uuid", "created_at", "total", "free", "used"]

    def test_fields_of(self):
        """Test reading fields of dataclasses and mappings"""
        sample = Memory(host_uuid="h", created_at=T0, used=5)
        assert fields_of(sample)['used'] == 5
        assert fields_of({'used': 6})['used'] == 6
        with pytest.raises(TypeError):
            fields_of(42)


class TestSQLiteSampleStore:
    """Test SQLite sample store"""

    @pytest.fixture
    def store(self):
        """Create temporary SQLite sample store"""
        temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        temp_db.close()

        store = SQLiteSampleStore({'sqlite_path': temp_db.name})

        yield store

        store.close()
        os.unlink(temp_db.name)

    def test_upsert_host_keeps_created_at(self, store):
        """Test that a second heartbeat refreshes the host but keeps created_at"""
        store.upsert_host(Host(uuid="host-1", hostname="web-1", created_at=T0, updated_at=T0))
        later = T0 + timedelta(hours=1)
        host = store.upsert_host(Host(uuid="host-1", hostname="web-1b", uptime=3600,
                                      created_at=later, updated_at=later))

        assert host.hostname == "web-1b"
        assert host.uptime == 3600
        assert host.created_at == T0
        assert host.updated_at == later

    def test_get_hosts(self, store):
        """Test listing hosts"""
        store.upsert_host(Host(uuid="host-b", hostname="b"))
        store.upsert_host(Host(uuid="host-a", hostname="a"))

        assert [h.uuid for h in store.get_hosts()] == ["host-a", "host-b"]
        assert store.get_host("host-c") is None

    def test_latest_capture(self, store):
        """Test that window 0 returns every row of the latest capture"""
        store.insert_sample("disks", Disk(host_uuid="host-1", created_at=T0, mount_point="/",
                                          avail_space=10))
        later = T0 + timedelta(seconds=30)
        store.insert_sample("disks", Disk(host_uuid="host-1", created_at=later, mount_point="/",
                                          avail_space=8))
        store.insert_sample("disks", Disk(host_uuid="host-1", created_at=later, mount_point="/boot",
                                          avail_space=2))
        store.insert_sample("disks", Disk(host_uuid="host-2", created_at=later + timedelta(seconds=5),
                                          mount_point="/", avail_space=1))

        samples = store.get_recent_samples("disks", "host-1")

        assert [s.mount_point for s in samples] == ["/", "/boot"]
        assert all(isinstance(s, Disk) for s in samples)
        assert all(s.created_at == later for s in samples)

    def test_window(self, store):
        """Test that a window selects rows relative to the latest one"""
        for seconds, idle in [(0, 50), (120, 40), (240, 30), (360, 20)]:
            store.insert_sample("cpu_times", CpuTimes(host_uuid="host-1",
                                                      created_at=T0 + timedelta(seconds=seconds),
                                                      idle=idle))

        samples = store.get_recent_samples("cputimes", "host-1", window_seconds=240)

        assert [s.idle for s in samples] == [40, 30, 20]
        assert samples[0].id is not None

    def test_no_samples(self, store):
        """Test that a host without samples returns an empty list"""
        assert store.get_recent_samples("memory", "host-1", window_seconds=300) == []
