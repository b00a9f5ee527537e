"""End-to-end tests for the evaluation engine"""

from datetime import datetime
from pathlib import Path

import pytest

from hostwatch.alerts.alert_rule import AlertRuleUpdate
from hostwatch.alerts.storage.base_storage import Severity
from hostwatch.config.settings import get_default_config
from hostwatch.engine import Engine
from hostwatch.errors import StorageError
from hostwatch.main import main
from hostwatch.samples.models import CpuTimes, Host


@pytest.fixture
def config(tmp_path):
    rules_dir = tmp_path / "rules"
    rules_dir.mkdir()
    (rules_dir / "cpu.yaml").write_text(
        "alert_rules:\n"
        "  - name: cpu_idle_low\n"
        "    table: cputimes\n"
        "    lookup: idle\n"
        "    timing: 0\n"
        "    warn: 20\n"
        "    crit: 10\n"
    )

    config = get_default_config()
    config['engine']['cid'] = "cid-1"
    config['engine']['hostname'] = "engine-test"
    config['samples']['sqlite_path'] = str(tmp_path / "samples.db")
    config['storage']['sqlite_path'] = str(tmp_path / "incidents.db")
    config['rules']['rules_dir'] = str(rules_dir)
    return config


@pytest.fixture
def engine(config):
    engine = Engine(config)
    yield engine
    engine.close()


class TestEngine:
    """Test engine passes"""

    def test_run_once_opens_incident(self, engine):
        """Test that a pass installs rules for new hosts and evaluates them"""
        engine.sample_store.upsert_host(Host(uuid="host-1", hostname="web-1"))
        engine.sample_store.insert_sample("cputimes", CpuTimes(
            host_uuid="host-1", created_at=datetime.now(), idle=5,
        ))

        result = engine.run_once()

        assert result.hosts == 1
        assert result.opened == 1
        assert [r.name for r in engine.registry.list_for_host("host-1")] == ["cpu_idle_low"]
        assert engine.incident_manager.get_incidents_by_severity() == {'critical': 1}
        assert engine.exporter.registry.get_sample_value('hostwatch_rules_active') == 1

    def test_run_once_without_hosts(self, engine):
        """Test a pass with no hosts"""
        result = engine.run_once()

        assert result.hosts == 0
        assert result.failed_hosts == []
        assert len(engine.registry) == 0

    def test_run_once_sample_store_down(self, engine, monkeypatch):
        """Test that a pass is skipped when hosts cannot be listed"""
        def fail():
            raise StorageError("database is locked")

        monkeypatch.setattr(engine.sample_store, 'get_hosts', fail)

        assert engine.run_once() is None

    def test_open_incident_survives_restart(self, config):
        """Test that a restarted engine continues the open incident"""
        first = Engine(config)
        try:
            first.sample_store.upsert_host(Host(uuid="host-1", hostname="web-1"))
            first.sample_store.insert_sample("cputimes", CpuTimes(
                host_uuid="host-1", created_at=datetime.now(), idle=5,
            ))
            assert first.run_once().opened == 1
        finally:
            first.close()

        second = Engine(config)
        try:
            result = second.run_once()
            rule = second.registry.list_for_host("host-1")[0]
            assert result.opened == 0
            assert second.incident_manager.current_severity(rule.id, "host-1") == Severity.CRITICAL
        finally:
            second.close()

    def test_rule_changes_survive_restart(self, config):
        """Test that administrative rule changes are kept by a restarted engine"""
        first = Engine(config)
        try:
            first.sample_store.upsert_host(Host(uuid="host-1", hostname="web-1"))
            first.run_once()
            rule = first.registry.list_for_host("host-1")[0]
            first.registry.upsert(AlertRuleUpdate(warn=30), rule_id=rule.id)
        finally:
            first.close()

        second = Engine(config)
        try:
            second.run_once()
            rules = second.registry.list_for_host("host-1")
            assert [r.id for r in rules] == [rule.id]
            assert rules[0].warn == 30.0
        finally:
            second.close()

    def test_wrongly_typed_template_skipped(self, config):
        """Test that a template with a wrongly typed field does not break a pass"""
        Path(config['rules']['rules_dir'], "broken.yaml").write_text(
            "name: broken\ntable: cputimes\nlookup: true\ntiming: 0\nwarn: 80\ncrit: 90\n"
        )
        engine = Engine(config)
        try:
            engine.sample_store.upsert_host(Host(uuid="host-1", hostname="web-1"))

            result = engine.run_once()

            assert result is not None
            assert [r.name for r in engine.registry.list_for_host("host-1")] == ["cpu_idle_low"]
        finally:
            engine.close()


class TestMain:
    """Test the command line entry point"""

    def test_once(self, config, tmp_path):
        """Test a single pass from a config file"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            f"samples:\n  sqlite_path: {config['samples']['sqlite_path']}\n"
            f"storage:\n  sqlite_path: {config['storage']['sqlite_path']}\n"
            f"rules:\n  rules_dir: {config['rules']['rules_dir']}\n"
        )

        assert main(["--config", str(config_file), "--once"]) == 0

    def test_bad_config(self, tmp_path):
        """Test that an unreadable config exits with an error"""
        assert main(["--config", str(Path(tmp_path, "missing.yaml"))]) == 1
