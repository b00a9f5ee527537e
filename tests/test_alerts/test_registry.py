"""Tests for the alert rule registry"""

import pytest

from hostwatch.alerts.alert_rule import AlertRuleTemplate, AlertRuleUpdate, generate_rule_id
from hostwatch.alerts.registry import AlertRegistry
from hostwatch.errors import ValidationError
from hostwatch.samples.models import Host

from conftest import rule_definition


class TestAlertRegistry:
    """Test creating, updating and listing rules"""

    def test_create_rule(self, registry):
        """Test that a full definition creates a rule"""
        rule = registry.upsert(rule_definition())

        assert rule.id == generate_rule_id("host-1", "cpu_user_high")
        assert registry.get(rule.id) == rule
        assert len(registry) == 1
        assert registry.revision == 1

    def test_create_missing_fields(self, registry):
        """Test that a creation without required fields is rejected"""
        definition = rule_definition()
        del definition['timing']

        with pytest.raises(ValidationError, match="timing"):
            registry.upsert(definition)

        assert len(registry) == 0
        assert registry.revision == 0

    def test_update_by_id_keeps_other_fields(self, registry):
        """Test that an update only changes the fields it carries"""
        rule = registry.upsert(rule_definition(
            active=False, timing=120, where_clause="cuser > 0", info="busy"
        ))

        updated = registry.upsert(AlertRuleUpdate(warn=85), rule_id=rule.id)

        assert updated.warn == 85.0
        assert updated.active is False
        assert updated.timing == 120
        assert updated.where_clause == "cuser > 0"
        assert updated.info == "busy"
        assert updated.crit == rule.crit
        assert registry.get(rule.id) == updated

    def test_update_by_natural_key(self, registry):
        """Test that a document for an existing host and name updates that rule"""
        rule = registry.upsert(rule_definition())

        updated = registry.upsert({
            'host_uuid': "host-1",
            'name': "cpu_user_high",
            'crit': 95,
            'lookup': None,
        })

        assert updated.id == rule.id
        assert updated.crit == 95.0
        assert updated.lookup == "cuser"
        assert len(registry) == 1

    def test_rename_keeps_id(self, registry):
        """Test that renaming a rule does not change its id"""
        rule = registry.upsert(rule_definition())
        renamed = registry.upsert(AlertRuleUpdate(name="cpu_busy"), rule_id=rule.id)

        assert renamed.id == rule.id
        assert renamed.name == "cpu_busy"

    def test_unchanged_update_keeps_revision(self, registry):
        """Test that a no-op update does not bump the revision"""
        rule = registry.upsert(rule_definition())
        revision = registry.revision

        registry.upsert(AlertRuleUpdate(warn=80), rule_id=rule.id)

        assert registry.revision == revision

    def test_duplicate_name_on_host(self, registry):
        """Test that two rules of one host cannot share a name"""
        registry.upsert(rule_definition())
        other = registry.upsert(rule_definition(name="load_high", table="loadavg", lookup="one",
                                                warn=4, crit=8))

        with pytest.raises(ValidationError, match="already has a rule"):
            registry.upsert(AlertRuleUpdate(name="cpu_user_high"), rule_id=other.id)

    def test_invalid_update_leaves_rule(self, registry):
        """Test that a rejected update leaves the stored rule untouched"""
        rule = registry.upsert(rule_definition())

        with pytest.raises(ValidationError):
            registry.upsert(AlertRuleUpdate(table="nope"), rule_id=rule.id)

        assert registry.get(rule.id) == rule

    def test_update_unknown_id(self, registry):
        """Test that an update for an unknown rule id raises KeyError"""
        registry.upsert(rule_definition())
        revision = registry.revision

        with pytest.raises(KeyError):
            registry.upsert(AlertRuleUpdate(warn=70), rule_id=12345)

        assert len(registry) == 1
        assert registry.revision == revision

    @pytest.mark.parametrize("overrides", [
        {'table': 5},
        {'name': ["cpu"]},
        {'lookup': True},
        {'where_clause': 1},
        {'info': 3},
    ])
    def test_wrongly_typed_fields(self, registry, overrides):
        """Test that wrongly typed fields raise ValidationError"""
        with pytest.raises(ValidationError, match="must be a string"):
            registry.upsert(rule_definition(**overrides))

        assert len(registry) == 0

    def test_activate_deactivate(self, registry):
        """Test toggling a rule on and off"""
        rule = registry.upsert(rule_definition())

        registry.deactivate(rule.id)
        assert list(registry.list_active()) == []
        assert registry.get(rule.id).active is False

        registry.activate(rule.id)
        assert [r.id for r in registry.list_active()] == [rule.id]

    def test_activate_unknown(self, registry):
        """Test that toggling an unknown rule raises KeyError"""
        with pytest.raises(KeyError):
            registry.deactivate(12345)

    def test_delete(self, registry):
        """Test deleting a rule"""
        rule = registry.upsert(rule_definition())

        assert registry.delete(rule.id) is True
        assert registry.get(rule.id) is None
        assert registry.delete(rule.id) is False

    def test_list_active_scope_and_order(self, registry):
        """Test that active rules are filtered by host and cid and ordered by id"""
        for name in ("a", "b", "c", "d"):
            registry.upsert(rule_definition(name=name))
        registry.upsert(rule_definition(name="a", host_uuid="host-2"))
        registry.upsert(rule_definition(name="e", cid="cid-2"))

        rules = list(registry.list_active(host_uuid="host-1", cid="cid-1"))

        assert {r.name for r in rules} == {"a", "b", "c", "d"}
        assert [r.id for r in rules] == sorted(r.id for r in rules)

    def test_list_for_host(self, registry):
        """Test paging through every rule of a host by name"""
        for name in ("c", "a", "b"):
            registry.upsert(rule_definition(name=name))
        registry.deactivate(generate_rule_id("host-1", "b"))

        assert [r.name for r in registry.list_for_host("host-1", size=2, page=0)] == ["a", "b"]
        assert [r.name for r in registry.list_for_host("host-1", size=2, page=1)] == ["c"]

    def test_snapshot_isolation(self, registry):
        """Test that a taken snapshot never sees later changes"""
        rule = registry.upsert(rule_definition())
        snapshot = registry.snapshot()

        registry.upsert(AlertRuleUpdate(warn=70), rule_id=rule.id)
        registry.upsert(rule_definition(name="other"))

        assert len(snapshot.rules) == 1
        assert snapshot.get(rule.id).warn == 80.0
        assert registry.snapshot().revision == snapshot.revision + 2


class TestRuleInstall:
    """Test binding templates to hosts"""

    def test_install(self, registry):
        """Test that templates are installed once per targeted host"""
        templates = [
            AlertRuleTemplate(definition={
                'name': "load_high", 'table': "loadavg", 'lookup': "one",
                'timing': 0, 'warn': 4, 'crit': 8,
            }),
            AlertRuleTemplate(definition={
                'name': "mem_high", 'table': "memory", 'lookup': "used",
                'timing': 0, 'warn': 80, 'crit': 90,
            }, host_targeted="host-2"),
        ]
        hosts = [Host(uuid="host-1", hostname="web-1"), Host(uuid="host-2", hostname="db-1")]

        assert registry.install(templates, hosts, default_cid="cid-1") == 3
        assert {r.name for r in registry.list_for_host("host-2")} == {"load_high", "mem_high"}

        # Administrative changes survive a second install
        rule_id = generate_rule_id("host-1", "load_high")
        registry.upsert(AlertRuleUpdate(warn=6), rule_id=rule_id)
        assert registry.install(templates, hosts, default_cid="cid-1") == 0
        assert registry.get(rule_id).warn == 6.0

    def test_install_skips_invalid(self, registry):
        """Test that an invalid template is skipped"""
        templates = [AlertRuleTemplate(definition={'name': "broken", 'table': "memory"})]

        assert registry.install(templates, [Host(uuid="host-1", hostname="web-1")], "cid-1") == 0
        assert len(registry) == 0

    def test_install_skips_wrongly_typed(self, registry):
        """Test that a template with a wrongly typed field is skipped"""
        templates = [
            AlertRuleTemplate(definition={
                'name': "broken", 'table': "cputimes", 'lookup': True,
                'timing': 0, 'warn': 80, 'crit': 90,
            }, source="broken.yaml"),
            AlertRuleTemplate(definition={
                'name': "load_high", 'table': "loadavg", 'lookup': "one",
                'timing': 0, 'warn': 4, 'crit': 8,
            }),
        ]

        created = registry.install(templates, [Host(uuid="host-1", hostname="web-1")], "cid-1")

        assert created == 1
        assert [r.name for r in registry.list_for_host("host-1")] == ["load_high"]


class TestRulePersistence:
    """Test that rules are written through to storage"""

    def test_rules_reloaded(self, storage):
        """Test that updates and deactivations survive a new registry"""
        registry = AlertRegistry(storage=storage)
        rule = registry.upsert(rule_definition(info="busy", where_clause="cuser > 0"))
        registry.upsert(AlertRuleUpdate(warn=70), rule_id=rule.id)
        registry.deactivate(rule.id)

        reloaded = AlertRegistry(storage=storage)
        restored = reloaded.get(rule.id)

        assert restored == registry.get(rule.id)
        assert restored.warn == 70.0
        assert restored.active is False
        assert restored.where_clause == "cuser > 0"
        assert list(reloaded.list_active()) == []

    def test_delete_persists(self, storage):
        """Test that a deleted rule stays deleted"""
        registry = AlertRegistry(storage=storage)
        rule = registry.upsert(rule_definition())
        registry.delete(rule.id)

        assert AlertRegistry(storage=storage).get(rule.id) is None
        assert storage.get_rules() == []

    def test_deleted_template_rule_not_reinstalled(self, storage):
        """Test that installing again does not recreate a deleted template rule"""
        templates = [AlertRuleTemplate(definition={
            'name': "load_high", 'table': "loadavg", 'lookup': "one",
            'timing': 0, 'warn': 4, 'crit': 8,
        })]
        hosts = [Host(uuid="host-1", hostname="web-1")]

        registry = AlertRegistry(storage=storage)
        assert registry.install(templates, hosts, "cid-1") == 1
        registry.delete(generate_rule_id("host-1", "load_high"))

        assert registry.install(templates, hosts, "cid-1") == 0
        assert AlertRegistry(storage=storage).install(templates, hosts, "cid-1") == 0
        assert len(registry) == 0

    def test_invalid_stored_rule_skipped(self, storage):
        """Test that a stored row that no longer validates is skipped at load"""
        registry = AlertRegistry(storage=storage)
        rule = registry.upsert(rule_definition())
        broken = rule.to_dict()
        broken.update(id=1, name="broken", lookup="nope")
        storage.save_rule(broken)

        reloaded = AlertRegistry(storage=storage)

        assert [r.id for r in reloaded.snapshot().rules] == [rule.id]
