"""
Alert rule registry.

Readers take an immutable RuleSnapshot and never block; every mutation
builds a new snapshot under the writer lock and swaps it in. With a
storage backend, rules are loaded at startup and every mutation is
written through before the new snapshot is published.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from hostwatch.alerts.alert_rule import AlertRule, AlertRuleTemplate, AlertRuleUpdate
from hostwatch.alerts.storage.base_storage import BaseStorage
from hostwatch.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleSnapshot:
    """Consistent view of the registry at one revision"""
    revision: int
    rules: Tuple[AlertRule, ...] = ()

    def get(self, rule_id: int) -> Optional[AlertRule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    def active(self, host_uuid: Optional[str] = None, cid: Optional[str] = None) -> Iterator[AlertRule]:
        """Active rules in scope, by id ascending"""
        for rule in self.rules:
            if not rule.active:
                continue
            if host_uuid is not None and rule.host_uuid != host_uuid:
                continue
            if cid is not None and rule.cid != cid:
                continue
            yield rule


class AlertRegistry:
    """Holds alert rules and serves consistent snapshots of them"""

    def __init__(self, rules: Optional[Iterable[AlertRule]] = None,
                 storage: Optional[BaseStorage] = None):
        self._lock = threading.Lock()
        self.storage = storage

        initial = {rule.id: rule for rule in self._load()}
        for rule in rules or ():
            if self.storage is not None:
                self.storage.save_rule(rule.to_dict())
            initial[rule.id] = rule
        self._snapshot = RuleSnapshot(revision=0, rules=self._sorted(initial.values()))

        logger.info(f"Alert registry initialized with {len(self._snapshot.rules)} rules")

    def _load(self) -> List[AlertRule]:
        if self.storage is None:
            return []

        rules = []
        for row in self.storage.get_rules():
            try:
                rules.append(AlertRule.from_dict(row, rule_id=row['id']))
            except ValidationError as e:
                logger.error(f"Skipping stored alert rule {row.get('id')} ({row.get('name')}): {e}")
        return rules

    @staticmethod
    def _sorted(rules: Iterable[AlertRule]) -> Tuple[AlertRule, ...]:
        return tuple(sorted(rules, key=lambda r: r.id))

    @property
    def revision(self) -> int:
        return self._snapshot.revision

    def snapshot(self) -> RuleSnapshot:
        """Current immutable snapshot"""
        return self._snapshot

    def _commit(self, rules: Dict[int, AlertRule]) -> None:
        # Caller holds the lock
        self._snapshot = RuleSnapshot(
            revision=self._snapshot.revision + 1,
            rules=self._sorted(rules.values()),
        )

    def upsert(self, document: Union[Mapping[str, Any], AlertRuleUpdate],
               rule_id: Optional[int] = None) -> AlertRule:
        """
        Create a rule or update an existing one.

        An existing rule is found by rule_id, or by (host_uuid, name) when the
        document carries both. Updates keep every field the document leaves
        unset; a mapping is read as a DTO where null means unchanged.

        Args:
            document: Full definition, DTO mapping or AlertRuleUpdate
            rule_id: Id of the rule to update (optional)

        Returns:
            The stored rule

        Raises:
            ValidationError: If a creation lacks required fields or values are invalid
            KeyError: If an AlertRuleUpdate targets an unknown rule_id
            StorageError: If the rule cannot be written through
        """
        with self._lock:
            rules = {rule.id: rule for rule in self._snapshot.rules}
            existing = self._find(rules, document, rule_id)

            if existing is not None:
                update = document if isinstance(document, AlertRuleUpdate) else AlertRuleUpdate.from_dto(
                    {k: v for k, v in document.items() if k not in ('id', 'host_uuid', 'cid', 'hostname')}
                )
                rule = existing.apply(update)
                if rule == existing:
                    logger.debug(f"Alert rule {rule.id} ({rule.name}) unchanged")
                    return existing
                action = 'Updated'
            elif rule_id is not None and isinstance(document, AlertRuleUpdate):
                raise KeyError(f"Alert rule not found: {rule_id}")
            else:
                data = document.fields if isinstance(document, AlertRuleUpdate) else document
                rule = AlertRule.from_dict(data, rule_id=rule_id)
                if rule.id in rules:
                    raise ValidationError(f"Rule id {rule.id} already exists")
                action = 'Created'

            self._check_unique_name(rules, rule)
            if self.storage is not None:
                self.storage.save_rule(rule.to_dict())
            rules[rule.id] = rule
            self._commit(rules)

        logger.info(f"{action} alert rule {rule.id} ({rule.name}) for host {rule.host_uuid}")
        return rule

    def _find(self, rules: Dict[int, AlertRule], document, rule_id: Optional[int]) -> Optional[AlertRule]:
        if rule_id is not None:
            return rules.get(rule_id)
        if isinstance(document, AlertRuleUpdate):
            return None

        host_uuid, name = document.get('host_uuid'), document.get('name')
        if host_uuid is None or name is None:
            return None
        for rule in rules.values():
            if rule.key == (host_uuid, name):
                return rule
        return None

    @staticmethod
    def _check_unique_name(rules: Dict[int, AlertRule], rule: AlertRule) -> None:
        for other in rules.values():
            if other.id != rule.id and other.key == rule.key:
                raise ValidationError(f"Host {rule.host_uuid} already has a rule named {rule.name}")

    def _set_active(self, rule_id: int, active: bool) -> AlertRule:
        with self._lock:
            rules = {rule.id: rule for rule in self._snapshot.rules}
            if rule_id not in rules:
                raise KeyError(f"Alert rule not found: {rule_id}")

            rule = rules[rule_id]
            if rule.active == active:
                return rule

            rule = replace(rule, active=active)
            if self.storage is not None:
                self.storage.save_rule(rule.to_dict())
            rules[rule_id] = rule
            self._commit(rules)

        logger.info(f"{'Activated' if active else 'Deactivated'} alert rule {rule_id} ({rule.name})")
        return rule

    def activate(self, rule_id: int) -> AlertRule:
        """Mark a rule active"""
        return self._set_active(rule_id, True)

    def deactivate(self, rule_id: int) -> AlertRule:
        """Mark a rule inactive; it is kept but no longer evaluated"""
        return self._set_active(rule_id, False)

    def delete(self, rule_id: int) -> bool:
        """
        Remove a rule.

        Returns:
            True if the rule was removed, False if not found
        """
        with self._lock:
            rules = {rule.id: rule for rule in self._snapshot.rules}
            rule = rules.pop(rule_id, None)
            if rule is None:
                logger.warning(f"Alert rule not found: {rule_id}")
                return False
            if self.storage is not None:
                self.storage.delete_rule(rule_id)
            self._commit(rules)

        logger.info(f"Deleted alert rule {rule_id} ({rule.name})")
        return True

    def get(self, rule_id: int) -> Optional[AlertRule]:
        """Get a rule by id"""
        return self._snapshot.get(rule_id)

    def list_active(self, host_uuid: Optional[str] = None, cid: Optional[str] = None) -> Iterator[AlertRule]:
        """Lazily iterate active rules for a host and/or cid scope, by id ascending"""
        return self._snapshot.active(host_uuid=host_uuid, cid=cid)

    def list_for_host(self, host_uuid: str, size: int = 50, page: int = 0) -> List[AlertRule]:
        """Page through every rule of a host (active or not), ordered by name"""
        rules = sorted(
            (rule for rule in self._snapshot.rules if rule.host_uuid == host_uuid),
            key=lambda r: r.name
        )
        return rules[page * size:(page + 1) * size]

    def install(self, templates: Iterable[AlertRuleTemplate], hosts: Iterable,
                default_cid: Optional[str] = None) -> int:
        """
        Bind rule templates to hosts.

        Templates already installed for a host (same name) are left alone so
        that administrative changes survive. With storage, a template whose
        rule was deleted is not installed again.

        Args:
            templates: Templates loaded from the rules directory
            hosts: Host instances
            default_cid: cid for templates that don't set one

        Returns:
            Number of rules created
        """
        templates = list(templates)
        installed = self.storage.get_rule_installs() if self.storage is not None else set()
        created = 0

        for host in hosts:
            for template in templates:
                if not template.targets(host.uuid):
                    continue

                document = template.instantiate(host.uuid, host.hostname, default_cid)
                name = document['name']
                if not isinstance(name, str):
                    logger.error(f"Skipping rule with invalid name {name!r} from {template.source}")
                    continue
                if (host.uuid, name) in installed:
                    continue
                if any(rule.key == (host.uuid, name) for rule in self._snapshot.rules):
                    continue

                try:
                    self.upsert(document)
                    created += 1
                    if self.storage is not None:
                        self.storage.record_rule_install(host.uuid, name)
                    installed.add((host.uuid, name))
                except ValidationError as e:
                    logger.error(f"Failed to install rule {document.get('name')} "
                                 f"from {template.source} on host {host.uuid}: {e}")

        if created:
            logger.info(f"Installed {created} alert rules from templates")
        return created

    def __len__(self) -> int:
        return len(self._snapshot.rules)
