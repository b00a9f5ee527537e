"""
Alert rule data structures, partial updates and loading utilities.
"""

import os
import re
import hashlib
import logging
import yaml
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from hostwatch.alerts.lookup import Lookup, WhereClause, parse_lookup, parse_where_clause
from hostwatch.errors import ValidationError
from hostwatch.samples.models import resolve_table, sample_columns

logger = logging.getLogger(__name__)

RULE_FILE_SUFFIXES = ('.yaml', '.yml', '.json')

TEXT_FIELDS = ('name', 'table', 'lookup', 'host_uuid', 'cid')
OPTIONAL_TEXT_FIELDS = ('hostname', 'info', 'where_clause')

REQUIRED_FIELDS = ('name', 'table', 'lookup', 'timing', 'warn', 'crit', 'host_uuid', 'cid')

UPDATABLE_FIELDS = (
    'active', 'name', 'table', 'lookup', 'timing', 'warn', 'crit',
    'direction', 'info', 'where_clause',
)

_THRESHOLD_RE = re.compile(r'^\s*\$this\s*(?P<op>[<>])\s*(?P<value>-?\d+(?:\.\d+)?)\s*$')


class Direction:
    """Which side of a threshold is worse"""
    ABOVE = 'above'  # usage, load: higher is worse
    BELOW = 'below'  # free space, idle: lower is worse

    ALL = (ABOVE, BELOW)


def parse_threshold(value: Any) -> Tuple[float, Optional[str]]:
    """
    Parse a warn/crit threshold.

    Accepts a number, a numeric string, or an expression like '$this > 80'.

    Returns:
        (threshold, direction) where direction is None for plain numbers
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid threshold: {value!r}")
    if isinstance(value, (int, float)):
        return float(value), None

    if isinstance(value, str):
        match = _THRESHOLD_RE.match(value)
        if match:
            direction = Direction.ABOVE if match.group('op') == '>' else Direction.BELOW
            return float(match.group('value')), direction
        try:
            return float(value), None
        except ValueError:
            pass

    raise ValidationError(f"Invalid threshold: {value!r}. Use a number or '$this > N' / '$this < N'")


def generate_rule_id(host_uuid: str, name: str) -> int:
    """
    Derive a stable rule id from the targeted host and the rule name.

    Returns:
        Positive integer id (60 bits of the sha1 digest)
    """
    digest = hashlib.sha1(f"{host_uuid}{name}".encode('utf-8')).hexdigest()
    return int(digest[:15], 16)


@dataclass(frozen=True)
class AlertRule:
    """Threshold alert rule on one metric of one host"""
    id: int
    name: str
    table: str
    lookup: str
    timing: int
    warn: float
    crit: float
    host_uuid: str
    cid: str
    hostname: str = ""
    direction: Optional[str] = None
    active: bool = True
    info: Optional[str] = None
    where_clause: Optional[str] = None
    compiled_lookup: Lookup = field(init=False, repr=False, compare=False)
    compiled_where: Optional[WhereClause] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        """Validate rule configuration and compile its expressions"""
        for name in TEXT_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str):
                raise ValidationError(f"{name} must be a string, got {type(value).__name__}")
        for name in OPTIONAL_TEXT_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be a string, got {type(value).__name__}")

        if not self.name or not str(self.name).strip():
            raise ValidationError("Rule name must not be empty")

        if not self.table or not str(self.table).strip():
            raise ValidationError("Rule table must not be empty")
        try:
            resolve_table(self.table)
        except KeyError as e:
            raise ValidationError(f"Unknown table: {self.table}") from e

        if not self.host_uuid:
            raise ValidationError("Rule host_uuid must not be empty")

        if not self.cid:
            raise ValidationError("Rule cid must not be empty")

        if isinstance(self.timing, bool) or not isinstance(self.timing, int) or self.timing < 0:
            raise ValidationError(f"timing must be an integer >= 0, got {self.timing!r}")

        if not isinstance(self.active, bool):
            raise ValidationError(f"active must be a boolean, got {self.active!r}")

        warn, warn_direction = parse_threshold(self.warn)
        crit, crit_direction = parse_threshold(self.crit)

        # Expression thresholds fix the direction and must agree with each other
        implied = {d for d in (warn_direction, crit_direction) if d is not None}
        if len(implied) > 1:
            raise ValidationError("warn and crit expressions disagree on direction")

        direction = self.direction
        if direction is not None and direction not in Direction.ALL:
            raise ValidationError(f"Invalid direction: {direction}. Must be one of {list(Direction.ALL)}")
        if implied:
            implied_direction = implied.pop()
            if direction is not None and direction != implied_direction:
                raise ValidationError(
                    f"direction {direction} contradicts threshold expressions ({implied_direction})"
                )
            direction = implied_direction
        if direction is None:
            direction = Direction.ABOVE if warn <= crit else Direction.BELOW

        if direction == Direction.ABOVE and warn > crit:
            raise ValidationError(f"warn ({warn}) must be <= crit ({crit}) when higher is worse")
        if direction == Direction.BELOW and warn < crit:
            raise ValidationError(f"warn ({warn}) must be >= crit ({crit}) when lower is worse")

        object.__setattr__(self, 'warn', warn)
        object.__setattr__(self, 'crit', crit)
        object.__setattr__(self, 'direction', direction)
        compiled_lookup = parse_lookup(self.lookup)
        compiled_where = parse_where_clause(self.where_clause)

        columns = set(sample_columns(self.table))
        for column in compiled_lookup.fields + compiled_lookup.divisor_fields:
            if column not in columns:
                raise ValidationError(f"Lookup field {column!r} is not a column of {self.table}")
        if compiled_where is not None:
            for column in compiled_where.fields:
                if column not in columns:
                    raise ValidationError(f"Where clause field {column!r} is not a column of {self.table}")

        object.__setattr__(self, 'compiled_lookup', compiled_lookup)
        object.__setattr__(self, 'compiled_where', compiled_where)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], rule_id: Optional[int] = None) -> 'AlertRule':
        """
        Create a rule from a full definition.

        Args:
            data: Rule definition; must hold every required field
            rule_id: Explicit id, derived from host_uuid and name when omitted

        Raises:
            ValidationError: If required fields are missing or values invalid
        """
        missing = [name for name in REQUIRED_FIELDS if data.get(name) is None]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        known = set(REQUIRED_FIELDS) | set(UPDATABLE_FIELDS) | {'id', 'hostname'}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(f"Unknown rule fields: {', '.join(unknown)}")

        values = {k: v for k, v in data.items() if k != 'id' and v is not None}
        if rule_id is None:
            rule_id = data.get('id') or generate_rule_id(values['host_uuid'], values['name'])

        try:
            return cls(id=rule_id, **values)
        except TypeError as e:
            raise ValidationError(str(e)) from e

    @property
    def key(self) -> Tuple[str, str]:
        """Natural key used to match creations against existing rules"""
        return self.host_uuid, self.name

    def apply(self, update: 'AlertRuleUpdate') -> 'AlertRule':
        """Return a copy of this rule with the update's fields replaced"""
        return replace(self, **update.fields)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (the Alerts row shape)"""
        return {
            'id': self.id,
            'active': self.active,
            'name': self.name,
            'table': self.table,
            'lookup': self.lookup,
            'timing': self.timing,
            'warn': self.warn,
            'crit': self.crit,
            'direction': self.direction,
            'info': self.info,
            'host_uuid': self.host_uuid,
            'cid': self.cid,
            'hostname': self.hostname,
            'where_clause': self.where_clause,
        }


class AlertRuleUpdate:
    """
    Explicit set of rule fields to change.

    Only the fields present are touched; a field present with None (e.g.
    info=None) clears it. Use from_dto() for documents where null means
    "leave unchanged".
    """

    def __init__(self, fields: Optional[Mapping[str, Any]] = None, **changes):
        merged = dict(fields or {})
        merged.update(changes)

        unknown = sorted(set(merged) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}")

        self._fields = merged

    @classmethod
    def from_dto(cls, dto: Mapping[str, Any]) -> 'AlertRuleUpdate':
        """Build an update from a DTO where absent or null fields are unchanged"""
        return cls({k: v for k, v in dto.items() if v is not None})

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self._fields)

    def __contains__(self, name: str) -> bool:
        return name in self._fields

    def __len__(self) -> int:
        return len(self._fields)

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __repr__(self) -> str:
        return f"AlertRuleUpdate({self._fields!r})"


@dataclass
class AlertRuleTemplate:
    """Rule definition loaded from disk, not yet bound to a host"""
    definition: Dict[str, Any]
    host_targeted: Optional[str] = None  # None targets every host
    source: str = ""

    def targets(self, host_uuid: str) -> bool:
        return self.host_targeted is None or self.host_targeted == host_uuid

    def instantiate(self, host_uuid: str, hostname: str, default_cid: Optional[str] = None) -> Dict[str, Any]:
        """Build the full rule definition for one host"""
        document = dict(self.definition)
        document['host_uuid'] = host_uuid
        document['hostname'] = hostname
        if document.get('cid') is None:
            document['cid'] = default_cid
        return document


def load_alert_rules(rules_file: str) -> List[Dict[str, Any]]:
    """
    Load rule definitions from a YAML (or JSON) file.

    The file holds either a single rule mapping or an 'alert_rules' list.

    Raises:
        FileNotFoundError: If rules file doesn't exist
        ValueError: If rules file has invalid format
    """
    try:
        with open(rules_file, 'r') as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(f"Alert rules file not found: {rules_file}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse YAML file {rules_file}: {e}")
        raise ValueError(f"Invalid YAML format: {e}")

    if not config:
        logger.warning(f"No alert rules found in {rules_file}")
        return []

    if isinstance(config, Mapping) and 'alert_rules' in config:
        entries = config['alert_rules'] or []
    else:
        entries = [config]

    rules = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            logger.error(f"Skipping malformed rule entry in {rules_file}: {entry!r}")
            continue
        rules.append(dict(entry))

    logger.debug(f"Read {len(rules)} rule definitions from {rules_file}")
    return rules


def load_rule_templates(rules_dir: str) -> List[AlertRuleTemplate]:
    """
    Load rule templates from a rules directory.

    Files directly in rules_dir target every host. Files in a sub-directory
    target only the host whose uuid is the sub-directory name. Deeper
    levels are ignored.

    Raises:
        FileNotFoundError: If rules_dir doesn't exist
    """
    if not os.path.isdir(rules_dir):
        logger.error(f"Alert rules directory not found: {rules_dir}")
        raise FileNotFoundError(rules_dir)

    # (path, targeted host) pairs, root files first
    rule_files = []
    subdirs = []
    for entry in sorted(os.scandir(rules_dir), key=lambda e: e.name):
        if entry.is_dir():
            subdirs.append(entry)
        elif entry.name.endswith(RULE_FILE_SUFFIXES):
            rule_files.append((entry.path, None))

    for subdir in subdirs:
        for entry in sorted(os.scandir(subdir.path), key=lambda e: e.name):
            if entry.is_file() and entry.name.endswith(RULE_FILE_SUFFIXES):
                rule_files.append((entry.path, subdir.name))

    templates = []
    for path, host_targeted in rule_files:
        try:
            definitions = load_alert_rules(path)
        except ValueError as e:
            logger.error(f"Skipping rules file {path}: {e}")
            continue

        for definition in definitions:
            if not definition.get('name'):
                logger.error(f"Skipping unnamed rule in {path}")
                continue
            templates.append(AlertRuleTemplate(
                definition=definition,
                host_targeted=host_targeted,
                source=path,
            ))

    logger.info(f"Loaded {len(templates)} alert rule templates from {rules_dir}")
    return templates
