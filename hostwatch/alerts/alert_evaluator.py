"""
Alert evaluator for checking rule conditions against host samples.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from hostwatch.alerts.alert_rule import AlertRule, Direction
from hostwatch.alerts.incident_manager import IncidentManager
from hostwatch.alerts.registry import AlertRegistry, RuleSnapshot
from hostwatch.alerts.storage.base_storage import Severity
from hostwatch.errors import SampleError
from hostwatch.samples.base_store import BaseSampleStore
from hostwatch.samples.models import Host, fields_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Measurement:
    """Outcome of evaluating one rule against one set of samples"""
    severity: int
    sampled_at: datetime
    value: Optional[float] = None


@dataclass
class DebounceState:
    """Debounce state of one (rule, host) pair"""
    reported: int = Severity.NORMAL
    candidate: Optional[int] = None
    candidate_since: Optional[datetime] = None
    last_sample_at: Optional[datetime] = None

    def reset_candidate(self):
        self.candidate = None
        self.candidate_since = None


@dataclass
class PassResult:
    """Summary of one evaluation pass"""
    revision: int = 0
    hosts: int = 0
    failed_hosts: List[str] = field(default_factory=list)
    opened: int = 0
    severity_changed: int = 0
    resolved: int = 0
    skipped: int = 0
    duration: float = 0.0

    def add(self, other: 'PassResult') -> None:
        self.opened += other.opened
        self.severity_changed += other.severity_changed
        self.resolved += other.resolved
        self.skipped += other.skipped


class AlertEvaluator:
    """Evaluates alert rules against the latest samples of each host"""

    def __init__(self, registry: AlertRegistry, sample_store: BaseSampleStore,
                 incident_manager: IncidentManager, workers: int = 4):
        """
        Initialize alert evaluator.

        Args:
            registry: Rule registry to take snapshots from
            sample_store: Store to read host samples from
            incident_manager: Receiver of breach/resolve signals
            workers: Number of hosts evaluated in parallel
        """
        self.registry = registry
        self.sample_store = sample_store
        self.incident_manager = incident_manager
        self.workers = workers

        self._snapshot: RuleSnapshot = registry.snapshot()
        # host_uuid -> {rule id: DebounceState}; inner dicts belong to one host worker
        self._states: Dict[str, Dict[int, DebounceState]] = {}
        self._states_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='host-eval')

        logger.info(f"Alert evaluator initialized ({workers} workers, "
                    f"{len(self._snapshot.rules)} rules at revision {self._snapshot.revision})")

    # -- pure evaluation ---------------------------------------------------

    def evaluate(self, rule: AlertRule, recent_samples: Sequence[Any]) -> int:
        """
        Compute a rule's severity from recent samples.

        Returns:
            Severity.NORMAL, Severity.WARNING or Severity.CRITICAL

        Raises:
            SampleError: If samples are missing or malformed
        """
        return self.measure(rule, recent_samples).severity

    def measure(self, rule: AlertRule, recent_samples: Sequence[Any]) -> Measurement:
        """
        Compute a rule's value and severity from recent samples.

        Bare lookups read the latest capture, windowed lookups every row of
        their window. Rows failing the where clause are ignored; when none
        is left the result is NORMAL.

        Raises:
            SampleError: If samples are missing or malformed
        """
        if not recent_samples:
            raise SampleError(f"No {rule.table} samples")

        try:
            rows = [fields_of(sample) for sample in recent_samples]
        except TypeError as e:
            raise SampleError(str(e)) from e

        for row in rows:
            if not isinstance(row.get('created_at'), datetime):
                raise SampleError(f"Sample without a valid created_at: {row!r}")

        latest = max(row['created_at'] for row in rows)
        lookup = rule.compiled_lookup

        if lookup.is_windowed:
            cutoff = latest - timedelta(seconds=lookup.window_seconds)
            rows = [row for row in rows if row['created_at'] >= cutoff]
        else:
            rows = [row for row in rows if row['created_at'] == latest]

        try:
            if rule.compiled_where is not None:
                rows = [row for row in rows if rule.compiled_where.matches(row)]
                if not rows:
                    return Measurement(severity=Severity.NORMAL, sampled_at=latest)

            if lookup.is_windowed:
                value = lookup.compute(rows)
            else:
                values = [lookup.compute([row]) for row in rows]
                value = max(values) if rule.direction == Direction.ABOVE else min(values)
        except (KeyError, TypeError, ValueError, ZeroDivisionError) as e:
            raise SampleError(f"Cannot compute '{rule.lookup}' on {rule.table}: {e!r}") from e

        return Measurement(severity=self.classify(rule, value), sampled_at=latest, value=value)

    @staticmethod
    def classify(rule: AlertRule, value: float) -> int:
        """Compare a value to crit first, then warn, in the rule's direction"""
        if rule.direction == Direction.BELOW:
            if value < rule.crit:
                return Severity.CRITICAL
            if value < rule.warn:
                return Severity.WARNING
            return Severity.NORMAL

        if value > rule.crit:
            return Severity.CRITICAL
        if value > rule.warn:
            return Severity.WARNING
        return Severity.NORMAL

    # -- debounce ----------------------------------------------------------

    def _host_states(self, host_uuid: str) -> Dict[int, DebounceState]:
        with self._states_lock:
            return self._states.setdefault(host_uuid, {})

    def get_state(self, rule: AlertRule, host_uuid: str) -> DebounceState:
        """Debounce state of a pair, seeded from its open incident on first use"""
        states = self._host_states(host_uuid)
        state = states.get(rule.id)
        if state is None:
            state = DebounceState(reported=self.incident_manager.current_severity(rule.id, host_uuid))
            states[rule.id] = state
        return state

    def observe(self, rule: AlertRule, host_uuid: str, measurement: Measurement) -> Optional[int]:
        """
        Feed a measurement through the pair's debounce state.

        A severity different from the reported one must hold for rule.timing
        seconds of sample time before it is returned. While nothing is
        reported, warning and critical readings count as one breach streak.
        The reported severity is only changed by commit().

        Returns:
            The severity to report, or None if nothing changes yet
        """
        state = self.get_state(rule, host_uuid)
        sampled_at = measurement.sampled_at

        if state.last_sample_at is not None and sampled_at <= state.last_sample_at:
            logger.debug(f"Rule {rule.id} on {host_uuid}: no new sample since {state.last_sample_at}")
            return None
        state.last_sample_at = sampled_at

        severity = measurement.severity
        if severity == state.reported:
            state.reset_candidate()
            return None

        same_streak = state.candidate == severity or (
            state.candidate is not None
            and state.reported == Severity.NORMAL
            and state.candidate != Severity.NORMAL
            and severity != Severity.NORMAL
        )
        if not same_streak:
            state.candidate_since = sampled_at
        state.candidate = severity

        held = (sampled_at - state.candidate_since).total_seconds()
        if held >= rule.timing:
            return severity

        logger.debug(f"Rule {rule.id} on {host_uuid}: {Severity.label(severity)} held {held:.0f}s "
                     f"of {rule.timing}s")
        return None

    def commit(self, rule: AlertRule, host_uuid: str, severity: int) -> None:
        """Record that a severity change was accepted by the incident manager"""
        state = self.get_state(rule, host_uuid)
        state.reported = severity
        state.reset_candidate()

    # -- passes ------------------------------------------------------------

    def refresh_rules(self) -> RuleSnapshot:
        """Pick up a new registry snapshot and forget state of vanished rules"""
        snapshot = self.registry.snapshot()
        if snapshot.revision == self._snapshot.revision:
            return self._snapshot

        live = {(rule.host_uuid, rule.id) for rule in snapshot.active()}
        with self._states_lock:
            for host_uuid, states in self._states.items():
                for rule_id in [rid for rid in states if (host_uuid, rid) not in live]:
                    del states[rule_id]

        logger.info(f"Rule set refreshed: revision {self._snapshot.revision} -> {snapshot.revision}")
        self._snapshot = snapshot
        return snapshot

    def evaluate_host(self, host: Host, snapshot: Optional[RuleSnapshot] = None) -> PassResult:
        """
        Evaluate every active rule of a host and signal the incident manager.

        Storage errors propagate and abort the host for this pass.
        """
        snapshot = snapshot or self._snapshot
        result = PassResult(revision=snapshot.revision, hosts=1)

        for rule in snapshot.active(host_uuid=host.uuid):
            samples = self.sample_store.get_recent_samples(
                rule.table, host.uuid, rule.compiled_lookup.window_seconds
            )

            try:
                measurement = self.measure(rule, samples)
            except SampleError as e:
                logger.warning(f"Skipping rule {rule.id} ({rule.name}) on {host.uuid}: {e}")
                result.skipped += 1
                continue

            logger.debug(f"Rule {rule.id} ({rule.name}) on {host.uuid}: value={measurement.value} "
                         f"severity={Severity.label(measurement.severity)}")

            severity = self.observe(rule, host.uuid, measurement)
            if severity is None:
                continue

            state = self.get_state(rule, host.uuid)
            previous = state.reported
            try:
                if severity == Severity.NORMAL:
                    if self.incident_manager.on_resolve(rule, host) is not None:
                        result.resolved += 1
                else:
                    self.incident_manager.on_breach(rule, host, severity, self._describe(rule, measurement))
                    if previous == Severity.NORMAL:
                        result.opened += 1
                    else:
                        result.severity_changed += 1
            except Exception:
                # Let the next pass observe the same sample again and retry
                state.last_sample_at = None
                raise

            self.commit(rule, host.uuid, severity)

        return result

    @staticmethod
    def _describe(rule: AlertRule, measurement: Measurement) -> str:
        return (f"{rule.table}.{rule.lookup} = {measurement.value:.2f} "
                f"({Severity.label(measurement.severity)}: warn {rule.warn:g}, crit {rule.crit:g}, "
                f"{rule.direction})")

    def run_pass(self, hosts: Optional[Iterable[Host]] = None) -> PassResult:
        """
        Run one evaluation pass over hosts in parallel.

        A host whose evaluation fails is reported in failed_hosts and retried
        on the next pass.
        """
        start_time = time.time()
        snapshot = self.refresh_rules()
        hosts = list(hosts) if hosts is not None else self.sample_store.get_hosts()

        total = PassResult(revision=snapshot.revision, hosts=len(hosts))
        futures = {host.uuid: self._executor.submit(self.evaluate_host, host, snapshot) for host in hosts}

        for host_uuid, future in futures.items():
            try:
                total.add(future.result())
            except Exception as e:
                logger.error(f"Evaluation of host {host_uuid} failed: {e}", exc_info=True)
                total.failed_hosts.append(host_uuid)

        total.duration = time.time() - start_time
        logger.debug(f"Evaluation pass done in {total.duration:.3f}s: {total}")
        return total

    def get_rule_count(self) -> int:
        """Get number of rules in the current snapshot"""
        return len(self._snapshot.rules)

    def get_active_rule_count(self) -> int:
        """Get number of active rules in the current snapshot"""
        return sum(1 for _ in self._snapshot.active())

    def shutdown(self) -> None:
        """Stop the worker pool without waiting for in-flight hosts"""
        self._executor.shutdown(wait=False, cancel_futures=True)
