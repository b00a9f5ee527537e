"""Prometheus HTTP exporter for engine metrics"""

from prometheus_client import start_http_server, Gauge, Counter
from prometheus_client.core import CollectorRegistry
from hostwatch.utils.logger import get_logger


class PrometheusExporter:
    """Prometheus metrics of the evaluation engine"""

    def __init__(self, config):
        """
        Initialize Prometheus exporter

        Args:
            config: Configuration dictionary
        """
        self.config = config
        self.logger = get_logger(self.__class__.__name__)

        self.enabled = config.get('prometheus', {}).get('enabled', False)
        self.host = config.get('prometheus', {}).get('host', '0.0.0.0')
        self.port = config.get('prometheus', {}).get('port', 9110)

        self.registry = CollectorRegistry()
        self.running = False

        self._setup_metrics()

    def _setup_metrics(self):
        """Setup engine metrics"""
        self.engine_info = Gauge(
            'hostwatch_info',
            'Engine information',
            ['version', 'hostname'],
            registry=self.registry
        )

        self.pass_duration = Gauge(
            'hostwatch_pass_duration_seconds',
            'Duration of the last evaluation pass',
            registry=self.registry
        )

        self.pass_hosts = Gauge(
            'hostwatch_pass_hosts',
            'Hosts evaluated in the last pass',
            registry=self.registry
        )

        self.rules_active = Gauge(
            'hostwatch_rules_active',
            'Active alert rules',
            registry=self.registry
        )

        self.rules_revision = Gauge(
            'hostwatch_rules_revision',
            'Revision of the rule set used by the last pass',
            registry=self.registry
        )

        self.incidents_open = Gauge(
            'hostwatch_incidents_open',
            'Open incidents by severity',
            ['severity'],
            registry=self.registry
        )

        self.incidents_events = Counter(
            'hostwatch_incident_events_total',
            'Incident lifecycle events',
            ['event'],
            registry=self.registry
        )

        self.evaluations_skipped = Counter(
            'hostwatch_evaluations_skipped_total',
            'Rule evaluations skipped because samples were missing or malformed',
            registry=self.registry
        )

        self.host_failures = Counter(
            'hostwatch_host_failures_total',
            'Host evaluations aborted by errors',
            registry=self.registry
        )

        self.passes_failed = Counter(
            'hostwatch_passes_failed_total',
            'Evaluation passes that could not run',
            registry=self.registry
        )

    def start(self):
        """Start HTTP server"""
        if not self.enabled:
            self.logger.info("Prometheus HTTP server disabled")
            return

        try:
            self.logger.info(f"Starting Prometheus HTTP server on {self.host}:{self.port}")
            start_http_server(self.port, addr=self.host, registry=self.registry)
            self.running = True
            self.logger.info(f"Metrics available at http://{self.host}:{self.port}/metrics")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus HTTP server: {e}")
            raise

    def stop(self):
        """Stop HTTP server"""
        if self.running:
            self.running = False
            self.logger.info("Prometheus HTTP server stopped")

    def update_pass_metrics(self, result, active_rules, open_by_severity):
        """
        Update metrics after an evaluation pass

        Args:
            result: PassResult of the pass
            active_rules: Number of active rules
            open_by_severity: Open incident counts keyed by severity label
        """
        self.pass_duration.set(result.duration)
        self.pass_hosts.set(result.hosts)
        self.rules_active.set(active_rules)
        self.rules_revision.set(result.revision)

        for severity in ('warning', 'critical'):
            self.incidents_open.labels(severity=severity).set(open_by_severity.get(severity, 0))

        if result.opened:
            self.incidents_events.labels(event='opened').inc(result.opened)
        if result.severity_changed:
            self.incidents_events.labels(event='severity_changed').inc(result.severity_changed)
        if result.resolved:
            self.incidents_events.labels(event='resolved').inc(result.resolved)
        if result.skipped:
            self.evaluations_skipped.inc(result.skipped)
        if result.failed_hosts:
            self.host_failures.inc(len(result.failed_hosts))
