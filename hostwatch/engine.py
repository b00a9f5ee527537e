"""Evaluation engine orchestration"""

import os
import signal
import threading
from typing import Any, Dict, List, Optional, Set

import psutil

from hostwatch import __version__
from hostwatch.alerts.alert_evaluator import AlertEvaluator, PassResult
from hostwatch.alerts.alert_rule import AlertRuleTemplate, load_rule_templates
from hostwatch.alerts.incident_manager import IncidentManager
from hostwatch.alerts.registry import AlertRegistry
from hostwatch.alerts.storage.sqlite_storage import SQLiteStorage
from hostwatch.errors import StorageError
from hostwatch.exporters.prometheus_exporter import PrometheusExporter
from hostwatch.samples.sqlite_store import SQLiteSampleStore
from hostwatch.utils.helpers import get_hostname
from hostwatch.utils.logger import get_logger


class Engine:
    """Runs evaluation passes on a schedule and owns every component"""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize engine

        Args:
            config: Configuration dictionary
        """
        self.config = config
        self.logger = get_logger(self.__class__.__name__)
        self.running = False
        self._stop_event = threading.Event()
        self.self_monitor_thread = None
        self.pass_count = 0

        if config['engine']['hostname'] == 'auto':
            self.hostname = get_hostname()
        else:
            self.hostname = config['engine']['hostname']

        self.logger.info(f"Initializing engine on {self.hostname}")

        self.sample_store = SQLiteSampleStore(config['samples'])
        self.storage = SQLiteStorage(config['storage'])
        self.registry = AlertRegistry(storage=self.storage)

        self.templates: List[AlertRuleTemplate] = []
        rules_dir = config['rules'].get('rules_dir')
        if rules_dir:
            self.templates = load_rule_templates(rules_dir)
        else:
            self.logger.warning("No rules directory specified")
        self._installed_hosts: Set[str] = set()

        self.incident_manager = IncidentManager(
            config['notifications'],
            self.storage,
            registry=self.registry,
        )
        self.evaluator = AlertEvaluator(
            self.registry,
            self.sample_store,
            self.incident_manager,
            workers=config['evaluation']['workers'],
        )
        self.exporter = PrometheusExporter(config)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown"""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def install_rules(self, hosts) -> int:
        """Bind rule templates to hosts not seen before"""
        new_hosts = [host for host in hosts if host.uuid not in self._installed_hosts]
        if not new_hosts or not self.templates:
            self._installed_hosts.update(host.uuid for host in new_hosts)
            return 0

        created = self.registry.install(
            self.templates, new_hosts, default_cid=self.config['engine'].get('cid')
        )
        self._installed_hosts.update(host.uuid for host in new_hosts)
        return created

    def run_once(self) -> Optional[PassResult]:
        """
        Run a single evaluation pass.

        Returns:
            PassResult, or None if the pass could not read hosts
        """
        try:
            hosts = self.sample_store.get_hosts()
        except StorageError as e:
            self.logger.error(f"Evaluation pass skipped, cannot list hosts: {e}")
            self.exporter.passes_failed.inc()
            return None

        self.install_rules(hosts)
        result = self.evaluator.run_pass(hosts)
        self.pass_count += 1

        self.exporter.update_pass_metrics(
            result,
            self.evaluator.get_active_rule_count(),
            self.incident_manager.get_incidents_by_severity(),
        )

        if result.opened or result.severity_changed or result.resolved or result.failed_hosts:
            self.logger.info(
                f"Pass {self.pass_count}: {result.hosts} hosts, {result.opened} opened, "
                f"{result.severity_changed} changed, {result.resolved} resolved, "
                f"{len(result.failed_hosts)} failed ({result.duration:.3f}s)"
            )

        cleanup_every = self.config['evaluation'].get('cleanup_every_passes', 100)
        if cleanup_every and self.pass_count % cleanup_every == 0:
            self.incident_manager.cleanup_old_incidents()

        return result

    def start(self):
        """Start the engine and block until stopped"""
        self.logger.info("Starting engine...")
        self.running = True
        self._stop_event.clear()
        self._setup_signal_handlers()

        try:
            self.exporter.start()
            self.exporter.engine_info.labels(
                version=__version__,
                hostname=self.hostname
            ).set(1)

            self.self_monitor_thread = threading.Thread(
                target=self._self_monitor_loop,
                daemon=True,
                name="self-monitor"
            )
            self.self_monitor_thread.start()

            self.logger.info("Engine started successfully")
            self._run_evaluation_loop()

        except KeyboardInterrupt:
            self.logger.info("Keyboard interrupt received")
        finally:
            self.stop()

    def _run_evaluation_loop(self):
        """Run evaluation passes until stopped"""
        interval = self.config['evaluation']['interval']
        self.logger.debug(f"Starting evaluation loop (interval: {interval}s)")

        while self.running:
            try:
                self.run_once()
            except Exception as e:
                self.logger.error(f"Error in evaluation loop: {e}", exc_info=True)
                self.exporter.passes_failed.inc()

            self._stop_event.wait(interval)

    def _self_monitor_loop(self):
        """Monitor the engine's own resource usage"""
        limits = self.config['resource_limits']
        check_interval = limits['check_interval']
        max_cpu = limits['max_cpu_percent']
        max_memory_mb = limits['max_memory_mb']
        action = limits['action_on_exceed']

        engine_process = psutil.Process(os.getpid())

        while self.running:
            try:
                cpu_percent = engine_process.cpu_percent(interval=1.0)
                memory_mb = engine_process.memory_info().rss / 1024 / 1024

                self.logger.debug(f"Engine resource usage: CPU={cpu_percent:.2f}%, Memory={memory_mb:.2f}MB")

                if cpu_percent > max_cpu:
                    self.logger.warning(f"Engine CPU usage ({cpu_percent:.2f}%) exceeds limit ({max_cpu}%)")
                    if action == 'stop':
                        self.logger.error("Stopping engine due to CPU limit exceeded")
                        self.stop()

                if memory_mb > max_memory_mb:
                    self.logger.warning(f"Engine memory usage ({memory_mb:.2f}MB) exceeds limit ({max_memory_mb}MB)")
                    if action == 'stop':
                        self.logger.error("Stopping engine due to memory limit exceeded")
                        self.stop()

            except psutil.Error as e:
                self.logger.error(f"Error in self-monitoring: {e}")

            self._stop_event.wait(check_interval)

    def stop(self):
        """Stop the engine"""
        if not self.running:
            return

        self.logger.info("Stopping engine...")
        self.running = False
        self._stop_event.set()

        if self.self_monitor_thread and self.self_monitor_thread is not threading.current_thread():
            self.self_monitor_thread.join(timeout=2)

        self.exporter.stop()
        self.logger.info("Engine stopped")

    def close(self):
        """Release the evaluator pool and both stores"""
        self.evaluator.shutdown()
        self.incident_manager.shutdown()
        self.sample_store.close()
