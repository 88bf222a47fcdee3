"""Prometheus monitoring backend for the operator.

Metric families:

1. chop_reconcile_* - pass duration, outcome and convergence
2. chop_resource_* - managed resource writes and detected drift
3. chop_replica_* / chop_command_* - rollout progress and administrative fan-out
"""

from typing import Dict, Optional, Any
import time
import logging

from prometheus_client import Counter, Histogram

from chop.sensors.base import OperatorSensor

logger = logging.getLogger(__name__)


class PrometheusMonitor(OperatorSensor):
    """Prometheus metrics monitor.

    Metrics are registered on the default registry and exposed by the
    metrics server started in `chop.sensors.server`.
    """

    def __init__(self):
        super().__init__()

        self.reconcile_duration = Histogram(
            'chop_reconcile_duration_seconds',
            'Time spent in one reconciliation pass',
            labelnames=['cluster_name', 'kind', 'namespace', 'trigger_source', 'result'],
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
        )

        self.reconcile_total = Counter(
            'chop_reconcile_total',
            'Total number of reconciliation passes',
            labelnames=['cluster_name', 'kind', 'namespace', 'trigger_source', 'result'],
        )

        self.reconcile_errors = Counter(
            'chop_reconcile_errors_total',
            'Total number of failed reconciliation passes',
            labelnames=['cluster_name', 'kind', 'namespace', 'error_type'],
        )

        self.resource_sync_duration = Histogram(
            'chop_resource_sync_duration_seconds',
            'Time spent applying managed resources',
            labelnames=['cluster_name', 'namespace', 'resource_type', 'operation', 'result'],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
        )

        self.resource_sync_errors = Counter(
            'chop_resource_sync_errors_total',
            'Total number of failed managed resource writes',
            labelnames=['cluster_name', 'namespace', 'resource_type', 'error_type'],
        )

        self.resource_drift_detected = Counter(
            'chop_resource_drift_detected_total',
            'Total number of managed resources found out of date',
            labelnames=['cluster_name', 'namespace', 'resource_type'],
        )

        self.replica_stage_transitions = Counter(
            'chop_replica_stage_transitions_total',
            'Total number of replica rollout stage transitions',
            labelnames=['cluster_name', 'from_stage', 'to_stage'],
        )

        self.command_duration = Histogram(
            'chop_command_duration_seconds',
            'Time spent running an administrative command across replicas',
            labelnames=['cluster_name', 'command', 'result'],
            buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
        )

        self.command_replica_failures = Counter(
            'chop_command_replica_failures_total',
            'Total number of replicas an administrative command failed on',
            labelnames=['cluster_name', 'command'],
        )

        logger.info("PrometheusMonitor initialized")

    def on_reconcile_start(self, cluster_name, kind, namespace, generation, trigger_source):
        return {'start_time': time.time(), 'trigger_source': trigger_source}

    def on_reconcile_complete(
        self,
        cluster_name: str,
        kind: str,
        namespace: str,
        state: Optional[Dict[str, Any]],
        success: bool,
        converged: bool,
        error: Optional[BaseException] = None,
    ) -> None:
        if not state:
            return
        if not success:
            result = 'failure'
        else:
            result = 'converged' if converged else 'progressing'
        labels = dict(
            cluster_name=cluster_name,
            kind=kind,
            namespace=namespace,
            trigger_source=state['trigger_source'],
            result=result,
        )
        self.reconcile_duration.labels(**labels).observe(time.time() - state['start_time'])
        self.reconcile_total.labels(**labels).inc()
        if error is not None:
            self.reconcile_errors.labels(
                cluster_name=cluster_name,
                kind=kind,
                namespace=namespace,
                error_type=error.__class__.__name__,
            ).inc()

    def on_resource_sync_start(self, cluster_name, resource_name, namespace, resource_type):
        return {'start_time': time.time()}

    def on_resource_sync_complete(
        self,
        cluster_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        state: Optional[Dict[str, Any]],
        operation: str,
        success: bool,
        error: Optional[BaseException] = None,
    ) -> None:
        if state:
            self.resource_sync_duration.labels(
                cluster_name=cluster_name,
                namespace=namespace,
                resource_type=resource_type,
                operation=operation,
                result='success' if success else 'failure',
            ).observe(time.time() - state['start_time'])
        if error is not None:
            self.resource_sync_errors.labels(
                cluster_name=cluster_name,
                namespace=namespace,
                resource_type=resource_type,
                error_type=error.__class__.__name__,
            ).inc()

    def on_resource_drift_detected(self, cluster_name, resource_name, namespace, resource_type, drift_field):
        self.resource_drift_detected.labels(
            cluster_name=cluster_name, namespace=namespace, resource_type=resource_type
        ).inc()

    def on_replica_stage_transition(self, cluster_name, replica_id, from_stage, to_stage):
        self.replica_stage_transitions.labels(
            cluster_name=cluster_name, from_stage=from_stage, to_stage=to_stage
        ).inc()

    def on_command_start(self, cluster_name, command, replicas):
        return {'start_time': time.time()}

    def on_command_complete(self, cluster_name, command, state, failed):
        if state:
            self.command_duration.labels(
                cluster_name=cluster_name,
                command=command,
                result='success' if not failed else 'failure',
            ).observe(time.time() - state['start_time'])
        if failed:
            self.command_replica_failures.labels(
                cluster_name=cluster_name, command=command
            ).inc(failed)
