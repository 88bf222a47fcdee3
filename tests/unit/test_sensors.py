"""Unit tests for sensor fan-out and the Prometheus monitor."""

import pytest
from unittest.mock import Mock
from prometheus_client import REGISTRY
from chop.sensors import OperatorSensor, PrometheusMonitor, SensorDelegate


class RecordingSensor(OperatorSensor):
    def __init__(self):
        self.completed = []

    def on_reconcile_start(self, cluster_name, kind, namespace, generation, trigger_source):
        return {"sensor": id(self)}

    def on_reconcile_complete(self, cluster_name, kind, namespace, state, success, converged, error=None):
        self.completed.append((cluster_name, state, success, converged))


class BrokenSensor(OperatorSensor):
    def on_reconcile_start(self, *args):
        raise RuntimeError("broken start")

    def on_reconcile_complete(self, *args, **kwargs):
        raise RuntimeError("broken complete")


@pytest.fixture(scope="module")
def monitor():
    # metrics live on the default registry, so one monitor per test run
    return PrometheusMonitor()


class TestSensorDelegate:
    """Tests for SensorDelegate."""

    def test_each_sensor_gets_its_own_state(self):
        a, b = RecordingSensor(), RecordingSensor()
        delegate = SensorDelegate()
        delegate.add(a)
        delegate.add(b)

        state = delegate.on_reconcile_start("test", "KeeperCluster", "ns", 1, "create")
        delegate.on_reconcile_complete("test", "KeeperCluster", "ns", state, True, False)

        assert a.completed == [("test", {"sensor": id(a)}, True, False)]
        assert b.completed == [("test", {"sensor": id(b)}, True, False)]

    def test_broken_sensor_does_not_interrupt_others(self):
        good = RecordingSensor()
        delegate = SensorDelegate()
        delegate.add(BrokenSensor())
        delegate.add(good)

        state = delegate.on_reconcile_start("test", "KeeperCluster", "ns", 1, "timer")
        delegate.on_reconcile_complete("test", "KeeperCluster", "ns", state, False, False, RuntimeError())

        assert len(good.completed) == 1

    def test_forwarded_hooks(self):
        sensor = Mock(spec=OperatorSensor)
        delegate = SensorDelegate()
        delegate.add(sensor)

        delegate.on_replica_stage_transition("test", "0-1", "HasDiff", "Updating")

        sensor.on_replica_stage_transition.assert_called_once_with("test", "0-1", "HasDiff", "Updating")


class TestPrometheusMonitor:
    """Tests for PrometheusMonitor."""

    def test_reconcile_metrics(self, monitor):
        labels = {
            "cluster_name": "metrics-test",
            "kind": "KeeperCluster",
            "namespace": "ns",
            "trigger_source": "create",
            "result": "progressing",
        }

        state = monitor.on_reconcile_start("metrics-test", "KeeperCluster", "ns", 1, "create")
        monitor.on_reconcile_complete("metrics-test", "KeeperCluster", "ns", state, True, False)

        assert REGISTRY.get_sample_value("chop_reconcile_total", labels) == 1.0

    def test_reconcile_error_type(self, monitor):
        state = monitor.on_reconcile_start("metrics-err", "ClickHouseCluster", "ns", 1, "timer")
        monitor.on_reconcile_complete(
            "metrics-err", "ClickHouseCluster", "ns", state, False, False, ValueError("x")
        )

        value = REGISTRY.get_sample_value(
            "chop_reconcile_errors_total",
            {"cluster_name": "metrics-err", "kind": "ClickHouseCluster", "namespace": "ns", "error_type": "ValueError"},
        )
        assert value == 1.0

    def test_stage_transitions(self, monitor):
        labels = {"cluster_name": "metrics-stage", "from_stage": "HasDiff", "to_stage": "Updating"}

        monitor.on_replica_stage_transition("metrics-stage", "0", "HasDiff", "Updating")
        monitor.on_replica_stage_transition("metrics-stage", "1", "HasDiff", "Updating")

        assert REGISTRY.get_sample_value("chop_replica_stage_transitions_total", labels) == 2.0
