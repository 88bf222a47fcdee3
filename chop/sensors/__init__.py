"""Operator sensor framework.

Instrumentation hooks for reconciliation passes, managed resource writes,
replica rollout and administrative commands:

- OperatorSensor: base class, every hook a no-op
- SensorDelegate: forwards hooks to several sensors
- PrometheusMonitor: records hooks as Prometheus metrics
"""

from chop.sensors.base import OperatorSensor
from chop.sensors.delegate import SensorDelegate
from chop.sensors.prometheus import PrometheusMonitor
from chop.sensors.server import init_metrics_server

__all__ = [
    'OperatorSensor',
    'SensorDelegate',
    'PrometheusMonitor',
    'init_metrics_server',
]
