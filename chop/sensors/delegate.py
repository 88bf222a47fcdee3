"""Sensor delegation for fan-out pattern.

SensorDelegate forwards every hook to each registered sensor. A failing
sensor is logged and never interrupts reconciliation or the other sensors.
"""

from typing import Any, Dict, Optional, Set
import logging

from chop.sensors.base import OperatorSensor

logger = logging.getLogger(__name__)


class SensorDelegate(OperatorSensor):
    """Delegate sensor that fans out events to multiple backends.

    Start hooks return a dict mapping each sensor to its own state, which the
    matching complete hook splits up again.
    """

    def __init__(self) -> None:
        self._sensors: Set[OperatorSensor] = set()

    def add(self, sensor: OperatorSensor) -> None:
        logger.info(f"Adding sensor: {sensor.__class__.__name__}")
        self._sensors.add(sensor)

    def remove(self, sensor: OperatorSensor) -> None:
        logger.info(f"Removing sensor: {sensor.__class__.__name__}")
        self._sensors.discard(sensor)

    def clear(self) -> None:
        self._sensors.clear()

    def _start(self, hook: str, *args) -> Optional[Dict[OperatorSensor, Any]]:
        states = {}
        for sensor in self._sensors:
            try:
                state = getattr(sensor, hook)(*args)
                if state is not None:
                    states[sensor] = state
            except Exception as e:
                logger.error(f"Error in {sensor.__class__.__name__}.{hook}: {e}", exc_info=True)
        return states or None

    def _forward(self, hook: str, *args, **kwargs) -> None:
        for sensor in self._sensors:
            try:
                getattr(sensor, hook)(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in {sensor.__class__.__name__}.{hook}: {e}", exc_info=True)

    def _complete(self, hook: str, state, *args, **kwargs) -> None:
        """Like `_forward`, handing each sensor the state its start hook returned."""
        for sensor in self._sensors:
            try:
                sensor_state = state.get(sensor) if state else None
                getattr(sensor, hook)(*args, sensor_state, **kwargs)
            except Exception as e:
                logger.error(f"Error in {sensor.__class__.__name__}.{hook}: {e}", exc_info=True)

    def on_reconcile_start(self, cluster_name, kind, namespace, generation, trigger_source):
        return self._start("on_reconcile_start", cluster_name, kind, namespace, generation, trigger_source)

    def on_reconcile_complete(self, cluster_name, kind, namespace, state, success, converged, error=None):
        self._complete(
            "on_reconcile_complete", state, cluster_name, kind, namespace,
            success=success, converged=converged, error=error,
        )

    def on_resource_sync_start(self, cluster_name, resource_name, namespace, resource_type):
        return self._start("on_resource_sync_start", cluster_name, resource_name, namespace, resource_type)

    def on_resource_sync_complete(
        self, cluster_name, resource_name, namespace, resource_type, state, operation, success, error=None
    ):
        self._complete(
            "on_resource_sync_complete", state, cluster_name, resource_name, namespace, resource_type,
            operation=operation, success=success, error=error,
        )

    def on_resource_drift_detected(self, cluster_name, resource_name, namespace, resource_type, drift_field):
        self._forward(
            "on_resource_drift_detected", cluster_name, resource_name, namespace, resource_type, drift_field
        )

    def on_replica_stage_transition(self, cluster_name, replica_id, from_stage, to_stage):
        self._forward("on_replica_stage_transition", cluster_name, replica_id, from_stage, to_stage)

    def on_command_start(self, cluster_name, command, replicas):
        return self._start("on_command_start", cluster_name, command, replicas)

    def on_command_complete(self, cluster_name, command, state, failed):
        self._complete("on_command_complete", state, cluster_name, command, failed=failed)
