"""Base sensor class for operator monitoring.

Hooks come in start/complete pairs; the value returned by a start hook is
handed back to its complete hook. Every hook is a no-op here, so sensors
override only what they record.
"""

from typing import Dict, Optional, Any


class OperatorSensor:
    """Lifecycle hooks for reconciliation passes, resource writes, replica
    rollout and administrative commands."""

    def on_reconcile_start(
        self,
        cluster_name: str,
        kind: str,
        namespace: str,
        generation: int,
        trigger_source: str,
    ) -> Optional[Dict[str, Any]]:
        """Called when a reconciliation pass begins.

        Returns:
            Optional state dict passed to on_reconcile_complete
        """
        pass

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
        """Called when a reconciliation pass ends."""
        pass

    def on_resource_sync_start(
        self,
        cluster_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
    ) -> Optional[Dict[str, Any]]:
        """Called before a managed resource is applied."""
        pass

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
        """Called after a managed resource was applied.

        Args:
            operation: create, update or noop on success, the failing step otherwise
        """
        pass

    def on_resource_drift_detected(
        self,
        cluster_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        drift_field: str,
    ) -> None:
        """Called when a stored resource's spec hash differs from the desired one."""
        pass

    def on_replica_stage_transition(
        self,
        cluster_name: str,
        replica_id: str,
        from_stage: str,
        to_stage: str,
    ) -> None:
        """Called when the rollout moves a replica to another stage."""
        pass

    def on_command_start(
        self,
        cluster_name: str,
        command: str,
        replicas: int,
    ) -> Optional[Dict[str, Any]]:
        """Called before an administrative command fans out across replicas."""
        pass

    def on_command_complete(
        self,
        cluster_name: str,
        command: str,
        state: Optional[Dict[str, Any]],
        failed: int,
    ) -> None:
        """Called after every replica finished the command.

        Args:
            failed: Number of replicas the command failed on
        """
        pass
