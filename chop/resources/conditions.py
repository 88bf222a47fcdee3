import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from chop.resources.replica import ReplicaStateTracker
from chop.resources.rollout import RolloutResult, RolloutStage
from chop.utils.helpers import now

logger = logging.getLogger(__name__)

TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"

# Condition types
RECONCILE_SUCCEEDED = "ReconcileSucceeded"
REPLICA_STARTUP_SUCCEEDED = "ReplicaStartupSucceeded"
HEALTHY = "Healthy"
CLUSTER_SIZE_ALIGNED = "ClusterSizeAligned"
CONFIGURATION_IN_SYNC = "ConfigurationInSync"
READY = "Ready"

CONDITION_TYPES = (
    RECONCILE_SUCCEEDED,
    REPLICA_STARTUP_SUCCEEDED,
    HEALTHY,
    CLUSTER_SIZE_ALIGNED,
    CONFIGURATION_IN_SYNC,
    READY,
)

# Reasons
RECONCILE_STEP_FAILED = "ReconcileStepFailed"
RECONCILE_FINISHED = "ReconcileFinished"
REPLICAS_RUNNING = "ReplicasRunning"
REPLICA_ERROR = "ReplicaError"
REPLICAS_READY = "ReplicasReady"
REPLICAS_NOT_READY = "ReplicasNotReady"
UP_TO_DATE = "UpToDate"
SCALING_DOWN = "ScalingDown"
SCALING_UP = "ScalingUp"
CONFIGURATION_CHANGED = "ConfigurationChanged"
ALL_SHARDS_READY = "AllShardsReady"
SOME_SHARDS_NOT_READY = "SomeShardsNotReady"
STANDALONE_READY = "StandaloneReady"
CLUSTER_READY = "ClusterReady"
NO_LEADER = "NoLeader"
INCONSISTENT_STATE = "InconsistentState"
NOT_ENOUGH_FOLLOWERS = "NotEnoughFollowers"

# (healthy, reason, message)
HealthVerdict = Tuple[bool, str, str]


class ConditionList:
    """Status conditions, at most one per type.

    `set` is a no-op when type, status, reason and message are unchanged, so
    neither `lastTransitionTime` nor the status document changes.
    `lastTransitionTime` moves only when the status value flips.
    """

    def __init__(self, conditions: Iterable[Mapping] = None):
        self._conditions: List[Dict] = []
        for cond in conditions or []:
            if cond.get("type") and self.get(cond["type"]) is None:
                self._conditions.append(dict(cond))
        self.changed = False

    def get(self, type_: str) -> Optional[Dict]:
        for cond in self._conditions:
            if cond.get("type") == type_:
                return cond
        return None

    def is_true(self, type_: str) -> bool:
        cond = self.get(type_)
        return cond is not None and cond.get("status") == TRUE

    def set(
        self,
        type_: str,
        status: str,
        reason: str,
        message: str = "",
        observed_generation: Optional[int] = None,
    ) -> bool:
        """Upsert a condition. Returns True when the stored condition changed."""
        current = self.get(type_)
        if current is not None and (
            current.get("status"),
            current.get("reason"),
            current.get("message"),
        ) == (status, reason, message):
            return False

        new = {
            "type": type_,
            "status": status,
            "reason": reason,
            "message": message,
            "observedGeneration": observed_generation,
        }
        if current is None:
            self._conditions.append({**new, "lastTransitionTime": now()})
        else:
            transition = current.get("lastTransitionTime") or now()
            if current.get("status") != status:
                transition = now()
            current.update(new, lastTransitionTime=transition)
        self.changed = True
        logger.info(f"Condition {type_} changed to {status} ({reason}): {message}")
        return True

    def as_list(self) -> List[Dict]:
        return [dict(cond) for cond in self._conditions]

    def __len__(self) -> int:
        return len(self._conditions)


class ConditionAggregator:
    """Folds one pass's observations into the fixed condition vocabulary."""

    def __init__(self, conditions: ConditionList, generation: Optional[int]):
        self.conditions = conditions
        self.generation = generation

    def _set(self, type_: str, ok: bool, reason: str, message: str = "") -> bool:
        self.conditions.set(
            type_, TRUE if ok else FALSE, reason, message, self.generation
        )
        return ok

    def aggregate(
        self,
        tracker: ReplicaStateTracker,
        rollout: RolloutResult,
        desired_replicas: int,
        error: Optional[BaseException] = None,
        health: Optional[HealthVerdict] = None,
        ready_reason: str = REPLICAS_READY,
        not_ready_reason: str = REPLICAS_NOT_READY,
    ) -> bool:
        """Write all conditions. Returns the value of `Ready`."""
        stages = rollout.stages
        reconciled = self._set(
            RECONCILE_SUCCEEDED,
            error is None,
            RECONCILE_FINISHED if error is None else RECONCILE_STEP_FAILED,
            "" if error is None else str(error),
        )

        errored = sorted(str(rid) for rid, stage in stages.items() if stage is RolloutStage.ERROR)
        started = self._set(
            REPLICA_STARTUP_SUCCEEDED,
            not errored,
            REPLICAS_RUNNING if not errored else REPLICA_ERROR,
            "" if not errored else f"Replicas in error state: {', '.join(errored)}",
        )

        unhealthy = sorted(str(rid) for rid, state in tracker.items() if not state.healthy)
        replicas_healthy = not unhealthy and not errored and len(tracker) > 0
        # a failing kind-specific verdict (e.g. NoLeader) is the most precise reason
        if health is None or health[0]:
            if not replicas_healthy:
                health = (
                    False,
                    REPLICAS_NOT_READY,
                    f"Replicas not healthy: {', '.join(unhealthy or errored) or 'none observed'}",
                )
            elif health is None:
                health = (True, REPLICAS_READY, "")
        healthy = self._set(HEALTHY, *health)

        existing = sum(1 for _, state in tracker.items() if state.exists)
        ready = sum(1 for _, state in tracker.items() if state.exists and state.is_ready())
        if ready == desired_replicas and existing == desired_replicas:
            aligned = self._set(CLUSTER_SIZE_ALIGNED, True, UP_TO_DATE)
        elif existing > desired_replicas:
            aligned = self._set(
                CLUSTER_SIZE_ALIGNED, False, SCALING_DOWN,
                f"{existing} replicas exist, {desired_replicas} desired",
            )
        else:
            aligned = self._set(
                CLUSTER_SIZE_ALIGNED, False, SCALING_UP,
                f"{ready} of {desired_replicas} replicas ready",
            )

        outdated = sorted(str(rid) for rid in rollout.outdated)
        in_sync = self._set(
            CONFIGURATION_IN_SYNC,
            not outdated,
            UP_TO_DATE if not outdated else CONFIGURATION_CHANGED,
            "" if not outdated else f"Replicas pending update: {', '.join(outdated)}",
        )

        all_ok = reconciled and started and healthy and aligned and in_sync
        if all_ok:
            self._set(READY, True, ready_reason)
        else:
            failing = [
                t for t in CONDITION_TYPES[:-1] if not self.conditions.is_true(t)
            ]
            self._set(READY, False, not_ready_reason, f"Not satisfied: {', '.join(failing)}")
        return all_ok
