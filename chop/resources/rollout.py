"""Per-replica rollout state machine.

Every pass, each replica is classified into a `RolloutStage` from what was
observed. Replicas that are missing are created; replicas whose recorded
revisions differ from the desired ones are updated, but only when the
cluster's `RolloutPolicy` allows taking them down. A configuration change
additionally stamps a fresh restart marker on the pod template so the server
process restarts with the new configuration.
"""
import enum
import logging
from collections import defaultdict
from typing import (
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Set,
    Tuple,
)
from chop.resources.managed import ResourceFieldError
from chop.resources.replica import (
    ClickHouseReplicaID,
    ReplicaID,
    ReplicaState,
    ReplicaStateTracker,
)
from chop.utils.helpers import now
from chop.utils.parallel import MultiError

logger = logging.getLogger(__name__)


class RolloutStage(enum.Enum):
    UP_TO_DATE = "UpToDate"
    HAS_DIFF = "HasDiff"
    NOT_READY_UP_TO_DATE = "NotReadyUpToDate"
    UPDATING = "Updating"
    ERROR = "Error"
    NOT_EXISTS = "NotExists"


#: Replicas that are being rolled and must finish before another starts
IN_PROGRESS = (RolloutStage.NOT_READY_UP_TO_DATE, RolloutStage.UPDATING)


def evaluate_stage(
    state: ReplicaState, config_revision: str, statefulset_revision: str
) -> RolloutStage:
    if not state.exists:
        return RolloutStage.NOT_EXISTS
    if state.error:
        return RolloutStage.ERROR
    if state.has_diff(config_revision, statefulset_revision):
        return RolloutStage.HAS_DIFF
    if not state.is_ready():
        return RolloutStage.NOT_READY_UP_TO_DATE
    return RolloutStage.UP_TO_DATE


def is_available(state: ReplicaState) -> bool:
    """Serving traffic right now, whatever revision it runs."""
    return state.exists and not state.error and state.is_ready()


class RolloutPolicy:
    """Decides whether a replica may be taken down for an update."""

    def may_update(
        self,
        replica_id: ReplicaID,
        stages: Mapping[ReplicaID, RolloutStage],
        tracker: ReplicaStateTracker,
        updating: Set[ReplicaID],
    ) -> Tuple[bool, str]:
        return True, ""


class QuorumPolicy(RolloutPolicy):
    """One replica at a time, never dropping below a majority of available members."""

    def __init__(self, replicas: int):
        self.replicas = replicas

    @property
    def quorum(self) -> int:
        # TODO: honour a user-defined quorum size once the keeper spec exposes one
        return self.replicas // 2 + 1

    def may_update(self, replica_id, stages, tracker, updating):
        for other, stage in stages.items():
            if other == replica_id:
                continue
            if other in updating or stage in IN_PROGRESS:
                return False, f"waiting for replica {other} to become ready"

        if not is_available(tracker.get(replica_id)):
            return True, ""
        # one or two members cannot lose any member without losing quorum
        if self.replicas - 1 < self.quorum:
            return True, ""

        available = sum(
            1
            for rid, state in tracker.items()
            if rid in stages and rid not in updating and is_available(state)
        )
        if available - 1 < self.quorum:
            return False, (
                f"{available} of {self.replicas} replicas available, "
                f"updating would drop below quorum of {self.quorum}"
            )
        return True, ""


class ShardPolicy(RolloutPolicy):
    """Shards roll independently, one replica at a time within a shard."""

    def may_update(self, replica_id: ClickHouseReplicaID, stages, tracker, updating):
        for other, stage in stages.items():
            if other == replica_id or other.shard_id != replica_id.shard_id:
                continue
            if other in updating or stage in IN_PROGRESS:
                return False, f"waiting for replica {other} of shard {replica_id.shard_id}"
        return True, ""


class RolloutResult:
    def __init__(
        self,
        stages: Dict[ReplicaID, RolloutStage],
        outdated: Set[ReplicaID],
        updated: Set[ReplicaID],
        error: Optional[MultiError] = None,
    ):
        self.stages = stages
        self.outdated = outdated
        self.updated = updated
        self.error = error

    @property
    def converged(self) -> bool:
        return self.error is None and all(
            stage is RolloutStage.UP_TO_DATE for stage in self.stages.values()
        )

    def count(self, stage: RolloutStage) -> int:
        return sum(1 for s in self.stages.values() if s is stage)

    def __repr__(self) -> str:
        counts = defaultdict(int)
        for stage in self.stages.values():
            counts[stage.value] += 1
        return f"RolloutResult<{dict(counts)} error={self.error}>"


# apply_replica(replica_id, restarted_at) -> changed
ApplyReplica = Callable[[ReplicaID, Optional[str]], Awaitable[bool]]


class RolloutSequencer:
    def __init__(self, policy: RolloutPolicy, apply_replica: ApplyReplica, sensor=None, cluster_name: str = None):
        self.policy = policy
        self.apply_replica = apply_replica
        self.sensor = sensor
        self.cluster_name = cluster_name

    def restart_marker(self, state: ReplicaState, config_revision: str) -> Optional[str]:
        """Restart timestamp for the pod template of the next write.

        A new timestamp when the configuration revision changed, otherwise the
        marker already on the workload so a spec-only update does not restart.
        """
        if state.exists and state.config_changed(config_revision):
            return now()
        if state.exists:
            return state.statefulset.restarted_at
        return None

    async def run(
        self,
        replica_ids: Iterable[ReplicaID],
        tracker: ReplicaStateTracker,
        config_revision: str,
        statefulset_revision: str,
    ) -> RolloutResult:
        ids = sorted(replica_ids)
        stages = {
            rid: evaluate_stage(tracker.get(rid), config_revision, statefulset_revision)
            for rid in ids
        }
        outdated: Set[ReplicaID] = set()
        updating: Set[ReplicaID] = set()
        errors: Dict[ReplicaID, BaseException] = {}

        for rid in ids:
            stage = stages[rid]
            state = tracker.get(rid)
            pending = stage in (RolloutStage.NOT_EXISTS, RolloutStage.HAS_DIFF) or (
                stage is RolloutStage.ERROR
                and state.has_diff(config_revision, statefulset_revision)
            )
            if not pending:
                continue
            outdated.add(rid)

            if stage is not RolloutStage.NOT_EXISTS:
                allowed, reason = self.policy.may_update(rid, stages, tracker, updating)
                if not allowed:
                    logger.info(f"Holding update of replica {rid}: {reason}")
                    continue

            try:
                await self.apply_replica(rid, self.restart_marker(state, config_revision))
            except ResourceFieldError:
                raise
            except Exception as ex:
                logger.warning(f"Failed to update replica {rid}: {ex}")
                errors[rid] = ex
                continue

            updating.add(rid)
            if stage is not RolloutStage.ERROR:
                stages[rid] = RolloutStage.UPDATING
            if self.sensor is not None:
                self.sensor.on_replica_stage_transition(
                    self.cluster_name, str(rid), stage.value, stages[rid].value
                )

        return RolloutResult(
            stages, outdated, updating, MultiError(errors) if errors else None
        )
