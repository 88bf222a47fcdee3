from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple, Union
from chop.resources.managed import ManagedStatefulSet


class KeeperReplicaID(NamedTuple):
    """Member of a keeper ensemble."""

    index: int

    def path(self) -> str:
        return str(self.index)

    def __str__(self) -> str:
        return self.path()


class ClickHouseReplicaID(NamedTuple):
    """Replica `index` of shard `shard_id` in a ClickHouse cluster."""

    shard_id: int
    index: int

    def path(self) -> str:
        return f"{self.shard_id}-{self.index}"

    def __str__(self) -> str:
        return self.path()


ReplicaID = Union[KeeperReplicaID, ClickHouseReplicaID]


class ReplicaState:
    """What one pass observed about one replica."""

    statefulset: Optional[ManagedStatefulSet]
    #: Pod is stuck pulling its image or crash looping
    error: bool
    #: Server mode as reported by the replica (keeper: leader/follower/...)
    mode: Optional[str]
    healthy: bool
    message: Optional[str]

    def __init__(
        self,
        statefulset: Optional[ManagedStatefulSet] = None,
        error: bool = False,
        mode: Optional[str] = None,
        healthy: bool = False,
        message: Optional[str] = None,
    ):
        self.statefulset = statefulset
        self.error = error
        self.mode = mode
        self.healthy = healthy
        self.message = message

    @property
    def exists(self) -> bool:
        return self.statefulset is not None

    def is_ready(self) -> bool:
        """The workload controller caught up with the spec and the pod is ready."""
        if self.statefulset is None:
            return False
        body = self.statefulset.body
        status = body.status
        if status is None:
            return False
        generation = body.metadata.generation or 0
        if (status.observed_generation or 0) < generation:
            return False
        desired = body.spec.replicas if body.spec and body.spec.replicas is not None else 1
        return (status.ready_replicas or 0) >= desired

    def has_diff(self, config_revision: str, statefulset_revision: str) -> bool:
        if self.statefulset is None:
            return False
        return (
            self.statefulset.config_revision != config_revision
            or self.statefulset.statefulset_revision != statefulset_revision
        )

    def config_changed(self, config_revision: str) -> bool:
        return self.statefulset is not None and self.statefulset.config_revision != config_revision

    def __repr__(self) -> str:
        name = self.statefulset.name if self.statefulset else None
        return (
            f"ReplicaState<sts={name} error={self.error} "
            f"mode={self.mode} healthy={self.healthy}>"
        )


class ReplicaStateTracker:
    """Observed replica states of one reconciliation pass, keyed by identity."""

    def __init__(self) -> None:
        self._states: Dict[ReplicaID, ReplicaState] = {}

    def get(self, replica_id: ReplicaID) -> ReplicaState:
        """State of a replica; an empty (absent) state when nothing was observed."""
        return self._states.get(replica_id) or ReplicaState()

    def set(self, replica_id: ReplicaID, state: ReplicaState) -> bool:
        """Record a state. Returns True when the replica was already tracked."""
        existed = replica_id in self._states
        self._states[replica_id] = state
        return existed

    def ids(self) -> List[ReplicaID]:
        return sorted(self._states)

    def items(self) -> Iterator[Tuple[ReplicaID, ReplicaState]]:
        for replica_id in self.ids():
            yield replica_id, self._states[replica_id]

    def __contains__(self, replica_id) -> bool:
        return replica_id in self._states

    def __len__(self) -> int:
        return len(self._states)
