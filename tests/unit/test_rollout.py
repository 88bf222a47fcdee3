"""Unit tests for replica stage evaluation and the rollout sequencer."""

import pytest
from unittest.mock import AsyncMock, patch
from conftest import make_statefulset
from chop.resources.managed import ResourceFieldError
from chop.resources.replica import (
    ClickHouseReplicaID,
    KeeperReplicaID,
    ReplicaState,
    ReplicaStateTracker,
)
from chop.resources.rollout import (
    QuorumPolicy,
    RolloutSequencer,
    RolloutStage,
    ShardPolicy,
    evaluate_stage,
)

CFG, STS = "cfg", "sts"


def state(config_revision=CFG, statefulset_revision=STS, ready=True, error=False, generation=1, restarted_at=None):
    return ReplicaState(
        make_statefulset(
            "replica",
            config_revision=config_revision,
            statefulset_revision=statefulset_revision,
            ready=ready,
            generation=generation,
            restarted_at=restarted_at,
        ),
        error=error,
        healthy=ready and not error,
    )


def tracker_of(states):
    tracker = ReplicaStateTracker()
    for replica_id, replica_state in states.items():
        tracker.set(replica_id, replica_state)
    return tracker


class TestEvaluateStage:
    """Tests for evaluate_stage()."""

    def test_missing_replica(self):
        assert evaluate_stage(ReplicaState(), CFG, STS) is RolloutStage.NOT_EXISTS

    def test_up_to_date(self):
        assert evaluate_stage(state(), CFG, STS) is RolloutStage.UP_TO_DATE

    def test_config_diff(self):
        assert evaluate_stage(state(config_revision="old"), CFG, STS) is RolloutStage.HAS_DIFF

    def test_statefulset_diff(self):
        assert evaluate_stage(state(statefulset_revision="old"), CFG, STS) is RolloutStage.HAS_DIFF

    def test_not_ready(self):
        assert evaluate_stage(state(ready=False), CFG, STS) is RolloutStage.NOT_READY_UP_TO_DATE

    def test_controller_behind_generation(self):
        replica = state()
        replica.statefulset.body.metadata.generation = 2

        assert evaluate_stage(replica, CFG, STS) is RolloutStage.NOT_READY_UP_TO_DATE

    def test_error_wins_over_diff(self):
        assert evaluate_stage(state(config_revision="old", error=True), CFG, STS) is RolloutStage.ERROR


class TestQuorumPolicy:
    """Tests for QuorumPolicy.may_update()."""

    def _stages(self, tracker):
        return {rid: evaluate_stage(s, CFG, STS) for rid, s in tracker.items()}

    def test_no_second_update_while_one_is_in_progress(self):
        tracker = tracker_of({
            KeeperReplicaID(0): state(config_revision="old"),
            KeeperReplicaID(1): state(config_revision="old"),
            KeeperReplicaID(2): state(ready=False),
        })
        policy = QuorumPolicy(3)

        allowed, reason = policy.may_update(KeeperReplicaID(0), self._stages(tracker), tracker, set())

        assert allowed is False
        assert "2" in reason

    def test_update_would_break_quorum(self):
        tracker = tracker_of({
            KeeperReplicaID(0): state(config_revision="old"),
            KeeperReplicaID(1): state(),
            KeeperReplicaID(2): state(error=True),
        })
        policy = QuorumPolicy(3)

        allowed, reason = policy.may_update(KeeperReplicaID(0), self._stages(tracker), tracker, set())

        assert allowed is False
        assert "quorum" in reason

    def test_update_keeping_quorum(self):
        tracker = tracker_of({
            KeeperReplicaID(0): state(config_revision="old"),
            KeeperReplicaID(1): state(),
            KeeperReplicaID(2): state(),
        })

        allowed, _ = QuorumPolicy(3).may_update(
            KeeperReplicaID(0), self._stages(tracker), tracker, set()
        )

        assert allowed is True

    def test_unavailable_replica_may_always_be_updated(self):
        tracker = tracker_of({
            KeeperReplicaID(0): state(),
            KeeperReplicaID(1): state(error=True),
            KeeperReplicaID(2): state(config_revision="old", error=True),
        })

        allowed, _ = QuorumPolicy(3).may_update(
            KeeperReplicaID(2), self._stages(tracker), tracker, set()
        )

        assert allowed is True

    def test_single_member_may_be_updated(self):
        tracker = tracker_of({KeeperReplicaID(0): state(config_revision="old")})

        allowed, _ = QuorumPolicy(1).may_update(
            KeeperReplicaID(0), self._stages(tracker), tracker, set()
        )

        assert allowed is True

    def test_quorum_size(self):
        assert QuorumPolicy(1).quorum == 1
        assert QuorumPolicy(3).quorum == 2
        assert QuorumPolicy(4).quorum == 3
        assert QuorumPolicy(5).quorum == 3


class TestShardPolicy:
    """Tests for ShardPolicy.may_update()."""

    def test_shards_are_independent(self):
        stages = {
            ClickHouseReplicaID(0, 0): RolloutStage.UPDATING,
            ClickHouseReplicaID(0, 1): RolloutStage.HAS_DIFF,
            ClickHouseReplicaID(1, 0): RolloutStage.HAS_DIFF,
        }
        policy = ShardPolicy()

        blocked, _ = policy.may_update(ClickHouseReplicaID(0, 1), stages, ReplicaStateTracker(), set())
        allowed, _ = policy.may_update(ClickHouseReplicaID(1, 0), stages, ReplicaStateTracker(), set())

        assert blocked is False
        assert allowed is True


class TestRolloutSequencer:
    """Tests for RolloutSequencer.run()."""

    @pytest.mark.asyncio
    async def test_missing_replicas_are_all_created(self):
        apply_replica = AsyncMock(return_value=True)
        sequencer = RolloutSequencer(QuorumPolicy(3), apply_replica)
        ids = [KeeperReplicaID(i) for i in range(3)]

        result = await sequencer.run(ids, ReplicaStateTracker(), CFG, STS)

        assert [c.args for c in apply_replica.await_args_list] == [(rid, None) for rid in ids]
        assert result.updated == set(ids)
        assert result.count(RolloutStage.UPDATING) == 3
        assert result.converged is False

    @pytest.mark.asyncio
    async def test_converged_cluster_is_left_alone(self):
        apply_replica = AsyncMock()
        tracker = tracker_of({KeeperReplicaID(i): state() for i in range(3)})

        result = await RolloutSequencer(QuorumPolicy(3), apply_replica).run(
            tracker.ids(), tracker, CFG, STS
        )

        apply_replica.assert_not_awaited()
        assert result.converged is True
        assert result.outdated == set()

    @pytest.mark.asyncio
    async def test_one_keeper_member_per_pass(self):
        apply_replica = AsyncMock(return_value=True)
        tracker = tracker_of({KeeperReplicaID(i): state(config_revision="old") for i in range(3)})

        result = await RolloutSequencer(QuorumPolicy(3), apply_replica).run(
            tracker.ids(), tracker, CFG, STS
        )

        assert apply_replica.await_count == 1
        assert apply_replica.await_args.args[0] == KeeperReplicaID(0)
        assert result.outdated == set(tracker.ids())
        assert result.stages[KeeperReplicaID(0)] is RolloutStage.UPDATING
        assert result.stages[KeeperReplicaID(1)] is RolloutStage.HAS_DIFF

    @pytest.mark.asyncio
    async def test_one_replica_per_shard_per_pass(self):
        apply_replica = AsyncMock(return_value=True)
        tracker = tracker_of({
            ClickHouseReplicaID(s, i): state(statefulset_revision="old")
            for s in range(2)
            for i in range(2)
        })

        await RolloutSequencer(ShardPolicy(), apply_replica).run(tracker.ids(), tracker, CFG, STS)

        updated = [c.args[0] for c in apply_replica.await_args_list]
        assert updated == [ClickHouseReplicaID(0, 0), ClickHouseReplicaID(1, 0)]

    @pytest.mark.asyncio
    async def test_failed_replica_does_not_stop_other_shards(self):
        async def apply_replica(replica_id, restarted_at):
            if replica_id == ClickHouseReplicaID(0, 0):
                raise RuntimeError("boom")
            return True

        tracker = tracker_of({
            ClickHouseReplicaID(0, 0): state(config_revision="old"),
            ClickHouseReplicaID(1, 0): state(config_revision="old"),
        })

        result = await RolloutSequencer(ShardPolicy(), apply_replica).run(
            tracker.ids(), tracker, CFG, STS
        )

        assert result.error is not None
        assert list(result.error.errors) == [ClickHouseReplicaID(0, 0)]
        assert result.updated == {ClickHouseReplicaID(1, 0)}
        assert result.stages[ClickHouseReplicaID(0, 0)] is RolloutStage.HAS_DIFF

    @pytest.mark.asyncio
    async def test_resource_field_error_propagates(self):
        apply_replica = AsyncMock(side_effect=ResourceFieldError("nope"))

        with pytest.raises(ResourceFieldError):
            await RolloutSequencer(ShardPolicy(), apply_replica).run(
                [ClickHouseReplicaID(0, 0)], ReplicaStateTracker(), CFG, STS
            )

    @pytest.mark.asyncio
    async def test_config_change_stamps_new_restart_marker(self):
        apply_replica = AsyncMock(return_value=True)
        tracker = tracker_of({KeeperReplicaID(0): state(config_revision="old", restarted_at="t0")})

        with patch("chop.resources.rollout.now", return_value="t1"):
            await RolloutSequencer(QuorumPolicy(1), apply_replica).run(
                tracker.ids(), tracker, CFG, STS
            )

        apply_replica.assert_awaited_once_with(KeeperReplicaID(0), "t1")

    @pytest.mark.asyncio
    async def test_spec_only_change_keeps_restart_marker(self):
        apply_replica = AsyncMock(return_value=True)
        tracker = tracker_of({KeeperReplicaID(0): state(statefulset_revision="old", restarted_at="t0")})

        with patch("chop.resources.rollout.now", return_value="t1"):
            await RolloutSequencer(QuorumPolicy(1), apply_replica).run(
                tracker.ids(), tracker, CFG, STS
            )

        apply_replica.assert_awaited_once_with(KeeperReplicaID(0), "t0")

    @pytest.mark.asyncio
    async def test_error_replica_with_diff_is_updated(self):
        apply_replica = AsyncMock(return_value=True)
        tracker = tracker_of({
            KeeperReplicaID(0): state(),
            KeeperReplicaID(1): state(),
            KeeperReplicaID(2): state(statefulset_revision="old", error=True),
        })

        result = await RolloutSequencer(QuorumPolicy(3), apply_replica).run(
            tracker.ids(), tracker, CFG, STS
        )

        apply_replica.assert_awaited_once()
        assert apply_replica.await_args.args[0] == KeeperReplicaID(2)
        assert result.stages[KeeperReplicaID(2)] is RolloutStage.ERROR
