"""
Tests for the cluster phase state machine.

Covers:
- Provisioning to Ready
- Ready to Degraded and back
- Failover detection and propagation
- Error on conflicts, persistent failures and prolonged loss of quorum
- Replica lag policy
"""

from datetime import datetime, timedelta, timezone

import pytest

from ha_redis_operator.applier import ApplyResult, ObjectRef
from ha_redis_operator.models import Phase
from ha_redis_operator.phases import TransitionContext, next_phase, replica_lagging
from ha_redis_operator.topology import NodeObservation, TopologySnapshot

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
R0 = ("cache-redis-0", 6379)
R1 = ("cache-redis-1", 6379)
R2 = ("cache-redis-2", 6379)
MAX_LAG = 1024


def snapshot(master=R0, follow=None, offsets=None, unreachable=(), nodes=(R0, R1, R2)):
    """Build a snapshot where every non-master node follows ``follow``."""
    follow = follow or master
    offsets = offsets or {}
    observations = []
    for address in nodes:
        if address in unreachable:
            observations.append(NodeObservation(address, error="unreachable"))
        elif address == master:
            observations.append(NodeObservation(
                address, reachable=True, role="master", replication_offset=10_000, link_up=True,
            ))
        else:
            observations.append(NodeObservation(
                address, reachable=True, role="slave", master_addr=follow,
                replication_offset=offsets.get(address, 10_000), link_up=True,
            ))
    return TopologySnapshot(master=master, quorum=2, nodes=observations, observed_at=NOW)


def context(recorded=R0, **overrides):
    values = dict(
        recorded_master=recorded,
        expected_replicas=2,
        max_replication_lag=MAX_LAG,
        failover_timeout=30.0,
        now=NOW,
    )
    values.update(overrides)
    return TransitionContext(**values)


IN_SYNC = ApplyResult()
CHANGED = ApplyResult(created=[ObjectRef("StatefulSet", "default", "cache-redis")])


class TestProvisioning:
    """Test bring-up transitions."""

    def test_pending_with_changes_provisions(self):
        assert next_phase(Phase.PENDING, snapshot(master=None), CHANGED, context(None)) is Phase.PROVISIONING

    def test_first_agreement_without_recorded_master_stays_provisioning(self):
        """A stable master needs one pass where it was already recorded."""
        assert next_phase(Phase.PROVISIONING, snapshot(), IN_SYNC, context(None)) is Phase.PROVISIONING

    def test_stable_healthy_cluster_is_ready(self):
        assert next_phase(Phase.PROVISIONING, snapshot(), IN_SYNC, context()) is Phase.READY

    def test_apply_failure_keeps_provisioning(self):
        result = ApplyResult(failures=[(ObjectRef("Service", "default", "x"), "boom")])
        assert next_phase(Phase.READY, snapshot(), result, context()) is Phase.PROVISIONING

    def test_missing_replicas_not_ready(self):
        snap = snapshot(nodes=(R0, R1))
        assert next_phase(Phase.PROVISIONING, snap, IN_SYNC, context()) is Phase.PROVISIONING


class TestDegraded:
    """Test degraded transitions."""

    def test_unreachable_replica_degrades(self):
        snap = snapshot(unreachable=(R2,))
        assert next_phase(Phase.READY, snap, IN_SYNC, context()) is Phase.DEGRADED

    def test_lagging_replica_degrades(self):
        snap = snapshot(offsets={R1: 10_000 - 5_000})
        assert next_phase(Phase.READY, snap, IN_SYNC, context()) is Phase.DEGRADED

    def test_recovered_replica_returns_to_ready(self):
        assert next_phase(Phase.DEGRADED, snapshot(), IN_SYNC, context()) is Phase.READY

    def test_lost_quorum_degrades_ready_cluster(self):
        assert next_phase(Phase.READY, snapshot(master=None), IN_SYNC, context()) is Phase.DEGRADED


class TestFailover:
    """Test failover detection and completion."""

    def test_new_master_enters_failover(self):
        snap = snapshot(master=R1, follow=R0)
        assert next_phase(Phase.READY, snap, IN_SYNC, context(R0)) is Phase.FAILOVER

    def test_failover_from_degraded(self):
        snap = snapshot(master=R1)
        assert next_phase(Phase.DEGRADED, snap, IN_SYNC, context(R0)) is Phase.FAILOVER

    def test_failover_waits_for_propagation(self):
        snap = snapshot(master=R1, follow=R0)
        assert next_phase(Phase.FAILOVER, snap, IN_SYNC, context(R1)) is Phase.FAILOVER

    def test_failover_waits_for_object_updates(self):
        snap = snapshot(master=R1)
        assert next_phase(Phase.FAILOVER, snap, CHANGED, context(R1)) is Phase.FAILOVER

    def test_failover_completes_when_propagated(self):
        snap = snapshot(master=R1)
        assert next_phase(Phase.FAILOVER, snap, IN_SYNC, context(R1)) is Phase.READY


class TestError:
    """Test transitions into Error."""

    def test_conflict_is_error(self):
        result = ApplyResult(conflicts=[(ObjectRef("StatefulSet", "default", "x"), "immutable")])
        assert next_phase(Phase.READY, snapshot(), result, context()) is Phase.ERROR

    def test_persistent_failure_is_error(self):
        ctx = context(persistent_failure=True)
        assert next_phase(Phase.READY, snapshot(), IN_SYNC, ctx) is Phase.ERROR

    def test_quorum_lost_beyond_failover_timeout(self):
        ctx = context(indeterminate_since=NOW - timedelta(seconds=31))
        assert next_phase(Phase.DEGRADED, snapshot(master=None), IN_SYNC, ctx) is Phase.ERROR

    def test_quorum_lost_within_failover_timeout(self):
        ctx = context(indeterminate_since=NOW - timedelta(seconds=10))
        assert next_phase(Phase.DEGRADED, snapshot(master=None), IN_SYNC, ctx) is Phase.DEGRADED

    def test_error_recovers_to_ready(self):
        assert next_phase(Phase.ERROR, snapshot(), IN_SYNC, context()) is Phase.READY

    def test_error_with_unstable_master_provisions(self):
        assert next_phase(Phase.ERROR, snapshot(), IN_SYNC, context(None)) is Phase.PROVISIONING


class TestReplicaLagging:
    """Test the lag policy."""

    def test_within_bound(self):
        assert not replica_lagging(100, None, MAX_LAG)

    def test_unknown_lag(self):
        assert replica_lagging(None, 0, MAX_LAG)

    def test_beyond_bound_without_history(self):
        assert replica_lagging(MAX_LAG + 1, None, MAX_LAG)

    @pytest.mark.parametrize("previous", [None, MAX_LAG, MAX_LAG * 2, MAX_LAG * 4])
    def test_beyond_bound_lags_regardless_of_history(self, previous):
        assert replica_lagging(MAX_LAG * 2, previous, MAX_LAG)

    @pytest.mark.parametrize("previous,expected", [(None, False), (100, True), (500, False), (800, False)])
    def test_growth_within_bound(self, previous, expected):
        assert replica_lagging(500, previous, MAX_LAG) is expected

    def test_steady_lag_beyond_bound_degrades(self):
        snap = snapshot(offsets={R1: 10_000 - 100 * MAX_LAG})
        ctx = context(previous_lags={"cache-redis-1:6379": 100 * MAX_LAG})
        assert next_phase(Phase.READY, snap, IN_SYNC, ctx) is Phase.DEGRADED

    def test_shrinking_lag_within_bound_is_healthy(self):
        snap = snapshot(offsets={R1: 10_000 - 200})
        ctx = context(previous_lags={"cache-redis-1:6379": 900})
        assert next_phase(Phase.READY, snap, IN_SYNC, ctx) is Phase.READY

    def test_growing_lag_within_bound_degrades(self):
        snap = snapshot(offsets={R1: 10_000 - 900})
        ctx = context(previous_lags={"cache-redis-1:6379": 200})
        assert next_phase(Phase.READY, snap, IN_SYNC, ctx) is Phase.DEGRADED
