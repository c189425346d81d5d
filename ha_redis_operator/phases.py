"""
Cluster phase state machine.

``next_phase`` is a pure function of the current phase, the latest topology
snapshot, the applier outcome and a small amount of remembered context. It
never touches the network and is the single place phase rules live.

    Pending      -> Provisioning  objects missing or drifted
    Provisioning -> Ready         objects in sync, stable agreed master,
                                  replicas healthy
    Ready        -> Degraded      replicas unreachable/lagging, master agreed
    Ready/Degraded -> Failover    agreed master != recorded master
    Failover     -> Ready         every live replica follows the new master
    any          -> Error         applier conflict, or no quorum for longer
                                  than failoverTimeout, or a persistent
                                  transient failure
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict

from .applier import ApplyResult
from .models import Phase, Address
from .topology import TopologySnapshot, NodeObservation


@dataclass(frozen=True)
class TransitionContext:
    """
    Remembered inputs the pure transition needs besides the snapshot.

    Attributes:
        recorded_master: Master recorded in status by the previous pass
        expected_replicas: Data nodes other than the master the spec declares
        previous_lags: Replica lag per address from the previous poll
        max_replication_lag: Lag bound in bytes
        indeterminate_since: When the current loss of a quorum-agreed master was first seen
        failover_timeout: Seconds without quorum before Error
        now: Evaluation time
        persistent_failure: A transient failure has outlasted its threshold
    """
    recorded_master: Optional[Address]
    expected_replicas: int
    max_replication_lag: int
    failover_timeout: float
    now: datetime
    previous_lags: Optional[Dict[str, Optional[int]]] = None
    indeterminate_since: Optional[datetime] = None
    persistent_failure: bool = False


def failover_detected(snapshot: TopologySnapshot, recorded_master: Optional[Address]) -> bool:
    """The agreed master moved away from the recorded master."""
    return (
        recorded_master is not None
        and snapshot.master is not None
        and snapshot.master != recorded_master
    )


def replica_lagging(
    lag: Optional[int], previous: Optional[int], max_lag: int
) -> bool:
    """
    Lag policy: a replica lags when its lag is beyond the numeric bound, or
    when it grew since the previous poll. Unknown lag counts as lagging.
    """
    if lag is None or lag > max_lag:
        return True
    return previous is not None and lag > previous


def replicas_healthy(snapshot: TopologySnapshot, context: TransitionContext) -> bool:
    replicas = snapshot.replicas
    if len(replicas) < context.expected_replicas:
        return False
    previous = context.previous_lags or {}
    for node in replicas:
        if not node_healthy(snapshot, node, previous, context.max_replication_lag):
            return False
    return True


def node_healthy(
    snapshot: TopologySnapshot,
    node: NodeObservation,
    previous: Dict[str, Optional[int]],
    max_lag: int,
) -> bool:
    if not node.reachable or not node.link_up:
        return False
    if node.master_addr != snapshot.master:
        return False
    address = f"{node.address[0]}:{node.address[1]}"
    return not replica_lagging(snapshot.lag(node), previous.get(address), max_lag)


def next_phase(
    current: Phase,
    snapshot: TopologySnapshot,
    apply_result: ApplyResult,
    context: TransitionContext,
) -> Phase:
    """
    Decide the cluster phase after one reconcile pass.

    Args:
        current: Phase recorded by the previous pass
        snapshot: Topology observed in this pass
        apply_result: Outcome of the Object Applier in this pass
        context: Remembered inputs (recorded master, previous lags, ...)

    Returns:
        The next phase
    """
    if apply_result.conflicts or context.persistent_failure:
        return Phase.ERROR

    if snapshot.indeterminate:
        if context.indeterminate_since is not None:
            waited = (context.now - context.indeterminate_since).total_seconds()
            if waited > context.failover_timeout:
                return Phase.ERROR
        if current in (Phase.PENDING, Phase.PROVISIONING) or apply_result.changed:
            return Phase.PROVISIONING
        return Phase.DEGRADED

    if failover_detected(snapshot, context.recorded_master):
        return Phase.FAILOVER

    if current is Phase.FAILOVER and not snapshot.propagated:
        return Phase.FAILOVER

    if apply_result.changed or apply_result.failures:
        if current is Phase.FAILOVER:
            return Phase.FAILOVER
        return Phase.PROVISIONING

    stable = context.recorded_master is not None and context.recorded_master == snapshot.master
    healthy = snapshot.master_reachable and replicas_healthy(snapshot, context)

    if stable and healthy:
        return Phase.READY
    if current in (Phase.PENDING, Phase.PROVISIONING):
        return Phase.PROVISIONING
    if current is Phase.ERROR and not stable:
        return Phase.PROVISIONING
    return Phase.DEGRADED
