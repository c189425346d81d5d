"""
Cluster Reconciler

Top-level state machine for RedisCluster resources. One pass:

1. Derive the desired managed objects and converge them (Object Applier)
2. Observe the live topology (Topology Observer)
3. Detect failover against the recorded master and re-apply objects that
   follow the master
4. Compute the next phase (``phases.next_phase``) and patch ClusterStatus

Status is always derived from the latest snapshot plus the applier outcome.
Failures are written to the ``ReconcileError`` condition before they are
re-raised to the engine.

"""

import logging
from datetime import datetime
from typing import Optional, Callable, List

from .admin import AdminClientPool, cluster_credentials
from .applier import ApplyResult, ObjectApplier, ResourceStore
from .config import OperatorConfig
from .errors import OperatorError, TRANSIENT, UnrecoverableError, classify
from .kube import ResourceClient
from .models import (
    ClusterSpec,
    ClusterStatus,
    Phase,
    ReplicaStatus,
    ResourceKey,
    format_address,
    get_condition,
    parse_address,
    set_condition,
    utcnow,
)
from .phases import TransitionContext, failover_detected, next_phase, node_healthy
from .resources import desired_objects, redis_endpoints, selector_labels, sentinel_endpoints
from .topology import TopologyObserver, TopologySnapshot

OBJECTS_APPLIED = "ObjectsApplied"
QUORUM_AGREED = "QuorumAgreed"
REPLICAS_HEALTHY = "ReplicasHealthy"
READY = "Ready"
RECONCILE_ERROR = "ReconcileError"

TRANSITIONAL_PHASES = (Phase.PENDING, Phase.PROVISIONING, Phase.FAILOVER)


class ClusterReconciler:
    """
    Reconciles RedisCluster resources.

    Args:
        resources: Custom resource and secret access
        store: Managed object access for the applier
        admins: Admin clients pooled per cluster
        config: Operator configuration (intervals, thresholds, lag bound)
        observer: Topology observer, built from config if not provided
        clock: Returns the current UTC time
        logger: Custom logger instance. Creates one if not provided.
    """

    def __init__(
        self,
        resources: ResourceClient,
        store: ResourceStore,
        admins: AdminClientPool,
        config: Optional[OperatorConfig] = None,
        observer: Optional[TopologyObserver] = None,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.resources = resources
        self.admins = admins
        self.config = config or OperatorConfig()
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.applier = ObjectApplier(store, logger=self.logger)
        self.observer = observer or TopologyObserver(self.config.admin_call_timeout)
        self.clock = clock

    async def reconcile(self, key: ResourceKey) -> Optional[float]:
        body = await self.resources.get(key)
        if body is None:
            # Managed objects are garbage collected through owner references
            self.logger.info(f"{key} deleted, dropping cached clients")
            await self.admins.discard(key)
            return None

        status = ClusterStatus.from_dict(body.get("status"))
        now = self.clock()
        try:
            spec = ClusterSpec.from_body(body)
            status.observed_generation = spec.generation
            await self._converge(spec, status, now)
        except OperatorError as e:
            await self._record_failure(key, status, e, now)
        except Exception as e:
            await self._record_failure(key, status, classify(e), now)

        observed = status.to_dict()
        if observed != body.get("status"):
            await self.resources.patch_status(key, observed)
        if status.phase is Phase.ERROR:
            return self.config.unrecoverable_interval
        if status.phase in TRANSITIONAL_PHASES or status.phase is Phase.DEGRADED:
            return self.config.transition_interval
        return self.config.resync_interval

    async def _converge(self, spec: ClusterSpec, status: ClusterStatus, now: datetime) -> None:
        recorded = parse_address(status.master_addr)
        result = await self.applier.converge(
            spec.namespace, selector_labels(spec), desired_objects(spec, recorded)
        )

        credentials = await cluster_credentials(self.resources, spec)
        admin = await self.admins.get(spec.key, credentials)
        snapshot = await self.observer.observe(
            admin,
            redis_endpoints(spec),
            sentinel_endpoints(spec),
            spec.master_name,
            spec.quorum,
        )

        if snapshot.indeterminate:
            if status.indeterminate_since is None:
                status.indeterminate_since = now
        else:
            status.indeterminate_since = None

        max_lag = spec.max_replication_lag
        if max_lag is None:
            max_lag = self.config.max_replication_lag
        context = TransitionContext(
            recorded_master=recorded,
            expected_replicas=spec.redis_replicas - 1,
            max_replication_lag=max_lag,
            failover_timeout=spec.failover_timeout / 1000.0,
            now=now,
            previous_lags={r.address: r.replication_offset_lag for r in status.replicas},
            indeterminate_since=status.indeterminate_since,
            persistent_failure=self._persistent_failure(status, result, now),
        )
        phase = next_phase(status.phase, snapshot, result, context)

        if failover_detected(snapshot, recorded):
            status.failover_count += 1
            status.last_failover_time = now
            self.logger.warning(
                f"Failover in {spec.key}: master moved "
                f"{format_address(recorded)} -> {format_address(snapshot.master)} "
                f"(failover #{status.failover_count})"
            )
            reapplied = await self.applier.converge(
                spec.namespace, selector_labels(spec), desired_objects(spec, snapshot.master)
            )
            result = _merge(result, reapplied)

        if snapshot.master is not None:
            status.master_addr = format_address(snapshot.master)
        status.quorum_agreed = snapshot.quorum_agreed
        status.replicas = self._replica_statuses(snapshot, status, context, now)

        if phase is not status.phase:
            self.logger.info(f"{spec.key} phase {status.phase.value} -> {phase.value}")
        status.phase = phase
        self._update_conditions(status, snapshot, result, context, now)

    def _persistent_failure(self, status: ClusterStatus, result: ApplyResult, now: datetime) -> bool:
        if not result.failures:
            return False
        condition = get_condition(status.conditions, RECONCILE_ERROR)
        if condition is None or condition.status != "True" or condition.last_transition_time is None:
            return False
        elapsed = (now - condition.last_transition_time).total_seconds()
        return elapsed > self.config.transient_error_threshold

    def _replica_statuses(
        self,
        snapshot: TopologySnapshot,
        status: ClusterStatus,
        context: TransitionContext,
        now: datetime,
    ) -> List[ReplicaStatus]:
        replicas: List[ReplicaStatus] = []
        previous_lags = context.previous_lags or {}
        for node in sorted(snapshot.nodes, key=lambda n: n.address):
            address = format_address(node.address)
            previous = status.replica(address)
            if not node.reachable:
                role = "unknown"
            elif node.role == "master":
                role = "master"
            else:
                role = "replica"

            if node.address == snapshot.master:
                healthy = snapshot.master_reachable
                lag: Optional[int] = 0 if healthy else None
            else:
                healthy = snapshot.master is not None and node_healthy(
                    snapshot, node, previous_lags, context.max_replication_lag
                )
                lag = snapshot.lag(node)

            last_healthy = previous.last_observed_healthy if previous else None
            # Moves at most once per resync interval
            if healthy and (
                last_healthy is None
                or (now - last_healthy).total_seconds() >= self.config.resync_interval
            ):
                last_healthy = now
            replicas.append(ReplicaStatus(
                address=address,
                role=role,
                replication_offset_lag=lag,
                last_observed_healthy=last_healthy,
            ))
        return replicas

    def _update_conditions(
        self,
        status: ClusterStatus,
        snapshot: TopologySnapshot,
        result: ApplyResult,
        context: TransitionContext,
        now: datetime,
    ) -> None:
        conditions = status.conditions

        if result.conflicts:
            ref, message = result.conflicts[0]
            set_condition(conditions, OBJECTS_APPLIED, False, "Conflict", f"{ref}: {message}", now)
        elif result.failures:
            ref, message = result.failures[0]
            set_condition(conditions, OBJECTS_APPLIED, False, TRANSIENT, f"{ref}: {message}", now)
        else:
            set_condition(conditions, OBJECTS_APPLIED, True, "Applied", result.summary(), now)

        if snapshot.quorum_agreed:
            set_condition(
                conditions, QUORUM_AGREED, True, "Agreed",
                f"Master {format_address(snapshot.master)} agreed by quorum {snapshot.quorum}", now,
            )
        else:
            reachable = sum(1 for s in snapshot.sentinels if s.reachable)
            set_condition(
                conditions, QUORUM_AGREED, False, "NoQuorum",
                f"{reachable}/{len(snapshot.sentinels)} sentinels reachable, quorum {snapshot.quorum}", now,
            )

        previous_lags = context.previous_lags or {}
        unhealthy = [
            format_address(node.address) for node in snapshot.replicas
            if not node_healthy(snapshot, node, previous_lags, context.max_replication_lag)
        ]
        if snapshot.quorum_agreed and not unhealthy and len(snapshot.replicas) >= context.expected_replicas:
            set_condition(conditions, REPLICAS_HEALTHY, True, "InSync", "All replicas within lag bound", now)
        else:
            set_condition(
                conditions, REPLICAS_HEALTHY, False, "Unhealthy",
                f"Unhealthy replicas: {', '.join(unhealthy) or 'unknown'}", now,
            )

        set_condition(conditions, READY, status.phase is Phase.READY, status.phase.value, "", now)

        if result.failures:
            ref, message = result.failures[0]
            set_condition(conditions, RECONCILE_ERROR, True, TRANSIENT, f"{ref}: {message}", now)
        elif result.conflicts:
            ref, message = result.conflicts[0]
            set_condition(conditions, RECONCILE_ERROR, True, "Conflict", f"{ref}: {message}", now)
        elif status.phase is Phase.ERROR and snapshot.indeterminate:
            set_condition(
                conditions, RECONCILE_ERROR, True, "Unrecoverable",
                f"No quorum-agreed master for longer than {context.failover_timeout:.0f}s", now,
            )
        else:
            set_condition(conditions, RECONCILE_ERROR, False, "", "", now)

    async def _record_failure(
        self, key: ResourceKey, status: ClusterStatus, error: OperatorError, now: datetime
    ) -> None:
        """
        Write the failure into status and re-raise it for the engine.

        A transient failure that has persisted beyond the threshold moves the
        cluster to Error and is escalated as unrecoverable.
        """
        previous = get_condition(status.conditions, RECONCILE_ERROR)
        condition = set_condition(status.conditions, RECONCILE_ERROR, True, error.kind, error.message, now)
        set_condition(status.conditions, READY, False, error.kind, error.message, now)

        if error.kind != TRANSIENT:
            status.phase = Phase.ERROR
        elif previous is not None and previous.status == "True" and condition.last_transition_time:
            elapsed = (now - condition.last_transition_time).total_seconds()
            if elapsed > self.config.transient_error_threshold:
                status.phase = Phase.ERROR
                message = f"{error.message} (persisting for {elapsed:.0f}s)"
                self.logger.error(f"{key}: {message}")
                await self._patch(key, status)
                raise UnrecoverableError(message, cause=error) from error

        self.logger.warning(f"Reconcile of {key} failed: {error.kind}: {error.message}")
        await self._patch(key, status)
        raise error

    async def _patch(self, key: ResourceKey, status: ClusterStatus) -> None:
        try:
            await self.resources.patch_status(key, status.to_dict())
        except OperatorError as e:
            self.logger.error(f"Failed to record status for {key}: {e}")


def _merge(first: ApplyResult, second: ApplyResult) -> ApplyResult:
    return ApplyResult(
        created=first.created + second.created,
        updated=first.updated + second.updated,
        deleted=first.deleted + second.deleted,
        failures=second.failures,
        conflicts=second.conflicts,
    )
