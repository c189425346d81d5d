"""
Topology Observer

Builds a point-in-time TopologySnapshot of a Redis + Sentinel cluster by
querying every Sentinel for its view of the master and every data node for
its own replication role and offset. All calls run concurrently and are
individually bounded by a timeout; an endpoint that fails or times out is
recorded as unreachable instead of failing the observation.

"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Sequence

from .admin import AdminClient, ReplicationInfo, SentinelView
from .errors import OperatorError, TRANSIENT_EXCEPTIONS
from .models import Address, format_address, utcnow


@dataclass
class NodeObservation:
    """
    One data node as it reported itself.

    Attributes:
        address: (host, port) of the node
        reachable: Whether the node answered INFO replication
        role: Self-reported role ("master", "slave") or "unknown"
        master_addr: Master the node replicates from, if a replica
        replication_offset: Self-reported replication offset
        link_up: Whether the replica's link to its master is up
        error: Failure message when unreachable
    """
    address: Address
    reachable: bool = False
    role: str = "unknown"
    master_addr: Optional[Address] = None
    replication_offset: Optional[int] = None
    link_up: bool = False
    error: Optional[str] = None


@dataclass
class SentinelObservation:
    address: Address
    reachable: bool = False
    view: Optional[SentinelView] = None
    error: Optional[str] = None


@dataclass
class TopologySnapshot:
    """
    Point-in-time observation of master/replica/sentinel agreement.

    ``master`` is the address reported identically by at least ``quorum``
    Sentinels; when no such address exists the snapshot is indeterminate.
    """
    master: Optional[Address]
    quorum: int
    nodes: List[NodeObservation] = field(default_factory=list)
    sentinels: List[SentinelObservation] = field(default_factory=list)
    observed_at: datetime = field(default_factory=utcnow)

    @property
    def indeterminate(self) -> bool:
        return self.master is None

    @property
    def quorum_agreed(self) -> bool:
        return self.master is not None

    @property
    def master_node(self) -> Optional[NodeObservation]:
        for node in self.nodes:
            if node.address == self.master:
                return node
        return None

    @property
    def master_reachable(self) -> bool:
        node = self.master_node
        return node is not None and node.reachable and node.role == "master"

    @property
    def master_offset(self) -> Optional[int]:
        node = self.master_node
        if node is None or not node.reachable:
            return None
        return node.replication_offset

    @property
    def replicas(self) -> List[NodeObservation]:
        """Every data node other than the agreed master, in address order."""
        return [n for n in self.nodes if n.address != self.master]

    def lag(self, node: NodeObservation) -> Optional[int]:
        """Replication offset lag of ``node`` behind the master, in bytes."""
        master_offset = self.master_offset
        if master_offset is None or node.replication_offset is None or not node.reachable:
            return None
        return max(0, master_offset - node.replication_offset)

    @property
    def propagated(self) -> bool:
        """Every reachable replica follows the agreed master."""
        if self.master is None:
            return False
        return all(
            node.master_addr == self.master
            for node in self.replicas
            if node.reachable
        )


def agreed_master(views: Sequence[Optional[SentinelView]], quorum: int) -> Optional[Address]:
    """
    Return the master address reported by at least ``quorum`` Sentinels.

    Only views whose own CKQUORUM succeeded vote. Ties cannot produce two
    winners as long as quorum is a strict majority; with a minority quorum
    the most common address wins and a tie is treated as indeterminate.
    """
    votes = Counter(
        view.master_addr
        for view in views
        if view is not None and view.master_addr is not None and view.quorum_reached
    )
    if not votes:
        return None
    ranked = votes.most_common(2)
    address, count = ranked[0]
    if count < quorum:
        return None
    if len(ranked) > 1 and ranked[1][1] == count:
        return None
    return address


class TopologyObserver:
    """
    Observes cluster topology through an AdminClient.

    Args:
        call_timeout: Upper bound for each individual admin call
        logger: Custom logger instance. Creates one if not provided.
    """

    def __init__(self, call_timeout: float = 5.0, logger: Optional[logging.Logger] = None):
        self.call_timeout = call_timeout
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def _observe_node(self, admin: AdminClient, address: Address) -> NodeObservation:
        try:
            info: ReplicationInfo = await asyncio.wait_for(
                admin.get_replication_info(address), timeout=self.call_timeout
            )
        except (OperatorError, *TRANSIENT_EXCEPTIONS) as e:
            self.logger.debug(f"Node {format_address(address)} unreachable: {type(e).__name__}: {e}")
            return NodeObservation(address=address, error=f"{type(e).__name__}: {e}")
        return NodeObservation(
            address=address,
            reachable=True,
            role=info.role,
            master_addr=info.master_addr,
            replication_offset=info.offset,
            link_up=info.link_up if info.role != "master" else True,
        )

    async def _observe_sentinel(
        self, admin: AdminClient, address: Address, master_name: str
    ) -> SentinelObservation:
        try:
            view = await asyncio.wait_for(
                admin.get_sentinel_view(address, master_name), timeout=self.call_timeout
            )
        except (OperatorError, *TRANSIENT_EXCEPTIONS) as e:
            self.logger.debug(f"Sentinel {format_address(address)} unreachable: {type(e).__name__}: {e}")
            return SentinelObservation(address=address, error=f"{type(e).__name__}: {e}")
        return SentinelObservation(address=address, reachable=True, view=view)

    async def observe(
        self,
        admin: AdminClient,
        redis_endpoints: Sequence[Address],
        sentinel_endpoints: Sequence[Address],
        master_name: str,
        quorum: int,
    ) -> TopologySnapshot:
        """
        Take a snapshot of the cluster.

        Args:
            admin: Admin client for the cluster
            redis_endpoints: Every data node address
            sentinel_endpoints: Every Sentinel address
            master_name: Name the Sentinels monitor the master under
            quorum: Sentinels that must agree on the master

        Returns:
            TopologySnapshot; never raises for unreachable endpoints
        """
        sentinel_tasks = [
            self._observe_sentinel(admin, address, master_name) for address in sentinel_endpoints
        ]
        node_tasks = [self._observe_node(admin, address) for address in redis_endpoints]
        results = await asyncio.gather(*sentinel_tasks, *node_tasks)
        sentinels = list(results[:len(sentinel_tasks)])
        nodes = list(results[len(sentinel_tasks):])

        master = agreed_master([s.view for s in sentinels], quorum)
        snapshot = TopologySnapshot(master=master, quorum=quorum, nodes=nodes, sentinels=sentinels)

        reachable = sum(1 for s in sentinels if s.reachable)
        if master is None:
            self.logger.warning(
                f"No quorum-agreed master for {master_name} "
                f"({reachable}/{len(sentinels)} sentinels reachable, quorum={quorum})"
            )
        else:
            self.logger.debug(
                f"Master {format_address(master)} agreed for {master_name} "
                f"({reachable}/{len(sentinels)} sentinels reachable)"
            )
        return snapshot
