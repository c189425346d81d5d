"""
Operator runtime context.

All process-wide state (API client, pooled admin clients and object stores,
the engine, leader election) lives on one explicit ``OperatorRuntime``
created at start-up and passed to the components that need it.
"""

import asyncio
import logging
from typing import Optional, List

from kubernetes import client

from .acl import AclReconciler
from .admin import AdminClientPool
from .backup import BackupScheduler, ObjectStorePool
from .cluster import ClusterReconciler
from .config import BACKUP_KIND, CLUSTER_KIND, PLURALS, USER_KIND, OperatorConfig
from .engine import ReconciliationEngine
from .errors import OperatorError
from .kube import (
    KubernetesEventSource,
    KubernetesResourceClient,
    KubernetesResourceStore,
    load_api_client,
)
from .leader import LeaderElector
from .models import ResourceKey


class OperatorRuntime:
    """
    Wires the reconcilers, engine, event source and leader election.

    Args:
        config: Operator configuration
        api_client: Kubernetes ApiClient; loaded from the environment if not provided
        logger: Custom logger instance. Creates one if not provided.

    Usage::

        async with OperatorRuntime(OperatorConfig.from_env()) as runtime:
            await runtime.run()
    """

    def __init__(
        self,
        config: OperatorConfig,
        api_client: Optional[client.ApiClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.api_client = api_client or load_api_client()

        self.resources = KubernetesResourceClient(self.api_client)
        self.store = KubernetesResourceStore(self.api_client)
        self.admins = AdminClientPool(config.admin)
        self.stores = ObjectStorePool()

        self.engine = ReconciliationEngine(config)
        self.engine.register(
            CLUSTER_KIND,
            ClusterReconciler(self.resources, self.store, self.admins, config),
            workers=config.cluster_workers,
        )
        self.engine.register(
            USER_KIND,
            AclReconciler(self.resources, self.admins, resync_interval=config.resync_interval),
            workers=config.user_workers,
        )
        self.engine.register(
            BACKUP_KIND,
            BackupScheduler(self.resources, self.admins, self.stores, config),
            workers=config.backup_workers,
        )

        self.leader = LeaderElector(self.api_client, config) if config.leader_election else None
        self._events: Optional[KubernetesEventSource] = None
        self._stop = asyncio.Event()

    async def start_engine(self) -> None:
        """Start reconciling: workers, watches and an initial full listing."""
        await self.engine.start()
        self._events = KubernetesEventSource(self.api_client, self.engine.enqueue, self.config.namespace)
        self._events.start()
        await self.enqueue_all()

    async def stop_engine(self) -> None:
        if self._events is not None:
            self._events.stop()
            self._events = None
        await self.engine.shutdown()

    async def enqueue_all(self) -> int:
        """Enqueue every existing resource of every kind."""
        count = 0
        for kind in PLURALS:
            try:
                items: List[dict] = await self.resources.list(kind, self.config.namespace)
            except OperatorError as e:
                self.logger.error(f"Failed to list {kind}: {e}")
                continue
            for item in items:
                meta = item.get("metadata") or {}
                self.engine.enqueue(ResourceKey(kind, meta.get("namespace", "default"), meta["name"]))
                count += 1
        self.logger.info(f"Enqueued {count} existing resource(s)")
        return count

    async def run(self) -> None:
        """Run until ``stop`` is called."""
        if self.leader is None:
            await self.start_engine()
            await self._stop.wait()
            await self.stop_engine()
            return

        campaign = asyncio.create_task(self.leader.run(self.start_engine, self.stop_engine))
        try:
            await self._stop.wait()
        finally:
            campaign.cancel()
            await asyncio.gather(campaign, return_exceptions=True)

    def stop(self) -> None:
        self._stop.set()

    async def close(self) -> None:
        await self.admins.close()
        await asyncio.to_thread(self.api_client.close)
        self.logger.info("Runtime closed")

    async def __aenter__(self) -> "OperatorRuntime":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
