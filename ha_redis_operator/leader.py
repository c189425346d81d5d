"""
Lease-based leader election.

Only the holder of a ``coordination.k8s.io/v1`` Lease runs the engine. The
holder renews the lease every ``lease_renew_period``; another replica takes
over once ``lease_duration`` elapses without a renewal. Optimistic
concurrency on the Lease's resourceVersion resolves simultaneous attempts.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Callable, Awaitable

from kubernetes import client

from .config import OperatorConfig
from .errors import ConflictError, NotFoundError, OperatorError
from .kube import call_api
from .models import utcnow


def lease_expired(spec: Optional[client.V1LeaseSpec], now: datetime, default_duration: float) -> bool:
    """A lease without holder or renewal, or not renewed within its duration."""
    if spec is None or not spec.holder_identity or spec.renew_time is None:
        return True
    duration = spec.lease_duration_seconds or default_duration
    return spec.renew_time + timedelta(seconds=duration) < now


class LeaderElector:
    """
    Acquires and renews a Lease for this process.

    Args:
        api_client: Configured ApiClient
        config: Lease name, namespace, timings and identity
        clock: Returns the current UTC time
        logger: Custom logger instance. Creates one if not provided.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        config: OperatorConfig,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.api = client.CoordinationV1Api(api_client)
        self.config = config
        self.clock = clock
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.is_leader = False
        self.observed_holder: Optional[str] = None
        self._last_renewal: Optional[datetime] = None

    def _lease_spec(self, now: datetime, previous: Optional[client.V1LeaseSpec]) -> client.V1LeaseSpec:
        if previous is not None and previous.holder_identity == self.config.identity:
            transitions = previous.lease_transitions or 0
            acquired = previous.acquire_time or now
        elif previous is not None:
            transitions = (previous.lease_transitions or 0) + 1
            acquired = now
        else:
            transitions = 0
            acquired = now
        return client.V1LeaseSpec(
            holder_identity=self.config.identity,
            lease_duration_seconds=int(self.config.lease_duration),
            acquire_time=acquired,
            renew_time=now,
            lease_transitions=transitions,
        )

    async def try_acquire_or_renew(self) -> bool:
        """
        One acquisition/renewal attempt.

        Returns:
            True when this process holds the lease afterwards
        """
        name = self.config.lease_name
        namespace = self.config.lease_namespace
        now = self.clock()
        try:
            lease = await call_api(f"read lease {namespace}/{name}", self.api.read_namespaced_lease, name, namespace)
        except NotFoundError:
            body = client.V1Lease(
                metadata=client.V1ObjectMeta(name=name, namespace=namespace),
                spec=self._lease_spec(now, None),
            )
            self.observed_holder = None
            try:
                await call_api(f"create lease {namespace}/{name}", self.api.create_namespaced_lease, namespace, body)
            except ConflictError:
                return False
            return True

        spec = lease.spec
        holder = spec.holder_identity if spec else None
        self.observed_holder = holder
        if holder != self.config.identity and not lease_expired(spec, now, self.config.lease_duration):
            return False

        lease.spec = self._lease_spec(now, spec)
        try:
            await call_api(
                f"replace lease {namespace}/{name}", self.api.replace_namespaced_lease, name, namespace, lease
            )
        except ConflictError:
            return False
        return True

    async def release(self) -> None:
        """Give the lease up so another replica can take over immediately."""
        if not self.is_leader:
            return
        name = self.config.lease_name
        namespace = self.config.lease_namespace
        try:
            lease = await call_api(f"read lease {namespace}/{name}", self.api.read_namespaced_lease, name, namespace)
            if lease.spec and lease.spec.holder_identity == self.config.identity:
                lease.spec.holder_identity = None
                lease.spec.renew_time = None
                await call_api(
                    f"release lease {namespace}/{name}",
                    self.api.replace_namespaced_lease, name, namespace, lease,
                )
        except OperatorError as e:
            self.logger.warning(f"Failed to release lease: {e}")
        self.is_leader = False

    async def run(
        self,
        on_started: Callable[[], Awaitable[None]],
        on_stopped: Callable[[], Awaitable[None]],
    ) -> None:
        """
        Campaign forever: call ``on_started`` when leadership is acquired and
        ``on_stopped`` when it is lost. Cancel the task to stop campaigning.
        """
        try:
            while True:
                try:
                    held = await self.try_acquire_or_renew()
                except OperatorError as e:
                    self.logger.warning(f"Lease update failed: {e}")
                    held = False

                now = self.clock()
                if held:
                    self._last_renewal = now
                    if not self.is_leader:
                        self.is_leader = True
                        self.logger.info(f"Acquired lease {self.config.lease_name} as {self.config.identity}")
                        await on_started()
                elif self.is_leader and (self._taken_over() or self._lease_lost(now)):
                    self.is_leader = False
                    self.logger.warning(f"Lost lease {self.config.lease_name}")
                    await on_stopped()

                await asyncio.sleep(self.config.lease_renew_period)
        finally:
            if self.is_leader:
                await on_stopped()
                await self.release()

    def _taken_over(self) -> bool:
        return self.observed_holder not in (None, self.config.identity)

    def _lease_lost(self, now: datetime) -> bool:
        if self._last_renewal is None:
            return True
        return (now - self._last_renewal).total_seconds() >= self.config.lease_duration
