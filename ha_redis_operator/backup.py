"""
Backup Scheduler

Drives the scheduled backup lifecycle of RedisBackup resources:
- Due-time computation anchored on the last successful run
- Run lifecycle Pending -> Running -> Succeeded/Failed recorded in status
- Point-in-time dump of the agreed master, optional gzip, upload
- Retention: keep the newest N succeeded runs, delete the rest remotely

The object store is an injected capability (``ObjectStore``); S3ObjectStore
is the boto3 implementation used in production.

"""

import asyncio
import logging
import tempfile
import zlib
from datetime import datetime
from typing import Optional, List, Dict, Tuple, AsyncIterator, Callable, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .admin import AdminClientPool, cluster_credentials
from .config import CLUSTER_KIND, OperatorConfig
from .errors import (
    ConfigurationError,
    NotFoundError,
    OperatorError,
    TRANSIENT_EXCEPTIONS,
    TransientError,
    UnrecoverableError,
    classify,
)
from .kube import ResourceClient, read_secret_value
from .models import (
    BackupRun,
    BackupSpec,
    BackupStatus,
    ClusterSpec,
    ResourceKey,
    RunOutcome,
    S3Destination,
    format_address,
    format_time,
    set_condition,
    utcnow,
)
from .resources import redis_endpoints, sentinel_endpoints
from .schedule import latest_slot, next_due_time, next_fire_after
from .topology import TopologyObserver

LAST_BACKUP = "LastBackupSucceeded"
RETENTION = "RetentionEnforced"
RECONCILE_ERROR = "ReconcileError"

SPOOL_MAX_SIZE = 8 * 1024 * 1024
MIN_REQUEUE = 1.0


class ObjectStore(Protocol):
    """Remote storage for backup artifacts."""

    async def put(self, path: str, chunks: AsyncIterator[bytes]) -> int: ...

    async def delete(self, path: str) -> None: ...

    async def list(self, prefix: str) -> List[str]: ...


def backup_path(prefix: str, cluster: str, scheduled_time: datetime, compressed: bool) -> str:
    """``{prefix}/{cluster}/{YYYYMMDDTHHMMSSZ}.rdb[.gz]``"""
    stamp = scheduled_time.strftime("%Y%m%dT%H%M%SZ")
    name = f"{cluster}/{stamp}.rdb" + (".gz" if compressed else "")
    return f"{prefix}/{name}" if prefix else name


def run_id(spec: BackupSpec, scheduled_time: datetime) -> str:
    return f"{spec.name}-{scheduled_time.strftime('%Y%m%d%H%M%S')}"


async def gzip_stream(chunks: AsyncIterator[bytes], level: int = 6) -> AsyncIterator[bytes]:
    """Compress a byte stream into gzip format without buffering it whole."""
    compressor = zlib.compressobj(level, zlib.DEFLATED, 31)
    async for chunk in chunks:
        data = compressor.compress(chunk)
        if data:
            yield data
    tail = compressor.flush()
    if tail:
        yield tail


# =============================================================================
# S3
# =============================================================================

def _translate_s3_error(e: Exception, what: str) -> OperatorError:
    if isinstance(e, ClientError):
        code = e.response.get("Error", {}).get("Code", "")
        message = f"{what}: {code}: {e}"
        if code in ("NoSuchBucket", "InvalidBucketName"):
            return ConfigurationError(message, cause=e)
        if code in ("AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch"):
            return UnrecoverableError(message, cause=e)
        return TransientError(message, cause=e)
    return TransientError(f"{what}: {type(e).__name__}: {e}", cause=e)


class S3ObjectStore:
    """
    ObjectStore backed by an S3-compatible bucket.

    boto3 is synchronous; uploads are spooled to a temporary file (in memory
    up to SPOOL_MAX_SIZE) and handed to ``upload_fileobj`` in a worker
    thread, which performs a multipart upload for large dumps.

    Args:
        destination: Bucket, region, endpoint
        access_key_id: Access key
        secret_access_key: Secret key
        logger: Custom logger instance. Creates one if not provided.
    """

    def __init__(
        self,
        destination: S3Destination,
        access_key_id: str,
        secret_access_key: str,
        logger: Optional[logging.Logger] = None,
    ):
        self.destination = destination
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.client = boto3.client(
            "s3",
            region_name=destination.region,
            endpoint_url=destination.endpoint,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=BotoConfig(retries={"max_attempts": 3, "mode": "standard"}),
        )

    async def put(self, path: str, chunks: AsyncIterator[bytes]) -> int:
        size = 0
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as spool:
            async for chunk in chunks:
                spool.write(chunk)
                size += len(chunk)
            spool.seek(0)
            try:
                await asyncio.to_thread(self.client.upload_fileobj, spool, self.destination.bucket, path)
            except (BotoCoreError, ClientError) as e:
                raise _translate_s3_error(e, f"upload s3://{self.destination.bucket}/{path}") from e
        self.logger.info(f"Uploaded s3://{self.destination.bucket}/{path} ({size} bytes)")
        return size

    async def delete(self, path: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.destination.bucket, Key=path)
        except (BotoCoreError, ClientError) as e:
            raise _translate_s3_error(e, f"delete s3://{self.destination.bucket}/{path}") from e

    async def list(self, prefix: str) -> List[str]:
        def collect() -> List[str]:
            paginator = self.client.get_paginator("list_objects_v2")
            keys: List[str] = []
            for page in paginator.paginate(Bucket=self.destination.bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
            return keys

        try:
            return await asyncio.to_thread(collect)
        except (BotoCoreError, ClientError) as e:
            raise _translate_s3_error(e, f"list s3://{self.destination.bucket}/{prefix}") from e


StoreKey = Tuple[S3Destination, str, str]


class ObjectStorePool:
    """Object stores cached per destination and credentials."""

    def __init__(
        self,
        factory: Optional[Callable[[S3Destination, str, str], ObjectStore]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._factory = factory or S3ObjectStore
        self._stores: Dict[StoreKey, ObjectStore] = {}
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    def get(self, destination: S3Destination, access_key_id: str, secret_access_key: str) -> ObjectStore:
        key = (destination, access_key_id, secret_access_key)
        store = self._stores.get(key)
        if store is None:
            # Rotated credentials leave a stale entry for the old key pair
            for stale in [k for k in self._stores if k[0] == destination]:
                del self._stores[stale]
            store = self._factory(destination, access_key_id, secret_access_key)
            self._stores[key] = store
        return store


# =============================================================================
# Scheduler
# =============================================================================

class BackupScheduler:
    """
    Reconciles RedisBackup resources.

    A slot that was already attempted (successfully or not) is never retried;
    the next attempt waits for the next natural fire time. Due times are
    computed from the last *successful* run, so failures never advance the
    schedule.

    Args:
        resources: Custom resource and secret access
        admins: Admin clients pooled per cluster
        stores: Object stores pooled per destination
        config: Operator configuration
        observer: Topology observer used to find the master
        clock: Returns the current UTC time
        logger: Custom logger instance. Creates one if not provided.
    """

    def __init__(
        self,
        resources: ResourceClient,
        admins: AdminClientPool,
        stores: ObjectStorePool,
        config: Optional[OperatorConfig] = None,
        observer: Optional[TopologyObserver] = None,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.resources = resources
        self.admins = admins
        self.stores = stores
        self.config = config or OperatorConfig()
        self.observer = observer or TopologyObserver(self.config.admin_call_timeout)
        self.clock = clock
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def reconcile(self, key: ResourceKey) -> Optional[float]:
        body = await self.resources.get(key)
        if body is None:
            self.logger.info(f"{key} deleted, nothing to schedule")
            return None

        status = BackupStatus.from_dict(body.get("status"))
        now = self.clock()
        try:
            spec = BackupSpec.from_body(body)
            status.observed_generation = spec.generation
            requeue = await self._pass(key, spec, status, now)
        except OperatorError as e:
            await self._record_failure(key, status, e)
            raise
        except Exception as e:
            await self._record_failure(key, status, classify(e))
            raise

        set_condition(status.conditions, RECONCILE_ERROR, False, "", "")
        observed = status.to_dict()
        if observed != body.get("status"):
            await self.resources.patch_status(key, observed)
        return requeue

    async def _pass(self, key: ResourceKey, spec: BackupSpec, status: BackupStatus, now: datetime) -> float:
        self._fail_interrupted(status, now)
        store = await self._store(spec)
        await self.enforce_retention(spec, status, store)

        anchor = spec.created or now
        due = next_due_time(spec.schedule, status.last_successful_time, anchor)
        slot = latest_slot(spec.schedule, due, now)
        if slot is not None and not any(r.scheduled_time == slot for r in status.runs):
            await self._execute(key, spec, status, store, slot)
            await self.enforce_retention(spec, status, store)
            now = self.clock()

        return self._requeue_after(spec, status, now)

    def _requeue_after(self, spec: BackupSpec, status: BackupStatus, now: datetime) -> float:
        due = next_due_time(spec.schedule, status.last_successful_time, spec.created or now)
        slot = latest_slot(spec.schedule, due, now)
        if slot is not None:
            # Due slot already attempted, wait for the next natural one
            due = next_fire_after(spec.schedule, slot)
        delay = (due - now).total_seconds()
        return max(MIN_REQUEUE, min(delay, self.config.resync_interval))

    def _fail_interrupted(self, status: BackupStatus, now: datetime) -> None:
        """Runs left Pending/Running by an interrupted pass can never finish."""
        for run in status.runs:
            if run.outcome in (RunOutcome.PENDING, RunOutcome.RUNNING):
                self.logger.warning(f"Marking interrupted backup run {run.id} as failed")
                run.outcome = RunOutcome.FAILED
                run.end_time = now
                run.error_message = "Run interrupted before completion"

    async def _store(self, spec: BackupSpec) -> ObjectStore:
        access_key = await read_secret_value(
            self.resources, spec.namespace, spec.credentials_secret, "accessKeyId"
        )
        secret_key = await read_secret_value(
            self.resources, spec.namespace, spec.credentials_secret, "secretAccessKey"
        )
        return self.stores.get(spec.destination, access_key, secret_key)

    async def _execute(
        self,
        key: ResourceKey,
        spec: BackupSpec,
        status: BackupStatus,
        store: ObjectStore,
        slot: datetime,
    ) -> BackupRun:
        """
        Execute one run for ``slot``.

        The cluster and its master are resolved before the run is recorded;
        failing to resolve them is transient and leaves the slot unattempted.
        """
        cluster_key = ResourceKey(CLUSTER_KIND, spec.namespace, spec.cluster)
        cluster_body = await self.resources.get(cluster_key)
        if cluster_body is None:
            raise NotFoundError(f"Cluster {spec.cluster} not found in {spec.namespace}")
        cluster = ClusterSpec.from_body(cluster_body)
        admin = await self.admins.get(cluster_key, await cluster_credentials(self.resources, cluster))
        snapshot = await self.observer.observe(
            admin, redis_endpoints(cluster), sentinel_endpoints(cluster), cluster.master_name, cluster.quorum
        )
        if snapshot.master is None:
            raise TransientError(f"No quorum-agreed master for {cluster.name}, backup postponed")

        run = BackupRun(
            id=run_id(spec, slot),
            scheduled_time=slot,
            path=backup_path(spec.destination.prefix, spec.cluster, slot, spec.compression),
        )
        status.runs.append(run)
        run.outcome = RunOutcome.RUNNING
        run.start_time = self.clock()
        await self.resources.patch_status(key, status.to_dict())
        self.logger.info(
            f"Backup {run.id}: dumping {format_address(snapshot.master)} to {run.path}"
        )

        try:
            chunks = admin.dump(snapshot.master)
            if spec.compression:
                chunks = gzip_stream(chunks)
            size = await asyncio.wait_for(store.put(run.path, chunks), timeout=self.config.transfer_timeout)
        except (OperatorError, *TRANSIENT_EXCEPTIONS) as e:
            error = classify(e)
            run.outcome = RunOutcome.FAILED
            run.end_time = self.clock()
            run.error_message = error.message
            self.logger.error(f"Backup {run.id} failed: {type(e).__name__}: {e}")
            set_condition(status.conditions, LAST_BACKUP, False, error.kind, error.message)
            return run

        run.outcome = RunOutcome.SUCCEEDED
        run.end_time = self.clock()
        run.size_bytes = size
        self.logger.info(f"Backup {run.id} succeeded ({size} bytes)")
        set_condition(
            status.conditions, LAST_BACKUP, True, "Succeeded",
            f"{run.id} uploaded at {format_time(run.end_time)}",
        )
        return run

    async def enforce_retention(self, spec: BackupSpec, status: BackupStatus, store: ObjectStore) -> int:
        """
        Keep the newest ``retention`` succeeded runs and prune the rest.

        Pruned runs are removed from status once their object is deleted; a
        failed deletion keeps the entry with ``deletion_error`` so it is
        retried on the next pass. Failed runs are capped at ``retention``.

        Returns:
            Number of remote objects deleted
        """
        succeeded = sorted(
            (r for r in status.runs if r.outcome is RunOutcome.SUCCEEDED),
            key=lambda r: r.scheduled_time,
            reverse=True,
        )
        kept = [r for r in succeeded if r.deletion_error is None][:spec.retention]
        kept_ids = {r.id for r in kept}
        prune = [r for r in succeeded if r.id not in kept_ids]

        failed = sorted(
            (r for r in status.runs if r.outcome is RunOutcome.FAILED),
            key=lambda r: r.scheduled_time,
            reverse=True,
        )
        dropped_ids = {r.id for r in failed[spec.retention:]}

        deleted = 0
        errors: List[str] = []
        for run in prune:
            if run.path:
                try:
                    await store.delete(run.path)
                except OperatorError as e:
                    run.deletion_error = e.message
                    errors.append(f"{run.id}: {e.message}")
                    self.logger.warning(f"Failed to delete {run.path}: {e}")
                    continue
                deleted += 1
            dropped_ids.add(run.id)

        if dropped_ids:
            status.runs = [r for r in status.runs if r.id not in dropped_ids]
        if deleted:
            self.logger.info(f"Retention for {spec.name}: deleted {deleted} backup(s)")

        if errors:
            set_condition(status.conditions, RETENTION, False, "DeletionFailed", "; ".join(errors))
        else:
            set_condition(
                status.conditions, RETENTION, True, "Enforced",
                f"{len(kept)} of {spec.retention} backups retained",
            )
        return deleted

    async def _record_failure(self, key: ResourceKey, status: BackupStatus, error: OperatorError) -> None:
        set_condition(status.conditions, RECONCILE_ERROR, True, error.kind, error.message)
        try:
            await self.resources.patch_status(key, status.to_dict())
        except OperatorError as e:
            self.logger.error(f"Failed to record status for {key}: {e}")
