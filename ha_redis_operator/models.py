"""
Resource Models

Typed views over the three custom resource kinds the operator manages:
- RedisCluster: ClusterSpec / ClusterStatus
- RedisUser: UserSpec / UserStatus
- RedisBackup: BackupSpec / BackupStatus / BackupRun

Specs are parsed from resource bodies (camelCase) and raise
ConfigurationError on invalid input. Statuses round-trip through
``from_dict`` / ``to_dict`` so that each reconciler can patch the
status subresource it owns.

"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from .config import CLUSTER_KIND
from .errors import ConfigurationError
from .schedule import validate_schedule

DEFAULT_IMAGE = "redis:7.2"
SERVICE_TYPES = ("ClusterIP", "NodePort", "LoadBalancer")

Address = Tuple[str, int]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_address(address: Optional[Address]) -> Optional[str]:
    if address is None:
        return None
    return f"{address[0]}:{address[1]}"


def parse_address(value: Optional[str]) -> Optional[Address]:
    if not value:
        return None
    host, _, port = value.rpartition(":")
    return (host, int(port))


@dataclass(frozen=True)
class ResourceKey:
    """Identity of a custom resource: kind plus namespace/name."""
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


class Phase(str, Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    DEGRADED = "Degraded"
    FAILOVER = "Failover"
    ERROR = "Error"


class RunOutcome(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


# =============================================================================
# Conditions
# =============================================================================

@dataclass
class Condition:
    """
    A status condition in the Kubernetes style.

    For failure conditions ``reason`` carries the error kind
    (Transient, Conflict, Configuration, Unrecoverable).
    """
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_time(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", "Unknown"),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=parse_time(data.get("lastTransitionTime")),
        )


def set_condition(
    conditions: List[Condition],
    type: str,
    status: bool,
    reason: str = "",
    message: str = "",
    now: Optional[datetime] = None,
) -> Condition:
    """
    Upsert a condition by type.

    ``lastTransitionTime`` only moves when the status value flips, so it
    records how long a condition has held.
    """
    value = "True" if status else "False"
    now = now or utcnow()
    for existing in conditions:
        if existing.type == type:
            if existing.status != value:
                existing.last_transition_time = now
            existing.status = value
            existing.reason = reason
            existing.message = message
            return existing
    condition = Condition(type, value, reason, message, now)
    conditions.append(condition)
    return condition


def get_condition(conditions: List[Condition], type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == type:
            return condition
    return None


# =============================================================================
# Spec parsing helpers
# =============================================================================

def _positive_int(spec: Dict[str, Any], key: str, default: int, minimum: int = 1) -> int:
    value = spec.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"spec.{key} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigurationError(f"spec.{key} must be >= {minimum}, got {value}")
    return value


def _string_list(value: Any, path: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ConfigurationError(f"{path} must be a list of non-empty strings")
    return list(value)


def _metadata(body: Dict[str, Any]) -> Tuple[str, str]:
    meta = body.get("metadata") or {}
    name = meta.get("name")
    namespace = meta.get("namespace") or "default"
    if not name:
        raise ConfigurationError("metadata.name is required")
    return name, namespace


@dataclass(frozen=True)
class SecretKeyRef:
    name: str
    key: str

    @classmethod
    def parse(cls, value: Any, path: str, default_key: str = "password") -> "SecretKeyRef":
        if not isinstance(value, dict) or not value.get("name"):
            raise ConfigurationError(f"{path}.name is required")
        return cls(name=value["name"], key=value.get("key") or default_key)


# =============================================================================
# RedisCluster
# =============================================================================

@dataclass(frozen=True)
class TlsSpec:
    enabled: bool = False
    secret_name: Optional[str] = None


@dataclass(frozen=True)
class StorageSpec:
    size: str = "1Gi"
    storage_class: Optional[str] = None


@dataclass(frozen=True)
class ClusterSpec:
    """
    Declared desired state of a Redis + Sentinel cluster.

    Attributes:
        name: Cluster name (immutable identity)
        namespace: Cluster namespace (immutable identity)
        uid: Resource UID, used for owner references
        generation: metadata.generation of the parsed body
        redis_replicas: Number of Redis data pods (one master + replicas)
        sentinel_replicas: Number of Sentinel pods
        image: Container image for both workloads
        resources: Container resource requests/limits, passed through
        storage: Persistent volume size and class
        quorum: Sentinels required to agree on the master
        master_name: Name Sentinel monitors the master under
        down_after_milliseconds: Sentinel down-after-milliseconds
        failover_timeout: Sentinel failover-timeout in milliseconds; also
                          bounds how long no quorum is tolerated
        parallel_syncs: Sentinel parallel-syncs
        auth_secret: Optional reference to an existing password secret
        tls: Optional TLS settings
        config: redis.conf overrides
        service_type: Exposure mode of the Sentinel service
        max_replication_lag: Lag bound in bytes, None for the operator default
    """
    name: str
    namespace: str
    uid: str = ""
    generation: int = 0
    redis_replicas: int = 3
    sentinel_replicas: int = 3
    image: str = DEFAULT_IMAGE
    resources: Dict[str, Any] = field(default_factory=dict)
    storage: StorageSpec = field(default_factory=StorageSpec)
    quorum: int = 2
    master_name: str = "mymaster"
    down_after_milliseconds: int = 5000
    failover_timeout: int = 60000
    parallel_syncs: int = 1
    auth_secret: Optional[SecretKeyRef] = None
    tls: TlsSpec = field(default_factory=TlsSpec)
    config: Dict[str, str] = field(default_factory=dict)
    service_type: str = "ClusterIP"
    max_replication_lag: Optional[int] = None

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(CLUSTER_KIND, self.namespace, self.name)

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "ClusterSpec":
        name, namespace = _metadata(body)
        meta = body.get("metadata") or {}
        spec = body.get("spec") or {}

        sentinel_replicas = _positive_int(spec, "sentinelReplicas", 3)
        quorum = _positive_int(spec, "quorum", 2)
        if quorum > sentinel_replicas:
            raise ConfigurationError(
                f"spec.quorum ({quorum}) cannot exceed spec.sentinelReplicas ({sentinel_replicas})"
            )

        storage = spec.get("storage") or {}
        tls = spec.get("tls") or {}
        if tls.get("enabled") and not tls.get("secretName"):
            raise ConfigurationError("spec.tls.secretName is required when TLS is enabled")

        overrides = spec.get("config") or {}
        if not isinstance(overrides, dict):
            raise ConfigurationError("spec.config must be a mapping")

        service_type = spec.get("serviceType", "ClusterIP")
        if service_type not in SERVICE_TYPES:
            raise ConfigurationError(
                f"spec.serviceType must be one of {', '.join(SERVICE_TYPES)}, got {service_type!r}"
            )

        max_lag = spec.get("maxReplicationLag")
        if max_lag is not None and (not isinstance(max_lag, int) or max_lag < 0):
            raise ConfigurationError("spec.maxReplicationLag must be a non-negative integer")

        auth = spec.get("authSecret")
        return cls(
            name=name,
            namespace=namespace,
            uid=meta.get("uid", ""),
            generation=meta.get("generation", 0) or 0,
            redis_replicas=_positive_int(spec, "redisReplicas", 3),
            sentinel_replicas=sentinel_replicas,
            image=spec.get("image") or DEFAULT_IMAGE,
            resources=dict(spec.get("resources") or {}),
            storage=StorageSpec(
                size=storage.get("size", "1Gi"),
                storage_class=storage.get("storageClass"),
            ),
            quorum=quorum,
            master_name=spec.get("masterName") or "mymaster",
            down_after_milliseconds=_positive_int(spec, "downAfterMilliseconds", 5000),
            failover_timeout=_positive_int(spec, "failoverTimeout", 60000),
            parallel_syncs=_positive_int(spec, "parallelSyncs", 1),
            auth_secret=SecretKeyRef.parse(auth, "spec.authSecret") if auth else None,
            tls=TlsSpec(enabled=bool(tls.get("enabled")), secret_name=tls.get("secretName")),
            config={str(k): str(v) for k, v in overrides.items()},
            service_type=service_type,
            max_replication_lag=max_lag,
        )


@dataclass
class ReplicaStatus:
    address: str
    role: str = "unknown"
    replication_offset_lag: Optional[int] = None
    last_observed_healthy: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "role": self.role,
            "replicationOffsetLag": self.replication_offset_lag,
            "lastObservedHealthy": format_time(self.last_observed_healthy),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReplicaStatus":
        return cls(
            address=data.get("address", ""),
            role=data.get("role", "unknown"),
            replication_offset_lag=data.get("replicationOffsetLag"),
            last_observed_healthy=parse_time(data.get("lastObservedHealthy")),
        )


@dataclass
class ClusterStatus:
    """Observed state of a cluster, owned by the cluster reconciler."""
    phase: Phase = Phase.PENDING
    master_addr: Optional[str] = None
    replicas: List[ReplicaStatus] = field(default_factory=list)
    quorum_agreed: bool = False
    last_failover_time: Optional[datetime] = None
    failover_count: int = 0
    indeterminate_since: Optional[datetime] = None
    observed_generation: int = 0
    conditions: List[Condition] = field(default_factory=list)

    def replica(self, address: str) -> Optional[ReplicaStatus]:
        for replica in self.replicas:
            if replica.address == address:
                return replica
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "masterAddr": self.master_addr,
            "replicas": [r.to_dict() for r in self.replicas],
            "quorumAgreed": self.quorum_agreed,
            "lastFailoverTime": format_time(self.last_failover_time),
            "failoverCount": self.failover_count,
            "indeterminateSince": format_time(self.indeterminate_since),
            "observedGeneration": self.observed_generation,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClusterStatus":
        data = data or {}
        try:
            phase = Phase(data.get("phase") or Phase.PENDING.value)
        except ValueError:
            phase = Phase.PENDING
        return cls(
            phase=phase,
            master_addr=data.get("masterAddr"),
            replicas=[ReplicaStatus.from_dict(r) for r in data.get("replicas") or []],
            quorum_agreed=bool(data.get("quorumAgreed", False)),
            last_failover_time=parse_time(data.get("lastFailoverTime")),
            failover_count=int(data.get("failoverCount") or 0),
            indeterminate_since=parse_time(data.get("indeterminateSince")),
            observed_generation=int(data.get("observedGeneration") or 0),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )


# =============================================================================
# RedisUser
# =============================================================================

@dataclass(frozen=True)
class AclRules:
    """Declared ACL rule set for a single user."""
    allow_categories: Tuple[str, ...] = ()
    deny_categories: Tuple[str, ...] = ()
    allow_commands: Tuple[str, ...] = ()
    deny_commands: Tuple[str, ...] = ()
    keys: Tuple[str, ...] = ()
    channels: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AclRules":
        data = data or {}
        categories = data.get("categories") or {}
        commands = data.get("commands") or {}
        return cls(
            allow_categories=tuple(_string_list(categories.get("allow"), "spec.rules.categories.allow")),
            deny_categories=tuple(_string_list(categories.get("deny"), "spec.rules.categories.deny")),
            allow_commands=tuple(_string_list(commands.get("allow"), "spec.rules.commands.allow")),
            deny_commands=tuple(_string_list(commands.get("deny"), "spec.rules.commands.deny")),
            keys=tuple(_string_list(data.get("keys"), "spec.rules.keys")),
            channels=tuple(_string_list(data.get("channels"), "spec.rules.channels")),
        )


@dataclass(frozen=True)
class UserSpec:
    name: str
    namespace: str
    username: str
    password_secret: SecretKeyRef
    cluster: str
    enabled: bool = True
    rules: AclRules = field(default_factory=AclRules)
    generation: int = 0

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "UserSpec":
        name, namespace = _metadata(body)
        spec = body.get("spec") or {}
        username = spec.get("username") or name
        if any(ch.isspace() for ch in username):
            raise ConfigurationError(f"spec.username must not contain whitespace: {username!r}")
        if username == "default":
            raise ConfigurationError("spec.username 'default' is reserved for the operator")
        cluster = spec.get("cluster")
        if not cluster:
            raise ConfigurationError("spec.cluster is required")
        return cls(
            name=name,
            namespace=namespace,
            username=username,
            password_secret=SecretKeyRef.parse(spec.get("passwordSecret"), "spec.passwordSecret"),
            cluster=cluster,
            enabled=bool(spec.get("enabled", True)),
            rules=AclRules.from_dict(spec.get("rules")),
            generation=(body.get("metadata") or {}).get("generation", 0) or 0,
        )


@dataclass
class UserStatus:
    last_synced_hash: Optional[str] = None
    sync_error: Optional[str] = None
    last_sync_time: Optional[datetime] = None
    observed_generation: int = 0
    conditions: List[Condition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastSyncedHash": self.last_synced_hash,
            "syncError": self.sync_error,
            "lastSyncTime": format_time(self.last_sync_time),
            "observedGeneration": self.observed_generation,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UserStatus":
        data = data or {}
        return cls(
            last_synced_hash=data.get("lastSyncedHash"),
            sync_error=data.get("syncError"),
            last_sync_time=parse_time(data.get("lastSyncTime")),
            observed_generation=int(data.get("observedGeneration") or 0),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )


# =============================================================================
# RedisBackup
# =============================================================================

@dataclass(frozen=True)
class S3Destination:
    bucket: str
    region: str = "us-east-1"
    prefix: str = ""
    endpoint: Optional[str] = None


@dataclass(frozen=True)
class BackupSpec:
    name: str
    namespace: str
    cluster: str
    schedule: str
    destination: S3Destination
    credentials_secret: str
    retention: int = 7
    compression: bool = True
    created: Optional[datetime] = None
    generation: int = 0

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "BackupSpec":
        name, namespace = _metadata(body)
        meta = body.get("metadata") or {}
        spec = body.get("spec") or {}
        cluster = spec.get("cluster")
        if not cluster:
            raise ConfigurationError("spec.cluster is required")
        schedule = spec.get("schedule")
        if not schedule:
            raise ConfigurationError("spec.schedule is required")
        validate_schedule(schedule)
        destination = spec.get("destination") or {}
        if not destination.get("bucket"):
            raise ConfigurationError("spec.destination.bucket is required")
        credentials = spec.get("credentialsSecret")
        if isinstance(credentials, dict):
            credentials = credentials.get("name")
        if not credentials:
            raise ConfigurationError("spec.credentialsSecret is required")
        return cls(
            name=name,
            namespace=namespace,
            cluster=cluster,
            schedule=schedule,
            destination=S3Destination(
                bucket=destination["bucket"],
                region=destination.get("region") or "us-east-1",
                prefix=(destination.get("prefix") or "").strip("/"),
                endpoint=destination.get("endpoint"),
            ),
            credentials_secret=credentials,
            retention=_positive_int(spec, "retention", 7),
            compression=bool(spec.get("compression", True)),
            created=parse_time(meta.get("creationTimestamp")),
            generation=meta.get("generation", 0) or 0,
        )


@dataclass
class BackupRun:
    """
    One scheduled backup attempt.

    ``deletion_error`` marks a pruned run whose remote object could not be
    deleted yet; the entry stays in status until deletion is confirmed.
    """
    id: str
    scheduled_time: datetime
    outcome: RunOutcome = RunOutcome.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    size_bytes: Optional[int] = None
    error_message: Optional[str] = None
    path: Optional[str] = None
    deletion_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scheduledTime": format_time(self.scheduled_time),
            "startTime": format_time(self.start_time),
            "endTime": format_time(self.end_time),
            "outcome": self.outcome.value,
            "sizeBytes": self.size_bytes,
            "errorMessage": self.error_message,
            "path": self.path,
            "deletionError": self.deletion_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupRun":
        scheduled_time = parse_time(data.get("scheduledTime"))
        if not data.get("id") or scheduled_time is None:
            raise ConfigurationError(f"status.runs entry needs id and scheduledTime: {data!r}")
        return cls(
            id=data["id"],
            scheduled_time=scheduled_time,
            outcome=RunOutcome(data.get("outcome") or RunOutcome.PENDING.value),
            start_time=parse_time(data.get("startTime")),
            end_time=parse_time(data.get("endTime")),
            size_bytes=data.get("sizeBytes"),
            error_message=data.get("errorMessage"),
            path=data.get("path"),
            deletion_error=data.get("deletionError"),
        )


@dataclass
class BackupStatus:
    runs: List[BackupRun] = field(default_factory=list)
    observed_generation: int = 0
    conditions: List[Condition] = field(default_factory=list)

    @property
    def last_successful_time(self) -> Optional[datetime]:
        succeeded = [r.scheduled_time for r in self.runs if r.outcome is RunOutcome.SUCCEEDED]
        return max(succeeded) if succeeded else None

    def to_dict(self) -> Dict[str, Any]:
        ordered = sorted(self.runs, key=lambda r: r.scheduled_time)
        return {
            "runs": [r.to_dict() for r in ordered],
            "lastSuccessfulTime": format_time(self.last_successful_time),
            "observedGeneration": self.observed_generation,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BackupStatus":
        data = data or {}
        return cls(
            runs=[BackupRun.from_dict(r) for r in data.get("runs") or []],
            observed_generation=int(data.get("observedGeneration") or 0),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )
