"""
Operator Configuration

Process-level settings for the operator runtime:
- Reconciliation cadence (resync, backoff, timeouts)
- Worker pool sizes per resource kind
- Leader election lease parameters
- Admin client connection settings

"""

import os
import socket
from dataclasses import dataclass, field, fields
from typing import Optional, Dict, Any

API_GROUP = "redis.ha-operator.io"
API_VERSION = "v1alpha1"

CLUSTER_KIND = "RedisCluster"
USER_KIND = "RedisUser"
BACKUP_KIND = "RedisBackup"

PLURALS = {
    CLUSTER_KIND: "redisclusters",
    USER_KIND: "redisusers",
    BACKUP_KIND: "redisbackups",
}

ENV_PREFIX = "HA_REDIS_OPERATOR_"


@dataclass
class AdminConfig:
    """
    Connection settings for the Redis/Sentinel admin client.

    Internal redis-py retries are disabled; ``retry_attempts`` and
    ``retry_base_delay`` drive the client's own backoff decorator.

    Attributes:
        socket_timeout: Timeout for socket operations
        socket_connect_timeout: Timeout for establishing connections
        max_connections: Maximum pooled connections per endpoint
        retry_attempts: Number of retry attempts for admin commands
        retry_base_delay: Base delay for exponential backoff
        client_name: Name reported to Redis via CLIENT SETNAME
        redis_port: Port the data nodes listen on
        sentinel_port: Port the Sentinel nodes listen on
    """
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 2.0
    max_connections: int = 4
    retry_attempts: int = 2
    retry_base_delay: float = 0.1
    client_name: str = "ha_redis_operator"
    redis_port: int = 6379
    sentinel_port: int = 26379

    def __post_init__(self):
        if self.socket_timeout <= 0 or self.socket_connect_timeout <= 0:
            raise ValueError("socket timeouts must be positive")
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        if self.retry_attempts < 0 or self.retry_base_delay < 0:
            raise ValueError("retry_attempts and retry_base_delay must not be negative")


@dataclass
class OperatorConfig:
    """
    Configuration for the operator process.

    Attributes:
        namespace: Namespace to watch; None watches all namespaces
        resync_interval: Seconds between level-triggered re-reconciles
        transition_interval: Requeue interval while a cluster is converging
        backoff_base: First retry delay after a failed reconcile
        backoff_cap: Upper bound for the retry delay
        unrecoverable_factor: Multiplier on resync_interval for resources
                              in an unrecoverable state
        reconcile_timeout: Upper bound for a single reconcile pass
        admin_call_timeout: Upper bound for a single admin client call
        transfer_timeout: Upper bound for a backup dump/upload
        transient_error_threshold: Seconds a transient failure may persist
                                   before it is surfaced as Error
        max_replication_lag: Default replication lag bound in bytes
        cluster_workers: Concurrent cluster reconciles
        user_workers: Concurrent user reconciles
        backup_workers: Concurrent backup reconciles
        leader_election: Whether to gate the engine on a Lease
        lease_name: Name of the Lease object
        lease_namespace: Namespace of the Lease object
        lease_duration: Seconds a lease is valid without renewal
        lease_renew_period: Seconds between renewals
        identity: Holder identity for the lease
        log_level: Root log level for the entry point
        admin: Admin client connection settings
    """
    namespace: Optional[str] = None
    resync_interval: float = 30.0
    transition_interval: float = 5.0
    backoff_base: float = 1.0
    backoff_cap: float = 300.0
    unrecoverable_factor: float = 4.0
    reconcile_timeout: float = 120.0
    admin_call_timeout: float = 5.0
    transfer_timeout: float = 1800.0
    transient_error_threshold: float = 300.0
    max_replication_lag: int = 1024 * 1024
    cluster_workers: int = 4
    user_workers: int = 2
    backup_workers: int = 2
    leader_election: bool = True
    lease_name: str = "ha-redis-operator"
    lease_namespace: str = "default"
    lease_duration: float = 15.0
    lease_renew_period: float = 5.0
    identity: str = field(default_factory=socket.gethostname)
    log_level: str = "INFO"
    admin: AdminConfig = field(default_factory=AdminConfig)

    def __post_init__(self):
        if self.resync_interval <= 0:
            raise ValueError("resync_interval must be positive")
        if self.transition_interval <= 0:
            raise ValueError("transition_interval must be positive")
        if self.backoff_base <= 0 or self.backoff_cap < self.backoff_base:
            raise ValueError("backoff_cap must be >= backoff_base > 0")
        if self.lease_renew_period >= self.lease_duration:
            raise ValueError("lease_renew_period must be shorter than lease_duration")

    @property
    def unrecoverable_interval(self) -> float:
        """Requeue interval for resources stuck in an unrecoverable state."""
        return self.resync_interval * self.unrecoverable_factor

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "OperatorConfig":
        """
        Build a configuration from ``HA_REDIS_OPERATOR_*`` variables.

        Every scalar field maps to the upper-cased field name, e.g.
        ``HA_REDIS_OPERATOR_RESYNC_INTERVAL``. Admin settings use the
        ``HA_REDIS_OPERATOR_ADMIN_`` prefix. Unset variables keep defaults.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)

        Returns:
            Populated OperatorConfig
        """
        env = os.environ if environ is None else environ
        admin = AdminConfig(**_read_fields(AdminConfig, env, ENV_PREFIX + "ADMIN_"))
        values = _read_fields(cls, env, ENV_PREFIX)
        values.pop("admin", None)
        return cls(admin=admin, **values)


def _read_fields(cls, env, prefix: str) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for f in fields(cls):
        raw = env.get(prefix + f.name.upper())
        if raw is None or raw == "":
            continue
        if f.name == "admin":
            continue
        values[f.name] = _coerce(f.name, raw, f.type)
    return values


def _coerce(name: str, raw: str, annotation) -> Any:
    kind = annotation if isinstance(annotation, str) else getattr(annotation, "__name__", str(annotation))
    try:
        if "bool" in kind:
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if "float" in kind:
            return float(raw)
        if "int" in kind:
            return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from e
    return raw
