"""
ha_redis_operator - Kubernetes operator for Redis with Sentinel HA.

Reconciles three custom resources of group ``redis.ha-operator.io``:
RedisCluster (managed StatefulSets/Services and observed failover
topology), RedisUser (ACL sync) and RedisBackup (scheduled dumps to S3
with retention).
"""

from .acl import AclReconciler, rule_hash, serialize_rules
from .admin import AdminClient, AdminClientPool, AdminCredentials, RedisAdminClient
from .applier import ApplyResult, ObjectApplier
from .backup import BackupScheduler, ObjectStore, ObjectStorePool, S3ObjectStore
from .cluster import ClusterReconciler
from .config import AdminConfig, OperatorConfig
from .engine import ReconciliationEngine, Reconciler, WorkQueue
from .errors import (
    ConfigurationError,
    ConflictError,
    OperatorError,
    TransientError,
    UnrecoverableError,
)
from .models import Phase, ResourceKey
from .phases import next_phase
from .topology import TopologyObserver, TopologySnapshot

__version__ = "0.1.0"

__all__ = [
    "AclReconciler",
    "AdminClient",
    "AdminClientPool",
    "AdminConfig",
    "AdminCredentials",
    "ApplyResult",
    "BackupScheduler",
    "ClusterReconciler",
    "ConfigurationError",
    "ConflictError",
    "ObjectApplier",
    "ObjectStore",
    "ObjectStorePool",
    "OperatorConfig",
    "OperatorError",
    "Phase",
    "ReconciliationEngine",
    "Reconciler",
    "RedisAdminClient",
    "ResourceKey",
    "S3ObjectStore",
    "TopologyObserver",
    "TopologySnapshot",
    "TransientError",
    "UnrecoverableError",
    "WorkQueue",
    "next_phase",
    "rule_hash",
    "serialize_rules",
]
