"""
Pytest configuration and fixtures for ha_redis_operator tests.

Provides:
- In-memory fakes for the Kubernetes, admin client and object store capabilities
- Configuration fixtures
- Resource body builders
- Integration test markers and CLI options
"""

import copy
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple, AsyncIterator
from unittest.mock import MagicMock

import pytest

from ha_redis_operator.admin import AdminClientPool, AdminConnectionError, ReplicationInfo, SentinelView
from ha_redis_operator.applier import ObjectRef
from ha_redis_operator.config import AdminConfig, OperatorConfig
from ha_redis_operator.errors import ConflictError, NotFoundError, TransientError
from ha_redis_operator.models import Address, ResourceKey


# ============================================================================
# Pytest Hooks for Integration Tests
# ============================================================================

def pytest_addoption(parser):
    """Add custom command line options for pytest."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires running Redis instance)",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires running Redis)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is provided."""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ============================================================================
# Fakes
# ============================================================================

def _labels_match(obj: Dict[str, Any], selector: Dict[str, str]) -> bool:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return all(labels.get(k) == v for k, v in selector.items())


def _merge(target: Dict[str, Any], patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeResourceClient:
    """In-memory custom resources and secrets."""

    def __init__(self):
        self.objects: Dict[ResourceKey, Dict[str, Any]] = {}
        self.secrets: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.status_patches: List[Tuple[ResourceKey, Dict[str, Any]]] = []

    def add(self, kind: str, body: Dict[str, Any]) -> ResourceKey:
        meta = body["metadata"]
        key = ResourceKey(kind, meta.get("namespace", "default"), meta["name"])
        self.objects[key] = copy.deepcopy(body)
        return key

    def add_secret(self, namespace: str, name: str, data: Dict[str, str]) -> None:
        self.secrets[(namespace, name)] = dict(data)

    def status(self, key: ResourceKey) -> Dict[str, Any]:
        return self.objects[key].get("status") or {}

    async def get(self, key: ResourceKey) -> Optional[Dict[str, Any]]:
        body = self.objects.get(key)
        return copy.deepcopy(body) if body is not None else None

    async def list(self, kind: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(body)
            for key, body in self.objects.items()
            if key.kind == kind and (namespace is None or key.namespace == namespace)
        ]

    async def patch_status(self, key: ResourceKey, status: Dict[str, Any]) -> None:
        if key not in self.objects:
            raise NotFoundError(f"{key} not found")
        self.objects[key]["status"] = copy.deepcopy(status)
        self.status_patches.append((key, copy.deepcopy(status)))

    async def read_secret(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        data = self.secrets.get((namespace, name))
        return dict(data) if data is not None else None


class FakeResourceStore:
    """
    In-memory managed objects.

    Created Secrets are mirrored into the resource client's secrets so the
    generated cluster password can be read back.
    """

    def __init__(self, resources: Optional[FakeResourceClient] = None):
        self.resources = resources
        self.objects: Dict[ObjectRef, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, ObjectRef]] = []
        self.fail: Dict[ObjectRef, Exception] = {}

    def _check(self, action: str, ref: ObjectRef) -> None:
        self.calls.append((action, ref))
        if ref in self.fail:
            raise self.fail[ref]

    async def list_managed(self, namespace: str, selector: Dict[str, str]) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(obj)
            for ref, obj in self.objects.items()
            if ref.namespace == namespace and _labels_match(obj, selector)
        ]

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ref = ObjectRef.of(obj)
        self._check("create", ref)
        if ref in self.objects:
            raise ConflictError(f"{ref} already exists")
        self.objects[ref] = copy.deepcopy(obj)
        if obj["kind"] == "Secret" and self.resources is not None:
            self.resources.add_secret(ref.namespace, ref.name, obj.get("stringData") or {})
        return obj

    async def patch(self, ref: ObjectRef, patch: Dict[str, Any]) -> Dict[str, Any]:
        self._check("patch", ref)
        if ref not in self.objects:
            raise NotFoundError(f"{ref} not found")
        _merge(self.objects[ref], patch)
        return self.objects[ref]

    async def delete(self, ref: ObjectRef) -> None:
        self._check("delete", ref)
        self.objects.pop(ref, None)

    def mutations(self) -> List[Tuple[str, ObjectRef]]:
        return list(self.calls)


class FakeAdminClient:
    """
    Scriptable admin client.

    Topology is configured per endpoint; endpoints listed in ``unreachable``
    raise AdminConnectionError.
    """

    def __init__(self):
        self.replication: Dict[Address, ReplicationInfo] = {}
        self.sentinels: Dict[Address, SentinelView] = {}
        self.unreachable: set = set()
        self.acls: Dict[Address, Dict[str, str]] = {}
        self.acl_applies: List[Tuple[Address, str, str]] = []
        self.dump_data: bytes = b"REDIS0011" + b"x" * 1024
        self.dump_error: Optional[Exception] = None
        self.dumped: List[Address] = []
        self.closed = False

    def set_topology(
        self,
        master: Address,
        replicas: List[Address],
        sentinels: List[Address],
        master_offset: int = 1000,
        replica_offsets: Optional[Dict[Address, int]] = None,
        quorum_reached: bool = True,
    ) -> None:
        replica_offsets = replica_offsets or {}
        self.replication = {master: ReplicationInfo(role="master", offset=master_offset)}
        for replica in replicas:
            self.replication[replica] = ReplicationInfo(
                role="slave",
                master_addr=master,
                offset=replica_offsets.get(replica, master_offset),
                link_up=True,
            )
        self.sentinels = {
            sentinel: SentinelView(master_addr=master, known_replicas=list(replicas), quorum_reached=quorum_reached)
            for sentinel in sentinels
        }

    def _check(self, endpoint: Address) -> None:
        if endpoint in self.unreachable:
            raise AdminConnectionError(f"{endpoint[0]}:{endpoint[1]} unreachable")

    async def get_replication_info(self, endpoint: Address) -> ReplicationInfo:
        self._check(endpoint)
        if endpoint not in self.replication:
            raise AdminConnectionError(f"{endpoint[0]}:{endpoint[1]} unreachable")
        return self.replication[endpoint]

    async def get_sentinel_view(self, endpoint: Address, master_name: str) -> SentinelView:
        self._check(endpoint)
        if endpoint not in self.sentinels:
            raise AdminConnectionError(f"{endpoint[0]}:{endpoint[1]} unreachable")
        return self.sentinels[endpoint]

    async def get_acl(self, endpoint: Address, user: str) -> Optional[str]:
        self._check(endpoint)
        return self.acls.get(endpoint, {}).get(user)

    async def apply_acl(self, endpoint: Address, user: str, rules: str) -> None:
        self._check(endpoint)
        self.acls.setdefault(endpoint, {})[user] = rules
        self.acl_applies.append((endpoint, user, rules))

    async def dump(self, endpoint: Address) -> AsyncIterator[bytes]:
        self._check(endpoint)
        self.dumped.append(endpoint)
        if self.dump_error is not None:
            raise self.dump_error
        for i in range(0, len(self.dump_data), 256):
            yield self.dump_data[i:i + 256]

    async def close(self) -> None:
        self.closed = True


class FakeObjectStore:
    """In-memory object store."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.put_error: Optional[Exception] = None
        self.delete_errors: Dict[str, Exception] = {}

    async def put(self, path: str, chunks: AsyncIterator[bytes]) -> int:
        data = b""
        async for chunk in chunks:
            data += chunk
        if self.put_error is not None:
            raise self.put_error
        self.objects[path] = data
        return len(data)

    async def delete(self, path: str) -> None:
        if path in self.delete_errors:
            raise self.delete_errors[path]
        self.objects.pop(path, None)
        self.deleted.append(path)

    async def list(self, prefix: str) -> List[str]:
        return sorted(p for p in self.objects if p.startswith(prefix))


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def operator_config() -> OperatorConfig:
    """Operator configuration with fast test timings."""
    return OperatorConfig(
        resync_interval=30.0,
        transition_interval=5.0,
        backoff_base=0.01,
        backoff_cap=0.05,
        reconcile_timeout=2.0,
        admin_call_timeout=0.5,
        transfer_timeout=5.0,
        transient_error_threshold=300.0,
        leader_election=False,
        identity="operator-test",
    )


@pytest.fixture
def admin_config() -> AdminConfig:
    """Admin client configuration."""
    return AdminConfig(retry_attempts=2, retry_base_delay=0.01)


# ============================================================================
# Fake Fixtures
# ============================================================================

@pytest.fixture
def resources() -> FakeResourceClient:
    return FakeResourceClient()


@pytest.fixture
def store(resources) -> FakeResourceStore:
    return FakeResourceStore(resources)


@pytest.fixture
def fake_admin() -> FakeAdminClient:
    return FakeAdminClient()


@pytest.fixture
def admins(fake_admin, admin_config) -> AdminClientPool:
    """Admin pool that always hands out the shared fake admin client."""
    return AdminClientPool(admin_config, factory=lambda creds, cfg: fake_admin)


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc))


# ============================================================================
# Resource Body Builders
# ============================================================================

def cluster_body(name: str = "cache", namespace: str = "default", **spec) -> Dict[str, Any]:
    return {
        "apiVersion": "redis.ha-operator.io/v1alpha1",
        "kind": "RedisCluster",
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}", "generation": 1},
        "spec": spec,
    }


def user_body(name: str = "app", namespace: str = "default", **spec) -> Dict[str, Any]:
    spec.setdefault("cluster", "cache")
    spec.setdefault("passwordSecret", {"name": "app-password"})
    return {
        "apiVersion": "redis.ha-operator.io/v1alpha1",
        "kind": "RedisUser",
        "metadata": {"name": name, "namespace": namespace, "generation": 1},
        "spec": spec,
    }


def backup_body(
    name: str = "nightly",
    namespace: str = "default",
    created: str = "2024-01-01T00:00:00Z",
    **spec,
) -> Dict[str, Any]:
    spec.setdefault("cluster", "cache")
    spec.setdefault("schedule", "0 2 * * *")
    spec.setdefault("destination", {"bucket": "backups", "region": "eu-west-1", "prefix": "redis"})
    spec.setdefault("credentialsSecret", "s3-credentials")
    return {
        "apiVersion": "redis.ha-operator.io/v1alpha1",
        "kind": "RedisBackup",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "generation": 1,
            "creationTimestamp": created,
        },
        "spec": spec,
    }


# ============================================================================
# Logger Fixtures
# ============================================================================

@pytest.fixture
def mock_logger() -> MagicMock:
    """Create a mock logger for testing log output."""
    logger = MagicMock()
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.debug = MagicMock()
    return logger


# ============================================================================
# Exception Fixtures
# ============================================================================

@pytest.fixture
def connection_error():
    """Create a Redis ConnectionError."""
    from redis.exceptions import ConnectionError
    return ConnectionError("Connection refused")


@pytest.fixture
def timeout_error():
    """Create a Redis TimeoutError."""
    from redis.exceptions import TimeoutError
    return TimeoutError("Operation timed out")


@pytest.fixture
def transient_error():
    return TransientError("apiserver unavailable")
