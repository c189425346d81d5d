"""
Tests for the Kubernetes adapters.

Covers:
- API error translation into the error taxonomy
- Secret decoding and status patches
- Managed object listing and deletion
- Filtering of watch events that only touch status
"""

import base64
from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from ha_redis_operator.applier import ObjectRef
from ha_redis_operator.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    TransientError,
    UnrecoverableError,
)
from ha_redis_operator.kube import (
    KubernetesEventSource,
    KubernetesResourceClient,
    KubernetesResourceStore,
    call_api,
    translate_api_error,
)
from ha_redis_operator.models import ResourceKey

CACHE = ResourceKey("RedisCluster", "default", "cache")


def api_error(status, body=""):
    error = ApiException(status=status, reason="reason")
    error.body = body
    return error


class TestTranslateApiError:
    """Test API error classification."""

    @pytest.mark.parametrize("status,expected", [
        (404, NotFoundError),
        (409, ConflictError),
        (400, ConfigurationError),
        (401, UnrecoverableError),
        (403, UnrecoverableError),
        (500, TransientError),
        (503, TransientError),
    ])
    def test_status_codes(self, status, expected):
        assert isinstance(translate_api_error(api_error(status), "get"), expected)

    def test_immutable_field_is_conflict(self):
        error = api_error(422, '{"message": "spec: Forbidden: updates to statefulset spec are forbidden"}')
        assert isinstance(translate_api_error(error, "patch"), ConflictError)

    def test_invalid_value_is_configuration(self):
        error = api_error(422, '{"message": "spec.replicas: Invalid value: -1"}')
        assert isinstance(translate_api_error(error, "patch"), ConfigurationError)

    @pytest.mark.asyncio
    async def test_call_api_translates(self):
        def failing():
            raise api_error(409)

        with pytest.raises(ConflictError, match="create thing"):
            await call_api("create thing", failing)

    @pytest.mark.asyncio
    async def test_call_api_connection_error_is_transient(self):
        def failing():
            raise ProtocolError("Connection aborted")

        with pytest.raises(TransientError):
            await call_api("list things", failing)


class TestKubernetesResourceClient:
    """Test custom resource and secret access."""

    @pytest.fixture
    def apis(self):
        with patch("ha_redis_operator.kube.client.CustomObjectsApi") as custom, \
                patch("ha_redis_operator.kube.client.CoreV1Api") as core:
            yield custom.return_value, core.return_value

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, apis):
        custom, _ = apis
        custom.get_namespaced_custom_object.side_effect = api_error(404)
        resources = KubernetesResourceClient(MagicMock())

        assert await resources.get(CACHE) is None

    @pytest.mark.asyncio
    async def test_patch_status(self, apis):
        custom, _ = apis
        resources = KubernetesResourceClient(MagicMock())

        await resources.patch_status(CACHE, {"phase": "Ready"})

        custom.patch_namespaced_custom_object_status.assert_called_once_with(
            "redis.ha-operator.io", "v1alpha1", "default", "redisclusters", "cache",
            {"status": {"phase": "Ready"}},
        )

    @pytest.mark.asyncio
    async def test_read_secret_decodes(self, apis):
        _, core = apis
        core.read_namespaced_secret.return_value = client.V1Secret(
            data={"password": base64.b64encode(b"s3cret").decode()}
        )
        resources = KubernetesResourceClient(MagicMock())

        assert await resources.read_secret("default", "cache-auth") == {"password": "s3cret"}

    @pytest.mark.asyncio
    async def test_read_missing_secret(self, apis):
        _, core = apis
        core.read_namespaced_secret.side_effect = api_error(404)
        resources = KubernetesResourceClient(MagicMock())

        assert await resources.read_secret("default", "absent") is None


class TestKubernetesResourceStore:
    """Test managed object access."""

    @pytest.fixture
    def apis(self):
        with patch("ha_redis_operator.kube.client.CoreV1Api") as core, \
                patch("ha_redis_operator.kube.client.AppsV1Api") as apps:
            yield core.return_value, apps.return_value

    @pytest.mark.asyncio
    async def test_list_managed_sets_kind(self, apis):
        core, apps = apis
        empty = MagicMock(items=[])
        core.list_namespaced_secret.return_value = empty
        core.list_namespaced_config_map.return_value = empty
        core.list_namespaced_service.return_value = empty
        apps.list_namespaced_stateful_set.return_value = MagicMock(items=["sts"])
        api_client = MagicMock()
        api_client.sanitize_for_serialization.return_value = {"metadata": {"name": "cache-redis"}}
        store = KubernetesResourceStore(api_client)

        objects = await store.list_managed("default", {"b": "2", "a": "1"})

        assert objects == [{"metadata": {"name": "cache-redis"}, "kind": "StatefulSet", "apiVersion": "apps/v1"}]
        assert apps.list_namespaced_stateful_set.call_args.kwargs["label_selector"] == "a=1,b=2"

    @pytest.mark.asyncio
    async def test_delete_missing_is_ignored(self, apis):
        core, _ = apis
        core.delete_namespaced_config_map.side_effect = api_error(404)
        store = KubernetesResourceStore(MagicMock())

        await store.delete(ObjectRef("ConfigMap", "default", "cache-old"))

    @pytest.mark.asyncio
    async def test_create_conflict(self, apis):
        core, _ = apis
        core.create_namespaced_service.side_effect = api_error(409)
        store = KubernetesResourceStore(MagicMock())

        with pytest.raises(ConflictError):
            await store.create({"kind": "Service", "metadata": {"name": "cache-sentinel", "namespace": "default"}})


class TestKubernetesEventSource:
    """Test which watch events reach the work queue."""

    @pytest.fixture
    def source(self):
        with patch("ha_redis_operator.kube.client.CustomObjectsApi"), \
                patch("ha_redis_operator.kube.client.AppsV1Api"):
            yield KubernetesEventSource(MagicMock(), enqueue=MagicMock())

    def test_status_only_modification_dropped(self, source):
        assert source.generation_changed(CACHE, "ADDED", {"generation": 1}) is True
        assert source.generation_changed(CACHE, "MODIFIED", {"generation": 1}) is False
        assert source.generation_changed(CACHE, "MODIFIED", {"generation": 1}) is False

    def test_spec_change_passes(self, source):
        source.generation_changed(CACHE, "ADDED", {"generation": 1})
        assert source.generation_changed(CACHE, "MODIFIED", {"generation": 2}) is True

    def test_relisted_after_watch_restart_dropped(self, source):
        source.generation_changed(CACHE, "ADDED", {"generation": 3})
        assert source.generation_changed(CACHE, "ADDED", {"generation": 3}) is False

    def test_deletion_passes(self, source):
        source.generation_changed(CACHE, "ADDED", {"generation": 1})
        assert source.generation_changed(CACHE, "MODIFIED", {"generation": 1, "deletionTimestamp": "2024-01-01T00:00:00Z"}) is True
        assert source.generation_changed(CACHE, "DELETED", {"generation": 1}) is True
        assert source.generation_changed(CACHE, "ADDED", {"generation": 1}) is True

    def test_keys_tracked_separately(self, source):
        other = ResourceKey("RedisCluster", "default", "sessions")
        source.generation_changed(CACHE, "ADDED", {"generation": 1})
        assert source.generation_changed(other, "ADDED", {"generation": 1}) is True

    def test_watch_emits_only_changes(self, source):
        events = [
            {"type": "ADDED", "object": {"metadata": {"name": "cache", "namespace": "default", "generation": 1}}},
            {"type": "MODIFIED", "object": {"metadata": {"name": "cache", "namespace": "default", "generation": 1}}},
            {"type": "MODIFIED", "object": {"metadata": {"name": "cache", "namespace": "default", "generation": 2}}},
        ]
        source._emit = MagicMock()
        with patch("ha_redis_operator.kube.watch.Watch") as watcher:
            watcher.return_value.stream.return_value = iter(events)
            source._watch_kind("RedisCluster")

        assert source._emit.call_count == 2
        assert {c.args[0] for c in source._emit.call_args_list} == {CACHE}
