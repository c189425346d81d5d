"""
Kubernetes Adapters

Thin async wrappers over the official ``kubernetes`` client:
- KubernetesResourceClient: custom resource reads, status patches, secrets
- KubernetesResourceStore: managed-object access for the Object Applier
- KubernetesEventSource: watches that enqueue resource keys on change

The client is synchronous, so every call runs in a worker thread. API
errors are translated into the operator's error taxonomy at this boundary.

"""

import asyncio
import base64
import logging
import threading
from typing import Optional, List, Dict, Any, Callable, Protocol

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .applier import ObjectRef
from .config import API_GROUP, API_VERSION, CLUSTER_KIND, PLURALS
from .errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    OperatorError,
    TransientError,
    UnrecoverableError,
)
from .models import ResourceKey
from .resources import MANAGED_BY

WATCH_TIMEOUT_SECONDS = 60


class ResourceClient(Protocol):
    """Custom resource and secret access used by the reconcilers."""

    async def get(self, key: ResourceKey) -> Optional[Dict[str, Any]]: ...

    async def list(self, kind: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]: ...

    async def patch_status(self, key: ResourceKey, status: Dict[str, Any]) -> None: ...

    async def read_secret(self, namespace: str, name: str) -> Optional[Dict[str, str]]: ...


async def read_secret_value(resources: ResourceClient, namespace: str, name: str, key: str) -> str:
    """
    Read one decoded key of a secret.

    Raises:
        NotFoundError: the secret or key does not exist
    """
    data = await resources.read_secret(namespace, name)
    if data is None:
        raise NotFoundError(f"Secret {namespace}/{name} not found")
    if key not in data:
        raise NotFoundError(f"Secret {namespace}/{name} has no key {key!r}")
    return data[key]


def translate_api_error(e: ApiException, what: str) -> OperatorError:
    """Map an API error onto the taxonomy."""
    body = e.body if isinstance(e.body, str) else ""
    message = f"{what}: {e.status} {e.reason}"
    if e.status == 404:
        return NotFoundError(message, cause=e)
    if e.status == 409:
        return ConflictError(message, cause=e)
    if e.status == 422:
        if "immutable" in body or "Forbidden" in body:
            return ConflictError(f"{message} (immutable field)", cause=e)
        return ConfigurationError(message, cause=e)
    if e.status == 400:
        return ConfigurationError(message, cause=e)
    if e.status in (401, 403):
        return UnrecoverableError(message, cause=e)
    return TransientError(message, cause=e)


async def call_api(what: str, func: Callable, *args, **kwargs) -> Any:
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except ApiException as e:
        raise translate_api_error(e, what) from e
    except HTTPError as e:
        raise TransientError(f"{what}: {type(e).__name__}: {e}", cause=e) from e


def load_api_client() -> client.ApiClient:
    """Load in-cluster configuration, falling back to kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    return client.ApiClient()


class KubernetesResourceClient:
    """
    Custom resources and secrets through the Kubernetes API.

    Args:
        api_client: Configured ApiClient
        logger: Custom logger instance. Creates one if not provided.
    """

    def __init__(self, api_client: client.ApiClient, logger: Optional[logging.Logger] = None):
        self.custom = client.CustomObjectsApi(api_client)
        self.core = client.CoreV1Api(api_client)
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def get(self, key: ResourceKey) -> Optional[Dict[str, Any]]:
        try:
            return await call_api(
                f"get {key}",
                self.custom.get_namespaced_custom_object,
                API_GROUP, API_VERSION, key.namespace, PLURALS[key.kind], key.name,
            )
        except NotFoundError:
            return None

    async def list(self, kind: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        plural = PLURALS[kind]
        if namespace:
            result = await call_api(
                f"list {kind}", self.custom.list_namespaced_custom_object,
                API_GROUP, API_VERSION, namespace, plural,
            )
        else:
            result = await call_api(
                f"list {kind}", self.custom.list_cluster_custom_object,
                API_GROUP, API_VERSION, plural,
            )
        return result.get("items", [])

    async def patch_status(self, key: ResourceKey, status: Dict[str, Any]) -> None:
        await call_api(
            f"patch status {key}",
            self.custom.patch_namespaced_custom_object_status,
            API_GROUP, API_VERSION, key.namespace, PLURALS[key.kind], key.name,
            {"status": status},
        )

    async def read_secret(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        try:
            secret = await call_api(f"read secret {namespace}/{name}", self.core.read_namespaced_secret, name, namespace)
        except NotFoundError:
            return None
        return {
            k: base64.b64decode(v).decode("utf-8")
            for k, v in (secret.data or {}).items()
        }


# kind -> (api attribute, method suffix)
_KINDS = {
    "Secret": ("core", "secret"),
    "ConfigMap": ("core", "config_map"),
    "Service": ("core", "service"),
    "PersistentVolumeClaim": ("core", "persistent_volume_claim"),
    "StatefulSet": ("apps", "stateful_set"),
}

_API_VERSIONS = {
    "Secret": "v1",
    "ConfigMap": "v1",
    "Service": "v1",
    "PersistentVolumeClaim": "v1",
    "StatefulSet": "apps/v1",
}

LISTED_KINDS = ("Secret", "ConfigMap", "StatefulSet", "Service")


class KubernetesResourceStore:
    """ResourceStore over the core and apps APIs."""

    def __init__(self, api_client: client.ApiClient, logger: Optional[logging.Logger] = None):
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    def _method(self, kind: str, verb: str) -> Callable:
        api_name, suffix = _KINDS[kind]
        return getattr(getattr(self, api_name), f"{verb}_namespaced_{suffix}")

    async def list_managed(self, namespace: str, selector: Dict[str, str]) -> List[Dict[str, Any]]:
        label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
        objects: List[Dict[str, Any]] = []
        for kind in LISTED_KINDS:
            result = await call_api(
                f"list {kind} in {namespace}", self._method(kind, "list"),
                namespace, label_selector=label_selector,
            )
            for item in result.items:
                obj = self.api_client.sanitize_for_serialization(item)
                obj["kind"] = kind
                obj["apiVersion"] = _API_VERSIONS[kind]
                objects.append(obj)
        return objects

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ref = ObjectRef.of(obj)
        return await call_api(f"create {ref}", self._method(ref.kind, "create"), ref.namespace, obj)

    async def patch(self, ref: ObjectRef, patch: Dict[str, Any]) -> Dict[str, Any]:
        return await call_api(f"patch {ref}", self._method(ref.kind, "patch"), ref.name, ref.namespace, patch)

    async def delete(self, ref: ObjectRef) -> None:
        try:
            await call_api(
                f"delete {ref}", self._method(ref.kind, "delete"), ref.name, ref.namespace,
                propagation_policy="Background",
            )
        except NotFoundError:
            self.logger.debug(f"{ref} already deleted")


class KubernetesEventSource:
    """
    Watches custom resources and managed StatefulSets and enqueues the
    affected resource keys.

    Each watch runs in its own daemon thread and re-establishes itself when
    the server closes the stream. Keys are handed to ``enqueue`` on the
    event loop thread.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        enqueue: Callable[[ResourceKey], None],
        namespace: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.custom = client.CustomObjectsApi(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.enqueue = enqueue
        self.namespace = namespace
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._generations: Dict[ResourceKey, Any] = {}

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        for kind in PLURALS:
            self._spawn(f"watch-{kind}", self._watch_kind, kind)
        self._spawn("watch-statefulsets", self._watch_statefulsets)
        self.logger.info(f"Watching {', '.join(PLURALS)} in {self.namespace or 'all namespaces'}")

    def stop(self) -> None:
        self._stop.set()

    def _spawn(self, name: str, target: Callable, *args) -> None:
        thread = threading.Thread(target=self._run, args=(target, *args), name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _emit(self, key: ResourceKey) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.enqueue, key)

    def _run(self, target: Callable, *args) -> None:
        while not self._stop.is_set():
            try:
                target(*args)
            except ApiException as e:
                if e.status != 410:
                    self.logger.warning(f"Watch failed: {e.status} {e.reason}, restarting")
                    self._stop.wait(5)
            except (HTTPError, OSError) as e:
                self.logger.warning(f"Watch connection lost: {type(e).__name__}: {e}, restarting")
                self._stop.wait(5)

    def generation_changed(self, key: ResourceKey, event_type: Optional[str], meta: Dict[str, Any]) -> bool:
        """
        Whether a custom resource event carries news for the reconciler.

        Status writes leave ``metadata.generation`` alone, so modifications
        that keep the generation seen last are dropped. Deletions, first
        sightings and resources being deleted always pass.
        """
        if event_type == "DELETED":
            self._generations.pop(key, None)
            return True
        generation = meta.get("generation")
        previous = self._generations.get(key)
        self._generations[key] = generation
        if meta.get("deletionTimestamp") or generation is None:
            return True
        return previous != generation

    def _watch_kind(self, kind: str) -> None:
        plural = PLURALS[kind]
        w = watch.Watch()
        if self.namespace:
            stream = w.stream(
                self.custom.list_namespaced_custom_object, API_GROUP, API_VERSION,
                self.namespace, plural, timeout_seconds=WATCH_TIMEOUT_SECONDS,
            )
        else:
            stream = w.stream(
                self.custom.list_cluster_custom_object, API_GROUP, API_VERSION,
                plural, timeout_seconds=WATCH_TIMEOUT_SECONDS,
            )
        for event in stream:
            if self._stop.is_set():
                w.stop()
                return
            meta = (event.get("object") or {}).get("metadata") or {}
            if meta.get("name"):
                key = ResourceKey(kind, meta.get("namespace", "default"), meta["name"])
                if self.generation_changed(key, event.get("type"), meta):
                    self._emit(key)

    def _watch_statefulsets(self) -> None:
        selector = f"app.kubernetes.io/managed-by={MANAGED_BY}"
        w = watch.Watch()
        if self.namespace:
            stream = w.stream(
                self.apps.list_namespaced_stateful_set, self.namespace,
                label_selector=selector, timeout_seconds=WATCH_TIMEOUT_SECONDS,
            )
        else:
            stream = w.stream(
                self.apps.list_stateful_set_for_all_namespaces,
                label_selector=selector, timeout_seconds=WATCH_TIMEOUT_SECONDS,
            )
        for event in stream:
            if self._stop.is_set():
                w.stop()
                return
            meta = event["object"].metadata
            instance = (meta.labels or {}).get("app.kubernetes.io/instance")
            if instance:
                self._emit(ResourceKey(CLUSTER_KIND, meta.namespace, instance))
