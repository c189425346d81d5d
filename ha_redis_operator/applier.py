"""
Object Applier

Idempotently converges a set of managed Kubernetes objects onto a desired
set. A pass is split into three disjoint sets:

- create: desired objects that are not observed
- update: observed objects whose *owned* fields differ from desired
- delete: observed managed objects that are no longer desired

Only owned field paths are compared, and a desired value matches when it is
a structural subset of the observed one, so server-populated defaults and
fields mutated by other controllers are never fought.

"""

import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple, Sequence, Protocol

from kubernetes.utils import parse_quantity

from .errors import ConflictError, OperatorError, classify

# Apply order: storage and secrets first, then workloads, then networking
APPLY_ORDER = {
    "Secret": 0,
    "ConfigMap": 0,
    "PersistentVolumeClaim": 0,
    "StatefulSet": 1,
    "Service": 2,
}

OWNED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "Secret": ("metadata.labels", "type"),
    "ConfigMap": ("metadata.labels", "data"),
    "PersistentVolumeClaim": ("metadata.labels", "spec.resources"),
    "StatefulSet": ("metadata.labels", "spec.replicas", "spec.template"),
    "Service": ("metadata.labels", "spec.type", "spec.ports", "spec.selector"),
}


@dataclass(frozen=True)
class ObjectRef:
    kind: str
    namespace: str
    name: str

    @classmethod
    def of(cls, obj: Dict[str, Any]) -> "ObjectRef":
        meta = obj.get("metadata") or {}
        return cls(obj["kind"], meta.get("namespace", "default"), meta["name"])

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


class ResourceStore(Protocol):
    """Read/write access to managed objects (the Kubernetes API)."""

    async def list_managed(self, namespace: str, selector: Dict[str, str]) -> List[Dict[str, Any]]: ...

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]: ...

    async def patch(self, ref: ObjectRef, patch: Dict[str, Any]) -> Dict[str, Any]: ...

    async def delete(self, ref: ObjectRef) -> None: ...


def is_subset(desired: Any, observed: Any) -> bool:
    """
    Structural subset test.

    Dicts match when every desired key matches in observed; lists match
    element-wise with equal length; scalars compare equal, with numeric
    strings tolerated against numbers and resource quantities compared by
    value (``"0.5"`` matches ``"500m"``).
    """
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return False
        return all(key in observed and is_subset(value, observed[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(observed, list) or len(desired) != len(observed):
            return False
        return all(is_subset(d, o) for d, o in zip(desired, observed))
    if desired == observed:
        return True
    if isinstance(desired, (int, float)) and isinstance(observed, str):
        return str(desired) == observed or _same_quantity(str(desired), observed)
    if isinstance(desired, str) and isinstance(observed, str):
        return _same_quantity(desired, observed)
    return False


def _same_quantity(desired: str, observed: str) -> bool:
    try:
        return parse_quantity(desired) == parse_quantity(observed)
    except ValueError:
        return False


def _get_path(obj: Dict[str, Any], path: str) -> Tuple[bool, Any]:
    current: Any = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _set_path(obj: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = obj
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def owned_diff(desired: Dict[str, Any], observed: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build a patch with the owned paths whose desired value is not a subset
    of the observed value. An empty dict means the object is in sync.
    """
    patch: Dict[str, Any] = {}
    for path in OWNED_FIELDS.get(desired["kind"], ("metadata.labels",)):
        present, value = _get_path(desired, path)
        if not present:
            continue
        _, current = _get_path(observed, path)
        if not is_subset(value, current):
            _set_path(patch, path, value)
    return patch


@dataclass
class ApplyPlan:
    create: List[Dict[str, Any]] = field(default_factory=list)
    update: List[Tuple[ObjectRef, Dict[str, Any]]] = field(default_factory=list)
    delete: List[ObjectRef] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.create or self.update or self.delete)

    @property
    def operations(self) -> int:
        return len(self.create) + len(self.update) + len(self.delete)


@dataclass
class ApplyResult:
    """
    Outcome of one apply pass.

    ``failures`` and ``conflicts`` hold (ref, message) pairs; failed objects
    are re-attempted on the next pass.
    """
    created: List[ObjectRef] = field(default_factory=list)
    updated: List[ObjectRef] = field(default_factory=list)
    deleted: List[ObjectRef] = field(default_factory=list)
    failures: List[Tuple[ObjectRef, str]] = field(default_factory=list)
    conflicts: List[Tuple[ObjectRef, str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    @property
    def in_sync(self) -> bool:
        return not (self.changed or self.failures or self.conflicts)

    def summary(self) -> str:
        return (
            f"created={len(self.created)} updated={len(self.updated)} "
            f"deleted={len(self.deleted)} failed={len(self.failures)} "
            f"conflicts={len(self.conflicts)}"
        )


def _order(ref_kind: str) -> int:
    return APPLY_ORDER.get(ref_kind, 1)


class ObjectApplier:
    """
    Plans and applies managed-object changes against a ResourceStore.

    Args:
        store: Kubernetes object access
        logger: Custom logger instance. Creates one if not provided.
    """

    def __init__(self, store: ResourceStore, logger: Optional[logging.Logger] = None):
        self.store = store
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    def plan(
        self,
        desired: Sequence[Dict[str, Any]],
        observed: Sequence[Dict[str, Any]],
    ) -> ApplyPlan:
        """
        Compute the create/update/delete sets, each in dependency order.

        Args:
            desired: Desired objects derived from the cluster spec
            observed: Currently existing managed objects
        """
        observed_by_ref = {ObjectRef.of(obj): obj for obj in observed}
        desired_refs = set()
        plan = ApplyPlan()

        for obj in sorted(desired, key=lambda o: (_order(o["kind"]), o["metadata"]["name"])):
            ref = ObjectRef.of(obj)
            desired_refs.add(ref)
            current = observed_by_ref.get(ref)
            if current is None:
                plan.create.append(obj)
                continue
            patch = owned_diff(obj, current)
            if patch:
                plan.update.append((ref, patch))

        stale = [ref for ref in observed_by_ref if ref not in desired_refs]
        plan.delete = sorted(stale, key=lambda r: (-_order(r.kind), r.name))
        return plan

    async def apply(self, plan: ApplyPlan) -> ApplyResult:
        """
        Execute a plan. A failing object is recorded and the remaining
        independent operations still run.
        """
        result = ApplyResult()

        for obj in plan.create:
            ref = ObjectRef.of(obj)
            if await self._attempt(result, ref, "create", self.store.create(obj)):
                result.created.append(ref)

        for ref, patch in plan.update:
            if await self._attempt(result, ref, "update", self.store.patch(ref, patch)):
                result.updated.append(ref)

        for ref in plan.delete:
            if await self._attempt(result, ref, "delete", self.store.delete(ref)):
                result.deleted.append(ref)

        if result.changed or result.failures or result.conflicts:
            self.logger.info(f"Applied managed objects: {result.summary()}")
        return result

    async def _attempt(self, result: ApplyResult, ref: ObjectRef, action: str, call) -> bool:
        try:
            await call
            return True
        except ConflictError as e:
            self.logger.warning(f"Conflict on {action} {ref}: {e}")
            result.conflicts.append((ref, str(e)))
        except (OperatorError, OSError) as e:
            error = classify(e)
            self.logger.error(f"Failed to {action} {ref}: {type(e).__name__}: {e}")
            result.failures.append((ref, error.message))
        return False

    async def converge(
        self,
        namespace: str,
        selector: Dict[str, str],
        desired: Sequence[Dict[str, Any]],
    ) -> ApplyResult:
        """List the managed objects, plan against them and apply."""
        observed = await self.store.list_managed(namespace, selector)
        plan = self.plan(desired, observed)
        if plan.empty:
            return ApplyResult()
        return await self.apply(plan)
