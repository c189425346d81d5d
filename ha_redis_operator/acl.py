"""
ACL Reconciler

Synchronizes declared RedisUser resources with live Redis ACL state.

The declared rule set is serialized into a canonical, order-stable rule
string so that re-applying unchanged rules is a no-op:

    on|off  #<sha256(password)>  ~keys (sorted)  &channels (sorted)
    +@allowed -@denied +commands -commands  (each group sorted)

Live rules fetched with ACL GETUSER are parsed back into the same canonical
form, so comparing canonical hashes detects drift regardless of how Redis
renders the rules.

"""

import hashlib
import logging
from typing import Optional, List, Sequence, Iterable, Tuple

from .admin import AdminClientPool, cluster_credentials
from .config import CLUSTER_KIND
from .errors import NotFoundError, OperatorError, TransientError, classify
from .kube import ResourceClient, read_secret_value
from .models import (
    AclRules,
    ClusterSpec,
    ResourceKey,
    UserSpec,
    UserStatus,
    format_address,
    set_condition,
    utcnow,
)
from .resources import redis_endpoints

SYNCED = "Synced"


def password_hash(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def _unique_sorted(values: Iterable[str]) -> List[str]:
    return sorted(set(values))


def serialize_rules(
    rules: AclRules,
    password_hashes: Sequence[str],
    enabled: bool = True,
) -> str:
    """
    Serialize a declared rule set into its canonical rule string.

    Args:
        rules: Declared rules
        password_hashes: SHA-256 hex digests of the user's passwords
        enabled: False renders ``off`` (authentication fails, user kept)

    Returns:
        Canonical, space separated rule string
    """
    tokens = ["on" if enabled else "off"]
    if password_hashes:
        tokens += ["#" + h.lower() for h in _unique_sorted(password_hashes)]
    else:
        tokens.append("nopass")
    tokens += ["~" + k for k in _unique_sorted(rules.keys)]
    tokens += ["&" + c for c in _unique_sorted(rules.channels)]
    tokens += ["+@" + c.lower() for c in _unique_sorted(rules.allow_categories)]
    tokens += ["-@" + c.lower() for c in _unique_sorted(rules.deny_categories)]
    tokens += ["+" + c.lower() for c in _unique_sorted(rules.allow_commands)]
    tokens += ["-" + c.lower() for c in _unique_sorted(rules.deny_commands)]
    return " ".join(tokens)


def parse_rule_string(rule_string: str) -> Tuple[AclRules, List[str], bool]:
    """
    Parse a rule string (declared or as rendered by Redis) into rules,
    password hashes and the enabled flag.

    ``allkeys``/``allchannels``/``allcommands``/``nocommands`` aliases are
    expanded, plaintext ``>password`` tokens are hashed, and a leading
    ``-@all`` (implied by ``reset``) is dropped.
    """
    enabled = False
    hashes: List[str] = []
    keys: List[str] = []
    channels: List[str] = []
    allow_categories: List[str] = []
    deny_categories: List[str] = []
    allow_commands: List[str] = []
    deny_commands: List[str] = []
    seen_command = False

    for token in rule_string.split():
        lowered = token.lower()
        if lowered == "on":
            enabled = True
        elif lowered == "off":
            enabled = False
        elif lowered in ("reset", "resetkeys", "resetchannels", "resetpass", "nopass", "sanitize-payload", "skip-sanitize-payload"):
            continue
        elif token.startswith("#"):
            hashes.append(token[1:].lower())
        elif token.startswith(">"):
            hashes.append(password_hash(token[1:]))
        elif lowered == "allkeys":
            keys.append("*")
        elif token.startswith("~"):
            keys.append(token[1:])
        elif token.startswith("%"):
            keys.append(token.split("~", 1)[-1])
        elif lowered == "allchannels":
            channels.append("*")
        elif token.startswith("&"):
            channels.append(token[1:])
        else:
            if lowered == "allcommands":
                lowered = "+@all"
            elif lowered == "nocommands":
                lowered = "-@all"
            if not seen_command and lowered == "-@all":
                seen_command = True
                continue
            seen_command = True
            if lowered.startswith("+@"):
                allow_categories.append(lowered[2:])
            elif lowered.startswith("-@"):
                deny_categories.append(lowered[2:])
            elif lowered.startswith("+"):
                allow_commands.append(lowered[1:])
            elif lowered.startswith("-"):
                deny_commands.append(lowered[1:])

    rules = AclRules(
        allow_categories=tuple(allow_categories),
        deny_categories=tuple(deny_categories),
        allow_commands=tuple(allow_commands),
        deny_commands=tuple(deny_commands),
        keys=tuple(keys),
        channels=tuple(channels),
    )
    return rules, hashes, enabled


def canonicalize(rule_string: str) -> str:
    rules, hashes, enabled = parse_rule_string(rule_string)
    return serialize_rules(rules, hashes, enabled)


def rule_hash(rule_string: str) -> str:
    """Canonical hash of a rule string."""
    return hashlib.sha256(canonicalize(rule_string).encode("utf-8")).hexdigest()


class AclReconciler:
    """
    Reconciles RedisUser resources.

    Args:
        resources: Custom resource and secret access
        admins: Admin clients pooled per cluster
        logger: Custom logger instance. Creates one if not provided.
    """

    def __init__(
        self,
        resources: ResourceClient,
        admins: AdminClientPool,
        resync_interval: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.resources = resources
        self.admins = admins
        self.resync_interval = resync_interval
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def reconcile(self, key: ResourceKey) -> Optional[float]:
        body = await self.resources.get(key)
        if body is None:
            self.logger.info(f"{key} deleted, nothing to reconcile")
            return None

        status = UserStatus.from_dict(body.get("status"))
        try:
            spec = UserSpec.from_body(body)
            status.observed_generation = spec.generation
            await self._sync(spec, status)
        except OperatorError as e:
            await self._record_failure(key, status, e)
            raise
        except Exception as e:
            await self._record_failure(key, status, classify(e))
            raise

        observed = status.to_dict()
        if observed != body.get("status"):
            await self.resources.patch_status(key, observed)
        return self.resync_interval

    async def _sync(self, spec: UserSpec, status: UserStatus) -> None:
        cluster_key = ResourceKey(CLUSTER_KIND, spec.namespace, spec.cluster)
        cluster_body = await self.resources.get(cluster_key)
        if cluster_body is None:
            raise NotFoundError(f"Cluster {spec.cluster} not found in {spec.namespace}")
        cluster = ClusterSpec.from_body(cluster_body)

        password = await read_secret_value(
            self.resources, spec.namespace, spec.password_secret.name, spec.password_secret.key
        )
        canonical = serialize_rules(spec.rules, [password_hash(password)], spec.enabled)
        desired_hash = rule_hash(canonical)

        admin = await self.admins.get(cluster_key, await cluster_credentials(self.resources, cluster))
        errors: List[str] = []
        applied = 0
        for endpoint in redis_endpoints(cluster):
            try:
                live = await admin.get_acl(endpoint, spec.username)
                live_hash = rule_hash(live) if live is not None else None
                if live_hash == desired_hash and status.last_synced_hash == desired_hash:
                    continue
                await admin.apply_acl(endpoint, spec.username, canonical)
                applied += 1
            except OperatorError as e:
                self.logger.warning(
                    f"ACL sync of {spec.username} on {format_address(endpoint)} failed: {e}"
                )
                errors.append(f"{format_address(endpoint)}: {e.message}")

        if errors:
            # Rules already applied on other nodes stay in place
            raise TransientError(
                f"ACL sync failed on {len(errors)} node(s): {'; '.join(errors)}"
            )

        if applied:
            self.logger.info(f"Applied ACL for {spec.username} on {applied} node(s) of {spec.cluster}")
        status.last_synced_hash = desired_hash
        status.sync_error = None
        if applied or status.last_sync_time is None:
            status.last_sync_time = utcnow()
        set_condition(status.conditions, SYNCED, True, "Synced", f"Rules {desired_hash[:12]} in sync")

    async def _record_failure(self, key: ResourceKey, status: UserStatus, error: OperatorError) -> None:
        status.sync_error = error.message
        set_condition(status.conditions, SYNCED, False, error.kind, error.message)
        try:
            await self.resources.patch_status(key, status.to_dict())
        except OperatorError as e:
            self.logger.error(f"Failed to record status for {key}: {e}")
