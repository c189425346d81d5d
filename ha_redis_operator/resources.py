"""
Desired managed objects for a RedisCluster.

Everything here is a deterministic function of the ClusterSpec and the
currently recorded master, so planning the same inputs twice yields the
same object set. The only non-deterministic value is the generated password
of the operator-owned auth Secret, which is not an owned field and is only
used when the Secret is first created.
"""

import hashlib
import secrets
from typing import Optional, List, Dict, Any

from .config import API_GROUP, API_VERSION, CLUSTER_KIND
from .errors import ConfigurationError
from .models import Address, ClusterSpec, SecretKeyRef

MANAGED_BY = "ha-redis-operator"
CONFIG_HASH_ANNOTATION = "ha-redis-operator.io/config-hash"
CLUSTER_DOMAIN_SUFFIX = "svc"

REDIS_PORT = 6379
SENTINEL_PORT = 26379

# redis.conf directives the operator manages itself
RESERVED_CONFIG = frozenset({
    "port", "tls-port", "dir", "replicaof", "slaveof", "requirepass",
    "masterauth", "replica-announce-ip", "replica-announce-port",
    "tls-cert-file", "tls-key-file", "tls-ca-cert-file", "tls-replication",
})

REDIS_START_SCRIPT = """#!/bin/sh
set -e
SELF="$(hostname).{headless}.{namespace}.{domain}"
cp /config/redis.conf /data/redis.conf
MASTER="$(redis-cli {cli_tls} -h {sentinel_service}.{namespace}.{domain} -p {sentinel_port} \\
    sentinel get-master-addr-by-name {master_name} 2>/dev/null | head -n 1 || true)"
if [ -z "$MASTER" ]; then
    MASTER="$(cat /config/bootstrap-master)"
fi
echo "replica-announce-ip $SELF" >> /data/redis.conf
if [ -n "$REDIS_PASSWORD" ]; then
    echo "requirepass $REDIS_PASSWORD" >> /data/redis.conf
    echo "masterauth $REDIS_PASSWORD" >> /data/redis.conf
fi
if [ "$MASTER" != "$SELF" ]; then
    echo "replicaof $MASTER {port}" >> /data/redis.conf
fi
exec redis-server /data/redis.conf
"""

SENTINEL_START_SCRIPT = """#!/bin/sh
set -e
SELF="$(hostname).{headless}.{namespace}.{domain}"
MASTER="$(redis-cli {cli_tls} -h {sentinel_service}.{namespace}.{domain} -p {sentinel_port} \\
    sentinel get-master-addr-by-name {master_name} 2>/dev/null | head -n 1 || true)"
if [ -z "$MASTER" ]; then
    MASTER="$(cat /config/bootstrap-master)"
fi
cp /config/sentinel.conf /data/sentinel.conf
echo "sentinel announce-ip $SELF" >> /data/sentinel.conf
echo "sentinel monitor {master_name} $MASTER {redis_port} {quorum}" >> /data/sentinel.conf
echo "sentinel down-after-milliseconds {master_name} {down_after}" >> /data/sentinel.conf
echo "sentinel failover-timeout {master_name} {failover_timeout}" >> /data/sentinel.conf
echo "sentinel parallel-syncs {master_name} {parallel_syncs}" >> /data/sentinel.conf
if [ -n "$REDIS_PASSWORD" ]; then
    echo "sentinel auth-pass {master_name} $REDIS_PASSWORD" >> /data/sentinel.conf
fi
exec redis-sentinel /data/sentinel.conf
"""


# =============================================================================
# Names and endpoints
# =============================================================================

def redis_name(spec: ClusterSpec) -> str:
    return f"{spec.name}-redis"


def sentinel_name(spec: ClusterSpec) -> str:
    return f"{spec.name}-sentinel"


def redis_headless_name(spec: ClusterSpec) -> str:
    return f"{spec.name}-redis-headless"


def sentinel_headless_name(spec: ClusterSpec) -> str:
    return f"{spec.name}-sentinel-headless"


def generated_secret_name(spec: ClusterSpec) -> str:
    return f"{spec.name}-auth"


def auth_secret_ref(spec: ClusterSpec) -> SecretKeyRef:
    """Secret holding the cluster password: declared, or operator-generated."""
    if spec.auth_secret is not None:
        return spec.auth_secret
    return SecretKeyRef(name=generated_secret_name(spec), key="password")


def pod_host(pod: str, service: str, namespace: str) -> str:
    return f"{pod}.{service}.{namespace}.{CLUSTER_DOMAIN_SUFFIX}"


def redis_endpoints(spec: ClusterSpec, port: int = REDIS_PORT) -> List[Address]:
    return [
        (pod_host(f"{redis_name(spec)}-{i}", redis_headless_name(spec), spec.namespace), port)
        for i in range(spec.redis_replicas)
    ]


def sentinel_endpoints(spec: ClusterSpec, port: int = SENTINEL_PORT) -> List[Address]:
    return [
        (pod_host(f"{sentinel_name(spec)}-{i}", sentinel_headless_name(spec), spec.namespace), port)
        for i in range(spec.sentinel_replicas)
    ]


def bootstrap_master(spec: ClusterSpec, recorded: Optional[Address]) -> Address:
    """The master a (re)starting pod should follow when Sentinel has no answer."""
    return recorded or redis_endpoints(spec)[0]


# =============================================================================
# Metadata
# =============================================================================

def selector_labels(spec: ClusterSpec) -> Dict[str, str]:
    """Labels identifying every object managed for this cluster."""
    return {
        "app.kubernetes.io/instance": spec.name,
        "app.kubernetes.io/managed-by": MANAGED_BY,
    }


def labels(spec: ClusterSpec, component: str) -> Dict[str, str]:
    return {
        **selector_labels(spec),
        "app.kubernetes.io/name": "redis",
        "app.kubernetes.io/component": component,
    }


def pod_labels(spec: ClusterSpec, component: str) -> Dict[str, str]:
    return {
        "app.kubernetes.io/instance": spec.name,
        "app.kubernetes.io/component": component,
    }


def owner_reference(spec: ClusterSpec) -> Dict[str, Any]:
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": CLUSTER_KIND,
        "name": spec.name,
        "uid": spec.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def _metadata(spec: ClusterSpec, name: str, component: str) -> Dict[str, Any]:
    return {
        "name": name,
        "namespace": spec.namespace,
        "labels": labels(spec, component),
        "ownerReferences": [owner_reference(spec)],
    }


# =============================================================================
# Configuration rendering
# =============================================================================

def render_redis_conf(spec: ClusterSpec) -> str:
    reserved = sorted(RESERVED_CONFIG.intersection(spec.config))
    if reserved:
        raise ConfigurationError(
            f"spec.config cannot override operator-managed directives: {', '.join(reserved)}"
        )
    lines = ["dir /data", "appendonly yes", "protected-mode no"]
    if spec.tls.enabled:
        lines += [
            "port 0",
            f"tls-port {REDIS_PORT}",
            "tls-cert-file /tls/tls.crt",
            "tls-key-file /tls/tls.key",
            "tls-ca-cert-file /tls/ca.crt",
            "tls-replication yes",
            "tls-auth-clients optional",
        ]
    else:
        lines.append(f"port {REDIS_PORT}")
    lines.append(f"replica-announce-port {REDIS_PORT}")
    for key in sorted(spec.config):
        lines.append(f"{key} {spec.config[key]}")
    return "\n".join(lines) + "\n"


def render_sentinel_conf(spec: ClusterSpec) -> str:
    lines = [
        "dir /data",
        "sentinel resolve-hostnames yes",
        "sentinel announce-hostnames yes",
    ]
    if spec.tls.enabled:
        lines += [
            "port 0",
            f"tls-port {SENTINEL_PORT}",
            "tls-cert-file /tls/tls.crt",
            "tls-key-file /tls/tls.key",
            "tls-ca-cert-file /tls/ca.crt",
            "tls-replication yes",
            "tls-auth-clients optional",
        ]
    else:
        lines.append(f"port {SENTINEL_PORT}")
    return "\n".join(lines) + "\n"


def _script_values(spec: ClusterSpec, headless: str) -> Dict[str, Any]:
    return {
        "headless": headless,
        "namespace": spec.namespace,
        "domain": CLUSTER_DOMAIN_SUFFIX,
        "sentinel_service": sentinel_name(spec),
        "sentinel_port": SENTINEL_PORT,
        "master_name": spec.master_name,
        "cli_tls": "--tls --cacert /tls/ca.crt" if spec.tls.enabled else "",
        "port": REDIS_PORT,
        "redis_port": REDIS_PORT,
        "quorum": spec.quorum,
        "down_after": spec.down_after_milliseconds,
        "failover_timeout": spec.failover_timeout,
        "parallel_syncs": spec.parallel_syncs,
    }


def config_hash(*parts: str) -> str:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()[:16]


# =============================================================================
# Objects
# =============================================================================

def _config_map(spec: ClusterSpec, name: str, component: str, data: Dict[str, str]) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(spec, name, component),
        "data": data,
    }


def _auth_secret(spec: ClusterSpec) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(spec, generated_secret_name(spec), "auth"),
        "type": "Opaque",
        "stringData": {"password": secrets.token_urlsafe(24)},
    }


def _headless_service(spec: ClusterSpec, name: str, component: str, port: int, port_name: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(spec, name, component),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "type": "ClusterIP",
            "selector": pod_labels(spec, component),
            "ports": [{"name": port_name, "port": port, "targetPort": port}],
        },
    }


def _sentinel_service(spec: ClusterSpec) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(spec, sentinel_name(spec), "sentinel"),
        "spec": {
            "type": spec.service_type,
            "selector": pod_labels(spec, "sentinel"),
            "ports": [{"name": "sentinel", "port": SENTINEL_PORT, "targetPort": SENTINEL_PORT}],
        },
    }


def _container(
    spec: ClusterSpec,
    name: str,
    port: int,
    mounts: List[Dict[str, Any]],
    authenticated: bool = True,
) -> Dict[str, Any]:
    password = auth_secret_ref(spec)
    cli_tls = "--tls --cacert /tls/ca.crt " if spec.tls.enabled else ""
    # Sentinels run without requirepass
    cli_auth = '${REDIS_PASSWORD:+-a "$REDIS_PASSWORD"} --no-auth-warning ' if authenticated else ""
    check = f"redis-cli {cli_tls}-p {port} {cli_auth}ping"
    container = {
        "name": name,
        "image": spec.image,
        "command": ["sh", "/config/start.sh"],
        "ports": [{"name": name, "containerPort": port}],
        "env": [{
            "name": "REDIS_PASSWORD",
            "valueFrom": {"secretKeyRef": {"name": password.name, "key": password.key}},
        }],
        "volumeMounts": mounts,
        "readinessProbe": {
            "exec": {"command": ["sh", "-c", check]},
            "initialDelaySeconds": 5,
            "periodSeconds": 5,
        },
    }
    if spec.resources:
        container["resources"] = spec.resources
    return container


def _pod_template(
    spec: ClusterSpec,
    component: str,
    container: Dict[str, Any],
    volumes: List[Dict[str, Any]],
    checksum: str,
) -> Dict[str, Any]:
    return {
        "metadata": {
            "labels": pod_labels(spec, component),
            "annotations": {CONFIG_HASH_ANNOTATION: checksum},
        },
        "spec": {
            "containers": [container],
            "volumes": volumes,
            "affinity": {
                "podAntiAffinity": {
                    "preferredDuringSchedulingIgnoredDuringExecution": [{
                        "weight": 100,
                        "podAffinityTerm": {
                            "topologyKey": "kubernetes.io/hostname",
                            "labelSelector": {"matchLabels": pod_labels(spec, component)},
                        },
                    }],
                },
            },
        },
    }


def _tls_volume(spec: ClusterSpec) -> List[Dict[str, Any]]:
    if not spec.tls.enabled:
        return []
    return [{"name": "tls", "secret": {"secretName": spec.tls.secret_name}}]


def _tls_mount(spec: ClusterSpec) -> List[Dict[str, Any]]:
    if not spec.tls.enabled:
        return []
    return [{"name": "tls", "mountPath": "/tls", "readOnly": True}]


def _redis_statefulset(spec: ClusterSpec, checksum: str) -> Dict[str, Any]:
    mounts = [
        {"name": "data", "mountPath": "/data"},
        {"name": "config", "mountPath": "/config"},
    ] + _tls_mount(spec)
    volumes = [
        {"name": "config", "configMap": {"name": f"{redis_name(spec)}-config"}},
    ] + _tls_volume(spec)
    claim_spec: Dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": spec.storage.size}},
    }
    if spec.storage.storage_class:
        claim_spec["storageClassName"] = spec.storage.storage_class
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(spec, redis_name(spec), "redis"),
        "spec": {
            "serviceName": redis_headless_name(spec),
            "replicas": spec.redis_replicas,
            "podManagementPolicy": "Parallel",
            "selector": {"matchLabels": pod_labels(spec, "redis")},
            "template": _pod_template(
                spec, "redis", _container(spec, "redis", REDIS_PORT, mounts), volumes, checksum
            ),
            "volumeClaimTemplates": [{
                "metadata": {"name": "data", "labels": pod_labels(spec, "redis")},
                "spec": claim_spec,
            }],
        },
    }


def _sentinel_statefulset(spec: ClusterSpec, checksum: str) -> Dict[str, Any]:
    mounts = [
        {"name": "data", "mountPath": "/data"},
        {"name": "config", "mountPath": "/config"},
    ] + _tls_mount(spec)
    volumes = [
        {"name": "data", "emptyDir": {}},
        {"name": "config", "configMap": {"name": f"{sentinel_name(spec)}-config"}},
    ] + _tls_volume(spec)
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(spec, sentinel_name(spec), "sentinel"),
        "spec": {
            "serviceName": sentinel_headless_name(spec),
            "replicas": spec.sentinel_replicas,
            "podManagementPolicy": "Parallel",
            "selector": {"matchLabels": pod_labels(spec, "sentinel")},
            "template": _pod_template(
                spec,
                "sentinel",
                _container(spec, "sentinel", SENTINEL_PORT, mounts, authenticated=False),
                volumes,
                checksum,
            ),
        },
    }


def desired_objects(spec: ClusterSpec, recorded_master: Optional[Address] = None) -> List[Dict[str, Any]]:
    """
    Derive the full managed object set for a cluster.

    Args:
        spec: Parsed cluster spec
        recorded_master: Master recorded in status; restarting pods fall
                         back to it when no Sentinel answers

    Returns:
        Kubernetes manifests as plain dicts

    Raises:
        ConfigurationError: spec.config overrides an operator-managed directive
    """
    master = bootstrap_master(spec, recorded_master)
    master_host = master[0]

    redis_conf = render_redis_conf(spec)
    redis_script = REDIS_START_SCRIPT.format(**_script_values(spec, redis_headless_name(spec)))
    sentinel_conf = render_sentinel_conf(spec)
    sentinel_script = SENTINEL_START_SCRIPT.format(**_script_values(spec, sentinel_headless_name(spec)))

    objects: List[Dict[str, Any]] = []
    if spec.auth_secret is None:
        objects.append(_auth_secret(spec))
    objects += [
        _config_map(spec, f"{redis_name(spec)}-config", "redis", {
            "redis.conf": redis_conf,
            "start.sh": redis_script,
            "bootstrap-master": master_host,
        }),
        _config_map(spec, f"{sentinel_name(spec)}-config", "sentinel", {
            "sentinel.conf": sentinel_conf,
            "start.sh": sentinel_script,
            "bootstrap-master": master_host,
        }),
        _redis_statefulset(spec, config_hash(redis_conf, redis_script)),
        _sentinel_statefulset(spec, config_hash(sentinel_conf, sentinel_script)),
        _headless_service(spec, redis_headless_name(spec), "redis", REDIS_PORT, "redis"),
        _headless_service(spec, sentinel_headless_name(spec), "sentinel", SENTINEL_PORT, "sentinel"),
        _sentinel_service(spec),
    ]
    return objects
