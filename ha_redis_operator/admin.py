"""
Redis Admin Client

The operator's capability for talking to Redis and Sentinel endpoints:
- Replication role and offset of a data node (INFO replication)
- A Sentinel's view of the monitored master (SENTINEL commands)
- ACL read/apply for a single user (ACL GETUSER / ACL SETUSER)
- Point-in-time RDB dump streamed over the replication protocol (SYNC)

Connections are cached per endpoint and pooled per target cluster through
AdminClientPool. Internal redis-py retries are disabled; network errors are
retried by ``with_redis_retry`` and then surfaced as AdminConnectionError.

"""

import asyncio
import logging
import ssl
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Tuple, AsyncIterator, Any, Callable, Awaitable, Protocol

import redis.asyncio as redis
from redis.exceptions import ResponseError, RedisError

from .config import AdminConfig
from .errors import TransientError
from .kube import ResourceClient, read_secret_value
from .models import Address, ClusterSpec, ResourceKey, format_address
from .resources import auth_secret_ref
from .retry import RETRYABLE_EXCEPTIONS, with_redis_retry

DUMP_CHUNK_SIZE = 64 * 1024
EOF_MARK_LENGTH = 40


class AdminConnectionError(TransientError):
    """An endpoint could not be reached after retries."""


class AdminCommandError(TransientError):
    """An endpoint rejected a command (permissions, unknown user, ...)."""


@dataclass
class ReplicationInfo:
    """
    A data node's self-reported replication state.

    Attributes:
        role: "master" or "slave" as reported by INFO replication
        master_addr: (host, port) the node replicates from, None for masters
        offset: Replication offset (master_repl_offset or slave_repl_offset)
        link_up: Whether the replica's link to its master is up
    """
    role: str
    master_addr: Optional[Address] = None
    offset: int = 0
    link_up: bool = True


@dataclass
class SentinelView:
    """
    One Sentinel's view of the monitored master.

    Attributes:
        master_addr: (host, port) Sentinel believes is the master
        known_replicas: (host, port) tuples of replicas Sentinel knows about
        quorum_reached: Result of SENTINEL CKQUORUM for this Sentinel
        master_flags: Flags reported for the master (s_down, o_down, ...)
    """
    master_addr: Optional[Address] = None
    known_replicas: List[Address] = field(default_factory=list)
    quorum_reached: bool = False
    master_flags: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AdminCredentials:
    """Credentials used to reach one cluster's endpoints."""
    password: Optional[str] = None
    tls: bool = False
    ca_data: Optional[str] = None
    sentinel_password: Optional[str] = None


class AdminClient(Protocol):
    """Protocol surface the reconcilers depend on."""

    async def get_replication_info(self, endpoint: Address) -> ReplicationInfo: ...

    async def get_sentinel_view(self, endpoint: Address, master_name: str) -> SentinelView: ...

    async def apply_acl(self, endpoint: Address, user: str, rules: str) -> None: ...

    async def get_acl(self, endpoint: Address, user: str) -> Optional[str]: ...

    def dump(self, endpoint: Address) -> AsyncIterator[bytes]: ...

    async def close(self) -> None: ...


def _decode(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _pairs(flat: Any) -> Dict[str, Any]:
    if isinstance(flat, dict):
        return {_decode(k): _decode(v) for k, v in flat.items()}
    if not isinstance(flat, list):
        return {}
    return {_decode(k): _decode(v) for k, v in zip(flat[::2], flat[1::2])}


def parse_replication_info(info: Dict[str, Any]) -> ReplicationInfo:
    """Build ReplicationInfo from a parsed INFO replication section."""
    role = str(info.get("role", "unknown"))
    if role == "master":
        return ReplicationInfo(role=role, offset=int(info.get("master_repl_offset", 0)))
    host = info.get("master_host")
    port = info.get("master_port")
    master = (str(host), int(port)) if host and port else None
    return ReplicationInfo(
        role=role,
        master_addr=master,
        offset=int(info.get("slave_repl_offset", info.get("master_repl_offset", 0))),
        link_up=info.get("master_link_status") == "up",
    )


def render_acl_user(raw: Any) -> Optional[str]:
    """
    Render an ACL GETUSER reply as a rule string.

    Handles both the Redis 6 shape (keys/channels as lists) and the Redis 7
    shape (space separated strings). Returns None for an unknown user.
    """
    if raw is None:
        return None
    data = _pairs(raw)
    tokens: List[str] = []

    flags = [_decode(f) for f in data.get("flags") or []]
    tokens.append("on" if "on" in flags else "off")
    if "nopass" in flags:
        tokens.append("nopass")
    for password in data.get("passwords") or []:
        tokens.append("#" + _decode(password))

    for field_name, prefix in (("keys", "~"), ("channels", "&")):
        value = data.get(field_name) or []
        if isinstance(value, str):
            patterns = value.split()
        else:
            patterns = [_decode(v) for v in value]
        for pattern in patterns:
            tokens.append(pattern if pattern.startswith(prefix) or pattern.startswith("%") else prefix + pattern)

    commands = data.get("commands") or ""
    tokens.extend(str(commands).split())
    return " ".join(tokens)


class RedisAdminClient:
    """
    Admin client for one cluster's Redis and Sentinel endpoints.

    One ``redis.asyncio.Redis`` client is cached per endpoint. A failed call
    drops the endpoint's client so the next attempt reconnects (pods are
    rescheduled with new IPs behind the same DNS name).

    Usage::

        client = RedisAdminClient(AdminCredentials(password="secret"))
        info = await client.get_replication_info(("r-0.r-headless", 6379))
        await client.close()
    """

    def __init__(
        self,
        credentials: Optional[AdminCredentials] = None,
        config: Optional[AdminConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.credentials = credentials or AdminCredentials()
        self.config = config or AdminConfig()
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._clients: Dict[Tuple[Address, bool], redis.Redis] = {}

    def _create_client(self, endpoint: Address, sentinel: bool) -> redis.Redis:
        """
        Create a client with operator-grade settings.

        Note: Internal command retries are disabled to avoid multiplicative
        retry behavior when combined with with_redis_retry.
        """
        kwargs: Dict[str, Any] = {}
        if self.credentials.tls:
            kwargs["ssl"] = True
            if self.credentials.ca_data:
                kwargs["ssl_ca_data"] = self.credentials.ca_data
            else:
                kwargs["ssl_cert_reqs"] = "none"
        password = self.credentials.sentinel_password if sentinel else self.credentials.password
        suffix = "_sentinel" if sentinel else ""
        return redis.Redis(
            host=endpoint[0],
            port=endpoint[1],
            password=password,
            decode_responses=True,
            socket_timeout=self.config.socket_timeout,
            socket_connect_timeout=self.config.socket_connect_timeout,
            retry_on_timeout=False,
            max_connections=self.config.max_connections,
            client_name=f"{self.config.client_name}{suffix}",
            **kwargs,
        )

    def _client_for(self, endpoint: Address, sentinel: bool = False) -> redis.Redis:
        key = (endpoint, sentinel)
        client = self._clients.get(key)
        if client is None:
            client = self._create_client(endpoint, sentinel)
            self._clients[key] = client
        return client

    async def _drop(self, endpoint: Address, sentinel: bool) -> None:
        client = self._clients.pop((endpoint, sentinel), None)
        if client is None:
            return
        try:
            await client.aclose()
        except (RedisError, OSError) as e:
            self.logger.debug(f"Error closing client for {format_address(endpoint)}: {e}")

    async def _run(
        self,
        endpoint: Address,
        operation: Callable[[redis.Redis], Awaitable[Any]],
        sentinel: bool = False,
    ) -> Any:
        @with_redis_retry(self.config.retry_attempts, self.config.retry_base_delay)
        async def attempt():
            return await operation(self._client_for(endpoint, sentinel))

        try:
            return await attempt()
        except RETRYABLE_EXCEPTIONS as e:
            await self._drop(endpoint, sentinel)
            raise AdminConnectionError(
                f"{format_address(endpoint)} unreachable: {type(e).__name__}: {e}", cause=e
            ) from e
        except RedisError as e:
            raise AdminCommandError(
                f"{format_address(endpoint)} rejected command: {type(e).__name__}: {e}", cause=e
            ) from e

    # =========================================================================
    # Replication / Sentinel
    # =========================================================================

    async def get_replication_info(self, endpoint: Address) -> ReplicationInfo:
        info = await self._run(endpoint, lambda c: c.info("replication"))
        return parse_replication_info(info)

    async def get_sentinel_view(self, endpoint: Address, master_name: str) -> SentinelView:
        """
        Query one Sentinel for its view of ``master_name``.

        SENTINEL MASTER, SENTINEL REPLICAS and SENTINEL CKQUORUM are batched
        in a single non-transactional pipeline. CKQUORUM replies with an
        error when quorum cannot be reached, which maps to
        ``quorum_reached=False`` rather than a failure.
        """
        async def query(client: redis.Redis):
            pipe = client.pipeline(transaction=False)
            pipe.execute_command("SENTINEL", "MASTER", master_name)
            pipe.execute_command("SENTINEL", "REPLICAS", master_name)
            pipe.execute_command("SENTINEL", "CKQUORUM", master_name)
            return await pipe.execute(raise_on_error=False)

        master_info, replicas_info, ckquorum = await self._run(endpoint, query, sentinel=True)

        if isinstance(master_info, ResponseError):
            # Sentinel does not monitor this master (yet)
            self.logger.warning(
                f"Sentinel {format_address(endpoint)} has no master {master_name}: {master_info}"
            )
            return SentinelView()

        info = _pairs(master_info)
        master_addr = None
        if info.get("ip") and info.get("port"):
            master_addr = (info["ip"], int(info["port"]))
        flags = str(info.get("flags", "")).split(",") if info.get("flags") else []

        replicas: List[Address] = []
        if isinstance(replicas_info, list):
            for replica in replicas_info:
                replica_dict = _pairs(replica)
                if replica_dict.get("ip") and replica_dict.get("port"):
                    replicas.append((replica_dict["ip"], int(replica_dict["port"])))

        return SentinelView(
            master_addr=master_addr,
            known_replicas=replicas,
            quorum_reached=not isinstance(ckquorum, Exception),
            master_flags=flags,
        )

    # =========================================================================
    # ACL
    # =========================================================================

    async def get_acl(self, endpoint: Address, user: str) -> Optional[str]:
        raw = await self._run(endpoint, lambda c: c.execute_command("ACL", "GETUSER", user))
        return render_acl_user(raw)

    async def apply_acl(self, endpoint: Address, user: str, rules: str) -> None:
        """Replace ``user``'s rules; ``reset`` makes the apply a full overwrite."""
        await self._run(
            endpoint,
            lambda c: c.execute_command("ACL", "SETUSER", user, "reset", *rules.split()),
        )

    # =========================================================================
    # Dump
    # =========================================================================

    async def dump(self, endpoint: Address) -> AsyncIterator[bytes]:
        """
        Stream a point-in-time RDB snapshot of ``endpoint``.

        Uses the replication handshake (SYNC): the node forks, produces an
        RDB and sends it as a bulk payload, either length-prefixed
        (``$<len>``) or, with diskless sync, delimited by an EOF mark.
        Newlines sent as keepalives while the snapshot is produced are
        skipped.
        """
        ssl_context = None
        if self.credentials.tls:
            ssl_context = ssl.create_default_context(cadata=self.credentials.ca_data)
            if not self.credentials.ca_data:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(endpoint[0], endpoint[1], ssl=ssl_context),
                timeout=self.config.socket_connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise AdminConnectionError(
                f"{format_address(endpoint)} unreachable for dump: {type(e).__name__}: {e}", cause=e
            ) from e

        try:
            if self.credentials.password:
                writer.write(_encode_command("AUTH", self.credentials.password))
                await writer.drain()
                reply = await reader.readline()
                if not reply.startswith(b"+OK"):
                    raise AdminCommandError(
                        f"{format_address(endpoint)} rejected AUTH: {reply.decode(errors='replace').strip()}"
                    )
            writer.write(_encode_command("SYNC"))
            await writer.drain()

            header = b"\n"
            while header in (b"\n", b"\r\n"):
                header = await reader.readline()
            if header.startswith(b"-"):
                raise AdminCommandError(
                    f"{format_address(endpoint)} rejected SYNC: {header.decode(errors='replace').strip()}"
                )
            if not header.startswith(b"$"):
                raise AdminCommandError(f"Unexpected SYNC reply from {format_address(endpoint)}: {header[:32]!r}")

            payload = header[1:].strip()
            if payload.startswith(b"EOF:"):
                async for chunk in _read_until_mark(reader, payload[4:]):
                    yield chunk
            else:
                remaining = int(payload)
                while remaining > 0:
                    chunk = await reader.read(min(DUMP_CHUNK_SIZE, remaining))
                    if not chunk:
                        raise AdminConnectionError(
                            f"{format_address(endpoint)} closed the dump stream early"
                        )
                    remaining -= len(chunk)
                    yield chunk
        except (OSError, asyncio.IncompleteReadError) as e:
            raise AdminConnectionError(
                f"Dump from {format_address(endpoint)} failed: {type(e).__name__}: {e}", cause=e
            ) from e
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def close(self) -> None:
        for endpoint, sentinel in list(self._clients):
            await self._drop(endpoint, sentinel)
        self.logger.info("Admin connections closed")


def _encode_command(*args: str) -> bytes:
    parts = [f"*{len(args)}\r\n".encode()]
    for arg in args:
        data = arg.encode("utf-8")
        parts.append(b"$%d\r\n%s\r\n" % (len(data), data))
    return b"".join(parts)


async def _read_until_mark(reader: asyncio.StreamReader, mark: bytes) -> AsyncIterator[bytes]:
    """Yield stream data up to (excluding) a trailing EOF mark."""
    if len(mark) != EOF_MARK_LENGTH:
        raise AdminCommandError(f"Malformed diskless EOF mark: {mark!r}")
    pending = b""
    while True:
        chunk = await reader.read(DUMP_CHUNK_SIZE)
        if not chunk:
            raise AdminConnectionError("Dump stream closed before EOF mark")
        pending += chunk
        if pending.endswith(mark):
            if len(pending) > EOF_MARK_LENGTH:
                yield pending[:-EOF_MARK_LENGTH]
            return
        if len(pending) > EOF_MARK_LENGTH:
            yield pending[:-EOF_MARK_LENGTH]
            pending = pending[-EOF_MARK_LENGTH:]


class AdminClientPool:
    """
    Admin clients pooled per target cluster.

    Clients are read-shared across reconcile passes and never locked;
    correctness relies on the idempotence of the admin operations. A client
    is rebuilt when the cluster's credentials change.
    """

    def __init__(
        self,
        config: Optional[AdminConfig] = None,
        logger: Optional[logging.Logger] = None,
        factory: Optional[Callable[[AdminCredentials, AdminConfig], AdminClient]] = None,
    ):
        self.config = config or AdminConfig()
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._factory = factory or (lambda creds, cfg: RedisAdminClient(creds, cfg))
        self._clients: Dict[ResourceKey, Tuple[AdminCredentials, AdminClient]] = {}

    async def get(self, cluster: ResourceKey, credentials: AdminCredentials) -> AdminClient:
        cached = self._clients.get(cluster)
        if cached is not None:
            cached_credentials, client = cached
            if cached_credentials == credentials:
                return client
            self.logger.info(f"Credentials changed for {cluster}, reconnecting")
            await client.close()
        client = self._factory(credentials, self.config)
        self._clients[cluster] = (credentials, client)
        return client

    async def discard(self, cluster: ResourceKey) -> None:
        cached = self._clients.pop(cluster, None)
        if cached is not None:
            await cached[1].close()

    async def close(self) -> None:
        for cluster in list(self._clients):
            await self.discard(cluster)


async def cluster_credentials(resources: ResourceClient, spec: ClusterSpec) -> AdminCredentials:
    """
    Resolve the credentials for a cluster's endpoints from its secrets.

    Raises:
        NotFoundError: the auth or TLS secret does not exist (yet)
    """
    ref = auth_secret_ref(spec)
    password = await read_secret_value(resources, spec.namespace, ref.name, ref.key)
    ca_data = None
    if spec.tls.enabled:
        ca_data = await read_secret_value(resources, spec.namespace, spec.tls.secret_name, "ca.crt")
    return AdminCredentials(password=password, tls=spec.tls.enabled, ca_data=ca_data)
