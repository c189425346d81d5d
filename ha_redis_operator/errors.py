"""
Operator Error Taxonomy

Every failure a reconciler can hit is mapped onto one of four kinds, each
with its own requeue policy in the engine:

- Transient: network/timeout/not-found, retried with backoff
- Conflict: desired state fights an external mutation, surfaced and retried
- Configuration: invalid spec, surfaced and parked until the spec changes
- Unrecoverable: retried at reduced frequency, surfaces as the Error phase

"""

import asyncio
from typing import Optional

from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    TimeoutError as RedisTimeoutError,
    BusyLoadingError,
    ReadOnlyError,
)

TRANSIENT = "Transient"
CONFLICT = "Conflict"
CONFIGURATION = "Configuration"
UNRECOVERABLE = "Unrecoverable"


class OperatorError(Exception):
    """Base class for classified reconcile failures."""

    kind = UNRECOVERABLE

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class TransientError(OperatorError):
    kind = TRANSIENT


class ConflictError(OperatorError):
    kind = CONFLICT


class ConfigurationError(OperatorError):
    kind = CONFIGURATION


class UnrecoverableError(OperatorError):
    kind = UNRECOVERABLE


class NotFoundError(TransientError):
    """A weakly referenced resource could not be resolved."""


# Library exceptions that are always network-level and safe to retry
TRANSIENT_EXCEPTIONS = (
    RedisConnectionError,
    RedisTimeoutError,
    BusyLoadingError,
    ReadOnlyError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)


def classify(exc: BaseException) -> OperatorError:
    """
    Map an arbitrary exception onto the taxonomy.

    Already-classified errors are returned unchanged; known network errors
    become TransientError; everything else is Unrecoverable.
    """
    if isinstance(exc, OperatorError):
        return exc
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return TransientError(f"{type(exc).__name__}: {exc}", cause=exc)
    return UnrecoverableError(f"{type(exc).__name__}: {exc}", cause=exc)
