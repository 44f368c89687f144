"""Cluster resources and an in-memory object store holding them."""

from __future__ import annotations

import copy
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, TypeVar

LABEL_POOL = "coil.cybozu.com/pool"
LABEL_NODE = "coil.cybozu.com/node"
FIN_COIL = "coil.cybozu.com"
ANN_POOL = "coil.cybozu.com/pool"
ANN_EGRESS_PREFIX = "egress.coil.cybozu.com/"
DEFAULT_POOL = "default"
NODE_INTERNAL_IP = "InternalIP"

T = TypeVar("T")


@dataclass(frozen=True)
class ObjectKey:
    """Identifies an object by name and, for namespaced kinds, namespace."""

    name: str
    namespace: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(kw_only=True)
class _Object:
    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    uid: str = ""
    resource_version: int = 0
    deletion_requested: bool = False

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.name, self.namespace)


@dataclass(kw_only=True)
class Pod(_Object):
    """A pod; only the fields the runners read."""

    host_network: bool = False


@dataclass(kw_only=True)
class Namespace(_Object):
    """A namespace."""


@dataclass(kw_only=True)
class Service(_Object):
    """A service with its cluster IP."""

    cluster_ip: str = ""


@dataclass(kw_only=True)
class Egress(_Object):
    """An egress gateway definition."""

    destinations: list[str] = field(default_factory=list)
    replicas: int = 1
    fou_source_port_auto: bool = False


@dataclass(kw_only=True)
class AddressBlock(_Object):
    """A block of addresses carved out of a pool and owned by a node."""

    index: int = 0
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None


@dataclass
class NodeAddress:
    """One address of a node."""

    type: str
    address: str


@dataclass(kw_only=True)
class Node(_Object):
    """A cluster node."""

    addresses: list[NodeAddress] = field(default_factory=list)


class NotFoundError(LookupError):
    """The requested object does not exist."""

    def __init__(self, kind: type, key: ObjectKey) -> None:
        super().__init__(f'{kind.__name__} "{key}" not found')
        self.kind = kind
        self.key = key


class ConflictError(Exception):
    """The object was changed or already exists."""


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff parameters; durations are in seconds."""

    duration: float = 0.01
    factor: float = 5.0
    jitter: float = 0.1
    steps: int = 4

    def _delays(self) -> Iterator[float]:
        delay = self.duration
        for _ in range(max(self.steps, 1) - 1):
            extra = random.random() * self.jitter * delay if self.jitter > 0 else 0.0
            yield delay + extra
            delay *= self.factor


DEFAULT_BACKOFF = Backoff()


class ObjectStore:
    """Thread-safe in-memory store of cluster objects with optimistic locking."""

    def __init__(self) -> None:
        self._objects: dict[tuple[type, ObjectKey], _Object] = {}
        self._lock = threading.Lock()

    def get(self, kind: type[T], key: ObjectKey) -> T:
        with self._lock:
            obj = self._objects.get((kind, key))
            if obj is None:
                raise NotFoundError(kind, key)
            return copy.deepcopy(obj)

    def list(self, kind: type[T]) -> list[T]:
        with self._lock:
            found = [
                copy.deepcopy(obj)
                for (obj_kind, _), obj in self._objects.items()
                if obj_kind is kind
            ]
        return sorted(found, key=lambda o: (o.namespace, o.name))

    def create(self, obj: _Object) -> None:
        slot = (type(obj), obj.key)
        with self._lock:
            if slot in self._objects:
                raise ConflictError(f'{type(obj).__name__} "{obj.key}" already exists')
            obj.uid = obj.uid or str(uuid.uuid4())
            obj.resource_version = 1
            obj.deletion_requested = False
            self._objects[slot] = copy.deepcopy(obj)

    def update(self, obj: _Object) -> None:
        kind = type(obj)
        slot = (kind, obj.key)
        with self._lock:
            current = self._objects.get(slot)
            if current is None:
                raise NotFoundError(kind, obj.key)
            if obj.resource_version != current.resource_version:
                raise ConflictError(
                    f'{kind.__name__} "{obj.key}" has been modified; '
                    "please apply your changes to the latest version"
                )
            obj.uid = current.uid
            obj.resource_version = current.resource_version + 1
            obj.deletion_requested = current.deletion_requested
            if obj.deletion_requested and not obj.finalizers:
                del self._objects[slot]
            else:
                self._objects[slot] = copy.deepcopy(obj)

    def delete(self, kind: type, key: ObjectKey) -> None:
        slot = (kind, key)
        with self._lock:
            current = self._objects.get(slot)
            if current is None:
                raise NotFoundError(kind, key)
            if current.finalizers:
                if not current.deletion_requested:
                    current.deletion_requested = True
                    current.resource_version += 1
            else:
                del self._objects[slot]


def retry_on_conflict(func: Callable[[], T], backoff: Backoff = DEFAULT_BACKOFF) -> T:
    """Call func, retrying with backoff while it raises ConflictError."""
    delays = backoff._delays()
    while True:
        try:
            return func()
        except ConflictError:
            delay = next(delays, None)
            if delay is None:
                raise
            time.sleep(delay)


def ignore_not_found(func: Callable[[], T]) -> Optional[T]:
    """Call func and return its result, or None if it raised NotFoundError."""
    try:
        return func()
    except NotFoundError:
        return None