"""Watch-fed object caches.

A ResourceStore holds the latest observed state of one kind of object in one
cluster. An Informer keeps it current with a list+watch loop running in a
background thread. Workers only read from the store; writes go to the API
server and come back through the watch.
"""

import random
import threading
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Set, TypeVar

from kubernetes import watch
from kubernetes.client.rest import ApiException

from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

OWNER_INDEX = "owner"


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


Handler = Callable[[EventType, Any], None]
IndexFunc = Callable[[Any], List[str]]


def owner_index(obj: Any) -> List[str]:
    """Index leaves under ``namespace/<root-name>`` of the root that owns them."""
    root_name = getattr(obj, "root_name", None)
    if not root_name:
        return []
    return [f"{obj.namespace}/{root_name}"]


def _matches(obj: Any, selector: Optional[Dict[str, str]]) -> bool:
    if not selector:
        return True
    labels = getattr(obj, "labels", None) or {}
    return all(labels.get(k) == v for k, v in selector.items())


class ResourceStore(Generic[T]):
    """Thread-safe cache of one object kind, keyed by ``namespace/name``."""

    def __init__(self, kind: str):
        self.kind = kind
        self._items: Dict[str, T] = {}
        self._lock = threading.RLock()
        self._indexers: Dict[str, IndexFunc] = {}
        self._indices: Dict[str, Dict[str, Set[str]]] = {}
        self._handlers: List[Handler] = []
        self.synced = threading.Event()

    def add_indexer(self, name: str, func: IndexFunc) -> None:
        with self._lock:
            self._indexers[name] = func
            index: Dict[str, Set[str]] = {}
            for key, obj in self._items.items():
                for value in func(obj):
                    index.setdefault(value, set()).add(key)
            self._indices[name] = index

    def add_handler(self, handler: Handler) -> None:
        """Register a callback invoked for every change. Called from the informer thread."""
        self._handlers.append(handler)

    def get(self, namespace: str, name: str) -> Optional[T]:
        return self.get_by_key(f"{namespace}/{name}")

    def get_by_key(self, key: str) -> Optional[T]:
        with self._lock:
            return self._items.get(key)

    def list(self, namespace: Optional[str] = None,
             selector: Optional[Dict[str, str]] = None) -> List[T]:
        with self._lock:
            items = list(self._items.values())
        return sorted(
            (obj for obj in items
             if (namespace is None or obj.namespace == namespace) and _matches(obj, selector)),
            key=lambda obj: obj.key,
        )

    def by_index(self, name: str, value: str) -> List[T]:
        with self._lock:
            keys = sorted(self._indices.get(name, {}).get(value, set()))
            return [self._items[key] for key in keys if key in self._items]

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._items)

    def upsert(self, obj: T) -> None:
        key = obj.key
        with self._lock:
            existed = key in self._items
            self._unindex(key)
            self._items[key] = obj
            self._index(key, obj)
        self._notify(EventType.MODIFIED if existed else EventType.ADDED, obj)

    def delete(self, obj: T) -> None:
        key = obj.key
        with self._lock:
            old = self._items.pop(key, None)
            self._unindex(key, old)
        self._notify(EventType.DELETED, old if old is not None else obj)

    def replace(self, objs: List[T]) -> None:
        """Swap in a full listing, emitting events for every change."""
        fresh = {obj.key: obj for obj in objs}
        with self._lock:
            gone = [obj for key, obj in self._items.items() if key not in fresh]
        for obj in gone:
            self.delete(obj)
        for obj in fresh.values():
            self.upsert(obj)
        self.synced.set()

    def _index(self, key: str, obj: T) -> None:
        for name, func in self._indexers.items():
            for value in func(obj):
                self._indices[name].setdefault(value, set()).add(key)

    def _unindex(self, key: str, obj: Optional[T] = None) -> None:
        obj = obj if obj is not None else self._items.get(key)
        if obj is None:
            return
        for name, func in self._indexers.items():
            index = self._indices[name]
            for value in func(obj):
                keys = index.get(value)
                if keys is not None:
                    keys.discard(key)
                    if not keys:
                        del index[value]

    def _notify(self, event_type: EventType, obj: T) -> None:
        for handler in self._handlers:
            try:
                handler(event_type, obj)
            except Exception:
                logger.exception("Store event handler failed", kind=self.kind, key=obj.key)


class Informer:
    """Keeps a ResourceStore current with a list+watch loop in a background thread."""

    WATCH_TIMEOUT_SECONDS = 300
    MAX_BACKOFF_SECONDS = 30

    def __init__(self, store: ResourceStore, list_func: Callable[..., Any],
                 converter: Callable[[Dict[str, Any]], Any],
                 serializer: Callable[[Any], Dict[str, Any]],
                 resync_period: int = 36000, cluster: str = ""):
        self.store = store
        self.list_func = list_func
        self.converter = converter
        self.serializer = serializer
        self.resync_period = resync_period
        self.cluster = cluster
        self._thread: Optional[threading.Thread] = None
        self._watch: Optional[watch.Watch] = None

    def start(self, stop: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run,
            args=(stop,),
            daemon=True,
            name=f"informer-{self.store.kind}",
        )
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        if self._watch is not None:
            self._watch.stop()

    def _convert_items(self, response: Any) -> List[Any]:
        items = response.get("items", []) if isinstance(response, dict) else response.items
        return [self.converter(self.serializer(item)) for item in items]

    @staticmethod
    def _resource_version(response: Any) -> Optional[str]:
        if isinstance(response, dict):
            return (response.get("metadata") or {}).get("resourceVersion")
        return getattr(getattr(response, "metadata", None), "resource_version", None)

    def _relist(self) -> Optional[str]:
        response = self.list_func()
        self.store.replace(self._convert_items(response))
        resource_version = self._resource_version(response)
        logger.info("Listed objects", kind=self.store.kind, cluster=self.cluster,
                    count=len(self.store.keys()), resource_version=resource_version)
        return resource_version

    def run(self, stop: threading.Event) -> None:
        """List, then watch from the listed resourceVersion until stopped."""
        backoff = 1
        resource_version: Optional[str] = None
        listed = False
        elapsed = 0

        while not stop.is_set():
            try:
                if not listed or (self.resync_period and elapsed >= self.resync_period):
                    resource_version = self._relist()
                    listed = True
                    elapsed = 0

                self._watch = watch.Watch()
                timeout = self.WATCH_TIMEOUT_SECONDS
                if self.resync_period:
                    timeout = max(1, min(timeout, self.resync_period - elapsed))
                for event in self._watch.stream(self.list_func,
                                                resource_version=resource_version,
                                                timeout_seconds=timeout):
                    if stop.is_set():
                        break
                    event_type = event.get("type")
                    if event_type == "ERROR":
                        raw = event.get("raw_object") or {}
                        raise ApiException(status=raw.get("code", 500), reason=raw.get("reason"))
                    if event_type == "BOOKMARK":
                        continue
                    obj = self.converter(self.serializer(event["object"]))
                    resource_version = obj.resource_version or resource_version
                    if event_type == "DELETED":
                        self.store.delete(obj)
                    else:
                        self.store.upsert(obj)
                elapsed += timeout
                backoff = 1
            except ApiException as exc:
                if exc.status == 410:
                    logger.warning("Watch resource version expired, re-listing",
                                   kind=self.store.kind, cluster=self.cluster)
                    listed = False
                    continue
                logger.error("Watch failed", kind=self.store.kind, cluster=self.cluster,
                             status=exc.status, reason=exc.reason)
                listed = False
                stop.wait(timeout=backoff * (0.5 + random.random()))
                backoff = min(backoff * 2, self.MAX_BACKOFF_SECONDS)
            except Exception:
                logger.exception("Unexpected watch error", kind=self.store.kind, cluster=self.cluster)
                listed = False
                stop.wait(timeout=backoff * (0.5 + random.random()))
                backoff = min(backoff * 2, self.MAX_BACKOFF_SECONDS)
            finally:
                self._watch = None
