"""Shared fixtures: an in-memory cluster standing in for ClusterClient."""

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from glbc.errors import AlreadyExistsError, ConflictError, NotFoundError, ResolutionError
from glbc.models import ControllerConfig, DNSRecord, Ingress, LoadBalancerEndpoint
from glbc.resolver import HostResolver
from glbc.store import OWNER_INDEX, ResourceStore, owner_index


class FakeCluster:
    """Implements the ClusterClient surface against dictionaries.

    Every write bumps the object's resourceVersion and is mirrored into the
    attached stores, the way a watch would deliver it. Conditional writes
    fail with ConflictError on a stale resourceVersion.
    """

    name = "fake"

    def __init__(self, ingress_store: Optional[ResourceStore] = None,
                 dns_record_store: Optional[ResourceStore] = None):
        self.ingresses: Dict[str, Ingress] = {}
        self.dns_records: Dict[str, DNSRecord] = {}
        self.custom_objects: Dict[Tuple[str, str, str, str], Dict[str, Any]] = {}
        self.config_maps: Dict[str, Dict[str, str]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.ingress_store = ingress_store
        self.dns_record_store = dns_record_store
        self._resource_version = 0
        self._failures: Dict[str, List[Exception]] = {}

    connected = False

    def connect(self) -> None:
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    # test helpers

    def fail_next(self, operation: str, error: Exception) -> None:
        self._failures.setdefault(operation, []).append(error)

    def _record(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _save_ingress(self, ingress: Ingress) -> Ingress:
        if ingress.is_deleting and not ingress.finalizers:
            self.ingresses.pop(ingress.key, None)
            if self.ingress_store is not None:
                self.ingress_store.delete(ingress)
            return ingress
        ingress = ingress.model_copy(update={"resource_version": self._next_version()})
        self.ingresses[ingress.key] = ingress
        if self.ingress_store is not None:
            self.ingress_store.upsert(ingress)
        return ingress

    def _save_record(self, record: DNSRecord) -> DNSRecord:
        if record.is_deleting and not record.finalizers:
            self.dns_records.pop(record.key, None)
            if self.dns_record_store is not None:
                self.dns_record_store.delete(record)
            return record
        record = record.model_copy(update={"resource_version": self._next_version()})
        self.dns_records[record.key] = record
        if self.dns_record_store is not None:
            self.dns_record_store.upsert(record)
        return record

    def add_ingress(self, ingress: Ingress) -> Ingress:
        return self._save_ingress(ingress)

    def set_load_balancer(self, key: str, *addresses: str) -> Ingress:
        endpoints = tuple(
            LoadBalancerEndpoint(ip=a) if a[0].isdigit() else LoadBalancerEndpoint(hostname=a)
            for a in addresses
        )
        return self._save_ingress(self.ingresses[key].model_copy(update={"load_balancer": endpoints}))

    def delete_ingress(self, key: str) -> None:
        ingress = self.ingresses[key]
        deleting = ingress.model_copy(update={"deletion_timestamp": datetime.now(timezone.utc)})
        self._save_ingress(deleting)

    def delete_record_object(self, key: str) -> None:
        record = self.dns_records[key]
        self._save_record(record.model_copy(update={"deletion_timestamp": datetime.now(timezone.utc)}))

    @staticmethod
    def _check_version(current_version: Optional[str], patch: Dict[str, Any], target: str) -> None:
        expected = (patch.get("metadata") or {}).get("resourceVersion")
        if expected is not None and expected != current_version:
            raise ConflictError(f"{target}: 409 Conflict")

    # ingresses

    async def get_ingress(self, namespace: str, name: str) -> Ingress:
        key = f"{namespace}/{name}"
        self._record("get_ingress", key)
        if key not in self.ingresses:
            raise NotFoundError(key)
        return self.ingresses[key]

    async def list_ingresses(self, namespace: Optional[str] = None,
                             label_selector: Optional[str] = None) -> List[Ingress]:
        self._record("list_ingresses", namespace or "")
        return [i for i in self.ingresses.values() if namespace is None or i.namespace == namespace]

    async def patch_ingress(self, namespace: str, name: str, patch: Dict[str, Any]) -> Ingress:
        key = f"{namespace}/{name}"
        self._record("patch_ingress", key)
        current = self.ingresses.get(key)
        if current is None:
            raise NotFoundError(key)
        self._check_version(current.resource_version, patch, key)

        metadata = patch.get("metadata") or {}
        update: Dict[str, Any] = {}
        if "finalizers" in metadata:
            update["finalizers"] = tuple(metadata["finalizers"] or ())
        if "annotations" in metadata:
            annotations = dict(current.annotations)
            for k, v in metadata["annotations"].items():
                if v is None:
                    annotations.pop(k, None)
                else:
                    annotations[k] = v
            update["annotations"] = annotations
        return self._save_ingress(current.model_copy(update=update))

    async def update_ingress(self, ingress: Ingress) -> Ingress:
        self._record("update_ingress", ingress.key)
        current = self.ingresses.get(ingress.key)
        if current is None:
            raise NotFoundError(ingress.key)
        if ingress.resource_version != current.resource_version:
            raise ConflictError(f"{ingress.key}: 409 Conflict")
        # status and deletion are not writable through an update
        updated = ingress.model_copy(update={
            "load_balancer": current.load_balancer,
            "deletion_timestamp": current.deletion_timestamp,
        })
        return self._save_ingress(updated)

    # DNS records

    async def create_dns_record(self, record: DNSRecord) -> DNSRecord:
        self._record("create_dns_record", record.key)
        if record.key in self.dns_records:
            raise AlreadyExistsError(f"{record.key}: 409 AlreadyExists")
        return self._save_record(record)

    async def apply_dns_record(self, record: DNSRecord) -> DNSRecord:
        self._record("apply_dns_record", record.key)
        current = self.dns_records.get(record.key)
        if current is not None:
            record = record.model_copy(update={
                "finalizers": current.finalizers,
                "deletion_timestamp": current.deletion_timestamp,
                "resource_version": current.resource_version,
            })
        return self._save_record(record)

    async def patch_dns_record(self, namespace: str, name: str, patch: Dict[str, Any]) -> DNSRecord:
        key = f"{namespace}/{name}"
        self._record("patch_dns_record", key)
        current = self.dns_records.get(key)
        if current is None:
            raise NotFoundError(key)
        self._check_version(current.resource_version, patch, key)
        metadata = patch.get("metadata") or {}
        update: Dict[str, Any] = {}
        if "finalizers" in metadata:
            update["finalizers"] = tuple(metadata["finalizers"] or ())
        return self._save_record(current.model_copy(update=update))

    async def delete_dns_record(self, namespace: str, name: str) -> None:
        key = f"{namespace}/{name}"
        self._record("delete_dns_record", key)
        if key not in self.dns_records:
            raise NotFoundError(key)
        self.delete_record_object(key)

    # generic custom objects

    async def get_custom_object(self, group, version, namespace, plural, name) -> Dict[str, Any]:
        self._record("get_custom_object", f"{plural}/{namespace}/{name}")
        try:
            return copy.deepcopy(self.custom_objects[(group, plural, namespace, name)])
        except KeyError:
            raise NotFoundError(f"{plural} {namespace}/{name}") from None

    async def create_custom_object(self, group, version, namespace, plural, body) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        self._record("create_custom_object", f"{plural}/{namespace}/{name}")
        if (group, plural, namespace, name) in self.custom_objects:
            raise AlreadyExistsError(f"{plural} {namespace}/{name}")
        self.custom_objects[(group, plural, namespace, name)] = copy.deepcopy(body)
        return body

    async def apply_custom_object(self, group, version, namespace, plural, body) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        self._record("apply_custom_object", f"{plural}/{namespace}/{name}")
        self.custom_objects[(group, plural, namespace, name)] = copy.deepcopy(body)
        return body

    async def delete_custom_object(self, group, version, namespace, plural, name) -> None:
        self._record("delete_custom_object", f"{plural}/{namespace}/{name}")
        if self.custom_objects.pop((group, plural, namespace, name), None) is None:
            raise NotFoundError(f"{plural} {namespace}/{name}")

    async def get_config_map_data(self, namespace: str, name: str) -> Dict[str, str]:
        key = f"{namespace}/{name}"
        self._record("get_config_map_data", key)
        if key not in self.config_maps:
            raise NotFoundError(key)
        return dict(self.config_maps[key])

    def operations(self, *names: str) -> List[Tuple[str, str]]:
        return [call for call in self.calls if call[0] in names]


class StaticResolver(HostResolver):
    """Resolves from a fixed mapping."""

    def __init__(self, hosts: Optional[Dict[str, List[str]]] = None):
        self.hosts = hosts or {}

    async def resolve(self, hostname: str) -> List[str]:
        if hostname not in self.hosts:
            raise ResolutionError(f"cannot resolve {hostname}")
        return list(self.hosts[hostname])


@pytest.fixture
def controller_config():
    return ControllerConfig(domain="example.com")


@pytest.fixture
def ingress_store():
    store = ResourceStore("ingress")
    store.add_indexer(OWNER_INDEX, owner_index)
    return store


@pytest.fixture
def dns_record_store():
    return ResourceStore("dnsrecord")


@pytest.fixture
def cluster(ingress_store, dns_record_store):
    return FakeCluster(ingress_store, dns_record_store)


@pytest.fixture
def resolver():
    return StaticResolver({"lb.example.net": ["192.0.2.10", "192.0.2.11"]})
