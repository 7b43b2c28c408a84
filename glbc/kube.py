"""Kubernetes cluster client: remote reads and writes mapped onto the error taxonomy."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import NotFoundError, TransientError, map_api_exception
from .logging_config import get_logger, log_function_entry, log_k8s_operation
from .models import (
    DNS_RECORD_GROUP,
    DNS_RECORD_PLURAL,
    DNS_RECORD_VERSION,
    ClusterConfig,
    DNSRecord,
    Ingress,
)

logger = get_logger(__name__)

MERGE_PATCH = "application/merge-patch+json"
APPLY_PATCH = "application/apply-patch+yaml"
FIELD_MANAGER = "kcp-ingress"


class ClusterClient:
    """Client for reading and writing controller objects in one Kubernetes cluster."""

    def __init__(self, cluster_config: ClusterConfig):
        log_function_entry(logger, "ClusterClient.__init__", cluster_name=cluster_config.name)
        self.cluster_config = cluster_config
        self._k8s_client: Optional[client.ApiClient] = None
        self._networking_v1: Optional[client.NetworkingV1Api] = None
        self._core_v1: Optional[client.CoreV1Api] = None
        self._custom_objects: Optional[client.CustomObjectsApi] = None

    @property
    def name(self) -> str:
        return self.cluster_config.name

    @property
    def networking_v1(self) -> client.NetworkingV1Api:
        if self._networking_v1 is None:
            raise RuntimeError(f"cluster {self.name} is not connected")
        return self._networking_v1

    @property
    def custom_objects(self) -> client.CustomObjectsApi:
        if self._custom_objects is None:
            raise RuntimeError(f"cluster {self.name} is not connected")
        return self._custom_objects

    def connect(self) -> None:
        """Build API clients from the kubeconfig file or the in-cluster service account."""
        log_k8s_operation(logger, "connect", self.name,
                          kubeconfig_path=self.cluster_config.kubeconfig_path,
                          context=self.cluster_config.context)
        try:
            if self.cluster_config.kubeconfig_path or self.cluster_config.context:
                logger.debug("Loading kubeconfig",
                             kubeconfig_path=self.cluster_config.kubeconfig_path,
                             context=self.cluster_config.context,
                             cluster=self.name)
                self._k8s_client = config.new_client_from_config(
                    config_file=self.cluster_config.kubeconfig_path,
                    context=self.cluster_config.context,
                )
            else:
                logger.debug("Loading in-cluster config", cluster=self.name)
                configuration = client.Configuration()
                config.load_incluster_config(client_configuration=configuration)
                self._k8s_client = client.ApiClient(configuration)

            self._networking_v1 = client.NetworkingV1Api(self._k8s_client)
            self._core_v1 = client.CoreV1Api(self._k8s_client)
            self._custom_objects = client.CustomObjectsApi(self._k8s_client)
            logger.info("Successfully connected to cluster", cluster=self.name)
        except Exception as e:
            logger.error("Failed to connect to cluster",
                         cluster=self.name,
                         error=str(e),
                         kubeconfig_path=self.cluster_config.kubeconfig_path,
                         context=self.cluster_config.context)
            raise

    def disconnect(self) -> None:
        """Clean up the connection."""
        if self._k8s_client:
            self._k8s_client.close()
            self._k8s_client = None

    def serialize(self, obj: Any) -> Dict[str, Any]:
        """Turn a kubernetes model object into its camelCase dict form."""
        if isinstance(obj, dict):
            return obj
        api_client = self._k8s_client or client.ApiClient()
        return api_client.sanitize_for_serialization(obj)

    async def _call(self, what: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking API call off the event loop and map its failures."""
        log_k8s_operation(logger, getattr(fn, "__name__", "call"), self.name, target=what)
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise map_api_exception(e, what) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientError(f"{what}: {e}") from e

    # Ingresses

    async def get_ingress(self, namespace: str, name: str) -> Ingress:
        obj = await self._call(f"ingress {namespace}/{name}",
                               self.networking_v1.read_namespaced_ingress, name, namespace)
        return Ingress.from_k8s(self.serialize(obj))

    async def list_ingresses(self, namespace: Optional[str] = None,
                             label_selector: Optional[str] = None) -> List[Ingress]:
        kwargs = {"label_selector": label_selector} if label_selector else {}
        if namespace:
            response = await self._call(f"ingresses in {namespace}",
                                        self.networking_v1.list_namespaced_ingress, namespace, **kwargs)
        else:
            response = await self._call("ingresses",
                                        self.networking_v1.list_ingress_for_all_namespaces, **kwargs)
        return [Ingress.from_k8s(self.serialize(item)) for item in response.items]

    async def patch_ingress(self, namespace: str, name: str, patch: Dict[str, Any]) -> Ingress:
        """Apply a JSON merge patch. Include metadata.resourceVersion to make it conditional."""
        obj = await self._call(f"ingress {namespace}/{name}",
                               self.networking_v1.patch_namespaced_ingress, name, namespace, patch,
                               field_manager=FIELD_MANAGER, _content_type=MERGE_PATCH)
        return Ingress.from_k8s(self.serialize(obj))

    async def update_ingress(self, ingress: Ingress) -> Ingress:
        """Replace the ingress; fails with ConflictError if its resourceVersion is stale."""
        obj = await self._call(f"ingress {ingress.key}",
                               self.networking_v1.replace_namespaced_ingress,
                               ingress.name, ingress.namespace, ingress.to_k8s(),
                               field_manager=FIELD_MANAGER)
        return Ingress.from_k8s(self.serialize(obj))

    # Custom objects

    async def get_custom_object(self, group: str, version: str, namespace: str,
                                plural: str, name: str) -> Dict[str, Any]:
        return await self._call(f"{plural} {namespace}/{name}",
                                self.custom_objects.get_namespaced_custom_object,
                                group, version, namespace, plural, name)

    async def create_custom_object(self, group: str, version: str, namespace: str,
                                   plural: str, body: Dict[str, Any]) -> Dict[str, Any]:
        name = body.get("metadata", {}).get("name", "")
        return await self._call(f"{plural} {namespace}/{name}",
                                self.custom_objects.create_namespaced_custom_object,
                                group, version, namespace, plural, body,
                                field_manager=FIELD_MANAGER)

    async def apply_custom_object(self, group: str, version: str, namespace: str,
                                  plural: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Server-side apply owned by the controller's field manager, forcing conflicts."""
        name = body["metadata"]["name"]
        return await self._call(f"{plural} {namespace}/{name}",
                                self.custom_objects.patch_namespaced_custom_object,
                                group, version, namespace, plural, name, body,
                                field_manager=FIELD_MANAGER, force=True,
                                _content_type=APPLY_PATCH)

    async def patch_custom_object(self, group: str, version: str, namespace: str,
                                  plural: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(f"{plural} {namespace}/{name}",
                                self.custom_objects.patch_namespaced_custom_object,
                                group, version, namespace, plural, name, patch,
                                field_manager=FIELD_MANAGER, _content_type=MERGE_PATCH)

    async def delete_custom_object(self, group: str, version: str, namespace: str,
                                   plural: str, name: str) -> None:
        await self._call(f"{plural} {namespace}/{name}",
                         self.custom_objects.delete_namespaced_custom_object,
                         group, version, namespace, plural, name)

    # DNS records

    async def create_dns_record(self, record: DNSRecord) -> DNSRecord:
        obj = await self.create_custom_object(DNS_RECORD_GROUP, DNS_RECORD_VERSION, record.namespace,
                                              DNS_RECORD_PLURAL, record.to_k8s())
        return DNSRecord.from_k8s(obj)

    async def apply_dns_record(self, record: DNSRecord) -> DNSRecord:
        obj = await self.apply_custom_object(DNS_RECORD_GROUP, DNS_RECORD_VERSION, record.namespace,
                                             DNS_RECORD_PLURAL, record.to_k8s())
        return DNSRecord.from_k8s(obj)

    async def patch_dns_record(self, namespace: str, name: str, patch: Dict[str, Any]) -> DNSRecord:
        obj = await self.patch_custom_object(DNS_RECORD_GROUP, DNS_RECORD_VERSION, namespace,
                                             DNS_RECORD_PLURAL, name, patch)
        return DNSRecord.from_k8s(obj)

    async def delete_dns_record(self, namespace: str, name: str) -> None:
        await self.delete_custom_object(DNS_RECORD_GROUP, DNS_RECORD_VERSION, namespace,
                                        DNS_RECORD_PLURAL, name)

    # Config maps

    async def get_config_map_data(self, namespace: str, name: str) -> Dict[str, str]:
        if self._core_v1 is None:
            raise RuntimeError(f"cluster {self.name} is not connected")
        obj = await self._call(f"configmap {namespace}/{name}",
                               self._core_v1.read_namespaced_config_map, name, namespace)
        return dict(obj.data or {})


async def ignore_not_found(coro: Any) -> bool:
    """Await a delete-intent call, treating NotFound as success.

    Returns:
        True if the object existed, False if it was already gone.
    """
    try:
        await coro
    except NotFoundError:
        return False
    return True
