"""Wires clusters, stores, reconcilers and controllers into one running process."""

import asyncio
import functools
import threading
from typing import Any, Dict, List, Optional

from .controller import Controller
from .dns import DNSProvider, DNSRecordReconciler, create_dns_provider
from .ingress import IngressReconciler, LeafIngressReconciler, RootIngressReconciler, keys_for_event
from .kube import ClusterClient
from .logging_config import get_logger, log_function_entry, log_function_exit
from .models import (
    DNS_RECORD_GROUP,
    DNS_RECORD_PLURAL,
    DNS_RECORD_VERSION,
    ControllerConfig,
    ControllerStatus,
    DeploymentMode,
    DNSRecord,
    Ingress,
)
from .resolver import ConfigMapHostResolver, DefaultHostResolver, HostResolver
from .store import OWNER_INDEX, EventType, Informer, ResourceStore, owner_index
from .tls import CertificateCoordinator, TLSProvider, create_tls_provider

logger = get_logger(__name__)

CACHE_SYNC_TIMEOUT = 60.0


class ControllerManager:
    """Owns every component of a glbc process.

    Components receive the configuration at construction; nothing reads
    process-wide state. ``initialize`` performs the startup steps whose
    failure is fatal, ``run`` blocks until ``stop`` is called.
    """

    def __init__(self, config: ControllerConfig,
                 root_cluster: Optional[ClusterClient] = None,
                 control_cluster: Optional[ClusterClient] = None,
                 dns_provider: Optional[DNSProvider] = None,
                 tls_provider: Optional[TLSProvider] = None,
                 resolver: Optional[HostResolver] = None):
        log_function_entry(logger, "ControllerManager.__init__", mode=config.mode.value,
                           domain=config.domain, tls_enabled=config.tls_enabled)
        self.config = config
        self.root = root_cluster or ClusterClient(config.root_cluster)
        if control_cluster is not None:
            self.control = control_cluster
        elif config.control_cluster is not None:
            self.control = ClusterClient(config.control_cluster)
        else:
            self.control = self.root

        self.ingress_store: ResourceStore[Ingress] = ResourceStore("ingress")
        self.ingress_store.add_indexer(OWNER_INDEX, owner_index)
        self.dns_record_store: ResourceStore[DNSRecord] = ResourceStore("dnsrecord")

        self.dns_provider = dns_provider or create_dns_provider(config.dns_provider)
        self.certificates = CertificateCoordinator(tls_provider or create_tls_provider(config, self.control))
        self.resolver = resolver or self._create_resolver()

        reconciler_cls = RootIngressReconciler if config.mode == DeploymentMode.ROOT else LeafIngressReconciler
        self.ingress_reconciler: IngressReconciler = reconciler_cls(
            self.root, self.ingress_store, config, self.resolver, self.certificates,
        )
        self.dns_reconciler = DNSRecordReconciler(self.root, self.dns_record_store, self.dns_provider)

        self.ingress_controller = Controller("ingress", self.ingress_reconciler.reconcile_key,
                                             max_retries=config.max_retries)
        self.dns_controller = Controller("dnsrecord", self.dns_reconciler.reconcile_key,
                                         max_retries=config.max_retries)

        self.ingress_store.add_handler(self._on_ingress_event)
        self.dns_record_store.add_handler(self._on_dns_record_event)

        self._stop = threading.Event()
        self._informers: List[Informer] = []
        self.initialized = False
        self.running = False

    def _create_resolver(self) -> HostResolver:
        if self.config.host_resolver == "configmap":
            return ConfigMapHostResolver(self.root)
        return DefaultHostResolver()

    def _on_ingress_event(self, event_type: EventType, ingress: Ingress) -> None:
        for key in keys_for_event(self.config.mode, ingress):
            self.ingress_controller.enqueue(key)

    def _on_dns_record_event(self, event_type: EventType, record: DNSRecord) -> None:
        if event_type != EventType.DELETED:
            self.dns_controller.enqueue(record.key)

    def _build_informers(self) -> List[Informer]:
        namespace = self.config.namespace
        networking = self.root.networking_v1
        custom = self.root.custom_objects
        if namespace:
            list_ingresses = functools.partial(networking.list_namespaced_ingress, namespace)
            list_records = functools.partial(custom.list_namespaced_custom_object, DNS_RECORD_GROUP,
                                             DNS_RECORD_VERSION, namespace, DNS_RECORD_PLURAL)
        else:
            list_ingresses = functools.partial(networking.list_ingress_for_all_namespaces)
            list_records = functools.partial(custom.list_cluster_custom_object, DNS_RECORD_GROUP,
                                             DNS_RECORD_VERSION, DNS_RECORD_PLURAL)
        return [
            Informer(self.ingress_store, list_ingresses, Ingress.from_k8s, self.root.serialize,
                     resync_period=self.config.resync_period, cluster=self.root.name),
            Informer(self.dns_record_store, list_records, DNSRecord.from_k8s, self.root.serialize,
                     resync_period=self.config.resync_period, cluster=self.root.name),
        ]

    async def initialize(self) -> None:
        """Connect to the clusters and initialize the certificate provider.

        Raises:
            Exception: Any failure here is fatal to the process.
        """
        log_function_entry(logger, "ControllerManager.initialize")
        await asyncio.to_thread(self.root.connect)
        if self.control is not self.root:
            await asyncio.to_thread(self.control.connect)
        await self.certificates.initialize()
        self.initialized = True
        log_function_exit(logger, "ControllerManager.initialize", status="success")

    async def run(self) -> None:
        """Start watches and worker pools; returns once ``stop`` has been called."""
        if not self.initialized:
            await self.initialize()

        self._stop.clear()
        loop = asyncio.get_running_loop()
        self.ingress_controller.bind(loop)
        self.dns_controller.bind(loop)
        self._informers = self._build_informers()
        for informer in self._informers:
            informer.start(self._stop)

        for store in (self.ingress_store, self.dns_record_store):
            synced = await asyncio.to_thread(store.synced.wait, CACHE_SYNC_TIMEOUT)
            if not synced:
                logger.warning("Cache not synced before timeout, starting anyway", kind=store.kind)

        self.running = True
        logger.info("Controllers running", mode=self.config.mode.value, workers=self.config.workers,
                    domain=self.config.domain)
        try:
            await asyncio.gather(
                self.ingress_controller.run(self.config.workers),
                self.dns_controller.run(self.config.workers),
            )
        finally:
            self.running = False
            self.root.disconnect()
            if self.control is not self.root:
                self.control.disconnect()

    def stop(self) -> None:
        """Signal shutdown: watches stop and workers exit after their current item."""
        logger.info("Stopping controllers")
        self._stop.set()
        for informer in self._informers:
            informer.stop()
        self.ingress_controller.shutdown()
        self.dns_controller.shutdown()

    def controller_status(self) -> List[ControllerStatus]:
        return [self.ingress_controller.status(), self.dns_controller.status()]

    def programmed_records(self) -> List[DNSRecord]:
        list_records = getattr(self.dns_provider, "list_records", None)
        return list_records() if list_records else []

    def sanitized_config(self) -> Dict[str, Any]:
        config_dict = self.config.model_dump(mode="json")
        for cluster_field in ("root_cluster", "control_cluster"):
            cluster = config_dict.get(cluster_field)
            if cluster and cluster.get("kubeconfig_path"):
                cluster["kubeconfig_path"] = "***"
        return config_dict
