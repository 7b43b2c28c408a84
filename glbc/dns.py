"""DNS record synthesis and the downstream DNS record controller."""

import ipaddress
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set

from .errors import ConfigError
from .kube import ClusterClient, ignore_not_found
from .logging_config import get_logger, log_function_entry, log_function_exit, log_reconcile_event
from .models import DNSRecord, Ingress, LoadBalancerEndpoint, OwnerReference
from .resolver import HostResolver
from .store import ResourceStore

logger = get_logger(__name__)

DNS_RECORD_FINALIZER = "kuadrant.dev/dns-record"


def _sort_key(address: str):
    parsed = ipaddress.ip_address(address)
    return (parsed.version, parsed)


async def synthesize(hostname: str, ingress: Ingress,
                     endpoints: Iterable[LoadBalancerEndpoint],
                     resolver: HostResolver) -> Optional[DNSRecord]:
    """Compute the desired DNS record for ``hostname``.

    Args:
        hostname: The global hostname of the logical ingress.
        ingress: The logical ingress; it names and owns the record.
        endpoints: Admitted load-balancer endpoints of the ingress and its leaves.
        resolver: Used for endpoints that carry a hostname instead of an IP.

    Returns:
        The record, or None when nothing is admitted (the record should be deleted).

    Raises:
        ResolutionError: If an endpoint hostname cannot be resolved.
    """
    targets: Set[str] = set()
    for endpoint in endpoints:
        if endpoint.ip:
            try:
                parsed = ipaddress.ip_address(endpoint.ip)
            except ValueError:
                logger.warning("Ignoring malformed load-balancer address",
                               ingress=ingress.key, address=endpoint.ip)
            else:
                if parsed.version == 4:
                    targets.add(endpoint.ip)
                else:
                    logger.warning("Ignoring non-IPv4 load-balancer address",
                                   ingress=ingress.key, address=endpoint.ip)
        if endpoint.hostname:
            targets.update(await resolver.resolve(endpoint.hostname))

    if not targets:
        return None

    return DNSRecord(
        name=ingress.name,
        namespace=ingress.namespace,
        dns_name=hostname,
        targets=tuple(sorted(targets, key=_sort_key)),
        owner_references=(OwnerReference(name=ingress.name, uid=ingress.uid),),
    )


class DNSProvider(ABC):
    """Programs records into the DNS system that serves the global hostnames."""

    @abstractmethod
    async def program(self, record: DNSRecord) -> None:
        """Create or update the record set for ``record.dns_name``."""

    @abstractmethod
    async def remove(self, dns_name: str) -> None:
        """Remove the record set for ``dns_name``. Missing records are not an error."""


class FakeDNSProvider(DNSProvider):
    """In-memory provider for local runs and tests."""

    def __init__(self) -> None:
        self.records: Dict[str, DNSRecord] = {}

    async def program(self, record: DNSRecord) -> None:
        self.records[record.dns_name] = record
        logger.debug("Programmed record", dns_name=record.dns_name, targets=list(record.targets))

    async def remove(self, dns_name: str) -> None:
        self.records.pop(dns_name, None)
        logger.debug("Removed record", dns_name=dns_name)

    def list_records(self) -> List[DNSRecord]:
        return sorted(self.records.values(), key=lambda r: r.dns_name)


class LogDNSProvider(FakeDNSProvider):
    """Records desired state in memory and logs every change at info level."""

    async def program(self, record: DNSRecord) -> None:
        await super().program(record)
        logger.info("DNS record programmed", dns_name=record.dns_name,
                    record_type=record.record_type, ttl=record.record_ttl,
                    targets=list(record.targets))

    async def remove(self, dns_name: str) -> None:
        await super().remove(dns_name)
        logger.info("DNS record removed", dns_name=dns_name)


def create_dns_provider(name: str) -> DNSProvider:
    """Factory to create the configured DNS provider."""
    if name == "fake":
        return FakeDNSProvider()
    if name == "log":
        return LogDNSProvider()
    raise ConfigError(f"unknown DNS provider: {name!r}")


class DNSRecordReconciler:
    """Hands DNSRecord objects to the DNS provider, guarded by a finalizer."""

    def __init__(self, cluster: ClusterClient, store: ResourceStore, provider: DNSProvider):
        self.cluster = cluster
        self.store = store
        self.provider = provider

    async def reconcile_key(self, key: str) -> None:
        record = self.store.get_by_key(key)
        if record is None:
            logger.debug("DNS record no longer exists", key=key)
            return
        await self.reconcile(record)

    async def reconcile(self, record: DNSRecord) -> None:
        log_function_entry(logger, "DNSRecordReconciler.reconcile", key=record.key,
                           deleting=record.is_deleting)

        if record.is_deleting:
            if record.has_finalizer(DNS_RECORD_FINALIZER):
                await self.provider.remove(record.dns_name)
                finalizers = [f for f in record.finalizers if f != DNS_RECORD_FINALIZER]
                await ignore_not_found(self.cluster.patch_dns_record(
                    record.namespace, record.name,
                    {"metadata": {"finalizers": finalizers, "resourceVersion": record.resource_version}},
                ))
                log_reconcile_event(logger, "dns_record_removed", key=record.key, dns_name=record.dns_name)
            log_function_exit(logger, "DNSRecordReconciler.reconcile", key=record.key, status="deleted")
            return

        if not record.has_finalizer(DNS_RECORD_FINALIZER):
            record = await self.cluster.patch_dns_record(
                record.namespace, record.name,
                {"metadata": {"finalizers": list(record.finalizers) + [DNS_RECORD_FINALIZER],
                              "resourceVersion": record.resource_version}},
            )

        await self.provider.program(record)
        log_reconcile_event(logger, "dns_record_programmed", key=record.key,
                            dns_name=record.dns_name, targets=list(record.targets))
        log_function_exit(logger, "DNSRecordReconciler.reconcile", key=record.key, status="programmed")
