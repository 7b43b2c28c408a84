"""Ingress reconcilers: global hostname, DNS record synthesis and leaf propagation."""

import json
from typing import List, Optional, Tuple

from .dns import synthesize
from .errors import AlreadyExistsError, GLBCError
from .hostname import allocate
from .kube import ClusterClient, ignore_not_found
from .logging_config import get_logger, log_function_entry, log_function_exit, log_reconcile_event
from .models import (
    CONDITIONS_ANNOTATION,
    HOST_GENERATED_ANNOTATION,
    HOST_PROPAGATED_ANNOTATION,
    Condition,
    ControllerConfig,
    DeploymentMode,
    DNSRecord,
    Ingress,
    IngressRule,
    IngressTLS,
)
from .resolver import HostResolver
from .store import OWNER_INDEX, ResourceStore
from .tls import CertificateCoordinator

logger = get_logger(__name__)

CASCADE_CLEANUP_FINALIZER = "kcp.dev/cascade-cleanup"
LEAF_CLEANUP_FINALIZER = "kuadrant.dev/leaf-cleanup"
READY_CONDITION = "Ready"


def get_conditions(ingress: Ingress) -> List[Condition]:
    """Parse the conditions annotation; unreadable content counts as no conditions."""
    raw = ingress.annotations.get(CONDITIONS_ANNOTATION)
    if not raw:
        return []
    try:
        return [Condition.model_validate(item) for item in json.loads(raw)]
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed conditions annotation", ingress=ingress.key)
        return []


def keys_for_event(mode: DeploymentMode, ingress: Ingress) -> List[str]:
    """Work queue keys affected by a change to ``ingress``.

    In root mode a change to a leaf re-reconciles its root, since the root's
    DNS record aggregates every leaf.
    """
    if mode == DeploymentMode.ROOT and ingress.root_name:
        return [f"{ingress.namespace}/{ingress.root_name}"]
    return [ingress.key]


def propagated_rules(leaf: Ingress, hostname: str) -> Tuple[IngressRule, ...]:
    """The leaf's own rules followed by copies bound to ``hostname``.

    Rules already bound to the hostname, or to the previously propagated one,
    are treated as earlier copies and replaced, so the result is the same no
    matter how often it is applied.
    """
    synthesized_hosts = {hostname, leaf.annotations.get(HOST_PROPAGATED_ANNOTATION)}
    own_rules = tuple(rule for rule in leaf.rules if rule.host not in synthesized_hosts)
    return own_rules + tuple(rule.with_host(hostname) for rule in own_rules)


class IngressReconciler:
    """Shared hostname and DNS logic for the root and leaf reconcilers."""

    finalizer = LEAF_CLEANUP_FINALIZER
    propagates_to_leaves = False

    def __init__(self, cluster: ClusterClient, store: ResourceStore, config: ControllerConfig,
                 resolver: HostResolver, certificates: Optional[CertificateCoordinator] = None):
        self.cluster = cluster
        self.store = store
        self.config = config
        self.resolver = resolver
        self.certificates = certificates

    async def reconcile_key(self, key: str) -> None:
        ingress = self.store.get_by_key(key)
        if ingress is None:
            logger.debug("Ingress no longer exists", key=key)
            return
        await self.reconcile(ingress)

    async def reconcile(self, ingress: Ingress) -> None:
        log_function_entry(logger, f"{type(self).__name__}.reconcile", key=ingress.key,
                           deleting=ingress.is_deleting)

        if ingress.is_deleting:
            await self._finalize(ingress)
            log_function_exit(logger, f"{type(self).__name__}.reconcile", key=ingress.key, status="finalized")
            return

        try:
            current = await self._reconcile_active(ingress)
        except GLBCError as e:
            await self._set_ready(ingress, "False", e.reason, str(e))
            raise

        await self._set_ready(current, "True", "Reconciled", "")
        log_function_exit(logger, f"{type(self).__name__}.reconcile", key=ingress.key, status="success")

    def leaves(self, ingress: Ingress) -> List[Ingress]:
        return []

    async def _reconcile_active(self, ingress: Ingress) -> Ingress:
        ingress = await self._ensure_finalizer(ingress)
        ingress = await self._ensure_hostname(ingress)
        hostname = ingress.global_hostname

        leaves = self.leaves(ingress)
        endpoints = list(ingress.load_balancer)
        for leaf in leaves:
            endpoints.extend(leaf.load_balancer)

        record = await synthesize(hostname, ingress, endpoints, self.resolver)
        await self._reconcile_dns_record(ingress, record)

        tls_error: Optional[GLBCError] = None
        tls_secret: Optional[str] = None
        try:
            tls_secret = await self._ensure_certificate(hostname)
        except GLBCError as e:
            tls_error = e

        if self.propagates_to_leaves:
            for leaf in leaves:
                await self._propagate(leaf, hostname, tls_secret)

        if tls_error is not None:
            raise tls_error
        return ingress

    async def _ensure_finalizer(self, ingress: Ingress) -> Ingress:
        if ingress.has_finalizer(self.finalizer):
            return ingress
        updated = ingress.with_finalizer(self.finalizer)
        patched = await self.cluster.patch_ingress(ingress.namespace, ingress.name, {
            "metadata": {
                "finalizers": list(updated.finalizers),
                "resourceVersion": ingress.resource_version,
            },
        })
        logger.debug("Added finalizer", ingress=ingress.key, finalizer=self.finalizer)
        return patched

    async def _ensure_hostname(self, ingress: Ingress) -> Ingress:
        if ingress.global_hostname:
            return ingress
        hostname = allocate(ingress.global_hostname, self.config.domain)
        patched = await self.cluster.patch_ingress(ingress.namespace, ingress.name, {
            "metadata": {
                "annotations": {HOST_GENERATED_ANNOTATION: hostname},
                "resourceVersion": ingress.resource_version,
            },
        })
        log_reconcile_event(logger, "hostname_allocated", ingress=ingress.key, hostname=hostname)
        return patched

    async def _reconcile_dns_record(self, ingress: Ingress, record: Optional[DNSRecord]) -> None:
        if record is None:
            if await ignore_not_found(self.cluster.delete_dns_record(ingress.namespace, ingress.name)):
                log_reconcile_event(logger, "dns_record_deleted", ingress=ingress.key)
            return

        try:
            await self.cluster.create_dns_record(record)
            log_reconcile_event(logger, "dns_record_created", ingress=ingress.key,
                                dns_name=record.dns_name, targets=list(record.targets))
        except AlreadyExistsError:
            await self.cluster.apply_dns_record(record)
            logger.debug("DNS record applied", ingress=ingress.key,
                         dns_name=record.dns_name, targets=list(record.targets))

    async def _ensure_certificate(self, hostname: str) -> Optional[str]:
        """Returns the TLS secret name once the certificate is issued."""
        if not self.config.tls_enabled or self.certificates is None:
            return None
        if await self.certificates.ensure_certificate(hostname):
            return self.certificates.secret_name(hostname)
        logger.debug("Certificate not ready yet", hostname=hostname)
        return None

    async def _propagate(self, leaf: Ingress, hostname: str, tls_secret: Optional[str]) -> None:
        rules = propagated_rules(leaf, hostname)
        tls = leaf.tls
        if tls_secret and not any(hostname in entry.hosts for entry in tls):
            tls = tls + (IngressTLS(hosts=(hostname,), secret_name=tls_secret),)

        if (rules == leaf.rules and tls == leaf.tls
                and leaf.annotations.get(HOST_PROPAGATED_ANNOTATION) == hostname):
            return

        updated = (leaf.with_rules(rules)
                   .with_tls(tls)
                   .with_annotation(HOST_PROPAGATED_ANNOTATION, hostname))
        await self.cluster.update_ingress(updated)
        log_reconcile_event(logger, "leaf_rules_propagated", leaf=leaf.key, hostname=hostname,
                            rules=len(rules), tls=bool(tls_secret))

    async def _finalize(self, ingress: Ingress) -> None:
        await ignore_not_found(self.cluster.delete_dns_record(ingress.namespace, ingress.name))
        if not ingress.has_finalizer(self.finalizer):
            return

        logger.info("DNS record cleaned up, removing finalizer", ingress=ingress.key,
                    finalizer=self.finalizer)
        updated = ingress.without_finalizer(self.finalizer)
        await ignore_not_found(self.cluster.patch_ingress(ingress.namespace, ingress.name, {
            "metadata": {
                "finalizers": list(updated.finalizers),
                "resourceVersion": ingress.resource_version,
            },
        }))
        log_reconcile_event(logger, "ingress_finalized", ingress=ingress.key)

    async def _set_ready(self, ingress: Ingress, status: str, reason: str, message: str) -> None:
        """Record the Ready condition; only patches when it changed."""
        condition = Condition(type=READY_CONDITION, status=status, reason=reason, message=message)
        conditions = get_conditions(ingress)
        existing = next((c for c in conditions if c.type == READY_CONDITION), None)
        if existing is not None and existing.same_as(condition):
            return

        merged = [c for c in conditions if c.type != READY_CONDITION] + [condition]
        value = json.dumps([c.model_dump(mode="json", by_alias=True) for c in merged])
        try:
            await ignore_not_found(self.cluster.patch_ingress(ingress.namespace, ingress.name, {
                "metadata": {"annotations": {CONDITIONS_ANNOTATION: value}},
            }))
        except GLBCError as e:
            logger.warning("Failed to record condition", ingress=ingress.key,
                           condition=READY_CONDITION, status=status, error=str(e))


class RootIngressReconciler(IngressReconciler):
    """Reconciles logical ingresses whose copies are scheduled onto workload clusters."""

    finalizer = CASCADE_CLEANUP_FINALIZER
    propagates_to_leaves = True

    def leaves(self, ingress: Ingress) -> List[Ingress]:
        return self.store.by_index(OWNER_INDEX, ingress.key)


class LeafIngressReconciler(IngressReconciler):
    """Single-cluster mode: hostname and DNS record from the ingress's own admission."""
