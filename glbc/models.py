"""Data models for the global load balancer controller."""

import copy
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

HOST_GENERATED_ANNOTATION = "kuadrant.dev/host.generated"
HOST_PROPAGATED_ANNOTATION = "kuadrant.dev/host.propagated"
CONDITIONS_ANNOTATION = "kuadrant.dev/conditions"
OWNED_BY_LABEL = "ingress.kcp.dev/owned-by-ingress"

DNS_RECORD_GROUP = "kuadrant.dev"
DNS_RECORD_VERSION = "v1"
DNS_RECORD_PLURAL = "dnsrecords"
DNS_RECORD_KIND = "DNSRecord"
DNS_RECORD_TTL = 60

DNS_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


class DeploymentMode(str, Enum):
    """Which ingress reconciler the process registers."""

    ROOT = "root"
    LEAF = "leaf"


class CertificateState(str, Enum):
    """Per-hostname certificate lifecycle."""

    NONE = "none"
    REQUESTED = "requested"
    ISSUED = "issued"
    FAILED = "failed"


class ClusterConfig(BaseModel):
    """Configuration for a Kubernetes cluster."""

    name: str = Field(..., description="Cluster name identifier")
    kubeconfig_path: Optional[str] = Field(None, description="Path to kubeconfig file")
    context: Optional[str] = Field(None, description="Kubernetes context name")


class ControllerConfig(BaseModel):
    """Configuration passed explicitly to every controller component."""

    domain: str = Field("hcpapps.net", description="Base domain for generated hostnames")
    mode: DeploymentMode = Field(DeploymentMode.ROOT, description="root (root/leaf split) or leaf (single cluster)")
    tls_enabled: bool = Field(False, description="Request certificates for generated hosts")
    tls_provider: Literal["le-staging", "le-production", "fake"] = Field("le-staging", description="Certificate provider")
    tls_email: Optional[str] = Field(None, description="ACME account email")
    certificate_namespace: str = Field("cert-manager", description="Namespace for issuers and certificates in the control cluster")
    dns_provider: Literal["fake", "log"] = Field("fake", description="DNS provider adapter")
    host_resolver: Literal["default", "configmap"] = Field("default", description="How load-balancer hostnames are resolved")
    region: str = Field("eu-central-1", description="Region for the DNS01 solver")
    namespace: Optional[str] = Field(None, description="Only watch this namespace (all when unset)")
    workers: int = Field(2, ge=1, description="Parallel workers per controller")
    max_retries: int = Field(15, ge=0, description="Requeues before a key is dropped")
    resync_period: int = Field(36000, ge=0, description="Full re-list interval in seconds")
    root_cluster: ClusterConfig = Field(default_factory=lambda: ClusterConfig(name="root"), description="Cluster holding root and leaf ingresses")
    control_cluster: Optional[ClusterConfig] = Field(None, description="Cluster running cert-manager (defaults to the root cluster)")

    @field_validator("domain")
    @classmethod
    def _validate_domain(cls, value: str) -> str:
        value = value.strip().strip(".").lower()
        labels = value.split(".") if value else []
        if len(labels) < 2 or not all(DNS_LABEL.match(label) for label in labels):
            raise ValueError(f"invalid base domain: {value!r}")
        return value


class LoadBalancerEndpoint(BaseModel):
    """An admitted load-balancer endpoint: an IP literal or a resolvable hostname."""

    model_config = ConfigDict(frozen=True)

    ip: Optional[str] = None
    hostname: Optional[str] = None


class IngressRule(BaseModel):
    """A host routing rule. HTTP paths are kept verbatim."""

    model_config = ConfigDict(frozen=True)

    host: Optional[str] = None
    http: Optional[Dict[str, Any]] = None

    def with_host(self, host: str) -> "IngressRule":
        return IngressRule(host=host, http=copy.deepcopy(self.http))

    def to_k8s(self) -> Dict[str, Any]:
        rule: Dict[str, Any] = {}
        if self.host:
            rule["host"] = self.host
        if self.http is not None:
            rule["http"] = copy.deepcopy(self.http)
        return rule


class IngressTLS(BaseModel):
    model_config = ConfigDict(frozen=True)

    hosts: Tuple[str, ...] = ()
    secret_name: Optional[str] = None

    def to_k8s(self) -> Dict[str, Any]:
        tls: Dict[str, Any] = {"hosts": list(self.hosts)}
        if self.secret_name:
            tls["secretName"] = self.secret_name
        return tls


# Metadata fields modelled explicitly on Ingress; the rest round-trips untouched.
_MANAGED_METADATA = frozenset({
    "name", "namespace", "uid", "resourceVersion", "labels", "annotations",
    "finalizers", "deletionTimestamp",
})


class Ingress(BaseModel):
    """Immutable view of a networking.k8s.io/v1 Ingress.

    Mutators return new instances; the caller writes the result back with a
    single conditional request.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: Tuple[str, ...] = ()
    deletion_timestamp: Optional[datetime] = None
    rules: Tuple[IngressRule, ...] = ()
    tls: Tuple[IngressTLS, ...] = ()
    spec_extra: Dict[str, Any] = Field(default_factory=dict)
    metadata_extra: Dict[str, Any] = Field(default_factory=dict)
    load_balancer: Tuple[LoadBalancerEndpoint, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def global_hostname(self) -> str:
        return self.annotations.get(HOST_GENERATED_ANNOTATION, "")

    @property
    def root_name(self) -> Optional[str]:
        """Name of the root ingress when this ingress is a leaf."""
        return self.labels.get(OWNED_BY_LABEL) or None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def with_finalizer(self, finalizer: str) -> "Ingress":
        if self.has_finalizer(finalizer):
            return self
        return self.model_copy(update={"finalizers": self.finalizers + (finalizer,)})

    def without_finalizer(self, finalizer: str) -> "Ingress":
        return self.model_copy(update={"finalizers": tuple(f for f in self.finalizers if f != finalizer)})

    def with_annotation(self, key: str, value: str) -> "Ingress":
        return self.model_copy(update={"annotations": {**self.annotations, key: value}})

    def with_rules(self, rules: Tuple[IngressRule, ...]) -> "Ingress":
        return self.model_copy(update={"rules": tuple(rules)})

    def with_tls(self, tls: Tuple[IngressTLS, ...]) -> "Ingress":
        return self.model_copy(update={"tls": tuple(tls)})

    @classmethod
    def from_k8s(cls, obj: Dict[str, Any]) -> "Ingress":
        """Build from the serialized (camelCase) form of an Ingress."""
        metadata = obj.get("metadata") or {}
        metadata_extra = {k: v for k, v in metadata.items() if k not in _MANAGED_METADATA}
        spec = dict(obj.get("spec") or {})
        status = obj.get("status") or {}

        rules = tuple(
            IngressRule(host=rule.get("host"), http=rule.get("http"))
            for rule in spec.pop("rules", None) or []
        )
        tls = tuple(
            IngressTLS(hosts=tuple(entry.get("hosts") or ()), secret_name=entry.get("secretName"))
            for entry in spec.pop("tls", None) or []
        )
        lb_ingress = (status.get("loadBalancer") or {}).get("ingress") or []
        endpoints = tuple(
            LoadBalancerEndpoint(ip=lb.get("ip"), hostname=lb.get("hostname"))
            for lb in lb_ingress
        )

        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace") or "default",
            uid=metadata.get("uid"),
            resource_version=metadata.get("resourceVersion"),
            labels=metadata.get("labels") or {},
            annotations=metadata.get("annotations") or {},
            finalizers=tuple(metadata.get("finalizers") or ()),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            rules=rules,
            tls=tls,
            spec_extra=spec,
            metadata_extra=metadata_extra,
            load_balancer=endpoints,
        )

    def to_k8s(self) -> Dict[str, Any]:
        """Serialize to a request body suitable for a full update."""
        metadata: Dict[str, Any] = copy.deepcopy(self.metadata_extra)
        metadata.update({
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "finalizers": list(self.finalizers),
        })
        if self.uid:
            metadata["uid"] = self.uid
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version

        spec = copy.deepcopy(self.spec_extra)
        spec["rules"] = [rule.to_k8s() for rule in self.rules]
        if self.tls:
            spec["tls"] = [entry.to_k8s() for entry in self.tls]

        return {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": metadata,
            "spec": spec,
        }


class OwnerReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_version: str = "networking.k8s.io/v1"
    kind: str = "Ingress"
    name: str
    uid: Optional[str] = None
    controller: bool = True
    block_owner_deletion: bool = True

    def to_k8s(self) -> Dict[str, Any]:
        ref: Dict[str, Any] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }
        if self.uid:
            ref["uid"] = self.uid
        return ref


class DNSRecord(BaseModel):
    """Desired DNS state for a global hostname (kuadrant.dev/v1 DNSRecord)."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Object name, equal to the logical ingress name")
    namespace: str = Field("default", description="Object namespace")
    dns_name: str = Field(..., description="Fully qualified DNS name")
    record_type: str = Field("A", description="DNS record type")
    record_ttl: int = Field(DNS_RECORD_TTL, description="TTL in seconds")
    targets: Tuple[str, ...] = Field(..., min_length=1, description="Sorted, deduplicated addresses")
    owner_references: Tuple[OwnerReference, ...] = ()
    finalizers: Tuple[str, ...] = ()
    deletion_timestamp: Optional[datetime] = None
    resource_version: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    @classmethod
    def from_k8s(cls, obj: Dict[str, Any]) -> "DNSRecord":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        owners = tuple(
            OwnerReference(
                api_version=ref.get("apiVersion", "networking.k8s.io/v1"),
                kind=ref.get("kind", "Ingress"),
                name=ref["name"],
                uid=ref.get("uid"),
                controller=bool(ref.get("controller", False)),
                block_owner_deletion=bool(ref.get("blockOwnerDeletion", False)),
            )
            for ref in metadata.get("ownerReferences") or []
        )
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace") or "default",
            dns_name=spec.get("dnsName", ""),
            record_type=spec.get("recordType", "A"),
            record_ttl=spec.get("recordTTL", DNS_RECORD_TTL),
            targets=tuple(spec.get("targets") or ()),
            owner_references=owners,
            finalizers=tuple(metadata.get("finalizers") or ()),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resource_version=metadata.get("resourceVersion"),
        )

    def to_k8s(self) -> Dict[str, Any]:
        """Serialize the desired state. Finalizers are owned by the DNS record controller and left out."""
        metadata: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.owner_references:
            metadata["ownerReferences"] = [ref.to_k8s() for ref in self.owner_references]
        return {
            "apiVersion": f"{DNS_RECORD_GROUP}/{DNS_RECORD_VERSION}",
            "kind": DNS_RECORD_KIND,
            "metadata": metadata,
            "spec": {
                "dnsName": self.dns_name,
                "recordType": self.record_type,
                "targets": list(self.targets),
                "recordTTL": self.record_ttl,
            },
        }


class Condition(BaseModel):
    """A standing condition recorded on an ingress."""

    type: str = Field(..., description="Condition type, e.g. Ready")
    status: Literal["True", "False", "Unknown"] = Field(..., description="Condition status")
    reason: str = Field("", description="Machine readable reason")
    message: str = Field("", description="Human readable message")
    last_transition_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="lastTransitionTime")

    model_config = ConfigDict(populate_by_name=True)

    def same_as(self, other: "Condition") -> bool:
        return (self.type, self.status, self.reason, self.message) == (
            other.type, other.status, other.reason, other.message
        )


class CertificateInfo(BaseModel):
    """Coordinator bookkeeping for one hostname."""

    hostname: str = Field(..., description="Certificate hostname")
    state: CertificateState = Field(CertificateState.NONE, description="Last observed state")
    attempts: int = Field(0, description="Failed issuance attempts so far")
    last_error: Optional[str] = Field(None, description="Last provider error")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Last state change")


class ControllerStatus(BaseModel):
    """Summary of a running controller."""

    name: str = Field(..., description="Controller name")
    workers: int = Field(0, description="Worker count")
    queue_depth: int = Field(0, description="Keys waiting to be processed")
    processed: int = Field(0, description="Keys reconciled successfully")
    failed: int = Field(0, description="Failed reconcile attempts")
    dropped: List[str] = Field(default_factory=list, description="Keys dropped after exhausting retries")
