"""TLS certificate providers and the per-hostname certificate coordinator."""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .errors import ConfigError, NotFoundError, PermanentError, TransientError
from .kube import ClusterClient, ignore_not_found
from .logging_config import get_logger, log_reconcile_event
from .models import CertificateInfo, CertificateState, ControllerConfig

logger = get_logger(__name__)

CERT_MANAGER_GROUP = "cert-manager.io"
CERT_MANAGER_VERSION = "v1"

LE_STAGING_SERVER = "https://acme-staging-v02.api.letsencrypt.org/directory"
LE_PRODUCTION_SERVER = "https://acme-v02.api.letsencrypt.org/directory"

ISSUERS = {
    "le-staging": ("glbc-le-staging", LE_STAGING_SERVER),
    "le-production": ("glbc-le-production", LE_PRODUCTION_SERVER),
}


class TLSProvider(ABC):
    """Issues certificates for global hostnames."""

    @abstractmethod
    async def initialize(self) -> None:
        """One-time setup at process start. Failure is fatal to the process."""

    @abstractmethod
    async def request_certificate(self, hostname: str) -> None:
        """Ask for a certificate for ``hostname``, replacing any failed attempt."""

    @abstractmethod
    async def certificate_status(self, hostname: str) -> CertificateState:
        """Current state of the certificate for ``hostname``."""

    def secret_name(self, hostname: str) -> str:
        """Name of the secret the certificate is stored in."""
        return hostname


class FakeTLSProvider(TLSProvider):
    """In-memory provider. Certificates are issued as soon as they are requested."""

    def __init__(self, issue_immediately: bool = True):
        self.issue_immediately = issue_immediately
        self.initialized = False
        self.certificates: Dict[str, CertificateState] = {}
        self.requests: List[str] = []

    async def initialize(self) -> None:
        self.initialized = True

    async def request_certificate(self, hostname: str) -> None:
        self.requests.append(hostname)
        self.certificates[hostname] = (
            CertificateState.ISSUED if self.issue_immediately else CertificateState.REQUESTED
        )

    async def certificate_status(self, hostname: str) -> CertificateState:
        return self.certificates.get(hostname, CertificateState.NONE)


class CertManagerTLSProvider(TLSProvider):
    """Issues Let's Encrypt certificates through cert-manager in the control cluster.

    An ACME Issuer using a Route53 DNS01 solver is applied at startup;
    each hostname gets a Certificate whose secret is named after the host.
    """

    def __init__(self, cluster: ClusterClient, issuer_name: str, acme_server: str,
                 namespace: str, region: str, valid_domains: List[str],
                 email: Optional[str] = None):
        self.cluster = cluster
        self.issuer_name = issuer_name
        self.acme_server = acme_server
        self.namespace = namespace
        self.region = region
        self.valid_domains = valid_domains
        self.email = email

    def _issuer(self) -> Dict[str, Any]:
        acme: Dict[str, Any] = {
            "server": self.acme_server,
            "privateKeySecretRef": {"name": f"{self.issuer_name}-account-key"},
            "solvers": [{
                "selector": {"dnsZones": list(self.valid_domains)},
                "dns01": {"route53": {"region": self.region}},
            }],
        }
        if self.email:
            acme["email"] = self.email
        return {
            "apiVersion": f"{CERT_MANAGER_GROUP}/{CERT_MANAGER_VERSION}",
            "kind": "Issuer",
            "metadata": {"name": self.issuer_name, "namespace": self.namespace},
            "spec": {"acme": acme},
        }

    def _certificate(self, hostname: str) -> Dict[str, Any]:
        return {
            "apiVersion": f"{CERT_MANAGER_GROUP}/{CERT_MANAGER_VERSION}",
            "kind": "Certificate",
            "metadata": {
                "name": hostname,
                "namespace": self.namespace,
                "labels": {"kuadrant.dev/glbc": "true"},
            },
            "spec": {
                "secretName": self.secret_name(hostname),
                "dnsNames": [hostname],
                "issuerRef": {"name": self.issuer_name, "kind": "Issuer", "group": CERT_MANAGER_GROUP},
            },
        }

    def _validate(self, hostname: str) -> None:
        if not any(hostname == d or hostname.endswith("." + d) for d in self.valid_domains):
            raise ConfigError(f"{hostname} is not under any managed domain {self.valid_domains}")

    async def initialize(self) -> None:
        await self.cluster.apply_custom_object(CERT_MANAGER_GROUP, CERT_MANAGER_VERSION,
                                               self.namespace, "issuers", self._issuer())
        logger.info("Certificate issuer ready", issuer=self.issuer_name,
                    server=self.acme_server, namespace=self.namespace)

    async def request_certificate(self, hostname: str) -> None:
        self._validate(hostname)
        await ignore_not_found(self.cluster.delete_custom_object(
            CERT_MANAGER_GROUP, CERT_MANAGER_VERSION, self.namespace, "certificates", hostname))
        await self.cluster.create_custom_object(CERT_MANAGER_GROUP, CERT_MANAGER_VERSION,
                                                self.namespace, "certificates",
                                                self._certificate(hostname))

    async def certificate_status(self, hostname: str) -> CertificateState:
        try:
            certificate = await self.cluster.get_custom_object(
                CERT_MANAGER_GROUP, CERT_MANAGER_VERSION, self.namespace, "certificates", hostname)
        except NotFoundError:
            return CertificateState.NONE

        conditions = {c.get("type"): c for c in (certificate.get("status") or {}).get("conditions") or []}
        ready = conditions.get("Ready") or {}
        issuing = conditions.get("Issuing") or {}
        if ready.get("status") == "True":
            return CertificateState.ISSUED
        if issuing.get("status") == "False" and issuing.get("reason") == "Failed":
            return CertificateState.FAILED
        return CertificateState.REQUESTED


def create_tls_provider(config: ControllerConfig, cluster: Optional[ClusterClient]) -> TLSProvider:
    """Factory for the configured certificate provider.

    When TLS is disabled a FakeTLSProvider is used so the coordinator can still
    be initialized at startup.
    """
    if not config.tls_enabled or config.tls_provider == "fake":
        return FakeTLSProvider()
    if cluster is None:
        raise ConfigError("a control cluster is required for the cert-manager provider")
    issuer_name, server = ISSUERS[config.tls_provider]
    return CertManagerTLSProvider(
        cluster=cluster,
        issuer_name=issuer_name,
        acme_server=server,
        namespace=config.certificate_namespace,
        region=config.region,
        valid_domains=[config.domain],
        email=config.tls_email,
    )


class CertificateCoordinator:
    """Drives a TLSProvider through none -> requested -> issued | failed per hostname.

    Failed issuance is retried with capped exponential backoff. Once
    ``max_attempts`` failures have been seen, ``ensure_certificate`` raises
    PermanentError until the provider reports the certificate as issued.
    """

    def __init__(self, provider: TLSProvider, max_attempts: int = 5,
                 base_delay: float = 30.0, max_delay: float = 600.0,
                 clock: Callable[[], float] = time.monotonic):
        self.provider = provider
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._ready = False
        self._certificates: Dict[str, CertificateInfo] = {}
        self._retry_at: Dict[str, float] = {}

    @property
    def ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        """Initialize the provider. Must complete before certificates are requested."""
        await self.provider.initialize()
        self._ready = True
        logger.info("Certificate provider initialized", provider=type(self.provider).__name__)

    def certificates(self) -> List[CertificateInfo]:
        return sorted(self._certificates.values(), key=lambda c: c.hostname)

    def secret_name(self, hostname: str) -> str:
        return self.provider.secret_name(hostname)

    @staticmethod
    def _failure_message(hostname: str, attempts: int) -> str:
        return f"certificate issuance for {hostname} failed after {attempts} attempts"

    def _record(self, hostname: str, state: CertificateState, attempts: int,
                error: Optional[str] = None) -> None:
        current = self._certificates.get(hostname)
        if current and current.state == state and current.attempts == attempts:
            return
        self._certificates[hostname] = CertificateInfo(
            hostname=hostname, state=state, attempts=attempts, last_error=error,
        )
        log_reconcile_event(logger, "certificate_state", hostname=hostname,
                            state=state.value, attempts=attempts)

    async def ensure_certificate(self, hostname: str) -> bool:
        """Make sure a certificate for ``hostname`` exists or is on its way.

        Returns:
            True when the certificate is issued, False while it is pending.

        Raises:
            TransientError: If the provider has not been initialized yet.
            PermanentError: If issuance failed ``max_attempts`` times.
        """
        if not self._ready:
            raise TransientError("certificate provider is not initialized")

        info = self._certificates.get(hostname)
        attempts = info.attempts if info else 0
        state = await self.provider.certificate_status(hostname)

        if state == CertificateState.ISSUED:
            self._retry_at.pop(hostname, None)
            self._record(hostname, CertificateState.ISSUED, attempts)
            return True

        if state == CertificateState.NONE:
            await self.provider.request_certificate(hostname)
            self._record(hostname, CertificateState.REQUESTED, attempts)
            return False

        if state == CertificateState.REQUESTED:
            self._record(hostname, CertificateState.REQUESTED, attempts)
            return False

        if attempts >= self.max_attempts:
            # exhausted: report the same terminal error until the provider recovers
            raise PermanentError(self._failure_message(hostname, attempts))

        now = self._clock()
        retry_at = self._retry_at.get(hostname)
        if retry_at is None:
            attempts += 1
            error = self._failure_message(hostname, attempts)
            self._record(hostname, CertificateState.FAILED, attempts, error)
            if attempts >= self.max_attempts:
                raise PermanentError(error)
            delay = min(self.base_delay * (2 ** (attempts - 1)), self.max_delay)
            self._retry_at[hostname] = now + delay
            logger.warning("Certificate issuance failed, will retry", hostname=hostname,
                           attempts=attempts, retry_in=delay)
            return False

        if now < retry_at:
            return False

        del self._retry_at[hostname]
        await self.provider.request_certificate(hostname)
        self._record(hostname, CertificateState.REQUESTED, attempts)
        return False
