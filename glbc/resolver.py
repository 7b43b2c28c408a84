"""Resolution of load-balancer hostnames to addresses."""

import asyncio
import ipaddress
import socket
from abc import ABC, abstractmethod
from typing import List

from .errors import NotFoundError, ResolutionError
from .logging_config import get_logger

logger = get_logger(__name__)


class HostResolver(ABC):
    """Resolves a hostname to one or more IP literals."""

    @abstractmethod
    async def resolve(self, hostname: str) -> List[str]:
        """Return the addresses for ``hostname``.

        Raises:
            ResolutionError: If the name cannot be resolved.
        """


class DefaultHostResolver(HostResolver):
    """Uses the system resolver. Only IPv4 addresses are returned since records are of type A."""

    async def resolve(self, hostname: str) -> List[str]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(hostname, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as e:
            raise ResolutionError(f"failed to resolve {hostname}: {e}") from e

        addresses: List[str] = []
        for _family, _type, _proto, _canonname, sockaddr in infos:
            address = sockaddr[0]
            if address not in addresses:
                addresses.append(address)
        if not addresses:
            raise ResolutionError(f"no addresses for {hostname}")
        logger.debug("Resolved host", hostname=hostname, addresses=addresses)
        return addresses


class ConfigMapHostResolver(HostResolver):
    """Resolves names from a ConfigMap mapping hostname to addresses.

    Intended for test environments where load-balancer hostnames are not in
    public DNS. Values may hold several addresses separated by commas or spaces.
    """

    def __init__(self, cluster, name: str = "hosts", namespace: str = "default"):
        self.cluster = cluster
        self.name = name
        self.namespace = namespace

    async def resolve(self, hostname: str) -> List[str]:
        try:
            data = await self.cluster.get_config_map_data(self.namespace, self.name)
        except NotFoundError as e:
            raise ResolutionError(f"host map {self.namespace}/{self.name} not found") from e

        value = data.get(hostname, "")
        addresses = [a for a in value.replace(",", " ").split() if a]
        if not addresses:
            raise ResolutionError(f"{hostname} not present in host map {self.namespace}/{self.name}")
        for address in addresses:
            try:
                ipaddress.ip_address(address)
            except ValueError as e:
                raise ResolutionError(f"invalid address {address!r} for {hostname}") from e
        return addresses
