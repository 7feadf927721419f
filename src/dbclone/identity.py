"""
Host identity reconciliation.

Maps the network identity of a machine to its Host record, registering the host
the first time it is seen.
"""

from typing import Optional

from .exceptions import DuplicateHostError
from .gateway import ExecutionGateway
from .logging import logger
from .models import Credential, Host, HostIdentity
from .store import MetadataStore


class IdentityResolver:
    """Resolves or creates Host records."""

    def __init__(self, store: MetadataStore, gateway: Optional[ExecutionGateway] = None):
        self.store = store
        self.gateway = gateway

    def resolve(self, identity: HostIdentity) -> Host:
        """
        Return the Host registered under this identity's name, creating it if needed.

        A concurrent registration of the same name makes ``create_host`` fail
        with DuplicateHostError; the winner's record is returned in that case.
        """
        host = self.store.resolve_host_by_name(identity.host_name)
        if host is not None:
            return host

        try:
            host = self.store.create_host(
                identity.host_name, identity.ip_address, identity.fqdn
            )
        except DuplicateHostError:
            host = self.store.resolve_host_by_name(identity.host_name)
            if host is None:
                raise
            logger.debug(
                f"Host {identity.host_name} was registered concurrently",
                host=identity.host_name,
            )
            return host

        logger.info(
            f"Added host {host.host_name} to the registry",
            host=host.host_name,
            host_id=host.host_id,
        )
        return host

    async def resolve_host(self, host: str, credential: Optional[Credential] = None) -> Host:
        """Query the host's identity through the gateway and resolve it."""
        if self.gateway is None:
            raise RuntimeError("IdentityResolver needs a gateway to query hosts")
        identity = await self.gateway.get_host_identity(host, credential)
        return self.resolve(identity)
