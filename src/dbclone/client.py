"""
Main client for clone provisioning.

Wires the configured metadata store, execution gateway, disk backend and SQL
Server collaborator together and exposes the operations used by the CLI.
"""

from typing import List, Optional

from .config import AppConfig
from .database import SqlServerAttacher
from .disk import DiskLifecycleManager, get_disk_backend
from .gateway import ExecutionGateway
from .identity import IdentityResolver
from .models import (
    CloneFilter,
    CloneRecord,
    CloneRequest,
    Credential,
    Host,
    Image,
    ProvisionResult,
)
from .provisioner import CloneProvisioner
from .store import MetadataStore, get_store
from .transport import SSHTransport

PLATFORMS = {"hyperv": "windows", "qemu": "posix"}


class DBCloneClient:
    """
    Main client for database clone operations.

    Args:
        config: Application configuration
        store: Metadata store; built from the configuration when omitted
        gateway: Execution gateway; built from the configuration when omitted

    Usage:
        async with DBCloneClient(config) as client:
            result = await client.new_clone(["SQL01"], databases=["Sales"], latest=True)
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        store: Optional[MetadataStore] = None,
        gateway: Optional[ExecutionGateway] = None,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store or get_store(self.config)
        self.gateway = gateway or ExecutionGateway(
            SSHTransport(
                port=self.config.ssh_port,
                timeout=self.config.default_timeout,
                host_key_policy=self.config.ssh_host_key_policy,
            ),
            platform=PLATFORMS[self.config.disk_backend],
            timeout=self.config.default_timeout,
        )
        self.disks = DiskLifecycleManager(get_disk_backend(self.config.disk_backend, self.gateway))
        self.attacher = SqlServerAttacher(self.gateway, self.config.sqlcmd_path)
        self.identity = IdentityResolver(self.store, self.gateway)
        self.provisioner = CloneProvisioner(
            self.store,
            self.gateway,
            self.disks,
            self.attacher,
            self.identity,
            clone_subdirectory=self.config.clone_subdirectory,
        )

    def default_credential(self) -> Optional[Credential]:
        if not (self.config.ssh_username or self.config.ssh_key_path):
            return None
        return Credential(username=self.config.ssh_username, key_path=self.config.ssh_key_path)

    async def new_clone(
        self,
        hosts: List[str],
        *,
        databases: Optional[List[str]] = None,
        parent_image: Optional[str] = None,
        latest: bool = False,
        destination: Optional[str] = None,
        clone_name: Optional[str] = None,
        sql_instance: Optional[str] = None,
        credential: Optional[Credential] = None,
        sql_credential: Optional[Credential] = None,
        disabled: bool = False,
        force: bool = False,
        cleanup_on_failure: bool = False,
    ) -> ProvisionResult:
        """
        Provision clones on one or more hosts.

        Args:
            hosts: Hosts receiving the clones
            databases: Source databases, used with ``latest``
            parent_image: Location of a registered parent image
            latest: Use the newest image of every database
            destination: Directory for disks and access paths
            clone_name: Name of the clone and attached database
            sql_instance: Instance to attach to, defaults to the host
            credential: Credential for the hosts
            sql_credential: SQL login, Windows authentication when omitted
            disabled: Register the clone as disabled
            force: Replace an existing disk of the same name
            cleanup_on_failure: Unmount and delete the disk when the attach fails

        Returns:
            ProvisionResult: Created clones and per-iteration failures
        """
        request = CloneRequest(
            hosts=hosts,
            databases=databases or [],
            parent_image=parent_image,
            latest=latest,
            destination=destination,
            clone_name=clone_name,
            sql_instance=sql_instance,
            credential=credential or self.default_credential(),
            sql_credential=sql_credential,
            disabled=disabled,
            force=force,
            cleanup_on_failure=cleanup_on_failure,
        )
        return await self.provisioner.provision(request)

    def list_clones(self, clone_filter: Optional[CloneFilter] = None) -> List[CloneRecord]:
        return self.store.list_clones(clone_filter)

    def list_images(self, database_name: Optional[str] = None) -> List[Image]:
        return self.store.list_images(database_name)

    def list_hosts(self) -> List[Host]:
        return self.store.list_hosts()

    async def close(self) -> None:
        await self.gateway.close()
        self.store.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
