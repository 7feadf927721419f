"""
Compensating cleanup for a failed provisioning iteration.

Provisioning has no distributed transaction: a disk created and mounted before
an attach or registry failure stays behind unless cleanup is requested. When it
is, the transaction undoes the recorded steps in reverse order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .disk import DiskLifecycleManager
from .exceptions import DBCloneError
from .logging import logger
from .models import Credential


class ResourceType(Enum):
    """Artifacts a provisioning iteration can leave on a host."""

    DISK_FILE = "disk_file"
    MOUNT = "mount"


@dataclass
class TransactionResource:
    resource_type: ResourceType
    resource_id: str  # disk path
    host: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())


class ProvisioningTransaction:
    """
    Tracks artifacts created for one clone and removes them on failure.

    Usage:
        async with ProvisioningTransaction(op_id, disks, host, cred, enabled) as txn:
            path = await disks.create_child_disk(...)
            txn.register_disk(path)
            await disks.mount_disk(...)
            txn.register_mount(path, access_path)
            ...
            txn.commit()

    With ``enabled`` false nothing is undone; artifacts are only logged so an
    external repair workflow can find them.
    """

    def __init__(
        self,
        operation_id: str,
        disks: DiskLifecycleManager,
        host: str,
        credential: Optional[Credential] = None,
        enabled: bool = False,
    ):
        self.operation_id = operation_id
        self.disks = disks
        self.host = host
        self.credential = credential
        self.enabled = enabled
        self.resources: List[TransactionResource] = []
        self.committed = False
        self.rolled_back = False

    async def __aenter__(self) -> ProvisioningTransaction:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            if not self.committed:
                self.commit()
            return

        if self.committed or not self.resources:
            return
        if self.enabled:
            await self.rollback()
        else:
            logger.warning(
                f"Leaving {len(self.resources)} artifact(s) of failed operation "
                f"{self.operation_id} in place",
                operation_id=self.operation_id,
                host=self.host,
                resources=[r.resource_id for r in self.resources],
            )

    def register_disk(self, disk_path: str) -> None:
        self._register(ResourceType.DISK_FILE, disk_path)

    def register_mount(self, disk_path: str, access_path: str) -> None:
        self._register(ResourceType.MOUNT, disk_path, {"access_path": access_path})

    def _register(
        self, resource_type: ResourceType, resource_id: str, metadata: Optional[Dict] = None
    ) -> None:
        self.resources.append(
            TransactionResource(resource_type, resource_id, self.host, metadata or {})
        )
        logger.debug(
            f"Registered resource: {resource_type.value} - {resource_id} on {self.host}",
            operation_id=self.operation_id,
        )

    def commit(self) -> None:
        self.committed = True
        logger.debug(f"Transaction {self.operation_id} committed", operation_id=self.operation_id)

    async def rollback(self) -> None:
        """Undo registered artifacts in reverse order; cleanup errors are logged."""
        if self.rolled_back:
            return

        logger.info(
            f"Rolling back operation {self.operation_id}",
            operation_id=self.operation_id,
            resource_count=len(self.resources),
        )
        for resource in reversed(self.resources):
            try:
                if resource.resource_type == ResourceType.MOUNT:
                    await self.disks.unmount_disk(
                        resource.host,
                        self.credential,
                        resource.resource_id,
                        resource.metadata["access_path"],
                    )
                else:
                    await self.disks.remove_disk(
                        resource.host, self.credential, resource.resource_id
                    )
            except DBCloneError as e:
                logger.warning(
                    f"Failed to clean up {resource.resource_id}: {e}",
                    operation_id=self.operation_id,
                    resource_id=resource.resource_id,
                )

        self.rolled_back = True
