"""
Clone provisioning.

For every requested host and database the provisioner resolves the parent
image, creates and mounts a differencing disk, attaches the database on the
disk to the SQL Server instance and registers the clone. Iterations are
independent: a failure is recorded and the next host/database pair proceeds.
"""

import random
import re
import string
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .database import SqlServerAttacher
from .disk import DiskLifecycleManager
from .exceptions import (
    CloneAlreadyExistsError,
    ConnectionError,
    DatabaseAlreadyExistsError,
    DBCloneError,
    InvalidRequestError,
    NoImageFoundError,
    UnavailableError,
)
from .gateway import ExecutionGateway
from .identity import IdentityResolver
from .logging import logger
from .models import (
    CloneFailure,
    CloneRecord,
    CloneRequest,
    CloneState,
    Image,
    ProvisionResult,
)
from .security import SecurityValidator
from .store import MetadataStore
from .transaction import ProvisioningTransaction


def random_suffix(length: int = 5, rng: Optional[random.Random] = None) -> str:
    """Random lowercase/digit string used to keep access paths apart."""
    rng = rng or random.Random()
    alphabet = string.ascii_lowercase + string.digits
    return "".join(rng.choice(alphabet) for _ in range(length))


def generate_access_path(
    pathmod, destination: str, clone_name: str, suffix: Optional[str] = None
) -> str:
    """``<destination>/<clone name>_<suffix>``; a fresh suffix when none is given."""
    return pathmod.join(destination, f"{clone_name}_{suffix or random_suffix()}")


class CloneProvisioner:
    """Drives the provisioning of clones across hosts and databases."""

    def __init__(
        self,
        store: MetadataStore,
        gateway: ExecutionGateway,
        disks: DiskLifecycleManager,
        attacher: SqlServerAttacher,
        identity: Optional[IdentityResolver] = None,
        clone_subdirectory: str = "clone",
    ):
        self.store = store
        self.gateway = gateway
        self.disks = disks
        self.attacher = attacher
        self.identity = identity or IdentityResolver(store, gateway)
        self.clone_subdirectory = clone_subdirectory

    async def provision(self, request: CloneRequest) -> ProvisionResult:
        """
        Provision clones for every host/database pair of the request.

        Args:
            request: Hosts, databases and naming options

        Returns:
            ProvisionResult: Created clones plus one failure per failed pair

        Raises:
            InvalidRequestError: If the request is malformed; nothing is done
        """
        result = ProvisionResult(operation_id=str(uuid.uuid4()))
        destinations = await self.validate_request(request)
        databases: List[Optional[str]] = list(request.databases) if request.latest else [None]

        logger.info(
            f"Starting provisioning operation {result.operation_id}",
            operation_id=result.operation_id,
            hosts=request.hosts,
            databases=request.databases,
        )

        for host in request.hosts:
            if not await self.gateway.test_connectivity(host, request.credential):
                error = ConnectionError("host is not reachable", host)
                logger.error(str(error), operation_id=result.operation_id, host=host)
                for database in databases:
                    result.failures.append(
                        CloneFailure(
                            host, database, CloneState.RESOLVING_IMAGE, str(error), error.error_code
                        )
                    )
                continue

            for database in databases:
                record, failure = await self._provision_one(
                    result.operation_id, request, host, database, destinations.get(host)
                )
                if record is not None:
                    result.clones.append(record)
                if failure is not None:
                    result.failures.append(failure)

        result.completed = datetime.now()
        logger.info(
            f"Provisioning operation {result.operation_id} finished",
            operation_id=result.operation_id,
            created_count=len(result.clones),
            failed_count=len(result.failures),
            duration=result.duration,
        )
        return result

    async def validate_request(self, request: CloneRequest) -> Dict[str, str]:
        """
        Check a request before anything is changed.

        Returns:
            Dict mapping each host to its local destination directory, for
            requests with an explicit destination

        Raises:
            InvalidRequestError: On any malformed parameter
        """
        if not request.hosts:
            raise InvalidRequestError("At least one host is required")
        for host in request.hosts:
            SecurityValidator.validate_hostname(host)

        if bool(request.parent_image) == bool(request.latest):
            raise InvalidRequestError(
                "Either a parent image or latest-image mode must be given, not both"
            )
        if request.latest:
            if not request.databases:
                raise InvalidRequestError("Latest-image mode needs at least one database")
            for database in request.databases:
                SecurityValidator.validate_database_name(database)
        elif request.databases:
            raise InvalidRequestError("Databases are only used with latest-image mode")
        else:
            SecurityValidator.validate_path(request.parent_image)

        if request.clone_name is not None:
            SecurityValidator.validate_database_name(request.clone_name)
            if len(request.databases) > 1:
                raise InvalidRequestError("A clone name can only be used for a single database")

        if request.sql_instance is not None:
            SecurityValidator.validate_sql_instance(request.sql_instance)
            if len(request.hosts) > 1:
                raise InvalidRequestError("A SQL instance can only be given for a single host")

        destinations: Dict[str, str] = {}
        if request.destination:
            SecurityValidator.validate_path(request.destination)
            for host in request.hosts:
                try:
                    local = await self.gateway.resolve_local_path(
                        host, request.credential, request.destination
                    )
                except UnavailableError as e:
                    raise InvalidRequestError(
                        f"Destination {request.destination} could not be resolved on {host}: {e}"
                    )
                destinations[host] = self.disks.normalize_directory(local)
        return destinations

    def resolve_image(self, request: CloneRequest, database: Optional[str]) -> Image:
        if request.parent_image:
            return self.store.require_image(request.parent_image)
        image = self.store.latest_image_for_database(database)
        if image is None:
            raise NoImageFoundError(database)
        return image

    def derive_clone_name(self, request: CloneRequest, image: Image) -> str:
        if request.clone_name:
            return request.clone_name
        file_name = re.split(r"[\\/]", image.image_location)[-1]
        return SecurityValidator.validate_database_name(file_name.rsplit(".", 1)[0])

    async def _provision_one(
        self,
        operation_id: str,
        request: CloneRequest,
        host: str,
        database: Optional[str],
        destination: Optional[str],
    ) -> Tuple[Optional[CloneRecord], Optional[CloneFailure]]:
        state = CloneState.RESOLVING_IMAGE
        credential = request.credential
        sql_instance = request.sql_instance or host

        try:
            image = self.resolve_image(request, database)

            state = CloneState.VALIDATING_TARGET
            clone_name = self.derive_clone_name(request, image)
            if destination is None:
                data_dir = await self.attacher.get_default_data_directory(
                    host, credential, sql_instance, request.sql_credential
                )
                destination = self.disks.pathmod.join(data_dir, self.clone_subdirectory)

            if not request.force and await self.disks.disk_exists(
                host, credential, destination, clone_name
            ):
                raise CloneAlreadyExistsError(self.disks.disk_path(destination, clone_name), host)
            if await self.attacher.database_exists(
                host, credential, sql_instance, clone_name, request.sql_credential
            ):
                raise DatabaseAlreadyExistsError(clone_name, sql_instance)

            async with ProvisioningTransaction(
                operation_id, self.disks, host, credential, request.cleanup_on_failure
            ) as txn:
                state = CloneState.CREATING_DISK
                disk_path = await self.disks.create_child_disk(
                    host, credential, image.image_location, destination, clone_name, request.force
                )
                txn.register_disk(disk_path)

                state = CloneState.MOUNTING
                access_path = generate_access_path(self.disks.pathmod, destination, clone_name)
                access_path = await self.disks.mount_disk(host, credential, disk_path, access_path)
                txn.register_mount(disk_path, access_path)

                state = CloneState.ATTACHING_DATABASE
                files = await self.disks.find_database_files(host, credential, access_path)
                await self.attacher.attach_database(
                    host, credential, sql_instance, request.sql_credential, clone_name, files
                )
                # The database now lives on the disk; later failures leave it in place
                txn.commit()

            state = CloneState.RESOLVING_HOST
            owner = await self.identity.resolve_host(host, credential)

            state = CloneState.COMMITTING_REGISTRY
            clone = self.store.create_clone(
                image_id=image.image_id,
                host_id=owner.host_id,
                clone_location=disk_path,
                access_path=access_path,
                sql_instance=sql_instance,
                database_name=clone_name,
                is_enabled=not request.disabled,
            )

        except DBCloneError as e:
            logger.error(
                f"Provisioning failed for {database or request.parent_image} on {host}: {e}",
                operation_id=operation_id,
                host=host,
                database=database,
                state=CloneState.FAILED.value,
                failed_state=state.value,
                error_code=e.error_code,
            )
            return None, CloneFailure(host, database, state, str(e), e.error_code)

        record = CloneRecord(
            clone_id=clone.clone_id,
            clone_location=clone.clone_location,
            access_path=clone.access_path,
            sql_instance=clone.sql_instance,
            database_name=clone.database_name,
            is_enabled=clone.is_enabled,
            image_id=image.image_id,
            image_name=image.image_name,
            image_location=image.image_location,
            host_name=owner.host_name,
        )
        logger.info(
            f"Clone {record.database_name} created on {host}",
            operation_id=operation_id,
            clone_id=record.clone_id,
            host=host,
            state=CloneState.DONE.value,
        )
        return record, None
