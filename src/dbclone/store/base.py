"""
Metadata store contract.

Both backends allocate identifiers themselves and perform duplicate checks in
the same atomic step as the insert, so callers never see a "read max, then
write" window.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from ..exceptions import NoImageFoundError
from ..models import Clone, CloneFilter, CloneRecord, Host, Image


def normalize_timestamp(value: Optional[datetime] = None) -> datetime:
    """Image timestamps are stored naive, in UTC when the caller gave a zone."""
    if value is None:
        return datetime.now()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class MetadataStore(ABC):
    """Persistence for Host, Image and Clone records."""

    backend_name = "abstract"

    @abstractmethod
    def resolve_host_by_name(self, host_name: str) -> Optional[Host]:
        """Return the host with this name (case-insensitive), or None."""

    @abstractmethod
    def create_host(
        self, host_name: str, ip_address: Optional[str], fqdn: Optional[str]
    ) -> Host:
        """
        Register a host with the next free HostID.

        Raises:
            DuplicateHostError: If the name is already registered
        """

    @abstractmethod
    def get_host(self, host_id: int) -> Optional[Host]:
        pass

    @abstractmethod
    def list_hosts(self) -> List[Host]:
        pass

    @abstractmethod
    def register_image(
        self,
        image_name: str,
        image_location: str,
        database_name: str,
        created_on: Optional[datetime] = None,
        size_mb: Optional[int] = None,
    ) -> Image:
        """
        Register a parent image built by the image workflow.

        Raises:
            DuplicateImageError: If an image with this location exists
        """

    @abstractmethod
    def get_image(self, image_id: int) -> Optional[Image]:
        pass

    @abstractmethod
    def find_image_by_location(self, image_location: str) -> Optional[Image]:
        """Return the image stored at this location, or None."""

    @abstractmethod
    def list_images(self, database_name: Optional[str] = None) -> List[Image]:
        pass

    def latest_image_for_database(self, database_name: str) -> Optional[Image]:
        """Return the most recently created image of a database, or None."""
        images = self.list_images(database_name)
        if not images:
            return None
        return max(images, key=lambda image: (image.created_on, image.image_id))

    def require_image(self, reference: str) -> Image:
        image = self.find_image_by_location(reference)
        if image is None:
            raise NoImageFoundError(reference)
        return image

    @abstractmethod
    def create_clone(
        self,
        image_id: int,
        host_id: int,
        clone_location: str,
        access_path: str,
        sql_instance: str,
        database_name: str,
        is_enabled: bool = True,
    ) -> Clone:
        """
        Register a clone with the next free CloneID.

        Raises:
            DuplicateCloneError: If a clone with the same location, or the same
                database on the same instance, is already registered
        """

    @abstractmethod
    def list_clones(self, clone_filter: Optional[CloneFilter] = None) -> List[CloneRecord]:
        """Return clones with image and host fields denormalized, ordered by CloneID."""

    def get_clone_record(self, clone_id: int) -> Optional[CloneRecord]:
        for record in self.list_clones():
            if record.clone_id == clone_id:
                return record
        return None

    def close(self) -> None:
        """Release backend resources."""
