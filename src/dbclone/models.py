"""
Data models for clone provisioning.

This module defines the registry records and the request/result structures
passed between the provisioning components.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class CloneState(Enum):
    """Provisioning states of a single host/database iteration."""

    RESOLVING_IMAGE = "resolving_image"
    VALIDATING_TARGET = "validating_target"
    CREATING_DISK = "creating_disk"
    MOUNTING = "mounting"
    ATTACHING_DATABASE = "attaching_database"
    RESOLVING_HOST = "resolving_host"
    COMMITTING_REGISTRY = "committing_registry"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Host:
    """A machine owning one or more clones."""

    host_id: int
    host_name: str
    ip_address: Optional[str] = None
    fqdn: Optional[str] = None


@dataclass
class Image:
    """Read-only parent disk holding one database at one point in time."""

    image_id: int
    image_name: str
    image_location: str
    database_name: str
    created_on: datetime
    size_mb: Optional[int] = None


@dataclass
class Clone:
    """Differencing-disk backed database attached to a server instance."""

    clone_id: int
    image_id: int
    host_id: int
    clone_location: str
    access_path: str
    sql_instance: str
    database_name: str
    is_enabled: bool = True


@dataclass
class CloneRecord:
    """Clone as returned to callers, with image and host fields denormalized."""

    clone_id: int
    clone_location: str
    access_path: str
    sql_instance: str
    database_name: str
    is_enabled: bool
    image_id: int
    image_name: str
    image_location: str
    host_name: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CloneFilter:
    """Optional criteria for listing clones. Unset fields match everything."""

    host_name: Optional[str] = None
    database_name: Optional[str] = None
    image_id: Optional[int] = None
    sql_instance: Optional[str] = None
    is_enabled: Optional[bool] = None

    def matches(self, record: CloneRecord) -> bool:
        if self.host_name is not None and record.host_name.lower() != self.host_name.lower():
            return False
        if (
            self.database_name is not None
            and record.database_name.lower() != self.database_name.lower()
        ):
            return False
        if self.image_id is not None and record.image_id != self.image_id:
            return False
        if (
            self.sql_instance is not None
            and record.sql_instance.lower() != self.sql_instance.lower()
        ):
            return False
        if self.is_enabled is not None and record.is_enabled != self.is_enabled:
            return False
        return True


@dataclass
class HostIdentity:
    """Network identity of a host as seen by the execution gateway."""

    host_name: str
    ip_address: Optional[str] = None
    fqdn: Optional[str] = None


@dataclass
class Credential:
    """Credential used for remote execution or SQL authentication."""

    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    key_path: Optional[str] = None


@dataclass
class CommandResult:
    """Result of a command run through the execution gateway."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def lines(self) -> List[str]:
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]


@dataclass
class CloneRequest:
    """Parameters of one provisioning invocation."""

    hosts: List[str]
    databases: List[str] = field(default_factory=list)
    parent_image: Optional[str] = None
    latest: bool = False
    destination: Optional[str] = None
    clone_name: Optional[str] = None
    sql_instance: Optional[str] = None
    credential: Optional[Credential] = None
    sql_credential: Optional[Credential] = None
    disabled: bool = False
    force: bool = False
    cleanup_on_failure: bool = False


@dataclass
class CloneFailure:
    """One failed host/database iteration."""

    host: str
    database: Optional[str]
    state: CloneState
    error: str
    error_code: int = 1000


@dataclass
class ProvisionResult:
    """Outcome of a provisioning invocation: successes plus failures."""

    operation_id: str
    clones: List[CloneRecord] = field(default_factory=list)
    failures: List[CloneFailure] = field(default_factory=list)
    started: datetime = field(default_factory=datetime.now)
    completed: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def duration(self) -> float:
        if self.completed is None:
            return 0.0
        return (self.completed - self.started).total_seconds()
