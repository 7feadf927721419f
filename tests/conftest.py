"""Test configuration and fixtures for dbclone."""

import ntpath
import sys
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple
from unittest.mock import AsyncMock, Mock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dbclone.disk import DiskImageBackend, DiskLifecycleManager  # noqa: E402
from dbclone.exceptions import AttachError  # noqa: E402
from dbclone.models import HostIdentity  # noqa: E402
from dbclone.store import DocumentMetadataStore, SqlMetadataStore  # noqa: E402


class FakeDiskBackend(DiskImageBackend):
    """In-memory Hyper-V style backend recording every call."""

    pathmod = ntpath
    disk_extension = ".vhdx"

    def __init__(self, files: Optional[List[str]] = None, database_files=("DB.mdf", "DB_log.ldf")):
        super().__init__(gateway=None)
        self.files: Set[str] = set(files or [])
        self.directories: Set[str] = set()
        self.mounts: Dict[str, str] = {}
        self.database_files = list(database_files)
        self.failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, str]] = []

    def _record(self, operation: str, path: str) -> None:
        self.calls.append((operation, path))
        if operation in self.failures:
            raise self.failures[operation]

    async def path_exists(self, host, credential, path):
        return path in self.files or path in self.directories

    async def create_directory(self, host, credential, path):
        self._record("create_directory", path)
        self.directories.add(path)

    async def create_child_image(self, host, credential, parent_path, dest_path):
        self._record("create_child_image", dest_path)
        self.files.add(dest_path)

    async def mount(self, host, credential, image_path, access_path):
        self._record("mount", image_path)
        self.mounts[image_path] = access_path
        return "3"

    async def unmount(self, host, credential, image_path, access_path):
        self._record("unmount", image_path)
        self.mounts.pop(image_path, None)

    async def remove_file(self, host, credential, path):
        self._record("remove_file", path)
        self.files.discard(path)

    async def find_files(self, host, credential, directory, extensions):
        return [ntpath.join(directory, name) for name in self.database_files]


class FakeSqlServer:
    """Stands in for SqlServerAttacher with a set of attached databases."""

    def __init__(self, data_directory: str = "C:\\Data", databases=()):
        self.data_directory = data_directory
        self.databases: Set[Tuple[str, str]] = {
            (instance.lower(), name.lower()) for instance, name in databases
        }
        self.attached: List[Tuple[str, str, List[str]]] = []
        self.attach_error: Optional[str] = None

    async def get_default_data_directory(self, host, credential, sql_instance, sql_credential=None):
        return self.data_directory

    async def database_exists(
        self, host, credential, sql_instance, database_name, sql_credential=None
    ):
        return (sql_instance.lower(), database_name.lower()) in self.databases

    async def attach_database(
        self, host, credential, sql_instance, sql_credential, database_name, file_list
    ):
        if self.attach_error:
            raise AttachError(database_name, sql_instance, self.attach_error)
        self.databases.add((sql_instance.lower(), database_name.lower()))
        self.attached.append((sql_instance, database_name, list(file_list)))


@pytest.fixture(params=["sql", "file"])
def store(request, tmp_path):
    """Both metadata store backends, each in a fresh temporary location."""
    if request.param == "sql":
        backend = SqlMetadataStore(f"sqlite:///{tmp_path / 'registry.db'}")
    else:
        backend = DocumentMetadataStore(str(tmp_path / "registry"))
    yield backend
    backend.close()


@pytest.fixture
def disk_backend():
    return FakeDiskBackend(files=["D:\\images\\DB1_2024.vhdx"])


@pytest.fixture
def disks(disk_backend):
    return DiskLifecycleManager(disk_backend)


@pytest.fixture
def sql_server():
    return FakeSqlServer()


@pytest.fixture
def gateway():
    """Gateway double: every host reachable, identity is the upper-cased name."""
    gw = Mock()
    gw.platform = "windows"
    gw.test_connectivity = AsyncMock(return_value=True)
    gw.get_host_identity = AsyncMock(
        side_effect=lambda host, credential=None: HostIdentity(
            host_name=host.upper(), ip_address="10.0.0.5", fqdn=f"{host.lower()}.corp.local"
        )
    )
    gw.resolve_local_path = AsyncMock(side_effect=lambda host, credential, path: path)
    gw.close = AsyncMock()
    return gw
