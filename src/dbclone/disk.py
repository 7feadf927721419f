"""
Differencing disk lifecycle.

The disk image backends wrap the platform tools that create a child image on
top of a read-only parent and expose its filesystem at an access path:

- HyperVDiskBackend: VHDX files through the Hyper-V PowerShell module
- QemuDiskBackend: qcow2 files through qemu-img and qemu-nbd

DiskLifecycleManager adds the pre- and post-condition checks around them.
"""

import ntpath
import posixpath
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .exceptions import (
    AccessPathUnavailableError,
    DiskAlreadyExistsError,
    ExecutionError,
    InvalidRequestError,
    MountError,
    ParentNotFoundError,
)
from .gateway import ExecutionGateway
from .logging import logger
from .models import Credential
from .security import CommandBuilder, SecurityValidator

DATABASE_FILE_EXTENSIONS = (".mdf", ".ndf", ".ldf")


class DiskImageBackend(ABC):
    """Create, mount and unmount differencing disks on a host."""

    pathmod = posixpath
    disk_extension = ""

    def __init__(self, gateway: ExecutionGateway):
        self.gateway = gateway

    @abstractmethod
    async def path_exists(self, host: str, credential: Optional[Credential], path: str) -> bool:
        pass

    @abstractmethod
    async def create_directory(
        self, host: str, credential: Optional[Credential], path: str
    ) -> None:
        pass

    @abstractmethod
    async def create_child_image(
        self, host: str, credential: Optional[Credential], parent_path: str, dest_path: str
    ) -> None:
        pass

    @abstractmethod
    async def mount(
        self, host: str, credential: Optional[Credential], image_path: str, access_path: str
    ) -> str:
        """Attach the image and expose its data partition; returns a device handle."""

    @abstractmethod
    async def unmount(
        self, host: str, credential: Optional[Credential], image_path: str, access_path: str
    ) -> None:
        pass

    @abstractmethod
    async def remove_file(self, host: str, credential: Optional[Credential], path: str) -> None:
        pass

    @abstractmethod
    async def find_files(
        self,
        host: str,
        credential: Optional[Credential],
        directory: str,
        extensions: Sequence[str],
    ) -> List[str]:
        pass


class HyperVDiskBackend(DiskImageBackend):
    """VHDX differencing disks on Windows hosts."""

    pathmod = ntpath
    disk_extension = ".vhdx"

    async def _ps(self, host, credential, template: str, **kwargs):
        script = CommandBuilder.build_powershell(template, **kwargs)
        return await self.gateway.run_script(host, credential, script)

    async def path_exists(self, host, credential, path):
        result = await self._ps(host, credential, "Test-Path -LiteralPath {path}", path=path)
        return bool(result.lines) and result.lines[-1].lower() == "true"

    async def create_directory(self, host, credential, path):
        await self._ps(
            host,
            credential,
            "New-Item -ItemType Directory -Path {path} -Force -ErrorAction Stop | Out-Null",
            path=path,
        )

    async def create_child_image(self, host, credential, parent_path, dest_path):
        await self._ps(
            host,
            credential,
            "New-VHD -ParentPath {parent} -Path {dest} -Differencing -ErrorAction Stop | Out-Null",
            parent=parent_path,
            dest=dest_path,
        )

    async def mount(self, host, credential, image_path, access_path):
        result = await self._ps(
            host,
            credential,
            "$disk = Mount-VHD -Path {path} -NoDriveLetter -Passthru -ErrorAction Stop | Get-Disk; "
            "$partition = $disk | Get-Partition | Where-Object {{ $_.Type -eq 'Basic' }} "
            "| Select-Object -First 1; "
            "$partition | Add-PartitionAccessPath -AccessPath {access} -ErrorAction Stop; "
            "$disk.Number",
            path=image_path,
            access=access_path.rstrip("\\") + "\\",
        )
        return result.lines[-1] if result.lines else ""

    async def unmount(self, host, credential, image_path, access_path):
        await self._ps(
            host, credential, "Dismount-VHD -Path {path} -ErrorAction Stop", path=image_path
        )

    async def remove_file(self, host, credential, path):
        await self._ps(
            host, credential, "Remove-Item -LiteralPath {path} -Force -ErrorAction Stop", path=path
        )

    async def find_files(self, host, credential, directory, extensions):
        ext_list = ",".join(CommandBuilder.ps_quote(ext) for ext in extensions)
        script = CommandBuilder.build_powershell(
            "Get-ChildItem -LiteralPath {directory} -Recurse -File -ErrorAction Stop "
            "| Where-Object {{ @(" + ext_list + ") -contains $_.Extension.ToLower() }} "
            "| ForEach-Object {{ $_.FullName }}",
            directory=directory,
        )
        result = await self.gateway.run_script(host, credential, script)
        return result.lines


class QemuDiskBackend(DiskImageBackend):
    """qcow2 overlays on Linux hosts, exposed through an nbd device."""

    pathmod = posixpath
    disk_extension = ".qcow2"

    FREE_NBD_SCRIPT = (
        "for d in /sys/class/block/nbd*; do "
        "[ -e \"$d/pid\" ] || {{ echo /dev/$(basename \"$d\"); exit 0; }}; "
        "done; exit 1"
    )

    async def path_exists(self, host, credential, path):
        result = await self.gateway.run(host, credential, ["test", "-e", path], check=False)
        return result.ok

    async def create_directory(self, host, credential, path):
        await self.gateway.run(host, credential, ["mkdir", "-p", path])

    async def create_child_image(self, host, credential, parent_path, dest_path):
        await self.gateway.run(
            host,
            credential,
            ["qemu-img", "create", "-f", "qcow2", "-F", "qcow2", "-b", parent_path, dest_path],
        )

    async def mount(self, host, credential, image_path, access_path):
        result = await self.gateway.run_script(
            host, credential, self.FREE_NBD_SCRIPT.format()
        )
        if not result.lines:
            raise ExecutionError("no free nbd device", host)
        device = result.lines[0]
        await self.gateway.run(
            host, credential, ["qemu-nbd", f"--connect={device}", image_path]
        )
        await self.gateway.run(host, credential, ["partprobe", device], check=False)
        script = CommandBuilder.build_safe_command(
            "if [ -b {part} ]; then mount {part} {access}; else mount {device} {access}; fi",
            part=f"{device}p1",
            device=device,
            access=access_path,
        )
        await self.gateway.run_script(host, credential, script)
        return device

    async def unmount(self, host, credential, image_path, access_path):
        result = await self.gateway.run(
            host, credential, ["findmnt", "-n", "-o", "SOURCE", access_path], check=False
        )
        await self.gateway.run(host, credential, ["umount", access_path])
        if result.lines:
            device = result.lines[0]
            if "p" in posixpath.basename(device)[3:]:
                device = device.rsplit("p", 1)[0]
            await self.gateway.run(host, credential, ["qemu-nbd", "--disconnect", device])

    async def remove_file(self, host, credential, path):
        await self.gateway.run(host, credential, ["rm", "-f", path])

    async def find_files(self, host, credential, directory, extensions):
        command = ["find", directory, "-type", "f", "("]
        for index, ext in enumerate(extensions):
            if index:
                command.append("-o")
            command.extend(["-iname", f"*{ext}"])
        command.append(")")
        result = await self.gateway.run(host, credential, command)
        return result.lines


BACKENDS = {
    "hyperv": HyperVDiskBackend,
    "qemu": QemuDiskBackend,
}


def get_disk_backend(name: str, gateway: ExecutionGateway) -> DiskImageBackend:
    try:
        return BACKENDS[name](gateway)
    except KeyError:
        raise InvalidRequestError(f"Unknown disk backend: {name}")


class DiskLifecycleManager:
    """Creates differencing disks from parent images and mounts them."""

    def __init__(self, backend: DiskImageBackend):
        self.backend = backend

    @property
    def pathmod(self):
        return self.backend.pathmod

    def normalize_directory(self, path: str) -> str:
        """
        Validate a destination directory and strip trailing separators.

        Raises:
            InvalidRequestError: For empty or network paths
        """
        SecurityValidator.validate_path(path)
        if SecurityValidator.is_network_path(path):
            raise InvalidRequestError(
                f"Network path '{path}' cannot be used as a disk destination"
            )
        return SecurityValidator.strip_trailing_separator(path)

    def disk_path(self, destination_directory: str, name: str) -> str:
        directory = self.normalize_directory(destination_directory)
        return self.pathmod.join(directory, name + self.backend.disk_extension)

    async def disk_exists(
        self,
        host: str,
        credential: Optional[Credential],
        destination_directory: str,
        name: str,
    ) -> bool:
        return await self.backend.path_exists(
            host, credential, self.disk_path(destination_directory, name)
        )

    async def create_child_disk(
        self,
        host: str,
        credential: Optional[Credential],
        parent_image_location: str,
        destination_directory: str,
        name: str,
        force: bool = False,
    ) -> str:
        """
        Create a differencing disk named ``name`` chained to the parent image.

        Args:
            host: Host that creates the disk
            credential: Credential for the host
            parent_image_location: Path of the read-only parent image
            destination_directory: Directory receiving the disk
            name: Disk name without extension
            force: Replace an existing disk with the same name

        Returns:
            str: Path of the new disk

        Raises:
            ParentNotFoundError: If the parent is not reachable from the host
            DiskAlreadyExistsError: If the disk exists and force is not set
        """
        directory = self.normalize_directory(destination_directory)
        disk_path = self.pathmod.join(directory, name + self.backend.disk_extension)

        if not await self.backend.path_exists(host, credential, parent_image_location):
            raise ParentNotFoundError(parent_image_location, host)

        if await self.backend.path_exists(host, credential, disk_path):
            if not force:
                raise DiskAlreadyExistsError(disk_path, host)
            logger.warning(f"Replacing existing disk {disk_path}", host=host, disk=disk_path)
            await self.backend.remove_file(host, credential, disk_path)

        if not await self.backend.path_exists(host, credential, directory):
            await self.backend.create_directory(host, credential, directory)

        await self.backend.create_child_image(host, credential, parent_image_location, disk_path)
        logger.info(
            f"Created differencing disk {disk_path}",
            host=host,
            disk=disk_path,
            parent=parent_image_location,
        )
        return disk_path

    async def mount_disk(
        self,
        host: str,
        credential: Optional[Credential],
        disk_path: str,
        access_path: str,
    ) -> str:
        """
        Mount a disk at an access path, creating the directory if needed.

        Raises:
            AccessPathUnavailableError: If the access directory cannot be created
            MountError: If the backend fails to mount the disk
        """
        access_path = self.normalize_directory(access_path)

        try:
            if not await self.backend.path_exists(host, credential, access_path):
                await self.backend.create_directory(host, credential, access_path)
        except ExecutionError as e:
            raise AccessPathUnavailableError(access_path, host, e.message)

        try:
            device = await self.backend.mount(host, credential, disk_path, access_path)
        except ExecutionError as e:
            raise MountError(disk_path, host, e.message)

        logger.info(
            f"Mounted {disk_path} at {access_path}",
            host=host,
            disk=disk_path,
            access_path=access_path,
            device=device,
        )
        return access_path

    async def find_database_files(
        self, host: str, credential: Optional[Credential], access_path: str
    ) -> List[str]:
        """Data and log files found under a mounted access path."""
        return await self.backend.find_files(
            host, credential, access_path, DATABASE_FILE_EXTENSIONS
        )

    async def unmount_disk(
        self,
        host: str,
        credential: Optional[Credential],
        disk_path: str,
        access_path: str,
    ) -> None:
        await self.backend.unmount(host, credential, disk_path, access_path)
        logger.info(f"Unmounted {disk_path}", host=host, disk=disk_path)

    async def remove_disk(
        self, host: str, credential: Optional[Credential], disk_path: str
    ) -> None:
        await self.backend.remove_file(host, credential, disk_path)
        logger.info(f"Removed {disk_path}", host=host, disk=disk_path)
