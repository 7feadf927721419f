"""
Remote execution gateway.

Runs commands on the local machine or, over SSH, on a named host. Target hosts
are either Windows machines driven through PowerShell or POSIX machines driven
through a shell; the platform decides how scripts and identity queries are
built.
"""

import asyncio
import base64
import re
import shlex
import subprocess
import socket
from typing import Optional, Sequence

from .exceptions import (
    ExecutionError,
    InvalidRequestError,
    TimeoutError,
    UnavailableError,
)
from .logging import logger
from .models import CommandResult, Credential, HostIdentity
from .security import CommandBuilder, SecurityValidator
from .transport import SSHTransport

LOCAL_ALIASES = {"localhost", ".", "127.0.0.1", "::1"}

WINDOWS_IDENTITY_SCRIPT = (
    "$entry = [System.Net.Dns]::GetHostEntry($env:COMPUTERNAME); "
    "$env:COMPUTERNAME; "
    "$entry.HostName; "
    "($entry.AddressList | Where-Object { $_.AddressFamily -eq 'InterNetwork' } "
    "| Select-Object -First 1).IPAddressToString"
)
POSIX_IDENTITY_COMMAND = ["sh", "-c", "hostname -s; hostname -f; hostname -I | cut -d' ' -f1"]


class ExecutionGateway:
    """Executes commands locally or on remote hosts."""

    def __init__(
        self,
        transport: Optional[SSHTransport] = None,
        platform: str = "windows",
        timeout: int = 300,
    ):
        """
        Args:
            transport: SSH transport used for remote hosts
            platform: ``windows`` or ``posix``; how scripts run on targets
            timeout: Default command timeout in seconds
        """
        if platform not in ("windows", "posix"):
            raise ValueError(f"Unsupported platform: {platform}")
        self.transport = transport or SSHTransport(timeout=timeout)
        self.platform = platform
        self.timeout = timeout

    def is_local(self, host: str) -> bool:
        """Whether commands for this host run on this machine."""
        name = host.lower()
        if name in LOCAL_ALIASES:
            return True
        local_names = {socket.gethostname().lower(), socket.getfqdn().lower()}
        return name in local_names or name.split(".")[0] in {
            n.split(".")[0] for n in local_names
        }

    async def run(
        self,
        host: str,
        credential: Optional[Credential],
        command: Sequence[str],
        timeout: Optional[int] = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Run an argument list on a host.

        Args:
            host: Target host, local aliases run without SSH
            credential: Credential for the SSH connection
            command: Program and arguments
            timeout: Per-command timeout, defaults to the gateway timeout
            check: Raise ExecutionError on a non-zero exit code

        Returns:
            CommandResult: Captured output and exit code

        Raises:
            ExecutionError: If ``check`` is set and the command failed
            UnavailableError: If the host cannot be reached or timed out
        """
        timeout = timeout or self.timeout
        if self.is_local(host):
            result = await self._run_local(command, timeout)
        else:
            result = await self.transport.execute_on_host(
                host, self._join(command), credential, timeout
            )

        logger.debug(
            f"Command {command[0]} on {host} exited with {result.exit_code}",
            host=host,
            exit_code=result.exit_code,
        )
        if check and not result.ok:
            raise ExecutionError(
                (result.stderr or result.stdout).strip() or command[0],
                host,
                result.exit_code,
                result.stderr,
            )
        return result

    async def run_script(
        self,
        host: str,
        credential: Optional[Credential],
        script: str,
        timeout: Optional[int] = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a PowerShell script (windows) or a shell snippet (posix) on a host."""
        if self.platform == "windows":
            encoded = base64.b64encode(script.encode("utf-16-le")).decode("ascii")
            command = [
                "powershell",
                "-NoProfile",
                "-NonInteractive",
                "-ExecutionPolicy",
                "Bypass",
                "-EncodedCommand",
                encoded,
            ]
        else:
            command = ["sh", "-c", script]
        return await self.run(host, credential, command, timeout, check)

    async def test_connectivity(self, host: str, credential: Optional[Credential]) -> bool:
        """Probe a host before any remote operation is attempted."""
        if self.is_local(host):
            return True
        try:
            async with self.transport.connect(host, credential) as conn:
                result = await conn.execute_command("hostname", timeout=30)
            return result.ok
        except UnavailableError as e:
            logger.warning(f"Connectivity test to {host} failed: {e}", host=host)
            return False

    async def get_host_identity(
        self, host: str, credential: Optional[Credential]
    ) -> HostIdentity:
        """Return the host name, FQDN and IPv4 address of a host."""
        if self.is_local(host):
            return self._local_identity()

        if self.platform == "windows":
            result = await self.run_script(host, credential, WINDOWS_IDENTITY_SCRIPT)
        else:
            result = await self.run(host, credential, POSIX_IDENTITY_COMMAND)

        lines = result.lines
        if not lines:
            raise ExecutionError("host identity query returned nothing", host)
        return HostIdentity(
            host_name=lines[0].upper() if self.platform == "windows" else lines[0],
            fqdn=lines[1] if len(lines) > 1 else None,
            ip_address=lines[2] if len(lines) > 2 else None,
        )

    async def resolve_local_path(
        self, host: str, credential: Optional[Credential], path: str
    ) -> str:
        """
        Rewrite a network path to the path local to the host serving it.

        ``\\\\server\\D$\\images`` becomes ``D:\\images``; named shares are looked
        up with Get-SmbShare on the host. Local paths are returned unchanged.
        """
        if not SecurityValidator.is_network_path(path):
            return path
        if self.platform != "windows":
            raise InvalidRequestError(f"Network paths are not supported: {path}")

        parts = re.split(r"[\\/]+", path.strip("\\/"))
        if len(parts) < 2:
            raise InvalidRequestError(f"Malformed network path: {path}")
        server, share, rest = parts[0], parts[1], parts[2:]
        same_host = server.split(".")[0].lower() == host.split(".")[0].lower() or (
            self.is_local(server) and self.is_local(host)
        )
        if not same_host:
            raise InvalidRequestError(
                f"Network path {path} is served by {server}, not by {host}"
            )

        admin_share = re.match(r"^([A-Za-z])\$$", share)
        if admin_share:
            root = f"{admin_share.group(1).upper()}:"
        else:
            script = CommandBuilder.build_powershell(
                "(Get-SmbShare -Name {share} -ErrorAction Stop).Path", share=share
            )
            try:
                result = await self.run_script(host, credential, script)
            except ExecutionError as e:
                raise InvalidRequestError(
                    f"Share '{share}' could not be resolved on {host}: {e.message}"
                )
            if not result.lines:
                raise InvalidRequestError(f"Share '{share}' has no local path on {host}")
            root = result.lines[0].rstrip("\\")

        return "\\".join([root] + rest) if rest else root + "\\"

    async def close(self) -> None:
        await self.transport.close_all()

    def _join(self, command: Sequence[str]) -> str:
        # Windows OpenSSH hands the command line to cmd.exe
        if self.platform == "windows":
            return subprocess.list2cmdline(list(command))
        return shlex.join(command)

    async def _run_local(self, command: Sequence[str], timeout: int) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExecutionError(str(e), "localhost")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TimeoutError("Local command timed out", command[0], timeout)

        return CommandResult(
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            process.returncode,
        )

    @staticmethod
    def _local_identity() -> HostIdentity:
        host_name = socket.gethostname()
        try:
            ip_address: Optional[str] = socket.gethostbyname(host_name)
        except OSError:
            ip_address = None
        return HostIdentity(
            host_name=host_name.split(".")[0],
            ip_address=ip_address,
            fqdn=socket.getfqdn(),
        )


