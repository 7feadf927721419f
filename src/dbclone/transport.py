"""
SSH transport layer for remote command execution.

This module opens paramiko connections to target hosts and runs commands on them
without blocking the event loop.
"""

import asyncio
import getpass
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import paramiko

from .exceptions import AuthenticationError, ConnectionError, SSHError, TimeoutError
from .logging import logger
from .models import CommandResult, Credential

HOST_KEY_POLICIES = {
    "strict": paramiko.RejectPolicy,
    "warn": paramiko.WarningPolicy,
    "accept": paramiko.AutoAddPolicy,
}


class SSHConnection:
    """Represents a single SSH connection."""

    def __init__(
        self,
        host: str,
        port: int = 22,
        credential: Optional[Credential] = None,
        timeout: int = 30,
        max_retries: int = 3,
        host_key_policy: str = "strict",
    ):
        """Initialize SSH connection.

        Args:
            host: Hostname to connect to
            port: SSH port (can be overridden by SSH config)
            credential: Username with password or private key; agent and
                default keys are tried when absent
            timeout: Connection timeout in seconds
            max_retries: Connection attempts for transient network errors
            host_key_policy: strict, warn or accept
        """
        self.host = host
        self.port = port
        self.credential = credential or Credential()
        self.timeout = timeout
        self.max_retries = max_retries
        self.host_key_policy = host_key_policy
        self.client: Optional[paramiko.SSHClient] = None

        self._ssh_config = self._load_ssh_config()

    def _load_ssh_config(self) -> Optional[Dict[str, Any]]:
        """Load SSH configuration for the host from ~/.ssh/config."""
        ssh_config_path = Path.home() / ".ssh" / "config"
        if not ssh_config_path.exists():
            return None
        try:
            ssh_config = paramiko.SSHConfig.from_path(str(ssh_config_path))
            return ssh_config.lookup(self.host)
        except (OSError, paramiko.SSHException) as e:
            logger.debug(f"Could not load SSH config: {e}")
            return None

    @property
    def username(self) -> str:
        if self.credential.username:
            return self.credential.username
        if self._ssh_config and "user" in self._ssh_config:
            return self._ssh_config["user"]
        return os.getenv("USER") or os.getenv("USERNAME") or getpass.getuser()

    def _connect_kwargs(self) -> Dict[str, Any]:
        hostname = self.host
        port = self.port
        if self._ssh_config:
            hostname = self._ssh_config.get("hostname", hostname)
            try:
                port = int(self._ssh_config.get("port", port))
            except (TypeError, ValueError):
                pass

        kwargs: Dict[str, Any] = {
            "hostname": hostname,
            "port": port,
            "username": self.username,
            "timeout": self.timeout,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if self.credential.password:
            kwargs["password"] = self.credential.password
        if self.credential.key_path:
            kwargs["key_filename"] = str(Path(self.credential.key_path).expanduser())
        elif self._ssh_config and "identityfile" in self._ssh_config:
            kwargs["key_filename"] = [
                str(Path(f).expanduser()) for f in self._ssh_config["identityfile"]
            ]
        return kwargs

    async def connect(self) -> None:
        """Establish the SSH connection, retrying transient network errors."""
        kwargs = self._connect_kwargs()
        hostname = kwargs["hostname"]
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(
                HOST_KEY_POLICIES.get(self.host_key_policy, paramiko.RejectPolicy)()
            )
            try:
                client.load_system_host_keys()
            except OSError as e:
                logger.debug(f"Could not load system host keys: {e}")

            try:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, lambda: client.connect(**kwargs))
                self.client = client
                logger.debug(
                    f"SSH connection established to {hostname}",
                    host=hostname,
                    attempt=attempt + 1,
                )
                return

            except paramiko.AuthenticationException as e:
                client.close()
                raise AuthenticationError(
                    str(e),
                    hostname,
                    "password" if self.credential.password else "key",
                )

            except paramiko.BadHostKeyException as e:
                client.close()
                raise SSHError(str(e), hostname, "hostkey_verification")

            except (paramiko.SSHException, OSError) as e:
                client.close()
                last_error = e
                if "known_hosts" in str(e) or "not found in known_hosts" in str(e):
                    raise SSHError(str(e), hostname, "hostkey_verification")
                if attempt < self.max_retries - 1:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"Error connecting to {hostname}: {e}, retrying in {wait_time}s "
                        f"(attempt {attempt + 1}/{self.max_retries})",
                        host=hostname,
                    )
                    await asyncio.sleep(wait_time)

        raise ConnectionError(
            f"Failed after {self.max_retries} attempts. Last error: {last_error}",
            hostname,
        )

    async def execute_command(
        self, command: str, timeout: Optional[int] = None
    ) -> CommandResult:
        """Execute a command over SSH."""
        if not self.client:
            raise SSHError("Not connected", self.host, "command_execution")

        cmd_timeout = timeout or self.timeout
        loop = asyncio.get_running_loop()

        def _run() -> CommandResult:
            _, stdout, stderr = self.client.exec_command(command, timeout=cmd_timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            return CommandResult(out, err, stdout.channel.recv_exit_status())

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, _run), timeout=cmd_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Command execution timed out on {self.host}",
                host=self.host,
                timeout=cmd_timeout,
            )
            raise TimeoutError(
                "Command execution timed out", "command_execution", cmd_timeout
            )
        except (paramiko.SSHException, OSError) as e:
            raise SSHError(str(e), self.host, "command_execution")

    async def close(self) -> None:
        """Close SSH connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.debug(f"SSH connection closed to {self.host}", host=self.host)


class SSHTransport:
    """SSH transport manager reusing one connection per host."""

    def __init__(
        self,
        port: int = 22,
        timeout: int = 30,
        max_retries: int = 3,
        host_key_policy: str = "strict",
    ):
        self.port = port
        self.timeout = timeout
        self.max_retries = max_retries
        self.host_key_policy = host_key_policy
        self.connections: Dict[str, SSHConnection] = {}

    @asynccontextmanager
    async def connect(
        self, host: str, credential: Optional[Credential] = None
    ) -> AsyncIterator[SSHConnection]:
        """Yield a connected SSHConnection for the host."""
        credential = credential or Credential()
        connection_key = f"{credential.username or ''}@{host}:{self.port}"

        if connection_key not in self.connections:
            connection = SSHConnection(
                host=host,
                port=self.port,
                credential=credential,
                timeout=self.timeout,
                max_retries=self.max_retries,
                host_key_policy=self.host_key_policy,
            )
            await connection.connect()
            self.connections[connection_key] = connection

        yield self.connections[connection_key]

    async def execute_on_host(
        self,
        host: str,
        command: str,
        credential: Optional[Credential] = None,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        """Execute a command on a remote host."""
        async with self.connect(host, credential) as conn:
            return await conn.execute_command(command, timeout)

    async def close_all(self) -> None:
        """Close all SSH connections."""
        for connection in self.connections.values():
            await connection.close()
        self.connections.clear()
