"""
Security utilities for clone provisioning.

This module provides input validation and quoting helpers for the PowerShell,
POSIX shell and T-SQL commands sent to target hosts.
"""

import re
import shlex
from typing import List, Optional, Any

from .exceptions import ValidationError


class SecurityValidator:
    """Security validation utilities."""

    # SQL Server allows more, but anything else would need quoting in file names too
    DATABASE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")
    HOSTNAME_PATTERN = re.compile(r"^[a-zA-Z0-9.\-]+$")
    INSTANCE_PATTERN = re.compile(r"^[a-zA-Z0-9.\-]+(\\[A-Za-z0-9_$]+)?(,\d+)?$")
    NETWORK_PATH_PATTERN = re.compile(r"^(\\\\|//)[^\\/]+[\\/]")

    @staticmethod
    def validate_database_name(name: str) -> str:
        """
        Validate a database or clone name.

        Args:
            name: Database name to validate

        Returns:
            str: Validated name

        Raises:
            ValidationError: If the name is invalid
        """
        if not name or not isinstance(name, str):
            raise ValidationError("Database name must be a non-empty string", "database_name")

        if len(name) > 128:
            raise ValidationError("Database name must be 128 characters or less", "database_name")

        if not SecurityValidator.DATABASE_NAME_PATTERN.match(name):
            raise ValidationError(
                f"Database name '{name}' can only contain letters, numbers, "
                "underscores, dots and hyphens",
                "database_name",
            )

        return name

    @staticmethod
    def validate_hostname(hostname: str) -> str:
        """
        Validate a hostname.

        Raises:
            ValidationError: If hostname is invalid
        """
        if not hostname or not isinstance(hostname, str):
            raise ValidationError("Hostname must be a non-empty string", "hostname")

        if len(hostname) > 253:
            raise ValidationError("Hostname must be 253 characters or less", "hostname")

        if hostname != "." and not SecurityValidator.HOSTNAME_PATTERN.match(hostname):
            raise ValidationError(
                "Hostname can only contain letters, numbers, dots, and hyphens",
                "hostname",
            )

        return hostname

    @staticmethod
    def validate_sql_instance(instance: str) -> str:
        """Validate a SQL Server instance name (``host``, ``host\\NAME``, ``host,port``)."""
        if not instance or not SecurityValidator.INSTANCE_PATTERN.match(instance):
            raise ValidationError(f"Invalid SQL Server instance: {instance!r}", "sql_instance")
        return instance

    @staticmethod
    def validate_path(path: str) -> str:
        """Reject empty paths and paths carrying control or quoting characters."""
        if not path or not isinstance(path, str):
            raise ValidationError("Path must be a non-empty string", "path")

        if any(ch in path for ch in ("\n", "\r", "\x00", "`", '"')):
            raise ValidationError(f"Path contains forbidden characters: {path!r}", "path")

        return path

    @staticmethod
    def is_network_path(path: str) -> bool:
        """True for UNC style paths such as ``\\\\server\\share\\dir``."""
        return bool(SecurityValidator.NETWORK_PATH_PATTERN.match(path or ""))

    @staticmethod
    def strip_trailing_separator(path: str) -> str:
        """Remove trailing separators, keeping roots such as ``C:\\`` and ``/`` intact."""
        stripped = path.rstrip("\\/")
        if not stripped:
            return path[:1]
        if re.match(r"^[A-Za-z]:$", stripped):
            return stripped + "\\"
        return stripped


class CommandBuilder:
    """Quoting helpers for the command strings executed by the gateway."""

    @staticmethod
    def ps_quote(value: Any) -> str:
        """Quote a value as a PowerShell single-quoted string literal."""
        return "'" + str(value).replace("'", "''") + "'"

    @staticmethod
    def build_powershell(template: str, **kwargs: Any) -> str:
        """
        Build a PowerShell script with single-quoted parameters.

        Args:
            template: Script template with {param} placeholders
            **kwargs: Parameters to substitute in template

        Returns:
            str: Script with quoted parameters
        """
        quoted = {
            key: CommandBuilder.ps_quote(value) if value is not None else "$null"
            for key, value in kwargs.items()
        }
        return template.format(**quoted)

    @staticmethod
    def build_safe_command(template: str, **kwargs: Any) -> str:
        """Build a POSIX shell command with shlex-quoted parameters."""
        quoted_kwargs = {}
        for key, value in kwargs.items():
            if value is not None:
                quoted_kwargs[key] = shlex.quote(str(value))
            else:
                quoted_kwargs[key] = ""

        return template.format(**quoted_kwargs)

    @staticmethod
    def sql_identifier(name: str) -> str:
        """Quote a T-SQL identifier."""
        return "[" + name.replace("]", "]]") + "]"

    @staticmethod
    def sql_literal(value: str) -> str:
        """Quote a T-SQL unicode string literal."""
        return "N'" + value.replace("'", "''") + "'"

    @staticmethod
    def build_sqlcmd(
        sqlcmd_path: str,
        instance: str,
        query: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> List[str]:
        """
        Build a sqlcmd argument list returning headerless, trimmed rows.

        Windows authentication (-E) is used unless a SQL login is given.
        """
        SecurityValidator.validate_sql_instance(instance)
        args = [sqlcmd_path, "-S", instance, "-b", "-h", "-1", "-W", "-Q",
                "SET NOCOUNT ON; " + query]
        if username:
            args.extend(["-U", username, "-P", password or ""])
        else:
            args.append("-E")
        return args
