"""
SQL Server operations used while provisioning a clone.

Queries run with sqlcmd on the host that owns the instance, through the
execution gateway, so Windows authentication works without a SQL login.
"""

from typing import List, Optional, Sequence

from .exceptions import AttachError, ExecutionError
from .gateway import ExecutionGateway
from .logging import logger
from .models import CommandResult, Credential
from .security import CommandBuilder, SecurityValidator


class SqlServerAttacher:
    """Lists, inspects and attaches databases on a SQL Server instance."""

    def __init__(self, gateway: ExecutionGateway, sqlcmd_path: str = "sqlcmd"):
        self.gateway = gateway
        self.sqlcmd_path = sqlcmd_path

    async def _query(
        self,
        host: str,
        credential: Optional[Credential],
        sql_instance: str,
        sql_credential: Optional[Credential],
        query: str,
    ) -> CommandResult:
        sql_credential = sql_credential or Credential()
        args = CommandBuilder.build_sqlcmd(
            self.sqlcmd_path,
            sql_instance,
            query,
            sql_credential.username,
            sql_credential.password,
        )
        if self.gateway.platform == "windows":
            script = "& " + " ".join(CommandBuilder.ps_quote(a) for a in args)
            script += "; exit $LASTEXITCODE"
            return await self.gateway.run_script(host, credential, script)
        return await self.gateway.run(host, credential, args)

    async def list_databases(
        self,
        host: str,
        credential: Optional[Credential],
        sql_instance: str,
        sql_credential: Optional[Credential] = None,
    ) -> List[str]:
        result = await self._query(
            host, credential, sql_instance, sql_credential, "SELECT name FROM sys.databases"
        )
        return result.lines

    async def database_exists(
        self,
        host: str,
        credential: Optional[Credential],
        sql_instance: str,
        database_name: str,
        sql_credential: Optional[Credential] = None,
    ) -> bool:
        databases = await self.list_databases(host, credential, sql_instance, sql_credential)
        return database_name.lower() in (name.lower() for name in databases)

    async def get_default_data_directory(
        self,
        host: str,
        credential: Optional[Credential],
        sql_instance: str,
        sql_credential: Optional[Credential] = None,
    ) -> str:
        """The instance's default data file directory, without trailing separator."""
        result = await self._query(
            host,
            credential,
            sql_instance,
            sql_credential,
            "SELECT CAST(SERVERPROPERTY('InstanceDefaultDataPath') AS nvarchar(4000))",
        )
        if not result.lines or result.lines[0].upper() == "NULL":
            raise ExecutionError(f"default data directory of {sql_instance} is unknown", host)
        return SecurityValidator.strip_trailing_separator(result.lines[0])

    async def attach_database(
        self,
        host: str,
        credential: Optional[Credential],
        sql_instance: str,
        sql_credential: Optional[Credential],
        database_name: str,
        file_list: Sequence[str],
    ) -> None:
        """
        Attach a database from its data and log files.

        Raises:
            AttachError: If there are no files or the server rejects the attach
        """
        SecurityValidator.validate_database_name(database_name)
        if not file_list:
            raise AttachError(database_name, sql_instance, "no database files found")

        files = ", ".join(
            f"(FILENAME = {CommandBuilder.sql_literal(path)})" for path in file_list
        )
        query = (
            f"CREATE DATABASE {CommandBuilder.sql_identifier(database_name)} "
            f"ON {files} FOR ATTACH"
        )
        try:
            await self._query(host, credential, sql_instance, sql_credential, query)
        except ExecutionError as e:
            raise AttachError(database_name, sql_instance, e.message)

        logger.info(
            f"Attached database {database_name} to {sql_instance}",
            database=database_name,
            sql_instance=sql_instance,
            file_count=len(file_list),
        )
