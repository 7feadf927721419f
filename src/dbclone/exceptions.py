"""
Custom exceptions for database clone provisioning.

Errors are grouped in four families that decide how far a failure travels:
NotFound, Conflict and Unavailable abort a single host/database iteration,
InvalidRequest aborts the whole invocation before any side effect.
"""


class DBCloneError(Exception):
    """Base exception for dbclone operations."""

    def __init__(self, message: str, error_code: int = 1000) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ConfigurationError(DBCloneError):
    """Configuration-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=1001)


class StoreError(DBCloneError):
    """Metadata store could not be read or written."""

    def __init__(self, message: str, backend: str = "unknown") -> None:
        super().__init__(f"Store error ({backend}): {message}", error_code=1500)
        self.backend = backend


# NotFound


class NotFoundError(DBCloneError):
    """A registry record does not exist."""

    def __init__(self, message: str, error_code: int = 1100) -> None:
        super().__init__(message, error_code=error_code)


class NoImageFoundError(NotFoundError):
    """No parent image matches the request."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"No image found for '{reference}'", error_code=1101)
        self.reference = reference


# Conflict


class ConflictError(DBCloneError):
    """The requested record or artifact already exists."""

    def __init__(self, message: str, error_code: int = 1200) -> None:
        super().__init__(message, error_code=error_code)


class DuplicateHostError(ConflictError):
    def __init__(self, host_name: str) -> None:
        super().__init__(f"Host '{host_name}' already exists", error_code=1201)
        self.host_name = host_name


class DuplicateCloneError(ConflictError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Duplicate clone: {message}", error_code=1202)


class DuplicateImageError(ConflictError):
    def __init__(self, image_location: str) -> None:
        super().__init__(
            f"Image at '{image_location}' is already registered", error_code=1203
        )
        self.image_location = image_location


class DatabaseAlreadyExistsError(ConflictError):
    def __init__(self, database_name: str, sql_instance: str) -> None:
        super().__init__(
            f"Database '{database_name}' already exists on '{sql_instance}'",
            error_code=1204,
        )
        self.database_name = database_name
        self.sql_instance = sql_instance


class CloneAlreadyExistsError(ConflictError):
    def __init__(self, clone_path: str, host: str) -> None:
        super().__init__(
            f"Clone '{clone_path}' already exists on host '{host}'", error_code=1205
        )
        self.clone_path = clone_path
        self.host = host


class DiskAlreadyExistsError(ConflictError):
    def __init__(self, disk_path: str, host: str) -> None:
        super().__init__(
            f"Disk '{disk_path}' already exists on host '{host}'", error_code=1206
        )
        self.disk_path = disk_path
        self.host = host


# Unavailable


class UnavailableError(DBCloneError):
    """A host, disk or server could not perform the requested operation."""

    def __init__(self, message: str, error_code: int = 1300) -> None:
        super().__init__(message, error_code=error_code)


class ConnectionError(UnavailableError):
    """Connection-related errors."""

    def __init__(self, message: str, host: str) -> None:
        super().__init__(f"Connection error to {host}: {message}", error_code=1301)
        self.host = host


class SSHError(UnavailableError):
    """SSH-related errors."""

    def __init__(self, message: str, host: str, operation: str = "connection") -> None:
        super().__init__(
            f"SSH error on {host} during {operation}: {message}", error_code=1302
        )
        self.host = host
        self.operation = operation


class AuthenticationError(UnavailableError):
    def __init__(self, message: str, host: str, auth_method: str = "key") -> None:
        super().__init__(
            f"Authentication failed for {host} using {auth_method}: {message}",
            error_code=1303,
        )
        self.host = host
        self.auth_method = auth_method


class TimeoutError(UnavailableError):
    def __init__(self, message: str, operation: str, timeout: int) -> None:
        super().__init__(
            f"Timeout during {operation} after {timeout}s: {message}", error_code=1304
        )
        self.operation = operation
        self.timeout = timeout


class ExecutionError(UnavailableError):
    """A command ran but reported failure."""

    def __init__(
        self, message: str, host: str, exit_code: int = -1, stderr: str = ""
    ) -> None:
        super().__init__(
            f"Command failed on {host} (exit {exit_code}): {message}", error_code=1305
        )
        self.host = host
        self.exit_code = exit_code
        self.stderr = stderr


class ParentNotFoundError(UnavailableError):
    def __init__(self, parent_path: str, host: str) -> None:
        super().__init__(
            f"Parent image '{parent_path}' is not reachable from host '{host}'",
            error_code=1306,
        )
        self.parent_path = parent_path
        self.host = host


class AccessPathUnavailableError(UnavailableError):
    def __init__(self, access_path: str, host: str, reason: str = "") -> None:
        super().__init__(
            f"Access path '{access_path}' could not be created on '{host}': {reason}",
            error_code=1307,
        )
        self.access_path = access_path
        self.host = host


class MountError(UnavailableError):
    def __init__(self, disk_path: str, host: str, reason: str = "") -> None:
        super().__init__(
            f"Could not mount '{disk_path}' on '{host}': {reason}", error_code=1308
        )
        self.disk_path = disk_path
        self.host = host


class AttachError(UnavailableError):
    def __init__(self, database_name: str, sql_instance: str, reason: str = "") -> None:
        super().__init__(
            f"Could not attach '{database_name}' to '{sql_instance}': {reason}",
            error_code=1309,
        )
        self.database_name = database_name
        self.sql_instance = sql_instance


# InvalidRequest


class InvalidRequestError(DBCloneError):
    """The request is malformed; nothing has been done."""

    def __init__(self, message: str, error_code: int = 1400) -> None:
        super().__init__(message, error_code=error_code)


class ValidationError(InvalidRequestError):
    """Validation errors."""

    def __init__(self, message: str, validation_type: str = "general") -> None:
        super().__init__(
            f"Validation error ({validation_type}): {message}", error_code=1401
        )
        self.validation_type = validation_type
