"""dbclone - Provision copy-on-write database clones from parent disk images."""

__version__ = "0.1.0"
__author__ = "tomaz"
__description__ = "Differencing-disk database clone provisioning"

# Import main classes for easy access
from .client import DBCloneClient
from .models import (
    Host,
    Image,
    Clone,
    CloneRecord,
    CloneFilter,
    CloneRequest,
    CloneState,
    ProvisionResult,
)
from .exceptions import (
    DBCloneError,
    ConfigurationError,
    NotFoundError,
    ConflictError,
    UnavailableError,
    InvalidRequestError,
    ValidationError,
)
from .security import SecurityValidator, CommandBuilder

__all__ = [
    "__version__",
    "__author__",
    "__description__",
    "DBCloneClient",
    "Host",
    "Image",
    "Clone",
    "CloneRecord",
    "CloneFilter",
    "CloneRequest",
    "CloneState",
    "ProvisionResult",
    "DBCloneError",
    "ConfigurationError",
    "NotFoundError",
    "ConflictError",
    "UnavailableError",
    "InvalidRequestError",
    "ValidationError",
    "SecurityValidator",
    "CommandBuilder",
]
