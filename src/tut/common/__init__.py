"""Common utilities and shared functionality."""

from .exceptions import (
    BinaryNotFoundError,
    BridgeHealthError,
    ConfigurationError,
    FatalSetupError,
    FIFOCreationError,
    ProcessError,
    ResourceCleanupError,
    SessionError,
    TunnelError,
)
from .logging import get_logger, session_context, setup_logging
from .utils import (
    bracket_host,
    require_binary,
    require_readable_file,
    validate_non_empty_string,
)

__all__ = [
    # Exceptions
    "TunnelError",
    "ConfigurationError",
    "FatalSetupError",
    "BinaryNotFoundError",
    "FIFOCreationError",
    "ProcessError",
    "BridgeHealthError",
    "SessionError",
    "ResourceCleanupError",
    # Logging
    "get_logger",
    "setup_logging",
    "session_context",
    # Utils
    "validate_non_empty_string",
    "require_binary",
    "require_readable_file",
    "bracket_host",
]
