"""Validation helpers shared by the config and process layers."""

import os
import shutil
from pathlib import Path

from .exceptions import BinaryNotFoundError, FatalSetupError


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Args:
        value: String value to validate
        field_name: Name of the field for error messages

    Returns:
        Stripped string value

    Raises:
        ValueError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def require_binary(name: str) -> str:
    """Resolve an executable on PATH.

    Args:
        name: Executable name or path

    Returns:
        Absolute path to the executable

    Raises:
        BinaryNotFoundError: If the executable cannot be resolved
    """
    resolved = shutil.which(name)
    if resolved is None:
        raise BinaryNotFoundError(f"missing dependency: {name}")
    return resolved


def require_readable_file(path: str, what: str = "File") -> Path:
    """Check that a path is a regular file the current user can read."""
    candidate = Path(path).expanduser()
    if not candidate.is_file() or not os.access(candidate, os.R_OK):
        raise FatalSetupError(f"{what} not readable: {path}")
    return candidate


def bracket_host(host: str) -> str:
    """Bracket IPv6 literals for host:port address syntax."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host
