"""Custom exceptions for the tunnel daemon."""


class TunnelError(Exception):
    """Base exception for all tunnel errors."""

    pass


class ConfigurationError(TunnelError):
    """Raised when the tunnel configuration is invalid."""

    pass


class FatalSetupError(TunnelError):
    """Raised when startup cannot continue; never retried."""

    pass


class BinaryNotFoundError(FatalSetupError):
    """Raised when a required executable is not resolvable on PATH."""

    pass


class FIFOCreationError(FatalSetupError):
    """Raised when a named pipe cannot be created."""

    pass


class ProcessError(TunnelError):
    """Raised when an external process cannot be spawned."""

    pass


class BridgeHealthError(TunnelError):
    """Raised when a local bridge never starts listening on its wrap port."""

    pass


class SessionError(TunnelError):
    """Raised when the SSH session ends; recovered by reconnecting."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class ResourceCleanupError(TunnelError):
    """Raised when a FIFO or directory cannot be removed."""

    pass
