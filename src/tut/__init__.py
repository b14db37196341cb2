"""tut - expose TCP and UDP services through an SSH reverse tunnel."""

from .bridge import Bridge, LocalBridgeManager, create_fifo

# Common utilities
from .common.exceptions import (
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
from .common.logging import get_logger, setup_logging
from .config import (
    TCPForward,
    TunnelConfig,
    UDPForward,
    VPSConfig,
    load_config,
    parse_config,
)
from .probe import is_listening, wait_until_listening
from .process import ManagedProcess, ProcessRegistry
from .remote_script import ShellScript, build_remote_script
from .ssh import SSHCommand, build_ssh_command
from .supervisor import Supervisor, SupervisorState, run_supervisor

# Setup logging on package initialization
setup_logging(level="INFO")

# Package level logger
logger = get_logger(__name__)

__version__ = "0.1.0"


__all__ = [
    # Configuration
    "VPSConfig",
    "TCPForward",
    "UDPForward",
    "TunnelConfig",
    "load_config",
    "parse_config",
    # Processes and bridges
    "ManagedProcess",
    "ProcessRegistry",
    "Bridge",
    "LocalBridgeManager",
    "create_fifo",
    "is_listening",
    "wait_until_listening",
    # Session
    "ShellScript",
    "build_remote_script",
    "SSHCommand",
    "build_ssh_command",
    "Supervisor",
    "SupervisorState",
    "run_supervisor",
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
]
