"""
ssekit Package

Server-sent events toolkit: a producer service, a streaming relay, and a
reconnecting consumer, run together from a single launcher process.
"""

from .config import Config
from .errors import (
    ConfigError,
    LauncherError,
    PortConflictError,
    ServerRuntimeError,
    ServerStartupError,
)
from .port_manager import PortManager
from .server_manager import ServerManager, ServerInstance

__version__ = "1.0.0"
__all__ = [
    "Config",
    "ConfigError",
    "LauncherError",
    "PortConflictError",
    "PortManager",
    "ServerInstance",
    "ServerManager",
    "ServerRuntimeError",
    "ServerStartupError",
]
