"""
Error definitions for the ssekit launcher.

This module defines custom exception classes for errors that can occur while
configuring and running the producer and relay services.
"""


class LauncherError(Exception):
    """Base exception for all launcher errors."""

    def __init__(self, message: str, service_name: str = None):
        """
        Initialize the launcher error.

        Args:
            message: Error message
            service_name: Name of the service that caused the error (optional)
        """
        self.message = message
        self.service_name = service_name
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with service name if available."""
        if self.service_name:
            return f"[{self.service_name}] {self.message}"
        return self.message


class PortConflictError(LauncherError):
    """Error when port allocation fails due to conflict."""

    def __init__(self, message: str, port: int = None, service_name: str = None):
        """
        Initialize the port conflict error.

        Args:
            message: Error message
            port: Port number that caused the conflict (optional)
            service_name: Name of the service requesting the port (optional)
        """
        self.port = port
        super().__init__(message, service_name)

    def _format_message(self) -> str:
        base_message = super()._format_message()
        if self.port:
            return f"{base_message} (port: {self.port})"
        return base_message


class ServerStartupError(LauncherError):
    """Error during server startup."""

    def __init__(self, message: str, service_name: str = None, port: int = None):
        """
        Initialize the server startup error.

        Args:
            message: Error message
            service_name: Name of the service that failed to start (optional)
            port: Port number where startup failed (optional)
        """
        self.port = port
        super().__init__(message, service_name)

    def _format_message(self) -> str:
        base_message = super()._format_message()
        if self.port:
            return f"{base_message} (port: {self.port})"
        return base_message


class ServerRuntimeError(LauncherError):
    """Error during server runtime operation."""

    def __init__(self, message: str, service_name: str = None, port: int = None):
        self.port = port
        super().__init__(message, service_name)

    def _format_message(self) -> str:
        base_message = super()._format_message()
        if self.port:
            return f"{base_message} (port: {self.port})"
        return base_message


class ConfigError(LauncherError):
    """Error in configuration."""

    def __init__(self, message: str, config_key: str = None):
        """
        Initialize the configuration error.

        Args:
            message: Error message
            config_key: Configuration key that caused the error (optional)
        """
        self.config_key = config_key
        super().__init__(message)

    def _format_message(self) -> str:
        base_message = super()._format_message()
        if self.config_key:
            return f"{base_message} (config: {self.config_key})"
        return base_message
