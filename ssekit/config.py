"""
Configuration handling for the ssekit launcher.

This module provides functionality to load, validate, and manage
configuration from JSON files and environment variables, and to build the
typed configuration objects used by the producer, relay and console client.
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from .errors import ConfigError
from .event_stream.event_stream_client import SessionConfig
from .event_stream.event_stream_producer import ProducerConfig
from .event_stream.event_stream_relay import RelayConfig


logger = logging.getLogger(__name__)


KNOWN_SERVICES = ("producer", "relay")


class Config:
    """Configuration manager for the ssekit launcher."""

    # Default configuration values
    DEFAULT_CONFIG = {
        "services": ["producer", "relay"],
        "portAllocation": {
            "mode": "manual",
            "basePort": 5000,
            "portRange": [5000, 6000],
            "ports": {
                "producer": 5079,
                "relay": 5046
            }
        },
        "server": {
            "host": "127.0.0.1",
            "logLevel": "info"
        },
        "producer": {
            "path": "/sse",
            "interval": 2.0,
            "maxLifetime": 30.0,
            "sentinelTimeout": 5.0,
            "openingData": "Connected",
            "sentinelData": "[DONE]"
        },
        "relay": {
            "prefix": "/proxy",
            "connectTimeout": 10.0,
            "readTimeout": None,
            "defaultScheme": "https",
            "defaultPort": 80
        },
        "client": {
            "reconnect": True,
            "maxReconnectAttempts": 10,
            "connectTimeout": 10.0,
            "readTimeout": None,
            "debug": False
        },
        "cors": {
            "allowOrigins": ["*"]
        },
        "logging": {
            "level": "INFO",
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "json": False,
            "file": None
        },
        "errorHandling": {
            "continueOnError": True
        }
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the configuration manager.

        Args:
            config_path: Path to configuration file (optional)
        """
        self.config: Dict[str, Any] = {}
        self.config_path = config_path
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file and environment variables."""
        # Start with defaults
        self.config = copy.deepcopy(self.DEFAULT_CONFIG)

        # Load from file if provided
        if self.config_path:
            self._load_from_file(self.config_path)

        # Override with environment variables
        self._load_from_env()

        # Validate configuration
        self._validate_config()

        logger.info(f"Configuration loaded from {self.config_path or 'defaults'}")

    def _load_from_file(self, config_path: str) -> None:
        """
        Load configuration from JSON file.

        Args:
            config_path: Path to configuration file

        Raises:
            ConfigError: If file cannot be read or parsed
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
            return

        try:
            with open(path, 'r') as f:
                file_config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in config file: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to load config file: {e}")

        if not isinstance(file_config, dict):
            raise ConfigError("Config file must contain a JSON object")

        # Merge file config with defaults
        self._merge_config(self.config, file_config)
        logger.info(f"Loaded configuration from {config_path}")

    def _load_from_env(self) -> None:
        """Load configuration overrides from environment variables."""
        env_mappings = {
            "SSEKIT_SERVICES": ("services", "list"),
            "SSEKIT_PORT_MODE": ("portAllocation.mode", "string"),
            "SSEKIT_BASE_PORT": ("portAllocation.basePort", "int"),
            "SSEKIT_PORT_RANGE": ("portAllocation.portRange", "intlist"),
            "SSEKIT_PRODUCER_PORT": ("portAllocation.ports.producer", "int"),
            "SSEKIT_RELAY_PORT": ("portAllocation.ports.relay", "int"),
            "SSEKIT_SERVER_HOST": ("server.host", "string"),
            "SSEKIT_LOG_LEVEL": ("server.logLevel", "string"),
            "SSEKIT_PRODUCER_PATH": ("producer.path", "string"),
            "SSEKIT_PRODUCER_INTERVAL": ("producer.interval", "float"),
            "SSEKIT_PRODUCER_MAX_LIFETIME": ("producer.maxLifetime", "float"),
            "SSEKIT_RELAY_PREFIX": ("relay.prefix", "string"),
            "SSEKIT_RELAY_DEFAULT_SCHEME": ("relay.defaultScheme", "string"),
            "SSEKIT_CLIENT_RECONNECT": ("client.reconnect", "bool"),
            "SSEKIT_CLIENT_MAX_RECONNECT_ATTEMPTS": ("client.maxReconnectAttempts", "int"),
            "SSEKIT_CLIENT_DEBUG": ("client.debug", "bool"),
            "SSEKIT_CORS_ORIGINS": ("cors.allowOrigins", "list"),
            "SSEKIT_LOGGING_LEVEL": ("logging.level", "string"),
            "SSEKIT_LOGGING_JSON": ("logging.json", "bool"),
            "SSEKIT_LOG_FILE": ("logging.file", "string"),
            "SSEKIT_CONTINUE_ON_ERROR": ("errorHandling.continueOnError", "bool")
        }

        for env_var, (config_path, value_type) in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                try:
                    parsed_value = self._parse_env_value(value, value_type)
                    self._set_nested_value(self.config, config_path, parsed_value)
                    logger.debug(f"Loaded {env_var}={value}")
                except (ValueError, KeyError) as e:
                    logger.warning(f"Failed to parse {env_var}: {e}")

    def _parse_env_value(self, value: str, value_type: str) -> Any:
        """
        Parse environment variable value based on type.

        Args:
            value: String value from environment
            value_type: Type to parse to (string, int, float, bool, list, intlist)

        Returns:
            Parsed value

        Raises:
            ValueError: If value cannot be parsed
        """
        if value_type == "string":
            return value
        elif value_type == "int":
            return int(value)
        elif value_type == "float":
            return float(value)
        elif value_type == "bool":
            return value.lower() in ("true", "1", "yes", "on")
        elif value_type == "list":
            return [item.strip() for item in value.split(",") if item.strip()]
        elif value_type == "intlist":
            return [int(item) for item in value.split(",")]
        else:
            raise ValueError(f"Unknown value type: {value_type}")

    def _merge_config(self, base: Dict, override: Dict) -> None:
        """
        Recursively merge override config into base config.

        Args:
            base: Base configuration dictionary (modified in place)
            override: Override configuration dictionary
        """
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge_config(base[key], value)
            else:
                base[key] = value

    def _set_nested_value(self, config: Dict, path: str, value: Any) -> None:
        """
        Set a nested configuration value using dot notation.

        Args:
            config: Configuration dictionary
            path: Dot-separated path to the value
            value: Value to set
        """
        keys = path.split(".")
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If configuration is invalid
        """
        # Validate services
        for service in self.get_services():
            if service not in KNOWN_SERVICES:
                raise ConfigError(f"Unknown service: {service}", config_key="services")

        # Validate port allocation mode
        port_mode = self.get_port_mode()
        if port_mode not in ("auto", "manual"):
            raise ConfigError(f"Invalid port allocation mode: {port_mode}", config_key="portAllocation.mode")

        # Validate port range
        port_range = self.get_port_range()
        if len(port_range) != 2 or port_range[0] >= port_range[1]:
            raise ConfigError(f"Invalid port range: {port_range}", config_key="portAllocation.portRange")

        # Validate port numbers are within valid range (1-65535)
        if port_range[0] < 1 or port_range[1] > 65535:
            raise ConfigError(f"Port range must be between 1-65535, got: {port_range}")

        # Validate base port
        base_port = self.get_base_port()
        if not (port_range[0] <= base_port <= port_range[1]):
            raise ConfigError(f"Base port {base_port} outside range {port_range}", config_key="portAllocation.basePort")

        # Validate manual port assignments
        for service, port in self.get_manual_ports().items():
            if not isinstance(port, int) or not (1 <= port <= 65535):
                raise ConfigError(f"Manual port for {service} must be between 1-65535, got: {port}")

        # Validate server host
        host = self.get_server_host()
        if not isinstance(host, str) or not host:
            raise ConfigError(f"Invalid server host: {host}", config_key="server.host")

        # Validate log level
        valid_levels = ("debug", "info", "warning", "error", "critical")
        for key in ("server.logLevel", "logging.level"):
            level = self.get(key, "")
            if not isinstance(level, str) or level.lower() not in valid_levels:
                raise ConfigError(f"Invalid log level: {level}", config_key=key)

        # Validate producer timings
        for key in ("producer.interval", "producer.maxLifetime", "producer.sentinelTimeout"):
            value = self.get(key)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"{key} must be a positive number, got: {value}", config_key=key)

        if not str(self.get("producer.path", "")).startswith("/"):
            raise ConfigError("Producer path must start with '/'", config_key="producer.path")

        # Validate relay settings
        if not str(self.get("relay.prefix", "")).startswith("/"):
            raise ConfigError("Relay prefix must start with '/'", config_key="relay.prefix")
        if self.get("relay.defaultScheme") not in ("http", "https"):
            raise ConfigError(
                f"Invalid relay default scheme: {self.get('relay.defaultScheme')}",
                config_key="relay.defaultScheme"
            )

        # Validate client settings
        attempts = self.get("client.maxReconnectAttempts")
        if not isinstance(attempts, int) or attempts < 0:
            raise ConfigError(
                f"maxReconnectAttempts must be a non-negative integer, got: {attempts}",
                config_key="client.maxReconnectAttempts"
            )

        # Validate error handling settings
        continue_on_error = self.get_continue_on_error()
        if not isinstance(continue_on_error, bool):
            raise ConfigError(f"continueOnError must be a boolean, got: {continue_on_error}")

    def get_services(self) -> List[str]:
        """Get the services started by default."""
        return self.config.get("services", list(KNOWN_SERVICES))

    def get_port_mode(self) -> str:
        """Get port allocation mode."""
        return self.config.get("portAllocation", {}).get("mode", "manual")

    def get_base_port(self) -> int:
        """Get base port for auto allocation."""
        return self.config.get("portAllocation", {}).get("basePort", 5000)

    def get_port_range(self) -> List[int]:
        """Get port range for allocation."""
        return self.config.get("portAllocation", {}).get("portRange", [5000, 6000])

    def get_manual_ports(self) -> Dict[str, int]:
        """Get manual port assignments."""
        return self.config.get("portAllocation", {}).get("ports", {})

    def get_server_host(self) -> str:
        """Get server host address."""
        return self.config.get("server", {}).get("host", "127.0.0.1")

    def get_server_log_level(self) -> str:
        """Get server log level."""
        return self.config.get("server", {}).get("logLevel", "info")

    def get_log_level(self) -> str:
        """Get launcher log level."""
        return self.config.get("logging", {}).get("level", "INFO")

    def get_log_format(self) -> str:
        """Get log format string."""
        return self.config.get("logging", {}).get(
            "format",
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    def get_log_json(self) -> bool:
        """Get whether logs are written as JSON lines."""
        return bool(self.config.get("logging", {}).get("json", False))

    def get_log_file(self) -> Optional[str]:
        """Get log file path (None for console only)."""
        return self.config.get("logging", {}).get("file")

    def get_cors_origins(self) -> List[str]:
        """Get allowed CORS origins."""
        return self.config.get("cors", {}).get("allowOrigins", ["*"])

    def get_continue_on_error(self) -> bool:
        """Get whether to continue on errors."""
        return self.config.get("errorHandling", {}).get("continueOnError", True)

    def producer_config(self) -> ProducerConfig:
        """Build the producer configuration."""
        section = self.config.get("producer", {})
        return ProducerConfig(
            path=section.get("path", "/sse"),
            interval=float(section.get("interval", 2.0)),
            max_lifetime=float(section.get("maxLifetime", 30.0)),
            sentinel_timeout=float(section.get("sentinelTimeout", 5.0)),
            opening_data=section.get("openingData", "Connected"),
            sentinel_data=section.get("sentinelData", "[DONE]"),
        )

    def relay_config(self) -> RelayConfig:
        """Build the relay configuration."""
        section = self.config.get("relay", {})
        return RelayConfig(
            prefix=section.get("prefix", "/proxy").rstrip("/") or "/proxy",
            connect_timeout=float(section.get("connectTimeout", 10.0)),
            read_timeout=section.get("readTimeout"),
            default_scheme=section.get("defaultScheme", "https"),
            default_port=int(section.get("defaultPort", 80)),
        )

    def session_config(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        method: Optional[str] = None,
        payload: Optional[str] = None,
        debug: Optional[bool] = None
    ) -> SessionConfig:
        """
        Build a consumer session configuration.

        Args:
            url: Stream URL
            headers: Extra request headers
            method: HTTP method (GET, or POST when a payload is given)
            payload: Optional JSON request body
            debug: Overrides client.debug when given

        Returns:
            Session configuration
        """
        section = self.config.get("client", {})
        return SessionConfig(
            url=url,
            headers=dict(headers or {}),
            method=method,
            payload=payload,
            debug=section.get("debug", False) if debug is None else debug,
            reconnect=section.get("reconnect", True),
            max_reconnect_attempts=int(section.get("maxReconnectAttempts", 10)),
            connect_timeout=float(section.get("connectTimeout", 10.0)),
            read_timeout=section.get("readTimeout"),
        )

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by key.

        Args:
            key: Configuration key (supports dot notation)
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split(".")
        current = self.config

        for k in keys:
            if isinstance(current, dict) and k in current:
                current = current[k]
            else:
                return default

        return current

    def to_dict(self) -> Dict[str, Any]:
        """Return configuration as dictionary."""
        return copy.deepcopy(self.config)
