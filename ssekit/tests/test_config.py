"""
Test suite for launcher configuration, port allocation and CLI helpers.
"""

import json
import os
import socket

import pytest

from launchsse import describe, parse_arguments, parse_headers
from ssekit import Config, ConfigError, PortConflictError, PortManager
from ssekit.event_stream import (
    EventStreamTransportError,
    Event,
    ReadyState,
    SessionError,
    StateChange,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove SSEKIT_* variables inherited from the environment."""
    for name in list(os.environ):
        if name.startswith("SSEKIT_"):
            monkeypatch.delenv(name)


@pytest.fixture
def write_config(tmp_path):
    """Write a JSON config file and return its path."""
    def write(data):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(data) if not isinstance(data, str) else data)
        return str(path)
    return write


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# ============================================================================
# Config Tests
# ============================================================================

class TestConfig:
    """Tests for Config."""

    def test_defaults(self):
        """Test the built-in defaults."""
        config = Config()

        assert config.get_services() == ["producer", "relay"]
        assert config.get_port_mode() == "manual"
        assert config.get_manual_ports() == {"producer": 5079, "relay": 5046}
        assert config.get_server_host() == "127.0.0.1"
        assert config.get_cors_origins() == ["*"]
        assert config.get("producer.interval") == 2.0
        assert config.get("missing.key", "fallback") == "fallback"

    def test_defaults_not_shared(self):
        """Test that changing one config never leaks into another."""
        first = Config()
        first.config["portAllocation"]["ports"]["producer"] = 1

        assert Config().get_manual_ports()["producer"] == 5079

    def test_file_merged_over_defaults(self, write_config):
        """Test that file values override only what they name."""
        path = write_config({"producer": {"interval": 0.5}, "server": {"host": "0.0.0.0"}})

        config = Config(path)

        assert config.get("producer.interval") == 0.5
        assert config.get("producer.maxLifetime") == 30.0
        assert config.get_server_host() == "0.0.0.0"

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test that a missing file falls back to defaults."""
        config = Config(str(tmp_path / "absent.json"))

        assert config.get_port_mode() == "manual"

    def test_invalid_json(self, write_config):
        """Test that malformed JSON is a configuration error."""
        with pytest.raises(ConfigError):
            Config(write_config("{not json"))

    def test_env_overrides(self, monkeypatch, write_config):
        """Test that SSEKIT_* variables override file values."""
        monkeypatch.setenv("SSEKIT_PRODUCER_INTERVAL", "0.25")
        monkeypatch.setenv("SSEKIT_SERVICES", "relay")
        monkeypatch.setenv("SSEKIT_CLIENT_RECONNECT", "false")
        monkeypatch.setenv("SSEKIT_PORT_RANGE", "7000,7100")
        monkeypatch.setenv("SSEKIT_BASE_PORT", "7000")

        config = Config(write_config({"producer": {"interval": 5.0}}))

        assert config.get("producer.interval") == 0.25
        assert config.get_services() == ["relay"]
        assert config.get("client.reconnect") is False
        assert config.get_port_range() == [7000, 7100]

    def test_unparseable_env_ignored(self, monkeypatch):
        """Test that a bad environment value keeps the previous one."""
        monkeypatch.setenv("SSEKIT_BASE_PORT", "many")

        assert Config().get_base_port() == 5000

    @pytest.mark.parametrize("override, key", [
        ({"portAllocation": {"mode": "random"}}, "portAllocation.mode"),
        ({"portAllocation": {"portRange": [6000, 5000]}}, "portAllocation.portRange"),
        ({"services": ["producer", "cache"]}, "services"),
        ({"producer": {"interval": 0}}, "producer.interval"),
        ({"producer": {"path": "sse"}}, "producer.path"),
        ({"relay": {"defaultScheme": "ftp"}}, "relay.defaultScheme"),
        ({"logging": {"level": "LOUD"}}, "logging.level"),
        ({"client": {"maxReconnectAttempts": -1}}, "client.maxReconnectAttempts"),
    ])
    def test_validation(self, write_config, override, key):
        """Test that invalid values are rejected with the offending key."""
        with pytest.raises(ConfigError) as exc_info:
            Config(write_config(override))

        assert exc_info.value.config_key == key

    def test_producer_config(self, write_config):
        """Test building the producer configuration."""
        config = Config(write_config({"producer": {"path": "/events", "interval": 1, "openingData": "Hi"}}))

        producer = config.producer_config()

        assert producer.path == "/events"
        assert producer.interval == 1.0
        assert producer.max_lifetime == 30.0
        assert producer.opening_data == "Hi"
        assert producer.sentinel_data == "[DONE]"

    def test_relay_config(self, write_config):
        """Test building the relay configuration."""
        config = Config(write_config({"relay": {"prefix": "/relay/", "defaultPort": 8080}}))

        relay = config.relay_config()

        assert relay.prefix == "/relay"
        assert relay.default_port == 8080
        assert relay.default_scheme == "https"
        assert relay.read_timeout is None

    def test_session_config(self, write_config):
        """Test building a consumer session configuration."""
        config = Config(write_config({"client": {"maxReconnectAttempts": 3, "debug": True}}))

        session = config.session_config("http://x/sse", headers={"X-A": "1"}, payload="{}")

        assert session.url == "http://x/sse"
        assert session.headers == {"X-A": "1"}
        assert session.resolved_method == "POST"
        assert session.max_reconnect_attempts == 3
        assert session.debug is True
        assert config.session_config("http://x/sse", debug=False).debug is False

    def test_to_dict_is_a_copy(self):
        """Test that to_dict does not expose internal state."""
        config = Config()
        snapshot = config.to_dict()
        snapshot["server"]["host"] = "changed"

        assert config.get_server_host() == "127.0.0.1"


# ============================================================================
# PortManager Tests
# ============================================================================

class TestPortManager:
    """Tests for PortManager."""

    def test_manual_port(self):
        """Test that manual mode uses the configured port."""
        port = free_port()
        manager = PortManager(mode="manual", manual_ports={"producer": port})

        assert manager.allocate_port("producer") == port
        assert manager.get_port("producer") == port

    def test_allocation_is_stable(self):
        """Test that allocating twice returns the same port."""
        port = free_port()
        manager = PortManager(mode="manual", manual_ports={"relay": port})

        assert manager.allocate_port("relay") == manager.allocate_port("relay")

    def test_manual_port_in_use(self):
        """Test that a busy manual port is a conflict."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]
            manager = PortManager(mode="manual", manual_ports={"producer": port})

            with pytest.raises(PortConflictError) as exc_info:
                manager.allocate_port("producer")

        assert exc_info.value.port == port
        assert exc_info.value.service_name == "producer"

    def test_auto_allocation(self):
        """Test that auto mode hands out distinct ports from the range."""
        base = free_port()
        manager = PortManager(mode="auto", base_port=base, port_range=[base, base + 50])

        first = manager.allocate_port("producer")
        second = manager.allocate_port("relay")

        assert first != second
        assert base <= first <= base + 50
        assert base <= second <= base + 50

    def test_release(self):
        """Test releasing ports."""
        port = free_port()
        manager = PortManager(mode="manual", manual_ports={"producer": port})
        manager.allocate_port("producer")

        assert manager.release_port("producer") == port
        assert manager.release_port("producer") is None
        assert manager.get_all_ports() == {}

    def test_port_status(self):
        """Test the status summary."""
        port = free_port()
        manager = PortManager(mode="manual", manual_ports={"producer": port})
        manager.allocate_port("producer")

        status = manager.get_port_status()

        assert status["mode"] == "manual"
        assert status["services"] == {"producer": port}
        assert status["allocated_ports"] == 1


# ============================================================================
# CLI Helper Tests
# ============================================================================

class TestCli:
    """Tests for launcher argument handling."""

    def test_parse_arguments(self):
        args = parse_arguments(["producer", "--verbose", "--host", "0.0.0.0"])

        assert args.services == ["producer"]
        assert args.verbose is True
        assert args.host == "0.0.0.0"
        assert args.listen is None

    def test_parse_listener_arguments(self):
        args = parse_arguments([
            "--listen", "http://localhost:5079/sse",
            "--header", "X-A: 1",
            "--header", "X-B:2",
            "--payload", "{}",
        ])

        assert args.listen == "http://localhost:5079/sse"
        assert parse_headers(args.header) == {"X-A": "1", "X-B": "2"}
        assert args.payload == "{}"

    def test_parse_headers_invalid(self):
        with pytest.raises(ConfigError):
            parse_headers(["no-colon"])

    def test_describe(self):
        assert describe(Event(data="tick")) == "tick"
        assert describe(Event(type="update", data="x", id="7")) == "[update] x (id: 7)"
        assert describe(StateChange(ReadyState.OPEN, ReadyState.CONNECTING)) == "-- CONNECTING -> OPEN"
        error = SessionError(EventStreamTransportError("HTTP error: 500", status_code=500), retry=100)
        assert describe(error) == "!! HTTP error: 500, retry in 100ms"
