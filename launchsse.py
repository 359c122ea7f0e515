#!/usr/bin/env python3
"""
ssekit Launcher - Main Entry Point

Run the event stream producer and the streaming relay in a single Python
process, or listen to a stream from the console.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from ssekit import (
    Config,
    ConfigError,
    LauncherError,
    PortConflictError,
    PortManager,
    ServerManager,
    ServerStartupError,
)
from ssekit.config import KNOWN_SERVICES
from ssekit.event_stream import (
    CancellationToken,
    Event,
    SessionError,
    StateChange,
    StreamingSession,
    create_producer_app,
    create_relay_app,
)


# Configure logging
import logging.handlers


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "component"):
            log_data["component"] = record.component
        if hasattr(record, "service_name"):
            log_data["service_name"] = record.service_name
        if hasattr(record, "port"):
            log_data["port"] = record.port

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(config: Config, verbose: bool = False) -> None:
    """
    Set up logging configuration.

    Args:
        config: Configuration object
        verbose: Whether to enable verbose logging
    """
    log_level = logging.DEBUG if verbose else getattr(logging, config.get_log_level().upper(), logging.INFO)
    log_format = config.get_log_format()
    log_file = config.get_log_file()

    # Create formatter
    if config.get_log_json() or log_format.lower() == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(log_format)

    # Get the root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear existing handlers
    root_logger.handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler with rotation
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Set component-specific log levels from config
    component_levels = config.get("componentLogLevels", {})
    for component, level in component_levels.items():
        comp_logger = logging.getLogger(component)
        comp_logger.setLevel(getattr(logging, level.upper(), logging.INFO))


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Args:
        argv: Argument list (defaults to sys.argv)

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Run the event stream producer and relay, or listen to a stream",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python launchsse.py
  python launchsse.py producer
  python launchsse.py --config custom_config.json relay
  python launchsse.py --listen http://localhost:5079/sse
  python launchsse.py --listen http://localhost:5046/proxy/http://localhost:5079/sse
  python launchsse.py --listen http://localhost:5079/sse --payload '{"topic": "clock"}'
        """
    )

    parser.add_argument(
        "services",
        nargs="*",
        help="Services to start: producer, relay (default: services from config)"
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: config.json)"
    )

    parser.add_argument(
        "--list-services",
        action="store_true",
        help="List available services and exit"
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview actions without actually starting servers"
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Override server host address"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error", "critical"],
        default=None,
        help="Override log level"
    )

    listener = parser.add_argument_group("console listener")

    listener.add_argument(
        "--listen",
        metavar="URL",
        type=str,
        default=None,
        help="Print events from the stream at URL until Ctrl+C instead of starting servers"
    )

    listener.add_argument(
        "--header",
        action="append",
        default=[],
        metavar="NAME:VALUE",
        help="Extra request header (repeatable)"
    )

    listener.add_argument(
        "--method",
        type=str,
        default=None,
        help="HTTP method (default: GET, or POST with --payload)"
    )

    listener.add_argument(
        "--payload",
        type=str,
        default=None,
        help="JSON request body"
    )

    return parser.parse_args(argv)


def parse_headers(values: List[str]) -> Dict[str, str]:
    """
    Parse NAME:VALUE header arguments.

    Raises:
        ConfigError: If an argument has no colon or an empty name
    """
    headers = {}
    for value in values:
        name, separator, content = value.partition(":")
        if not separator or not name.strip():
            raise ConfigError(f"Invalid header (expected NAME:VALUE): {value}", config_key="--header")
        headers[name.strip()] = content.strip()
    return headers


def list_services(config: Config) -> None:
    """
    List the services this launcher can start.

    Args:
        config: Configuration object
    """
    descriptions = {
        "producer": f"Periodic event stream at {config.get('producer.path')}",
        "relay": f"Streaming relay at {config.get('relay.prefix')}/<target>",
    }
    manual_ports = config.get_manual_ports()

    print("Available services:")
    print("-" * 60)

    for service in KNOWN_SERVICES:
        port = manual_ports.get(service, "auto")
        enabled = "yes" if service in config.get_services() else "no"
        print(f"Name:        {service}")
        print(f"Port:        {port}")
        print(f"Default:     {enabled}")
        print(f"Description: {descriptions[service]}")
        print("-" * 60)


def build_app(service_name: str, config: Config, shutdown: CancellationToken) -> Any:
    """
    Build the ASGI application for a service.

    Args:
        service_name: Name of the service
        config: Configuration object
        shutdown: Process-wide shutdown token

    Returns:
        The FastAPI application

    Raises:
        LauncherError: If the service is unknown
    """
    if service_name == "producer":
        return create_producer_app(
            config.producer_config(),
            shutdown=shutdown,
            cors_origins=config.get_cors_origins()
        )
    if service_name == "relay":
        return create_relay_app(
            config.relay_config(),
            cors_origins=config.get_cors_origins()
        )
    raise LauncherError(f"Unknown service: {service_name}")


# Server startup timeout in seconds
SERVER_STARTUP_TIMEOUT = 30


async def start_servers(
    services: List[str],
    port_manager: PortManager,
    server_manager: ServerManager,
    config: Config
) -> List[str]:
    """
    Start the selected service servers.

    Args:
        services: Names of the services to start
        port_manager: Port manager instance
        server_manager: Server manager instance
        config: Configuration object

    Returns:
        List of successfully started services
    """
    # Allocate ports for all services
    ports = {}
    for service in services:
        try:
            ports[service] = port_manager.allocate_port(service)
        except PortConflictError as e:
            logging.error(f"Port allocation failed for {service}: {e}")
            if not config.get_continue_on_error():
                raise

    if not ports:
        raise LauncherError("No ports allocated for any service")

    logging.info(f"Allocated ports: {ports}")

    async def start_single_server(service: str, port: int) -> Optional[str]:
        """Start a single server with timeout."""
        app = build_app(service, config, server_manager.shutdown)
        try:
            await asyncio.wait_for(
                server_manager.start_server(service, app, port),
                timeout=SERVER_STARTUP_TIMEOUT
            )
            return service
        except asyncio.TimeoutError:
            logging.error(f"Server startup timeout for {service} on port {port} "
                          f"(timeout: {SERVER_STARTUP_TIMEOUT}s)")
            if not config.get_continue_on_error():
                raise LauncherError(f"Server startup timeout for {service}", service_name=service)
            return None
        except ServerStartupError as e:
            logging.error(f"Failed to start server for {service}: {e}")
            if not config.get_continue_on_error():
                raise
            return None

    results = await asyncio.gather(
        *(start_single_server(service, port) for service, port in ports.items()),
        return_exceptions=True
    )

    started = []
    for service, result in zip(ports, results):
        if isinstance(result, BaseException):
            logging.error(f"Server startup error for {service}: {result}")
        elif result is not None:
            started.append(result)

    logging.info(f"Successfully started {len(started)}/{len(services)} servers")

    if not started:
        port_manager.release_all_ports()
        raise LauncherError("No servers started successfully")

    for result in results:
        if isinstance(result, LauncherError):
            raise result

    return started


async def monitor_servers(server_manager: ServerManager) -> None:
    """
    Monitor running servers until shutdown.

    Args:
        server_manager: Server manager instance
    """
    while not await server_manager.shutdown.sleep(30):
        statuses = server_manager.get_all_statuses()
        running = sum(1 for s in statuses.values() if s == "running")
        errors = server_manager.get_error_servers()

        if errors:
            logging.warning(f"Servers with errors: {errors}")

        logging.debug(f"Server status: {running} running, {len(errors)} errors")


def install_signal_handlers(loop: asyncio.AbstractEventLoop, callback) -> None:
    """Route SIGINT and SIGTERM to `callback` on the event loop thread."""

    def signal_handler(signum, frame):
        """Handle shutdown signals."""
        logging.info(f"Received signal {signum}, initiating graceful shutdown...")
        loop.call_soon_threadsafe(callback)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def describe(item: Any) -> str:
    """Render one session item for the console."""
    if isinstance(item, Event):
        prefix = "" if item.type == "message" else f"[{item.type}] "
        suffix = f" (id: {item.id})" if item.id is not None else ""
        return f"{prefix}{item.data}{suffix}"
    if isinstance(item, StateChange):
        return f"-- {item.previous.name} -> {item.state.name}"
    if isinstance(item, SessionError):
        retry = f", retry in {item.retry}ms" if item.retry is not None else ""
        return f"!! {item.error}{retry}"
    return repr(item)


async def run_listener(config: Config, args: argparse.Namespace) -> int:
    """
    Print events and state changes from one stream until Ctrl+C.

    Args:
        config: Configuration object
        args: Parsed arguments

    Returns:
        Exit code
    """
    session_config = config.session_config(
        args.listen,
        headers=parse_headers(args.header),
        method=args.method,
        payload=args.payload,
        debug=True if args.verbose else None
    )
    session = StreamingSession(session_config)

    cancellation = CancellationToken()
    install_signal_handlers(asyncio.get_running_loop(), cancellation.cancel)

    print(f"Listening to {args.listen} (press Ctrl+C to stop)")

    failed = False
    async for item in session.start(cancellation):
        print(describe(item), flush=True)
        if isinstance(item, SessionError):
            failed = True
        elif isinstance(item, Event):
            failed = False

    print("Stream closed")
    return 1 if failed and not cancellation.cancelled else 0


async def run_servers(config: Config, services: List[str]) -> int:
    """
    Start the selected services and serve until shutdown.

    Args:
        config: Configuration object
        services: Names of the services to start

    Returns:
        Exit code
    """
    port_manager = PortManager(
        mode=config.get_port_mode(),
        base_port=config.get_base_port(),
        port_range=config.get_port_range(),
        manual_ports=config.get_manual_ports(),
        host=config.get_server_host()
    )

    server_manager = ServerManager(
        host=config.get_server_host(),
        log_level=config.get_server_log_level()
    )

    install_signal_handlers(asyncio.get_running_loop(), server_manager.request_shutdown)

    try:
        started = await start_servers(services, port_manager, server_manager, config)

        print("\n" + "=" * 60)
        print("ssekit Launcher Running")
        print("=" * 60)
        for service in services:
            port = port_manager.get_port(service)
            status = server_manager.get_server_status(service)
            if service in started:
                print(f"  {service}: http://{config.get_server_host()}:{port}")
            else:
                print(f"  {service}: FAILED (status: {status})")
        print("=" * 60)
        print("Press Ctrl+C to stop all servers\n")

        await monitor_servers(server_manager)

    except LauncherError as e:
        logging.error(f"Launcher error: {e}")
        await server_manager.stop_all_servers()
        return 1

    # Graceful shutdown
    logging.info("Stopping all servers...")
    await server_manager.stop_all_servers()
    port_manager.release_all_ports()

    summary = server_manager.get_summary()
    logging.info(f"Shutdown summary: {summary}")

    logging.info("ssekit Launcher stopped")
    return 1 if summary["errors"] else 0


async def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = parse_arguments(argv)

    load_dotenv()

    try:
        config_path = args.config or str(Path(__file__).parent / "config.json")
        config = Config(config_path)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    # Override config with CLI arguments
    if args.host:
        config.config["server"]["host"] = args.host
    if args.log_level:
        config.config["server"]["logLevel"] = args.log_level

    setup_logging(config, args.verbose)

    if args.list_services:
        list_services(config)
        return 0

    if args.listen:
        try:
            return await run_listener(config, args)
        except ConfigError as e:
            logging.error(f"Configuration error: {e}")
            return 1

    services = args.services or config.get_services()
    unknown = [s for s in services if s not in KNOWN_SERVICES]
    if unknown:
        logging.error(f"Unknown services: {unknown} (available: {list(KNOWN_SERVICES)})")
        return 1

    logging.info("=" * 60)
    logging.info("ssekit Launcher Starting")
    logging.info("=" * 60)

    if args.dry_run:
        logging.info("Dry run mode - not starting servers")
        logging.info(f"Would launch: {services}")
        return 0

    return await run_servers(config, services)


def cli() -> None:
    """Console script entry point."""
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    cli()
