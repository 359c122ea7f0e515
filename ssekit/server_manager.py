"""
Server lifecycle manager for the ssekit launcher.

This module runs one Uvicorn server per service in the same event loop and
owns the process-wide shutdown token handed to the producer. The token fires
as soon as any server begins to exit, so open event streams end with their
sentinel frame instead of holding graceful shutdown open.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn

from .errors import ServerStartupError, ServerRuntimeError
from .event_stream.cancellation import CancellationToken


logger = logging.getLogger(__name__)


# Seconds between checks of a server's exit flag
EXIT_POLL_INTERVAL = 0.1


class ManagedServer(uvicorn.Server):
    """Uvicorn server that leaves signal handling to the launcher."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


@dataclass
class ServerInstance:
    """Instance of a running service server."""
    service_name: str
    port: int
    app: Any
    server_config: uvicorn.Config
    server: uvicorn.Server
    status: str = "stopped"  # stopped, starting, running, error
    start_time: Optional[datetime] = None
    error: Optional[Exception] = None

    def __repr__(self) -> str:
        return f"ServerInstance(service={self.service_name}, port={self.port}, status={self.status})"


class ServerManager:
    """Manage lifecycle of multiple Uvicorn servers."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        log_level: str = "info",
        shutdown: Optional[CancellationToken] = None,
        graceful_timeout: float = 10.0
    ):
        """
        Initialize the server manager.

        Args:
            host: Host address for servers
            log_level: Log level for servers
            shutdown: Process-wide shutdown token (created if not provided)
            graceful_timeout: Seconds to wait for servers to drain before cancelling them
        """
        self.host = host
        self.log_level = log_level
        self.shutdown = shutdown or CancellationToken()
        self.graceful_timeout = graceful_timeout

        self.servers: Dict[str, ServerInstance] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self._watchers: Dict[str, asyncio.Task] = {}

    async def start_server(self, service_name: str, app: Any, port: int) -> ServerInstance:
        """
        Start a single service server and wait until it accepts connections.

        Args:
            service_name: Name of the service
            app: ASGI application to serve
            port: Port number to use

        Returns:
            ServerInstance for the started server

        Raises:
            ServerStartupError: If server fails to start
        """
        logger.info(f"Starting server for {service_name} on port {port}")

        config = uvicorn.Config(
            app=app,
            host=self.host,
            port=port,
            log_level=self.log_level,
            access_log=True
        )
        server = ManagedServer(config)

        instance = ServerInstance(
            service_name=service_name,
            port=port,
            app=app,
            server_config=config,
            server=server,
            status="starting",
            start_time=datetime.now()
        )
        self.servers[service_name] = instance

        task = asyncio.create_task(self._run_server(instance))
        self.tasks[service_name] = task
        self._watchers[service_name] = asyncio.create_task(self._watch_for_exit(instance))

        while not server.started:
            if task.done():
                instance.status = "error"
                error = task.exception() if not task.cancelled() else None
                instance.error = error
                raise ServerStartupError(
                    f"Failed to start server for {service_name}",
                    service_name=service_name,
                    port=port
                ) from error
            await asyncio.sleep(EXIT_POLL_INTERVAL)

        instance.status = "running"
        logger.info(f"Server for {service_name} running on http://{self.host}:{port}")
        return instance

    async def _run_server(self, instance: ServerInstance) -> None:
        """
        Run a single Uvicorn server.

        Args:
            instance: Server instance to run
        """
        service_name = instance.service_name

        try:
            await instance.server.serve()
            if instance.status != "error":
                instance.status = "stopped"
            logger.info(f"Server for {service_name} stopped on port {instance.port}")

        except asyncio.CancelledError:
            logger.info(f"Server for {service_name} was cancelled")
            instance.status = "stopped"
            raise

        except SystemExit as e:
            # Uvicorn exits the process when it cannot bind
            instance.status = "error"
            instance.error = e
            raise ServerRuntimeError(
                f"Server for {service_name} exited during startup",
                service_name=service_name,
                port=instance.port
            ) from e

        except Exception as e:
            instance.status = "error"
            instance.error = e
            logger.error(f"Server for {service_name} encountered error: {e}")
            raise ServerRuntimeError(
                f"Server runtime error for {service_name}",
                service_name=service_name,
                port=instance.port
            ) from e

    async def _watch_for_exit(self, instance: ServerInstance) -> None:
        """Fire the shutdown token once the server starts exiting."""
        while not instance.server.should_exit and not self.shutdown.cancelled:
            await asyncio.sleep(EXIT_POLL_INTERVAL)

        if not self.shutdown.cancelled:
            logger.info(f"Server for {instance.service_name} is exiting, closing open streams")
        self.shutdown.cancel()

    def request_shutdown(self) -> None:
        """Ask every server to exit gracefully. Safe to call more than once."""
        self.shutdown.cancel()
        for instance in self.servers.values():
            instance.server.should_exit = True

    async def wait_closed(self) -> None:
        """Wait until every server task has finished."""
        tasks = list(self.tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop_server(self, service_name: str) -> bool:
        """
        Stop a specific server.

        Args:
            service_name: Name of the service

        Returns:
            True if server was stopped, False if not found
        """
        instance = self.servers.get(service_name)
        if instance is None:
            logger.warning(f"No server found for {service_name}")
            return False

        logger.info(f"Stopping server for {service_name}")
        instance.server.should_exit = True

        task = self.tasks.pop(service_name, None)
        if task is not None:
            await self._drain(service_name, task)

        watcher = self._watchers.pop(service_name, None)
        if watcher is not None:
            watcher.cancel()

        if instance.status != "error":
            instance.status = "stopped"
        return True

    async def stop_all_servers(self) -> None:
        """Stop all running servers, closing open streams first."""
        logger.info("Stopping all servers")
        self.request_shutdown()

        for service_name in list(self.tasks):
            await self._drain(service_name, self.tasks.pop(service_name))

        for watcher in self._watchers.values():
            watcher.cancel()
        self._watchers.clear()

        for instance in self.servers.values():
            if instance.status != "error":
                instance.status = "stopped"

        logger.info("All servers stopped")

    async def _drain(self, service_name: str, task: asyncio.Task) -> None:
        """Wait for a server task to finish, cancelling it after the grace period."""
        done, _ = await asyncio.wait({task}, timeout=self.graceful_timeout)
        if not done:
            logger.warning(f"Server for {service_name} did not stop in {self.graceful_timeout}s, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        elif not task.cancelled() and task.exception() is not None:
            logger.error(f"Server for {service_name} ended with error: {task.exception()}")

    def get_server_status(self, service_name: str) -> Optional[str]:
        """Get status of a specific server."""
        instance = self.servers.get(service_name)
        return instance.status if instance else None

    def get_all_statuses(self) -> Dict[str, str]:
        """
        Get status of all servers.

        Returns:
            Dictionary of service name -> status
        """
        return {
            name: instance.status
            for name, instance in self.servers.items()
        }

    def get_error_servers(self) -> List[str]:
        """Get list of servers with errors."""
        return [
            name
            for name, status in self.get_all_statuses().items()
            if status == "error"
        ]

    def get_summary(self) -> Dict[str, Any]:
        """
        Get summary of all servers.

        Returns:
            Dictionary with server summary information
        """
        statuses = self.get_all_statuses()

        return {
            "total_servers": len(self.servers),
            "running": sum(1 for s in statuses.values() if s == "running"),
            "starting": sum(1 for s in statuses.values() if s == "starting"),
            "stopped": sum(1 for s in statuses.values() if s == "stopped"),
            "errors": sum(1 for s in statuses.values() if s == "error"),
            "servers": {
                name: {
                    "port": instance.port,
                    "status": instance.status,
                    "start_time": instance.start_time.isoformat() if instance.start_time else None,
                    "error": str(instance.error) if instance.error else None
                }
                for name, instance in self.servers.items()
            }
        }
