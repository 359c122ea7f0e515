"""
Port allocation manager for the ssekit launcher.

This module allocates listening ports for the producer and relay services,
either from fixed per-service assignments or from a configured range.
"""

import logging
import socket
from typing import Any, Dict, List, Optional, Set

from .errors import PortConflictError


logger = logging.getLogger(__name__)


class PortManager:
    """Manage port allocation for services."""

    def __init__(
        self,
        mode: str = "manual",
        base_port: int = 5000,
        port_range: Optional[List[int]] = None,
        manual_ports: Optional[Dict[str, int]] = None,
        host: str = "127.0.0.1"
    ):
        """
        Initialize the port manager.

        Args:
            mode: Port allocation mode ("auto" or "manual")
            base_port: Starting port for auto allocation
            port_range: Port range for auto allocation [min, max]
            manual_ports: Dictionary of service name -> port for manual allocation
            host: Address the availability probe binds to
        """
        self.mode = mode
        self.base_port = base_port
        self.port_range = port_range or [5000, 6000]
        self.manual_ports = manual_ports or {}
        self.host = host

        self.allocated_ports: Set[int] = set()
        self.service_ports: Dict[str, int] = {}
        self.next_port = base_port

    def allocate_port(
        self,
        service_name: str,
        preferred_port: Optional[int] = None
    ) -> int:
        """
        Allocate a port for a service.

        Args:
            service_name: Name of the service
            preferred_port: Optional preferred port number

        Returns:
            Allocated port number

        Raises:
            PortConflictError: If port allocation fails
        """
        if service_name in self.service_ports:
            return self.service_ports[service_name]

        port = None

        # Try preferred port first
        if preferred_port is not None:
            if self._is_port_available(preferred_port):
                port = preferred_port
            else:
                logger.warning(f"Preferred port {preferred_port} not available for {service_name}")

        # Try manual port assignment
        if port is None and self.mode == "manual":
            if service_name in self.manual_ports:
                manual_port = self.manual_ports[service_name]
                if self._is_port_available(manual_port):
                    port = manual_port
                else:
                    raise PortConflictError(
                        f"Manual port {manual_port} for {service_name} is not available",
                        port=manual_port,
                        service_name=service_name
                    )
            else:
                logger.warning(f"No manual port configured for {service_name}, using auto allocation")

        # Auto allocate a port
        if port is None:
            port = self._allocate_auto_port()

        self.allocated_ports.add(port)
        self.service_ports[service_name] = port

        logger.info(f"Allocated port {port} for service {service_name}")
        return port

    def _allocate_auto_port(self) -> int:
        """
        Automatically allocate a port from the range.

        Returns:
            Allocated port number

        Raises:
            PortConflictError: If no ports available in range
        """
        min_port, max_port = self.port_range

        # Scan from next_port to the top, then wrap around
        candidates = list(range(max(self.next_port, min_port), max_port + 1))
        candidates += list(range(min_port, min(self.next_port, max_port + 1)))

        for port in candidates:
            if min_port <= port <= max_port and self._is_port_available(port):
                self.next_port = port + 1
                return port

        raise PortConflictError(
            f"No available ports in range {self.port_range}"
        )

    def _is_port_available(self, port: int) -> bool:
        """
        Check if a port is available for use.

        Manual and preferred ports may lie outside the auto range; only
        already-allocated ports and ports the system refuses are unavailable.

        Args:
            port: Port number to check

        Returns:
            True if port is available, False otherwise
        """
        if port in self.allocated_ports:
            return False

        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind((self.host, port))
                return True
        except OSError:
            return False

    def release_port(self, service_name: str) -> Optional[int]:
        """
        Release a port allocated to a service.

        Args:
            service_name: Name of the service

        Returns:
            Released port number, or None if service had no port
        """
        if service_name not in self.service_ports:
            logger.warning(f"No port allocated for service {service_name}")
            return None

        port = self.service_ports.pop(service_name)
        self.allocated_ports.discard(port)

        logger.info(f"Released port {port} for service {service_name}")
        return port

    def release_all_ports(self) -> None:
        """Release all allocated ports."""
        self.allocated_ports.clear()
        self.service_ports.clear()
        self.next_port = self.base_port
        logger.info("Released all allocated ports")

    def get_port(self, service_name: str) -> Optional[int]:
        """Get the port allocated to a service."""
        return self.service_ports.get(service_name)

    def get_all_ports(self) -> Dict[str, int]:
        """Get all service port allocations."""
        return self.service_ports.copy()

    def get_port_status(self) -> Dict[str, Any]:
        """
        Get status information about port allocation.

        Returns:
            Dictionary with port allocation status
        """
        min_port, max_port = self.port_range
        total_ports = max_port - min_port + 1
        in_range = [p for p in self.allocated_ports if min_port <= p <= max_port]

        return {
            "mode": self.mode,
            "base_port": self.base_port,
            "port_range": self.port_range,
            "allocated_ports": len(self.allocated_ports),
            "available_ports": total_ports - len(in_range),
            "total_ports": total_ports,
            "services": self.service_ports.copy()
        }
