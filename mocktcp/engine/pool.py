"""
Server pool - owns a set of mock servers, one per port.

The pool is created by whoever starts the servers (the command line, or a
test fixture) and passed to anything that needs to find or stop them.
"""
from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Union

import structlog

from mocktcp.engine.hooks import MessageHooks
from mocktcp.engine.server import MockTCPServer
from mocktcp.exceptions import ServerAlreadyRegisteredError
from mocktcp.models import ServerBehavior, ServerStatus

if TYPE_CHECKING:
    from mocktcp.configuration import ConfigurationSettings

logger = structlog.get_logger()


class ServerPool:
    """Starts, looks up and shuts down MockTCPServers by port."""

    def __init__(self):
        self._servers: Dict[int, MockTCPServer] = {}
        self._lock = threading.Lock()
        self._shutdown = threading.Event()

    def add(self, server: Union[MockTCPServer, int]) -> MockTCPServer:
        """
        Register a server, starting it if needed.

        Args:
            server: A MockTCPServer, or a port to create a default one on

        Returns:
            The registered (listening) server

        Raises:
            ServerAlreadyRegisteredError: The port is already in the pool
            ServerStartError: The port could not be bound
        """
        if isinstance(server, int):
            server = MockTCPServer(port=server)

        with self._lock:
            if server.port and server.port in self._servers:
                raise ServerAlreadyRegisteredError(server.port)

        if server.status == ServerStatus.CREATED:
            server.start()

        with self._lock:
            if server.port in self._servers and self._servers[server.port] is not server:
                server.close()
                raise ServerAlreadyRegisteredError(server.port)
            self._servers[server.port] = server
            self._shutdown.clear()

        logger.info("pool_server_added", port=server.port, servers=len(self._servers))
        return server

    def get(self, port: int) -> Optional[MockTCPServer]:
        with self._lock:
            return self._servers.get(port)

    def ports(self) -> List[int]:
        with self._lock:
            return sorted(self._servers)

    def servers(self) -> List[MockTCPServer]:
        with self._lock:
            return list(self._servers.values())

    def bootstrap(
        self,
        configuration: "ConfigurationSettings",
        behavior: Optional[ServerBehavior] = None,
        hooks: Optional[MessageHooks] = None,
        host: Optional[str] = None,
    ) -> List[MockTCPServer]:
        """
        Start one server per configured port.

        If any port fails to start, the servers already started by this call
        are closed before the error is raised.
        """
        started: List[MockTCPServer] = []
        try:
            for port in configuration.ports():
                server = MockTCPServer(
                    port=port,
                    behavior=behavior,
                    registry=configuration.responses(port),
                    hooks=hooks,
                    host=host,
                )
                started.append(self.add(server))
        except Exception:
            logger.error("pool_bootstrap_failed", started=[s.port for s in started])
            for server in started:
                self.remove(server.port)
            raise

        logger.info("pool_bootstrapped", ports=[s.port for s in started])
        return started

    def remove(self, port: int) -> Optional[MockTCPServer]:
        """Close and forget the server on a port."""
        with self._lock:
            server = self._servers.pop(port, None)
        if server is not None:
            server.close()
        return server

    def shutdown(self) -> None:
        """Close every server and wait for all their connections to finish."""
        with self._lock:
            servers = list(self._servers.values())
            self._servers.clear()

        for server in servers:
            server.close()

        self._shutdown.set()
        logger.info("pool_shutdown", closed=len(servers))

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown() has completed."""
        return self._shutdown.wait(timeout)

    def close(self) -> None:
        self.shutdown()

    def __enter__(self) -> "ServerPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def __contains__(self, port: object) -> bool:
        with self._lock:
            return port in self._servers

    def __iter__(self) -> Iterator[MockTCPServer]:
        return iter(self.servers())

    def __len__(self) -> int:
        with self._lock:
            return len(self._servers)
