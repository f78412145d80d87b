"""
Mock TCP server - one listening socket and its accept loop.

Every accepted socket is served by its own ClientConnection thread while
the accept loop keeps waiting for further peers. close() stops accepting,
closes every connection and only returns once all threads have finished.
"""
from __future__ import annotations

import socket
import threading
from typing import Any, List, Optional, Tuple

import structlog

from mocktcp.config import settings
from mocktcp.engine.connection import ClientConnection
from mocktcp.engine.datastream import MessageStream
from mocktcp.engine.dispatcher import OutboundDispatcher
from mocktcp.engine.hooks import CompositeHooks, MessageHooks
from mocktcp.engine.matcher import AssertionRecord
from mocktcp.engine.responses import ResponseRegistry
from mocktcp.exceptions import ServerError, ServerStartError
from mocktcp.models import DispatchRecord, ServerBehavior, ServerStatus

logger = structlog.get_logger()


class _ServerTracker(MessageHooks):
    """Feeds connection events back into server-level state."""

    def __init__(self, server: "MockTCPServer"):
        self.server = server

    def on_connect(self, connection: ClientConnection) -> None:
        pass

    def on_message(self, connection: ClientConnection, message: MessageStream) -> None:
        self.server._record_message(connection)

    def after_response(self, connection: ClientConnection, response: bytes) -> None:
        pass

    def on_close(self, connection: ClientConnection) -> None:
        self.server._release(connection)


class MockTCPServer:
    """
    A TCP server that simulates success and failure conditions of a host
    system in system and integration test environments.

    Behaviour (terminator, ACK/NAK, expected message, reply modes) is a
    ServerBehavior; connections take a snapshot of it when accepted.
    """

    def __init__(
        self,
        port: Optional[int] = None,
        behavior: Optional[ServerBehavior] = None,
        registry: Optional[ResponseRegistry] = None,
        hooks: Optional[MessageHooks] = None,
        dispatcher: Optional[OutboundDispatcher] = None,
        host: Optional[str] = None,
        read_timeout_sec: Optional[float] = None,
    ):
        self.host = host if host is not None else settings.host
        self._port = port if port is not None else settings.default_port
        self.behavior = behavior or ServerBehavior()
        self.registry = registry if registry is not None else ResponseRegistry()
        self.hooks = hooks or MessageHooks()
        self.dispatcher = dispatcher or OutboundDispatcher()
        self.read_timeout_sec = read_timeout_sec

        self._connection_hooks = CompositeHooks(self.hooks, _ServerTracker(self))
        self._server_socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._messages = threading.Condition()
        self._status = ServerStatus.CREATED

        # Live connections only; finished ones leave their dispatches behind
        self._connections: List[ClientConnection] = []
        self._connections_accepted = 0
        self._closed_dispatches: List[DispatchRecord] = []
        self._messages_received = 0
        self._assertion_error: Optional[AssertionRecord] = None
        self._last_message: Optional[MessageStream] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def port(self) -> int:
        """The listening port (the bound port once started on port 0)."""
        return self._port

    @property
    def address(self) -> Tuple[str, int]:
        return self.host, self._port

    @property
    def status(self) -> ServerStatus:
        return self._status

    @property
    def is_open(self) -> bool:
        return self._status == ServerStatus.OPEN

    @property
    def terminator(self) -> bytes:
        return self.behavior.terminator

    @property
    def connections(self) -> List[ClientConnection]:
        """Connections still being served; closed ones are dropped."""
        with self._lock:
            return list(self._connections)

    @property
    def connections_accepted(self) -> int:
        return self._connections_accepted

    @property
    def messages_received(self) -> int:
        return self._messages_received

    @property
    def assertion_error(self) -> Optional[AssertionRecord]:
        """Mismatch recorded for the most recently received message, if any."""
        return self._assertion_error

    @property
    def last_message(self) -> Optional[MessageStream]:
        """The most recently received message on any connection."""
        return self._last_message

    @property
    def dispatches(self) -> List[DispatchRecord]:
        with self._lock:
            records = list(self._closed_dispatches)
            live = list(self._connections)
        for connection in live:
            records.extend(connection.dispatches)
        return records

    def configure(self, **changes: Any) -> ServerBehavior:
        """
        Update behaviour for connections accepted from now on.

        Args:
            **changes: ServerBehavior fields, e.g. always_nak=True

        Returns:
            The new, validated behaviour
        """
        self.behavior = ServerBehavior.model_validate({**self.behavior.model_dump(), **changes})
        return self.behavior

    def wait_for_messages(self, count: int, timeout: Optional[float] = None) -> bool:
        """
        Block until the server has received at least `count` messages.

        A message is counted once it has been framed and checked against the
        expected pattern, before the ACK/NAK is written and before any
        responses are dispatched. Poll `dispatches` to wait for forwarding.

        Returns:
            False if the timeout expired first
        """
        with self._messages:
            return self._messages.wait_for(lambda: self._messages_received >= count, timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "MockTCPServer":
        """
        Bind, listen and start accepting on a background thread.

        The socket is listening when this returns, so clients may connect
        immediately.

        Raises:
            ServerStartError: The port could not be bound
        """
        with self._lock:
            if self._status != ServerStatus.CREATED:
                raise ServerError(
                    f"Server on port {self._port} cannot be started twice",
                    details={"status": self._status.value},
                )

            self.registry.freeze()
            server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                server_socket.bind((self.host, self._port))
                server_socket.listen(settings.listen_backlog)
            except OSError as e:
                server_socket.close()
                raise ServerStartError(
                    f"Unable to listen on {self.host}:{self._port}: {e}",
                    details={"host": self.host, "port": self._port, "error": str(e)},
                )
            server_socket.settimeout(settings.accept_poll_interval_sec)

            self._server_socket = server_socket
            self._port = server_socket.getsockname()[1]
            self._status = ServerStatus.OPEN

            self._thread = threading.Thread(
                target=self._accept_loop,
                name=f"MockTCPServer-{self._port}",
                daemon=True,
            )
            self._thread.start()

        logger.info(
            "server_listening",
            host=self.host,
            port=self._port,
            terminator=self.behavior.terminator.hex(),
            responses=len(self.registry),
        )
        return self

    def close(self) -> None:
        """Stop accepting, close every connection and wait for all threads."""
        with self._close_lock:
            with self._lock:
                if self._status == ServerStatus.CLOSED:
                    return
                self._status = ServerStatus.CLOSING
            logger.info("server_closing", port=self._port)

            self._stopping.set()
            self._close_server_socket()

            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join()

            for connection in self.connections:
                connection.close()

            self._status = ServerStatus.CLOSED
            logger.info("server_closed", port=self._port, messages_received=self._messages_received)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the accept loop to finish (i.e. until close())."""
        if self._thread is not None:
            self._thread.join(timeout)

    def __enter__(self) -> "MockTCPServer":
        if self._status == ServerStatus.CREATED:
            self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Accept loop
    # ------------------------------------------------------------------

    def _accept_loop(self) -> None:
        server_socket = self._server_socket
        while not self._stopping.is_set():
            try:
                client_socket, address = server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stopping.is_set():
                    break
                logger.warning("server_accept_failed", port=self._port, error=str(e))
                self._stopping.wait(settings.accept_poll_interval_sec)
                continue

            self._handle_connection(client_socket, address)

        logger.debug("server_accept_loop_stopped", port=self._port)

    def _handle_connection(self, client_socket: socket.socket, address: Tuple[str, int]) -> None:
        connection = ClientConnection(
            client_socket,
            peer=(address[0], address[1]),
            server_port=self._port,
            behavior=self.behavior,
            registry=self.registry,
            dispatcher=self.dispatcher,
            hooks=self._connection_hooks,
            read_timeout_sec=self.read_timeout_sec,
        )

        with self._lock:
            accepting = self._status == ServerStatus.OPEN
            if accepting:
                self._connections.append(connection)
                self._connections_accepted += 1
        if not accepting:
            connection.close()
            return

        try:
            self._connection_hooks.on_connect(connection)
        except Exception as e:
            logger.error("on_connect_hook_failed", port=self._port, error=str(e), exc_info=True)

        connection.start()

    def _close_server_socket(self) -> None:
        server_socket = self._server_socket
        if server_socket is None:
            return
        try:
            server_socket.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # Listening sockets are not connected on every platform
            logger.debug("server_socket_shutdown_ignored", port=self._port, error=str(e))
        server_socket.close()

    def _record_message(self, connection: ClientConnection) -> None:
        with self._messages:
            self._messages_received += 1
            self._assertion_error = connection.assertion_error
            self._last_message = connection.last_message
            self._messages.notify_all()

    def _release(self, connection: ClientConnection) -> None:
        """Forget a finished connection, keeping its dispatch records."""
        with self._lock:
            if connection not in self._connections:
                return
            self._connections.remove(connection)
            self._closed_dispatches.extend(connection.dispatches)
            live = len(self._connections)
        logger.debug("server_connection_released", port=self._port, live=live)

    def __repr__(self) -> str:
        return f"MockTCPServer(host={self.host!r}, port={self._port}, status={self._status.value})"
