"""
Client connection - one worker thread per accepted socket.

Each message goes through the same strictly sequential cycle:

1. read bytes until the tail of the stream equals the terminator
2. check the message against the expected pattern (if any)
3. call the on_message hook
4. reply ACK or NAK (unless replies are disabled)
5. call the after_response hook
6. forward any registered responses to downstream endpoints
7. close if the server asked to close after the next response

A peer that connects and disconnects without sending anything (a probe)
closes the connection quietly. Transport faults close the connection and
are logged; they never propagate to the server. However the connection
ends, the on_close hook runs once the socket has been released.
"""
from __future__ import annotations

import errno
import socket
import threading
from typing import List, Optional, Tuple

import structlog

from mocktcp.config import settings
from mocktcp.engine.datastream import MessageStream
from mocktcp.engine.dispatcher import OutboundDispatcher
from mocktcp.engine.hooks import MessageHooks
from mocktcp.engine.matcher import AssertionRecord, ExpectedMessage
from mocktcp.engine.responses import ResponseRegistry
from mocktcp.models import ConnectionStatus, DispatchRecord, ServerBehavior

logger = structlog.get_logger()

# errno values meaning the socket is already gone rather than a real fault
_CLOSED_SOCKET_ERRNOS = {
    errno.EBADF,
    errno.ENOTCONN,
    errno.ESHUTDOWN,
    errno.EPIPE,
    errno.ECONNRESET,
    errno.ECONNABORTED,
}


class ClientConnection:
    """
    Serves one accepted socket until end-of-stream or close().

    Observable state (safe to read from other threads): status,
    messages_received, assertion_error, dispatches, last_message.
    """

    def __init__(
        self,
        client_socket: socket.socket,
        peer: Tuple[str, int],
        server_port: int,
        behavior: Optional[ServerBehavior] = None,
        registry: Optional[ResponseRegistry] = None,
        dispatcher: Optional[OutboundDispatcher] = None,
        hooks: Optional[MessageHooks] = None,
        read_timeout_sec: Optional[float] = None,
    ):
        self.peer = peer
        self.server_port = server_port
        # Snapshot: later changes to the server's behaviour do not leak in
        self.behavior = (behavior or ServerBehavior()).model_copy()
        self.registry = registry
        self.dispatcher = dispatcher or OutboundDispatcher(ack=self.behavior.ack, nak=self.behavior.nak)
        self.hooks = hooks or MessageHooks()
        self.read_timeout_sec = read_timeout_sec if read_timeout_sec is not None else settings.read_timeout_sec
        self.expected_message = (
            ExpectedMessage(self.behavior.expected_message)
            if self.behavior.expected_message is not None
            else None
        )

        self._socket: Optional[socket.socket] = client_socket
        self._socket.settimeout(self.read_timeout_sec)
        self._pending = b""
        self._pending_offset = 0

        self._lock = threading.Lock()
        self._status = ConnectionStatus.OPEN
        self._close_requested = False
        self._thread: Optional[threading.Thread] = None

        self._messages_received = 0
        self._assertion_error: Optional[AssertionRecord] = None
        self._dispatches: List[DispatchRecord] = []
        self._last_message: Optional[MessageStream] = None

        self.log = logger.bind(server_port=server_port, peer=f"{peer[0]}:{peer[1]}")

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return f"ClientConnection-{self.server_port}-{self.peer[1]}"

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_open(self) -> bool:
        return self._status == ConnectionStatus.OPEN

    @property
    def messages_received(self) -> int:
        return self._messages_received

    @property
    def assertion_error(self) -> Optional[AssertionRecord]:
        return self._assertion_error

    @property
    def dispatches(self) -> List[DispatchRecord]:
        with self._lock:
            return list(self._dispatches)

    @property
    def last_message(self) -> Optional[MessageStream]:
        return self._last_message

    @property
    def terminator(self) -> bytes:
        return self.behavior.terminator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Serve the socket on a dedicated worker thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()

    def run(self) -> None:
        """Read messages until the connection is closed."""
        try:
            while self.is_open:
                self.read_incoming_stream()
        except OSError as e:
            if self._close_requested or self._is_transport_close(e):
                self.log.warning("connection_transport_closed", error=str(e), error_type=type(e).__name__)
            else:
                self.log.error("connection_io_error", error=str(e), error_type=type(e).__name__, exc_info=True)
        except Exception as e:
            self.log.error("connection_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
        finally:
            self._status = ConnectionStatus.CLOSED
            self._release_socket()
            self._notify_closed()

    def close(self) -> None:
        """
        Stop the connection and wait for its worker thread to finish.

        Callable from any thread and idempotent. A blocked read is released
        by shutting down both directions of the socket.
        """
        with self._lock:
            first_request = not self._close_requested
            self._close_requested = True
            self._status = ConnectionStatus.CLOSED

        if first_request:
            self.log.debug("connection_closing")
            self._shutdown_socket()

        thread = self._thread
        if thread is None:
            self._release_socket()
            return
        if thread is threading.current_thread():
            return

        while thread.is_alive():
            thread.join(settings.close_join_timeout_sec)
            if thread.is_alive():
                self.log.warning(
                    "connection_close_slow",
                    waited_sec=settings.close_join_timeout_sec,
                )
                self._shutdown_socket()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # ------------------------------------------------------------------
    # Message cycle
    # ------------------------------------------------------------------

    def read_incoming_stream(self) -> None:
        """Read, check, answer and forward a single message."""
        stream = MessageStream.for_terminator(self.terminator)

        if not self._read_message(stream):
            if stream.size() == 0:
                self.log.debug("connection_end_of_stream")
            else:
                self.log.warning(
                    "incomplete_message_discarded",
                    size=stream.size(),
                    preview=stream.to_bytes()[:32].hex(),
                )
            self._status = ConnectionStatus.CLOSED
            return

        self._last_message = stream
        with self._lock:
            self._messages_received += 1

        self._process_message(stream)
        self._send_responses(stream)

        if self.behavior.close_after_next_response:
            self.log.debug("connection_close_after_response")
            self._status = ConnectionStatus.CLOSED

    def _read_message(self, stream: MessageStream) -> bool:
        """
        Feed bytes into the stream until the terminator arrives.

        Returns:
            True when a complete message was framed, False on end-of-stream
        """
        terminator = self.terminator
        while True:
            while self._pending_offset < len(self._pending):
                stream.write(self._pending[self._pending_offset])
                self._pending_offset += 1
                if stream.is_terminated(terminator):
                    return True

            chunk = self._receive()
            if chunk is None:
                continue
            if not chunk:
                return False
            self._pending = chunk
            self._pending_offset = 0

    def _receive(self) -> Optional[bytes]:
        """One recv() call; None after a read timeout on a live connection."""
        if self._close_requested or self._socket is None:
            return b""
        try:
            return self._socket.recv(settings.recv_buffer_size)
        except socket.timeout:
            if self._close_requested:
                return b""
            self.log.warning("connection_read_timeout", timeout_sec=self.read_timeout_sec)
            return None

    def _process_message(self, stream: MessageStream) -> None:
        self._assertion_error = None
        if self.expected_message is not None:
            record = self.expected_message.check(stream)
            if record is not None:
                self._assertion_error = record
                self.log.warning(
                    "unexpected_message",
                    expected=record.expected,
                    actual=record.actual,
                )

        self.hooks.on_message(self, stream)

        if self.behavior.no_response:
            return

        if self._assertion_error is None and not self.behavior.always_nak:
            response = self.behavior.ack
        else:
            response = self.behavior.nak

        self._socket.sendall(response)
        self.hooks.after_response(self, response)

    def _send_responses(self, stream: MessageStream) -> None:
        if not self.behavior.send_responses or self.registry is None:
            return

        key = stream.message_text(self.terminator)
        deliveries = self.registry.lookup(key)
        if not deliveries:
            return

        self.log.debug("dispatching_responses", key=key, count=len(deliveries))
        records = self.dispatcher.dispatch_all(deliveries)
        with self._lock:
            self._dispatches.extend(records)

    # ------------------------------------------------------------------
    # Socket helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_transport_close(error: OSError) -> bool:
        if isinstance(error, (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)):
            return True
        return error.errno in _CLOSED_SOCKET_ERRNOS

    def _shutdown_socket(self) -> None:
        sock = self._socket
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # Peer already gone or socket already shut down
            self.log.debug("connection_shutdown_ignored", error=str(e))

    def _notify_closed(self) -> None:
        try:
            self.hooks.on_close(self)
        except Exception as e:
            self.log.error("on_close_hook_failed", error=str(e), error_type=type(e).__name__, exc_info=True)

    def _release_socket(self) -> None:
        with self._lock:
            sock, self._socket = self._socket, None
        if sock is None:
            return
        try:
            sock.close()
        except OSError as e:
            self.log.warning("connection_socket_close_failed", error=str(e))

    def __repr__(self) -> str:
        return (
            f"ClientConnection(server_port={self.server_port}, peer={self.peer}, "
            f"status={self._status.value}, messages_received={self._messages_received})"
        )
