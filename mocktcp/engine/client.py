"""
Blocking TCP client.

Used by the dispatcher to forward configured responses to downstream
endpoints, and by tests and operators to drive a mock server: connect,
send a message, and read back the ACK/NAK (or a terminated reply).
"""
from __future__ import annotations

import socket
from typing import Optional, Union

import structlog

from mocktcp.config import settings
from mocktcp.engine.datastream import MessageStream
from mocktcp.exceptions import (
    ConnectTimeoutError,
    ReceiveError,
    ReceiveTimeoutError,
    SendError,
    TargetRefusedError,
    TransportError,
    UnexpectedResponseError,
)
from mocktcp.models import DEFAULT_ACK, DEFAULT_NAK, DEFAULT_RESPONSE_TERMINATOR

logger = structlog.get_logger()


class TCPClient:
    """
    TCP client with a persistent connection.

    The connection is opened lazily on first send and kept until close(),
    so several messages can be exchanged over one socket.
    """

    def __init__(
        self,
        host: str,
        port: int,
        timeout_sec: Optional[float] = None,
        ack: bytes = DEFAULT_ACK,
        nak: bytes = DEFAULT_NAK,
        response_terminator: Optional[bytes] = DEFAULT_RESPONSE_TERMINATOR,
    ):
        self.host = host
        self.port = port
        self.timeout_sec = timeout_sec if timeout_sec is not None else settings.connect_timeout_sec
        self.ack = ack
        self.nak = nak
        self.response_terminator = response_terminator

        self._socket: Optional[socket.socket] = None

    @property
    def connected(self) -> bool:
        return self._socket is not None

    def connect(self) -> None:
        """Establish the TCP connection."""
        if self._socket is not None:
            return

        try:
            self._socket = socket.create_connection((self.host, self.port), timeout=self.timeout_sec)
        except socket.timeout:
            raise ConnectTimeoutError(
                f"Connection timeout to {self.host}:{self.port}",
                details={"timeout_sec": self.timeout_sec},
            )
        except ConnectionRefusedError as e:
            raise TargetRefusedError(
                f"Connection refused by {self.host}:{self.port}",
                details={"error": str(e)},
            )
        except OSError as e:
            raise TransportError(
                f"Failed to connect to {self.host}:{self.port}: {e}",
                details={"error": str(e)},
            )

        logger.debug("tcp_client_connected", host=self.host, port=self.port)

    def send(
        self,
        message: Union[str, bytes],
        wait_for_response: bool = True,
        timeout_sec: Optional[float] = None,
    ) -> Optional[MessageStream]:
        """
        Send a message and optionally wait for the reply.

        Args:
            message: Text (sent as UTF-8) or raw bytes
            wait_for_response: Read an ACK, NAK or terminated reply before returning
            timeout_sec: Read timeout override

        Returns:
            The reply, or None when not waiting
        """
        data = message.encode("utf-8") if isinstance(message, str) else bytes(message)
        self.connect()

        logger.debug("tcp_client_sending", host=self.host, port=self.port, size=len(data))
        try:
            self._socket.sendall(data)
        except OSError as e:
            self.close()
            raise SendError(
                f"Failed to send data to {self.host}:{self.port}",
                details={"error": str(e), "data_size": len(data)},
            )

        if not wait_for_response:
            return None
        return self.read_response(timeout_sec)

    def read_response(self, timeout_sec: Optional[float] = None) -> MessageStream:
        """
        Read one reply.

        The reply is complete when it equals the ACK or the NAK, or when it
        ends with the response terminator.

        Raises:
            ReceiveTimeoutError: Nothing complete arrived in time
            ReceiveError: Peer closed before sending anything
            UnexpectedResponseError: No response terminator is set and the
                reply is neither an ACK nor a NAK
        """
        if self._socket is None:
            raise TransportError("Not connected")

        terminator = self.response_terminator
        stream = MessageStream(len(terminator) if terminator else 1)
        expected_size = max(len(self.ack), len(self.nak))
        self._socket.settimeout(timeout_sec if timeout_sec is not None else self.timeout_sec)

        while True:
            try:
                chunk = self._socket.recv(1)
            except socket.timeout:
                raise ReceiveTimeoutError(
                    f"Receive timeout from {self.host}:{self.port}",
                    details={"received": stream.size()},
                )
            except OSError as e:
                raise ReceiveError(
                    f"Failed to receive from {self.host}:{self.port}: {e}",
                    details={"error": str(e)},
                )

            if not chunk:
                if stream.size() == 0:
                    raise ReceiveError("Connection closed by peer")
                logger.debug("tcp_client_partial_response", host=self.host, port=self.port, size=stream.size())
                return stream

            stream.write(chunk[0])
            if self._is_complete(stream, terminator):
                return stream
            if terminator is None and stream.size() >= expected_size:
                raise UnexpectedResponseError(
                    f"Unexpected response from {self.host}:{self.port}: {stream.to_bytes()!r}",
                    response=stream,
                )

    def _is_complete(self, stream: MessageStream, terminator: Optional[bytes]) -> bool:
        if stream.size() <= max(len(self.ack), len(self.nak)):
            content = stream.to_bytes()
            if content == self.ack or content == self.nak:
                return True
        return terminator is not None and stream.is_terminated(terminator)

    def close(self) -> None:
        """Close the connection."""
        if self._socket is None:
            return
        try:
            self._socket.close()
        except OSError as e:
            logger.warning(
                "tcp_client_close_error",
                host=self.host,
                port=self.port,
                error=str(e),
            )
        self._socket = None
        logger.debug("tcp_client_closed", host=self.host, port=self.port)

    def __enter__(self) -> "TCPClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"TCPClient [host={self.host}, port={self.port}]"
