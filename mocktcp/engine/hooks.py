"""
Message hooks injected into servers and connections.

Subclass MessageHooks, or build one from plain callables with
MessageHooks.from_callables(), to observe traffic without touching the
connection itself.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional, Tuple

import structlog

from mocktcp.engine.datastream import MessageStream

if TYPE_CHECKING:
    from mocktcp.engine.connection import ClientConnection

logger = structlog.get_logger()

OnConnect = Callable[["ClientConnection"], None]
OnMessage = Callable[["ClientConnection", MessageStream], None]
AfterResponse = Callable[["ClientConnection", bytes], None]
OnClose = Callable[["ClientConnection"], None]


class MessageHooks:
    """Default hooks: log each event."""

    def on_connect(self, connection: "ClientConnection") -> None:
        logger.info(
            "connection_accepted",
            server_port=connection.server_port,
            peer=connection.peer,
        )

    def on_message(self, connection: "ClientConnection", message: MessageStream) -> None:
        logger.info(
            "message_received",
            server_port=connection.server_port,
            peer=connection.peer,
            message=message.to_text(),
        )

    def after_response(self, connection: "ClientConnection", response: bytes) -> None:
        logger.debug(
            "response_sent",
            server_port=connection.server_port,
            peer=connection.peer,
            response=response.decode("utf-8", errors="replace"),
        )

    def on_close(self, connection: "ClientConnection") -> None:
        """Called once, from the worker thread, after the socket is released."""
        logger.debug(
            "connection_closed",
            server_port=connection.server_port,
            peer=connection.peer,
            messages_received=connection.messages_received,
        )

    @classmethod
    def from_callables(
        cls,
        on_connect: Optional[OnConnect] = None,
        on_message: Optional[OnMessage] = None,
        after_response: Optional[AfterResponse] = None,
        on_close: Optional[OnClose] = None,
    ) -> "MessageHooks":
        """Hooks that log as usual and then call the given functions."""
        return _CallableHooks(on_connect, on_message, after_response, on_close)


class _CallableHooks(MessageHooks):

    def __init__(
        self,
        on_connect: Optional[OnConnect],
        on_message: Optional[OnMessage],
        after_response: Optional[AfterResponse],
        on_close: Optional[OnClose],
    ):
        self._on_connect = on_connect
        self._on_message = on_message
        self._after_response = after_response
        self._on_close = on_close

    def on_connect(self, connection: "ClientConnection") -> None:
        super().on_connect(connection)
        if self._on_connect:
            self._on_connect(connection)

    def on_message(self, connection: "ClientConnection", message: MessageStream) -> None:
        super().on_message(connection, message)
        if self._on_message:
            self._on_message(connection, message)

    def after_response(self, connection: "ClientConnection", response: bytes) -> None:
        super().after_response(connection, response)
        if self._after_response:
            self._after_response(connection, response)

    def on_close(self, connection: "ClientConnection") -> None:
        super().on_close(connection)
        if self._on_close:
            self._on_close(connection)


class CompositeHooks(MessageHooks):
    """Fan a hook call out to several MessageHooks in order."""

    def __init__(self, *hooks: MessageHooks):
        self.hooks: Tuple[MessageHooks, ...] = hooks

    def on_connect(self, connection: "ClientConnection") -> None:
        for hook in self.hooks:
            hook.on_connect(connection)

    def on_message(self, connection: "ClientConnection", message: MessageStream) -> None:
        for hook in self.hooks:
            hook.on_message(connection, message)

    def after_response(self, connection: "ClientConnection", response: bytes) -> None:
        for hook in self.hooks:
            hook.after_response(connection, response)

    def on_close(self, connection: "ClientConnection") -> None:
        # Every hook runs even if an earlier one fails
        errors = []
        for hook in self.hooks:
            try:
                hook.on_close(connection)
            except Exception as e:
                errors.append(e)
        if errors:
            raise errors[0]
