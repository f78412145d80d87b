"""
Custom Exception Hierarchy for the Mock TCP Server

Provides structured exceptions for better error handling and recovery.
All custom exceptions inherit from MockServerError base class.
"""
from typing import Any, Optional


class MockServerError(Exception):
    """
    Base exception for all mock server errors.

    All custom exceptions should inherit from this class to allow
    catching all mock server errors with a single except clause.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Configuration Errors

class ConfigurationError(MockServerError):
    """
    Invalid configuration or settings.

    Raised when the configuration file cannot be read, parsed or validated.
    Fatal at startup only.
    """
    pass


# Network and Transport Errors

class TransportError(MockServerError):
    """
    Network transport failures.

    Base class for all network communication errors raised by the client
    side of the mock (outbound dispatch and test drivers).
    """
    pass


class ConnectTimeoutError(TransportError):
    """Connection attempt timed out."""
    pass


class TargetRefusedError(TransportError):
    """Target actively refused connection (ECONNREFUSED)."""
    pass


class SendError(TransportError):
    """Failed to send data to target."""
    pass


class ReceiveError(TransportError):
    """Failed to receive response from target."""
    pass


class ReceiveTimeoutError(ReceiveError):
    """Timeout waiting for a response."""
    pass


class UnexpectedResponseError(ReceiveError):
    """
    The peer answered with something that is neither an ACK, a NAK
    nor a terminated message.
    """
    def __init__(self, message: str, response: Any = None):
        super().__init__(message, {"response": str(response) if response is not None else None})
        self.response = response


# Dispatch Errors

class DispatchError(MockServerError):
    """Failed to deliver a configured response to a downstream endpoint."""
    pass


# Server Lifecycle Errors

class ServerError(MockServerError):
    """
    Listener and pool lifecycle errors.

    Base class for server management issues.
    """
    pass


class ServerStartError(ServerError):
    """The listening socket could not be bound."""
    pass


class ServerAlreadyRegisteredError(ServerError):
    """A server is already registered in the pool for this port."""
    def __init__(self, port: int):
        super().__init__(f"A server is already registered on port {port}", {"port": port})
        self.port = port


# Response Registry Errors

class RegistryError(MockServerError):
    """Response registry misuse."""
    pass


class RegistryFrozenError(RegistryError):
    """The registry is being served and can no longer be modified."""
    pass
