"""
Core data models
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

DEFAULT_TERMINATOR = b"\r\n\n"
DEFAULT_ACK = b"A"
DEFAULT_NAK = b"N"
DEFAULT_RESPONSE_TERMINATOR = b"\r\n"


class ConnectionStatus(str, Enum):
    """Client connection lifecycle"""

    OPEN = "open"
    CLOSED = "closed"


class ServerStatus(str, Enum):
    """Listener lifecycle"""

    CREATED = "created"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class DispatchOutcome(str, Enum):
    """Result of a single outbound delivery"""

    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    FAILED = "failed"


class ResponseDelivery(BaseModel):
    """A payload to forward to a downstream endpoint"""

    model_config = {"frozen": True}

    host: str
    port: int = Field(ge=1, le=65535)
    payload: str

    @property
    def payload_bytes(self) -> bytes:
        return self.payload.encode("utf-8")

    def __str__(self) -> str:
        return f"ResponseDelivery [host={self.host}, port={self.port}, payload={self.payload!r}]"


class DispatchRecord(BaseModel):
    """One recorded outbound delivery attempt"""

    host: str
    port: int
    payload: str
    outcome: DispatchOutcome
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def for_delivery(
        cls, delivery: ResponseDelivery, outcome: DispatchOutcome, error: Optional[str] = None
    ) -> "DispatchRecord":
        return cls(
            host=delivery.host,
            port=delivery.port,
            payload=delivery.payload,
            outcome=outcome,
            error=error,
        )

    @property
    def delivered(self) -> bool:
        """True when the payload reached the peer, whether or not it was acknowledged."""
        return self.outcome != DispatchOutcome.FAILED


class ServerBehavior(BaseModel):
    """
    Per-server protocol behaviour.

    Every connection accepted by a server takes a snapshot of these values,
    so changes only affect connections accepted afterwards.
    """

    terminator: bytes = DEFAULT_TERMINATOR
    ack: bytes = DEFAULT_ACK
    nak: bytes = DEFAULT_NAK
    expected_message: Optional[str] = Field(
        default=None, description="Regular expression every received message must fully match"
    )
    always_nak: bool = Field(default=False, description="Reply NAK regardless of the message")
    no_response: bool = Field(default=False, description="Never write an ACK/NAK")
    send_responses: bool = Field(
        default=True, description="Forward registered responses to downstream endpoints"
    )
    close_after_next_response: bool = False

    @field_validator("terminator")
    @classmethod
    def _terminator_not_empty(cls, value: bytes) -> bytes:
        if not value:
            raise ValueError("terminator must contain at least one byte")
        return value


# Configuration file models

class ResponseDefinition(BaseModel):
    """A response sent to another machine when a message arrives"""

    host: str = Field(alias="machine")
    port: int = Field(ge=1, le=65535)
    message: str

    model_config = {"populate_by_name": True}


class IncomingDefinition(BaseModel):
    """An incoming message and the responses it triggers"""

    message: str
    responses: List[ResponseDefinition] = Field(default_factory=list)


class ServerDefinition(BaseModel):
    """A port to listen on and its incoming message table"""

    port: int = Field(ge=1, le=65535)
    incoming: List[IncomingDefinition] = Field(default_factory=list)


class ConfigurationFile(BaseModel):
    """Root of the mock server configuration document"""

    servers: List[ServerDefinition] = Field(default_factory=list)
