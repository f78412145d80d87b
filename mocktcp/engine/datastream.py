"""
Message framing buffer.

A MessageStream collects the bytes of one inbound message. Alongside the
full content it keeps a fixed-capacity tail holding the most recent bytes,
sized to the terminator, so that completion can be checked after every
byte without rescanning the content.
"""
from __future__ import annotations

import io
from collections import deque
from typing import Deque, Optional

from mocktcp.models import DEFAULT_TERMINATOR

DEFAULT_TAIL_MAXIMUM_LENGTH = len(DEFAULT_TERMINATOR)


class MessageStream:
    """Growing byte buffer with an O(1) sliding tail window."""

    def __init__(self, tail_maximum_length: int = DEFAULT_TAIL_MAXIMUM_LENGTH):
        if tail_maximum_length < 1:
            raise ValueError("tail_maximum_length must be at least 1")
        self.tail_maximum_length = tail_maximum_length
        self._content = bytearray()
        self._tail: Deque[int] = deque(maxlen=tail_maximum_length)

    @classmethod
    def for_terminator(cls, terminator: bytes) -> "MessageStream":
        return cls(len(terminator))

    def write(self, data: int) -> int:
        """
        Append a single byte.

        Args:
            data: Byte value (0-255)

        Returns:
            The byte written
        """
        if not 0 <= data <= 0xFF:
            raise ValueError(f"byte value out of range: {data}")
        self._content.append(data)
        # deque(maxlen=N) evicts the oldest entry on overflow
        self._tail.append(data)
        return data

    def write_bytes(self, data: bytes) -> None:
        for value in data:
            self.write(value)

    def tail(self) -> bytes:
        return bytes(self._tail)

    def is_terminated(self, terminator: bytes) -> bool:
        """True once the most recent bytes equal the terminator."""
        return len(self._tail) == len(terminator) and self.tail() == terminator

    @property
    def last_byte(self) -> Optional[int]:
        return self._tail[-1] if self._tail else None

    def size(self) -> int:
        return len(self._content)

    def __len__(self) -> int:
        return len(self._content)

    def reset(self) -> None:
        self._content.clear()
        self._tail.clear()

    def to_bytes(self) -> bytes:
        return bytes(self._content)

    def to_input_stream(self) -> io.BytesIO:
        return io.BytesIO(bytes(self._content))

    def to_text(self) -> str:
        return self._content.decode("utf-8", errors="replace")

    def message_text(self, terminator: bytes) -> str:
        """Decoded content with a trailing terminator removed."""
        content = bytes(self._content)
        if terminator and content.endswith(terminator):
            content = content[: -len(terminator)]
        return content.decode("utf-8", errors="replace")

    def __str__(self) -> str:
        return self.to_text()

    def __repr__(self) -> str:
        return f"MessageStream(size={self.size()}, tail={self.tail()!r})"
