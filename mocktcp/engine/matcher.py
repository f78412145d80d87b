"""Expected-message matching for received streams."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Pattern

from mocktcp.engine.datastream import MessageStream


@dataclass(frozen=True)
class AssertionRecord:
    """A received message that did not match the expected pattern."""

    expected: str
    actual: str
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def message(self) -> str:
        return f"Unexpected message. Expected to match {self.expected!r} but received {self.actual!r}."

    def __str__(self) -> str:
        return self.message


class ExpectedMessage:
    """
    Regular expression that the whole decoded message must match.

    The message includes its terminator, and the pattern is compiled with
    re.DOTALL, so `.` also matches CR and LF: `<root/>.*` accepts
    `<root/>\\r\\n\\n`. This is looser than matchers where `.`
    stops at line breaks; a pattern that relies on that stop accepts more
    here.
    """

    def __init__(self, regex: str):
        self.regex = regex
        self._pattern: Pattern[str] = re.compile(regex, re.DOTALL)

    def matches(self, stream: MessageStream) -> bool:
        return self._pattern.fullmatch(stream.to_text()) is not None

    def check(self, stream: MessageStream) -> Optional[AssertionRecord]:
        """Return an AssertionRecord on mismatch, None otherwise."""
        if self.matches(stream):
            return None
        return AssertionRecord(expected=self.regex, actual=stream.to_text())

    def describe(self) -> str:
        return f"Match the regular expression: {self.regex}."

    def __repr__(self) -> str:
        return f"ExpectedMessage({self.regex!r})"
