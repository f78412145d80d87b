"""Shared helpers for the network tests."""
import socket
import time
from typing import Callable

LOCALHOST = "127.0.0.1"
DEFAULT_TERMINATOR = "\r\n\n"
WELLFORMED_XML = "<test-root><test-element></test-element></test-root>"
MALFORMED_XML = "<test-root><test-element><test-element></test-root>"


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll predicate until it is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def free_port() -> int:
    """A port nothing is listening on (best effort)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOCALHOST, 0))
        return sock.getsockname()[1]
