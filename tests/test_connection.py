"""
Tests for ClientConnection.

Tests cover:
- ACK / NAK / no-response reply selection
- Several messages on one connection, split across reads
- Probe (connect and disconnect) handling
- close() unblocking a blocked read, idempotency and thread join
- Read timeout recovery
- Transport fault containment
"""
import errno
import socket
import threading
import time
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from mocktcp.engine.connection import ClientConnection
from mocktcp.engine.hooks import CompositeHooks, MessageHooks
from mocktcp.models import ConnectionStatus, ServerBehavior

from support import wait_until

TERMINATOR = b"\r\n\n"


@pytest.fixture
def socket_pair():
    server_side, client_side = socket.socketpair()
    client_side.settimeout(5.0)
    yield server_side, client_side
    client_side.close()
    server_side.close()


def _connection(server_side, **behavior) -> ClientConnection:
    return ClientConnection(
        server_side,
        peer=("local", 40000),
        server_port=6789,
        behavior=ServerBehavior(**behavior),
    )


def _recv_exactly(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


class TestReplies:

    def test_terminated_message_is_acknowledged(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side)
        connection.start()

        client_side.sendall(b"<root/>" + TERMINATOR)

        assert _recv_exactly(client_side, 1) == b"A"
        assert wait_until(lambda: connection.messages_received == 1)
        assert connection.assertion_error is None
        connection.close()

    def test_mismatch_is_negatively_acknowledged(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side, expected_message="<root/>.*")
        connection.start()

        client_side.sendall(b"<other/>" + TERMINATOR)

        assert _recv_exactly(client_side, 1) == b"N"
        assert connection.assertion_error is not None
        assert connection.assertion_error.actual == "<other/>\r\n\n"
        connection.close()

    def test_assertion_resets_for_next_message(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side, expected_message="<root/>.*")
        connection.start()

        client_side.sendall(b"<other/>" + TERMINATOR)
        assert _recv_exactly(client_side, 1) == b"N"
        client_side.sendall(b"<root/>" + TERMINATOR)
        assert _recv_exactly(client_side, 1) == b"A"

        assert connection.assertion_error is None
        assert connection.messages_received == 2
        connection.close()

    def test_always_nak(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side, always_nak=True)
        connection.start()

        client_side.sendall(b"<root/>" + TERMINATOR)

        assert _recv_exactly(client_side, 1) == b"N"
        assert connection.assertion_error is None
        connection.close()

    def test_no_response_sends_nothing(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side, no_response=True)
        connection.start()

        client_side.sendall(b"<root/>" + TERMINATOR)
        assert wait_until(lambda: connection.messages_received == 1)

        client_side.settimeout(0.3)
        with pytest.raises(socket.timeout):
            client_side.recv(1)
        connection.close()

    def test_custom_ack_and_nak(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side, ack=b"OK", nak=b"KO", expected_message="good.*")
        connection.start()

        client_side.sendall(b"good" + TERMINATOR)
        assert _recv_exactly(client_side, 2) == b"OK"
        client_side.sendall(b"bad" + TERMINATOR)
        assert _recv_exactly(client_side, 2) == b"KO"
        connection.close()


class TestFraming:

    def test_custom_terminator(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side, terminator=b"xyz")
        connection.start()

        client_side.sendall(b"helloxyz")

        assert _recv_exactly(client_side, 1) == b"A"
        assert connection.last_message.message_text(b"xyz") == "hello"
        connection.close()

    def test_two_messages_in_one_write(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side)
        connection.start()

        client_side.sendall(b"one" + TERMINATOR + b"two" + TERMINATOR)

        assert _recv_exactly(client_side, 2) == b"AA"
        assert wait_until(lambda: connection.messages_received == 2)
        assert connection.last_message.to_text() == "two\r\n\n"
        connection.close()

    def test_message_split_across_writes(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side)
        connection.start()

        client_side.sendall(b"<ro")
        time.sleep(0.05)
        client_side.sendall(b"ot/>\r\n")
        time.sleep(0.05)
        assert connection.messages_received == 0
        client_side.sendall(b"\n")

        assert _recv_exactly(client_side, 1) == b"A"
        assert connection.last_message.to_text() == "<root/>\r\n\n"
        connection.close()

    def test_hooks_receive_message_and_response(self, socket_pair):
        server_side, client_side = socket_pair
        seen = []
        hooks = MessageHooks.from_callables(
            on_message=lambda conn, message: seen.append(("message", message.to_text())),
            after_response=lambda conn, response: seen.append(("response", response)),
        )
        connection = ClientConnection(server_side, ("local", 1), 6789, hooks=hooks)
        connection.start()

        client_side.sendall(b"hi" + TERMINATOR)

        assert _recv_exactly(client_side, 1) == b"A"
        assert wait_until(lambda: len(seen) == 2)
        assert seen == [("message", "hi\r\n\n"), ("response", b"A")]
        connection.close()


class TestLifecycle:

    def test_probe_closes_quietly(self, socket_pair):
        server_side, client_side = socket_pair

        with capture_logs() as logs:
            connection = _connection(server_side)
            connection.start()
            client_side.shutdown(socket.SHUT_WR)
            assert wait_until(lambda: connection.status == ConnectionStatus.CLOSED)
            connection.join(5)

        assert connection.messages_received == 0
        assert not [log for log in logs if log["log_level"] in ("warning", "error")]

    def test_incomplete_message_is_discarded(self, socket_pair):
        server_side, client_side = socket_pair

        with capture_logs() as logs:
            connection = _connection(server_side)
            connection.start()
            client_side.sendall(b"no terminator")
            client_side.shutdown(socket.SHUT_WR)
            assert wait_until(lambda: connection.status == ConnectionStatus.CLOSED)
            connection.join(5)

        assert connection.messages_received == 0
        assert any(log["event"] == "incomplete_message_discarded" for log in logs)

    def test_close_unblocks_blocked_read(self, socket_pair):
        server_side, _client_side = socket_pair
        connection = _connection(server_side)
        connection.start()
        time.sleep(0.1)

        started = time.monotonic()
        connection.close()

        assert time.monotonic() - started < 5.0
        assert connection.status == ConnectionStatus.CLOSED
        assert not connection._thread.is_alive()
        assert server_side.fileno() == -1

    def test_on_close_runs_once_after_socket_release(self, socket_pair):
        server_side, client_side = socket_pair
        closed = []
        hooks = MessageHooks.from_callables(
            on_close=lambda conn: closed.append((conn.status, server_side.fileno())),
        )
        connection = ClientConnection(server_side, ("local", 1), 6789, hooks=hooks)
        connection.start()

        client_side.shutdown(socket.SHUT_WR)
        connection.join(5)
        connection.close()

        assert closed == [(ConnectionStatus.CLOSED, -1)]

    def test_failing_on_close_hook_is_logged(self):
        sock = MagicMock(spec=socket.socket)
        sock.recv.return_value = b""

        def _explode(conn):
            raise RuntimeError("hook failed")

        with capture_logs() as logs:
            connection = ClientConnection(
                sock, ("local", 1), 6789, hooks=MessageHooks.from_callables(on_close=_explode)
            )
            connection.run()

        assert connection.status == ConnectionStatus.CLOSED
        assert any(log["event"] == "on_close_hook_failed" for log in logs)

    def test_failing_on_close_hook_does_not_skip_the_others(self):
        sock = MagicMock(spec=socket.socket)
        sock.recv.return_value = b""
        closed = []

        def _explode(conn):
            raise RuntimeError("hook failed")

        hooks = CompositeHooks(
            MessageHooks.from_callables(on_close=_explode),
            MessageHooks.from_callables(on_close=closed.append),
        )
        connection = ClientConnection(sock, ("local", 1), 6789, hooks=hooks)
        connection.run()

        assert closed == [connection]

    def test_close_is_idempotent(self, socket_pair):
        server_side, _client_side = socket_pair
        connection = _connection(server_side)
        connection.start()

        connection.close()
        connection.close()

        assert connection.status == ConnectionStatus.CLOSED

    def test_close_before_start_releases_socket(self, socket_pair):
        server_side, _client_side = socket_pair
        connection = _connection(server_side)

        connection.close()

        assert connection.status == ConnectionStatus.CLOSED
        assert server_side.fileno() == -1

    def test_close_after_next_response(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side, close_after_next_response=True)
        connection.start()

        client_side.sendall(b"bye" + TERMINATOR)

        assert _recv_exactly(client_side, 1) == b"A"
        assert wait_until(lambda: connection.status == ConnectionStatus.CLOSED)
        connection.join(5)
        assert client_side.recv(1) == b""

    def test_close_from_another_thread_while_reading(self, socket_pair):
        server_side, client_side = socket_pair
        connection = _connection(server_side)
        connection.start()
        client_side.sendall(b"partial")

        closer = threading.Thread(target=connection.close)
        closer.start()
        closer.join(5)

        assert not closer.is_alive()
        assert connection.status == ConnectionStatus.CLOSED


class TestReadTimeout:

    def test_stalled_peer_is_logged_and_reading_resumes(self, socket_pair):
        server_side, client_side = socket_pair

        with capture_logs() as logs:
            connection = ClientConnection(
                server_side,
                ("local", 1),
                6789,
                read_timeout_sec=0.1,
            )
            connection.start()
            client_side.sendall(b"hel")
            time.sleep(0.35)
            client_side.sendall(b"lo" + TERMINATOR)
            reply = _recv_exactly(client_side, 1)
            connection.close()

        assert reply == b"A"
        assert connection.last_message.to_text() == "hello\r\n\n"
        timeouts = [log for log in logs if log["event"] == "connection_read_timeout"]
        assert timeouts
        assert all(log["log_level"] == "warning" for log in timeouts)


class TestFaultContainment:

    @staticmethod
    def _mock_socket(send_error: OSError) -> MagicMock:
        sock = MagicMock(spec=socket.socket)
        sock.recv.side_effect = [b"hi" + TERMINATOR, b""]
        sock.sendall.side_effect = send_error
        return sock

    def test_peer_reset_is_a_warning(self):
        sock = self._mock_socket(ConnectionResetError(errno.ECONNRESET, "reset"))

        with capture_logs() as logs:
            connection = ClientConnection(sock, ("local", 1), 6789)
            connection.run()

        assert connection.status == ConnectionStatus.CLOSED
        sock.close.assert_called_once()
        events = {log["event"]: log["log_level"] for log in logs}
        assert events["connection_transport_closed"] == "warning"
        assert "connection_io_error" not in events

    def test_other_io_error_is_an_error(self):
        sock = self._mock_socket(OSError(errno.EIO, "I/O error"))

        with capture_logs() as logs:
            connection = ClientConnection(sock, ("local", 1), 6789)
            connection.run()

        assert connection.status == ConnectionStatus.CLOSED
        sock.close.assert_called_once()
        events = {log["event"]: log["log_level"] for log in logs}
        assert events["connection_io_error"] == "error"

    def test_failing_hook_closes_connection(self):
        sock = MagicMock(spec=socket.socket)
        sock.recv.side_effect = [b"hi" + TERMINATOR, b""]

        def _explode(conn, message):
            raise RuntimeError("hook failed")

        connection = ClientConnection(
            sock, ("local", 1), 6789, hooks=MessageHooks.from_callables(on_message=_explode)
        )
        connection.run()

        assert connection.status == ConnectionStatus.CLOSED
        sock.sendall.assert_not_called()
