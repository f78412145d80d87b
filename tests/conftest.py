from typing import List

import pytest

from mocktcp.engine.server import MockTCPServer
from support import LOCALHOST


@pytest.fixture
def server_factory():
    """Start MockTCPServers on ephemeral localhost ports; close them afterwards."""
    servers: List[MockTCPServer] = []

    def _create(**kwargs) -> MockTCPServer:
        kwargs.setdefault("port", 0)
        kwargs.setdefault("host", LOCALHOST)
        server = MockTCPServer(**kwargs)
        server.start()
        servers.append(server)
        return server

    yield _create

    for server in servers:
        server.close()
