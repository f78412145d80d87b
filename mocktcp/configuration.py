"""
File-based configuration of the ports to listen on and the responses each
port forwards.

The file is JSON validated by the models in mocktcp.models. When it does
not exist it is written with defaults first, so deleting it is a way to
reset to factory settings on the next start.
"""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Union

import structlog
from pydantic import ValidationError

from mocktcp.config import settings
from mocktcp.engine.responses import ResponseRegistry
from mocktcp.exceptions import ConfigurationError
from mocktcp.models import (
    ConfigurationFile,
    IncomingDefinition,
    ResponseDefinition,
    ResponseDelivery,
    ServerDefinition,
)

logger = structlog.get_logger()


def default_configuration() -> ConfigurationFile:
    """Factory settings written when no configuration file exists."""
    return ConfigurationFile(
        servers=[
            ServerDefinition(
                port=settings.default_port,
                incoming=[
                    IncomingDefinition(
                        message="Incoming Message One",
                        responses=[
                            ResponseDefinition(
                                host="localhost",
                                port=1234,
                                message="Response to destinationA\\u000d\\u000a\\u000a",
                            ),
                            ResponseDefinition(
                                host="localhost",
                                port=1234,
                                message="Response to destinationB\\u000d\\u000a\\u000a",
                            ),
                        ],
                    )
                ],
            )
        ]
    )


def unescape_payload(text: str) -> str:
    r"""Decode backslash escapes such as \r, \n and \u000d in a payload."""
    return text.encode("latin-1", "backslashreplace").decode("unicode_escape")


class ConfigurationSettings:
    """Reads (and on first use writes) the mock server configuration file."""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        initialise: Optional[bool] = None,
    ):
        self.path = Path(path) if path is not None else settings.configuration_file
        self.initialise = initialise if initialise is not None else settings.initialise_configuration
        self._document: Optional[ConfigurationFile] = None

    def load(self) -> ConfigurationFile:
        """
        Parse and validate the configuration file.

        Returns:
            The validated configuration document

        Raises:
            ConfigurationError: File missing (with initialisation disabled),
                unreadable or invalid
        """
        if self._document is not None:
            return self._document

        if not self.path.exists():
            if not self.initialise:
                raise ConfigurationError(
                    f"Configuration file not found: {self.path}",
                    details={"path": str(self.path)},
                )
            self.write_defaults()

        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(
                f"Unable to read configuration file {self.path}: {e}",
                details={"path": str(self.path), "error": str(e)},
            )

        try:
            document = ConfigurationFile.model_validate_json(text)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self.path}",
                details={"path": str(self.path), "errors": e.errors(include_url=False)},
            )

        logger.info("configuration_loaded", path=str(self.path), servers=len(document.servers))
        self._document = document
        return document

    def reload(self) -> ConfigurationFile:
        self._document = None
        return self.load()

    def write_defaults(self) -> Path:
        """Write the factory settings, creating the parent directory."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(default_configuration().model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                f"Unable to write default configuration to {self.path}: {e}",
                details={"path": str(self.path), "error": str(e)},
            )
        logger.info("configuration_defaults_written", path=str(self.path))
        return self.path

    def ports(self) -> List[int]:
        return sorted({server.port for server in self.load().servers})

    def servers(self, port: int) -> List[ServerDefinition]:
        return [server for server in self.load().servers if server.port == port]

    def responses(self, port: int) -> ResponseRegistry:
        """Build the response registry for one port."""
        registry = ResponseRegistry()
        for server in self.servers(port):
            for incoming in server.incoming:
                for response in incoming.responses:
                    registry.add(
                        incoming.message,
                        ResponseDelivery(
                            host=response.host,
                            port=response.port,
                            payload=unescape_payload(response.message),
                        ),
                    )
        return registry
