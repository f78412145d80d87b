"""
Response registry - maps a received message to the deliveries it triggers.

The registry is populated during setup and frozen when a server starts
serving, after which connections read it concurrently without locking.
"""
from __future__ import annotations

from typing import Dict, Iterator, Tuple

import structlog

from mocktcp.exceptions import RegistryFrozenError
from mocktcp.models import ResponseDelivery

logger = structlog.get_logger()


class ResponseRegistry:
    """Message key -> ordered set of ResponseDelivery."""

    def __init__(self):
        # Inner dicts act as insertion-ordered sets
        self._responses: Dict[str, Dict[ResponseDelivery, None]] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "ResponseRegistry":
        self._frozen = True
        return self

    def add(self, key: str, delivery: ResponseDelivery) -> None:
        """
        Register a delivery for a received message.

        Args:
            key: Received message text without its terminator
            delivery: Downstream target and payload

        Raises:
            RegistryFrozenError: If the registry is already being served
        """
        if self._frozen:
            raise RegistryFrozenError(
                "Responses cannot be added once the registry is in use",
                details={"key": key},
            )
        deliveries = self._responses.setdefault(key, {})
        if delivery in deliveries:
            logger.debug("response_duplicate_ignored", key=key, host=delivery.host, port=delivery.port)
            return
        deliveries[delivery] = None

    def lookup(self, key: str) -> Tuple[ResponseDelivery, ...]:
        return tuple(self._responses.get(key, ()))

    def keys(self) -> Tuple[str, ...]:
        return tuple(self._responses)

    def items(self) -> Iterator[Tuple[str, Tuple[ResponseDelivery, ...]]]:
        for key, deliveries in self._responses.items():
            yield key, tuple(deliveries)

    def __contains__(self, key: object) -> bool:
        return key in self._responses

    def __len__(self) -> int:
        return len(self._responses)

    def __repr__(self) -> str:
        entries = {key: [str(d) for d in deliveries] for key, deliveries in self.items()}
        return f"ResponseRegistry({entries})"
