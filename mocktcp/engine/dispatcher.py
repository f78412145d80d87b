"""
Outbound dispatcher - forwards configured responses to downstream endpoints.

Each delivery uses its own short-lived connection. Failures are logged and
recorded, never retried, and never abort sibling deliveries.
"""
from __future__ import annotations

import threading
from typing import Iterable, List, Optional

import structlog

from mocktcp.config import settings
from mocktcp.engine.client import TCPClient
from mocktcp.exceptions import DispatchError, TransportError
from mocktcp.models import (
    DEFAULT_ACK,
    DEFAULT_NAK,
    DispatchOutcome,
    DispatchRecord,
    ResponseDelivery,
)

logger = structlog.get_logger()


class OutboundDispatcher:
    """Sends ResponseDelivery payloads and records the outcome of each."""

    def __init__(
        self,
        connect_timeout_sec: Optional[float] = None,
        wait_for_ack: Optional[bool] = None,
        ack_timeout_sec: Optional[float] = None,
        ack: bytes = DEFAULT_ACK,
        nak: bytes = DEFAULT_NAK,
    ):
        self.connect_timeout_sec = (
            connect_timeout_sec if connect_timeout_sec is not None else settings.connect_timeout_sec
        )
        self.wait_for_ack = wait_for_ack if wait_for_ack is not None else settings.dispatch_wait_for_ack
        self.ack_timeout_sec = ack_timeout_sec if ack_timeout_sec is not None else settings.ack_timeout_sec
        self.ack = ack
        self.nak = nak

    def dispatch(self, delivery: ResponseDelivery) -> DispatchRecord:
        """
        Deliver one payload.

        Args:
            delivery: Target host/port and payload

        Returns:
            DispatchRecord describing the attempt (never raises for I/O faults)
        """
        client = TCPClient(
            delivery.host,
            delivery.port,
            timeout_sec=self.connect_timeout_sec,
            ack=self.ack,
            nak=self.nak,
            response_terminator=None,
        )
        try:
            reply = client.send(
                delivery.payload_bytes,
                wait_for_response=self.wait_for_ack,
                timeout_sec=self.ack_timeout_sec,
            )
            outcome = self._classify(reply.to_bytes() if reply is not None else None)
        except (TransportError, DispatchError, OSError) as e:
            logger.error(
                "dispatch_failed",
                host=delivery.host,
                port=delivery.port,
                error=str(e),
                error_type=type(e).__name__,
            )
            return DispatchRecord.for_delivery(delivery, DispatchOutcome.FAILED, error=str(e))
        finally:
            client.close()

        logger.info(
            "dispatch_sent",
            host=delivery.host,
            port=delivery.port,
            size=len(delivery.payload_bytes),
            outcome=outcome.value,
        )
        return DispatchRecord.for_delivery(delivery, outcome)

    def _classify(self, reply: Optional[bytes]) -> DispatchOutcome:
        if reply is None:
            return DispatchOutcome.SENT
        if reply == self.ack:
            return DispatchOutcome.ACKNOWLEDGED
        if reply == self.nak:
            return DispatchOutcome.REJECTED
        raise DispatchError("Unrecognised acknowledgement", details={"reply": reply.hex()})

    def dispatch_all(self, deliveries: Iterable[ResponseDelivery]) -> List[DispatchRecord]:
        """
        Deliver every payload concurrently and wait for all of them.

        Records are returned in the order the deliveries were given.
        """
        deliveries = list(deliveries)
        if not deliveries:
            return []

        records: List[Optional[DispatchRecord]] = [None] * len(deliveries)

        def _run(index: int, delivery: ResponseDelivery) -> None:
            try:
                records[index] = self.dispatch(delivery)
            except Exception as e:
                logger.exception("dispatch_crashed", host=delivery.host, port=delivery.port)
                records[index] = DispatchRecord.for_delivery(delivery, DispatchOutcome.FAILED, error=str(e))

        threads = [
            threading.Thread(
                target=_run,
                args=(index, delivery),
                name=f"Dispatch-{delivery.host}-{delivery.port}",
                daemon=True,
            )
            for index, delivery in enumerate(deliveries)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        return [record for record in records if record is not None]
