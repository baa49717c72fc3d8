"""Signaling message router.

Validates inbound envelopes and either forwards them to the sender's
current partner or answers locally (match, next, leave, ping).

Every handler applies its registry/queue mutations synchronously first and
only then awaits network sends, so a partnership is never observable in a
half-applied state. Sends are fire-and-forget: a write that fails because
the target socket is closed is dropped, not queued or retried.
"""

import logging
import time

from pydantic import BaseModel

from src.relay.matchmaking import MatchmakingQueue
from src.relay.metrics import MetricsCollector
from src.relay.protocol import (
    AnswerMessage,
    ErrorMessage,
    IceMessage,
    LeaveMessage,
    MatchMessage,
    MatchRequest,
    NextMessage,
    OfferMessage,
    PingMessage,
    PongMessage,
    ProtocolError,
    encode,
    parse_client_message,
)
from src.relay.registry import ConnectionRegistry, PeerHandle

logger = logging.getLogger(__name__)

INVALID_MESSAGE_ERROR = "Invalid message format"
INTERNAL_ERROR = "Internal server error"


class MessageRouter:
    """Routes signaling envelopes between paired connections.

    Owns no state of its own; all partnership state lives in the injected
    ConnectionRegistry and MatchmakingQueue.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        queue: MatchmakingQueue,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize router.

        Args:
            registry: Connection registry shared with the queue
            queue: Matchmaking queue bound to the same registry
            metrics: Metrics collector (a private one is created if omitted)
        """
        self.registry = registry
        self.queue = queue
        self.metrics = metrics or MetricsCollector()

    def connect(self, peer: PeerHandle) -> str:
        """Register a newly opened signaling connection.

        Returns:
            The connection's id
        """
        connection_id = self.registry.register(peer)
        self.metrics.record_connection_open()
        return connection_id

    async def handle_message(self, connection_id: str, raw: str | bytes) -> None:
        """Handle one inbound frame from ``connection_id``.

        Malformed input is answered with an error envelope to the sender
        alone. Any other failure is contained to this connection.
        """
        if connection_id not in self.registry:
            logger.debug(
                "Message from unregistered connection dropped",
                extra={"connection_id": connection_id},
            )
            return

        try:
            message = parse_client_message(raw)
        except ProtocolError as e:
            self.metrics.record_invalid()
            logger.warning(
                "Invalid signaling envelope",
                extra={"connection_id": connection_id, "error": str(e)},
            )
            await self._send(connection_id, ErrorMessage(message=INVALID_MESSAGE_ERROR))
            return

        try:
            await self._dispatch(connection_id, message)
        except Exception as e:
            logger.error(
                "Error handling signaling message",
                extra={
                    "connection_id": connection_id,
                    "type": message.type,
                    "error": str(e),
                },
                exc_info=True,
            )
            await self._send(connection_id, ErrorMessage(message=INTERNAL_ERROR))

    async def _dispatch(self, connection_id: str, message: BaseModel) -> None:
        if isinstance(message, MatchRequest):
            await self.request_match(connection_id)
        elif isinstance(message, OfferMessage | AnswerMessage | IceMessage):
            await self._forward(connection_id, message)
        elif isinstance(message, NextMessage):
            await self._next(connection_id)
        elif isinstance(message, LeaveMessage):
            await self.disconnect(connection_id, close=True)
        elif isinstance(message, PingMessage):
            await self._send(connection_id, PongMessage(ts=message.ts))

    async def request_match(self, connection_id: str) -> None:
        """Run matchmaking for ``connection_id`` and notify both sides."""
        result = self.queue.request_match(connection_id)
        self.metrics.set_queue_depth(len(self.queue))
        if result is None:
            return

        self.metrics.record_match()
        await self._send(
            result.initiator_id,
            MatchMessage(partner_id=result.responder_id, initiator=True),
        )
        await self._send(
            result.responder_id,
            MatchMessage(partner_id=result.initiator_id, initiator=False),
        )

    async def _forward(
        self, connection_id: str, message: OfferMessage | AnswerMessage | IceMessage
    ) -> None:
        partner = self.registry.partner_of(connection_id)
        if partner is None:
            # Partner already left; sender times out on its own
            self.metrics.record_dropped()
            logger.debug(
                "No partner, envelope dropped",
                extra={"connection_id": connection_id, "type": message.type},
            )
            return

        relayed = message.model_copy(update={"from_id": connection_id})
        if await self._send(partner.id, relayed):
            self.metrics.record_forwarded()
            logger.debug(
                "Envelope relayed",
                extra={"from": connection_id, "to": partner.id, "type": message.type},
            )

    async def _next(self, connection_id: str) -> None:
        partner_id = self._unpair(connection_id)
        self.queue.remove(connection_id)

        if partner_id is not None:
            logger.info(
                "Partner abandoned",
                extra={"connection_id": connection_id, "partner_id": partner_id},
            )
            await self._send(partner_id, NextMessage())

        await self.request_match(connection_id)

    async def disconnect(self, connection_id: str, close: bool = False) -> None:
        """Remove a connection entirely (explicit leave or transport close).

        Idempotent: only the first call for a given id has any effect, so a
        socket close racing an in-flight ``leave`` is handled exactly once.

        Args:
            connection_id: Connection to remove
            close: Also close the underlying transport handle
        """
        connection = self.registry.lookup(connection_id)
        if connection is None:
            return

        self.queue.remove(connection_id)
        self._record_pair_end(connection_id)
        partner_id = self.registry.unregister(connection_id)

        self.metrics.record_connection_close()
        self.metrics.set_queue_depth(len(self.queue))

        if partner_id is not None:
            await self._send(partner_id, NextMessage())

        if close:
            try:
                await connection.peer.close()
            except ConnectionError as e:
                logger.debug(
                    "Error closing connection",
                    extra={"connection_id": connection_id, "error": str(e)},
                )

    def _unpair(self, connection_id: str) -> str | None:
        self._record_pair_end(connection_id)
        return self.registry.unpair(connection_id)

    def _record_pair_end(self, connection_id: str) -> None:
        connection = self.registry.lookup(connection_id)
        if connection is not None and connection.paired_at is not None:
            self.metrics.record_pair_ended(time.monotonic() - connection.paired_at)

    async def _send(self, connection_id: str, message: BaseModel) -> bool:
        """Send an envelope, dropping it if the target cannot accept it.

        Returns:
            True if the frame was handed to the transport
        """
        connection = self.registry.lookup(connection_id)
        if connection is None or not connection.peer.is_open:
            self.metrics.record_dropped()
            return False

        try:
            await connection.peer.send(encode(message))
            return True
        except ConnectionError as e:
            self.metrics.record_dropped()
            logger.warning(
                "Send failed, envelope dropped",
                extra={"connection_id": connection_id, "type": message.type, "error": str(e)},
            )
            return False
