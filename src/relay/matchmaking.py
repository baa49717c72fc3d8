"""FIFO matchmaking queue.

Pairs the earliest waiting connection with the next one that asks. The
requester is always the initiator; the party popped from the queue is not.
Repeat pairings with a previous partner are permitted.
"""

import logging
from dataclasses import dataclass

from src.relay.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchResult:
    """Outcome of a successful pairing."""

    initiator_id: str  # Connection that called request_match
    responder_id: str  # Connection popped from the queue


class MatchmakingQueue:
    """Ordered set of connection ids awaiting a partner.

    Invariants:
    - An id appears at most once.
    - A paired connection never appears in the queue.

    All methods are synchronous so that every queue mutation and the
    registry pairing it triggers happen in one uninterrupted step.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        # dict preserves insertion order; values unused
        self._waiting: dict[str, None] = {}

    def __len__(self) -> int:
        return len(self._waiting)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._waiting

    def waiting(self) -> list[str]:
        """Get waiting connection ids in FIFO order."""
        return list(self._waiting)

    def enqueue(self, connection_id: str) -> None:
        """Append to the tail; no-op if already queued."""
        if connection_id not in self._waiting:
            self._waiting[connection_id] = None

    def dequeue(self) -> str | None:
        """Pop the earliest-enqueued id, or None if empty."""
        if not self._waiting:
            return None
        connection_id = next(iter(self._waiting))
        del self._waiting[connection_id]
        return connection_id

    def remove(self, connection_id: str) -> bool:
        """Remove an id wherever it sits. Returns True if it was queued."""
        if connection_id not in self._waiting:
            return False
        del self._waiting[connection_id]
        return True

    def request_match(self, connection_id: str) -> MatchResult | None:
        """Pair ``connection_id`` with the earliest waiting connection.

        If no candidate is waiting, ``connection_id`` is enqueued instead.

        Args:
            connection_id: Requesting connection

        Returns:
            MatchResult if a pairing was made, otherwise None (enqueued,
            already paired, or unknown connection)
        """
        connection = self._registry.lookup(connection_id)
        if connection is None:
            # Connection already gone
            return None
        if connection.is_paired:
            logger.debug(
                "Match request from paired connection ignored",
                extra={"connection_id": connection_id},
            )
            return None

        if connection_id in self._waiting:
            # Already waiting; re-requesting is a no-op
            return None

        while (candidate_id := self.dequeue()) is not None:
            if self._registry.pair(connection_id, candidate_id):
                logger.info(
                    "Connections matched",
                    extra={
                        "initiator_id": connection_id,
                        "responder_id": candidate_id,
                        "waiting": len(self._waiting),
                    },
                )
                return MatchResult(initiator_id=connection_id, responder_id=candidate_id)

            logger.warning(
                "Discarded stale queue entry",
                extra={"connection_id": candidate_id},
            )

        self.enqueue(connection_id)
        logger.info(
            "Connection waiting for partner",
            extra={"connection_id": connection_id, "waiting": len(self._waiting)},
        )
        return None
