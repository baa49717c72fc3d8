"""Connection registry for the signaling relay.

Tracks every live signaling connection and its current partner. All
mutators are synchronous: on the single asyncio event loop that drives the
relay, a call that never awaits cannot interleave with another, so a pair
or unpair is always applied to both sides before any other handler runs.
"""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class PeerHandle(ABC):
    """Transport handle for one signaling connection.

    The relay only ever needs to push a text frame or close the connection.
    """

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send one text frame.

        Raises:
            ConnectionError: If the underlying connection is closed
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the underlying connection."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if the connection can still accept writes."""
        pass


@dataclass
class Connection:
    """One registry entry per live signaling session."""

    id: str
    peer: PeerHandle
    partner_id: str | None = None
    connected_at: float = field(default_factory=time.monotonic)
    paired_at: float | None = None

    @property
    def is_paired(self) -> bool:
        return self.partner_id is not None


class ConnectionRegistry:
    """In-memory store of live connections and their partnerships.

    Invariant: ``a.partner_id == b.id`` iff ``b.partner_id == a.id``.

    Thread-safety: NOT thread-safe. Use from the relay's event loop only.
    """

    def __init__(self, id_bytes: int = 16) -> None:
        """Initialize an empty registry.

        Args:
            id_bytes: Entropy of generated connection ids
        """
        self._connections: dict[str, Connection] = {}
        self._id_bytes = id_bytes

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def _new_id(self) -> str:
        while True:
            connection_id = secrets.token_urlsafe(self._id_bytes)
            if connection_id not in self._connections:
                return connection_id

    def register(self, peer: PeerHandle) -> str:
        """Create and store a Connection for ``peer``.

        Returns:
            The new connection's unique id
        """
        connection_id = self._new_id()
        self._connections[connection_id] = Connection(id=connection_id, peer=peer)
        logger.info(
            "Connection registered",
            extra={"connection_id": connection_id, "connections": len(self._connections)},
        )
        return connection_id

    def lookup(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def unregister(self, connection_id: str) -> str | None:
        """Remove a connection, atomically unpairing its partner.

        Args:
            connection_id: Connection to remove

        Returns:
            The former partner's id (so the caller can notify it), or None
            if the connection had no partner or was already removed
        """
        if connection_id not in self._connections:
            return None

        partner_id = self.unpair(connection_id)
        del self._connections[connection_id]

        logger.info(
            "Connection unregistered",
            extra={
                "connection_id": connection_id,
                "partner_id": partner_id,
                "connections": len(self._connections),
            },
        )
        return partner_id

    def pair(self, first_id: str, second_id: str) -> bool:
        """Establish a symmetric partnership.

        Returns:
            True if paired; False if either side is unknown, already paired,
            or both ids are the same connection
        """
        if first_id == second_id:
            return False

        first = self._connections.get(first_id)
        second = self._connections.get(second_id)
        if first is None or second is None:
            return False
        if first.is_paired or second.is_paired:
            return False

        now = time.monotonic()
        first.partner_id = second_id
        second.partner_id = first_id
        first.paired_at = now
        second.paired_at = now
        return True

    def unpair(self, connection_id: str) -> str | None:
        """Dissolve the partnership of ``connection_id`` on both sides.

        Returns:
            The former partner's id, or None if there was no partnership
        """
        connection = self._connections.get(connection_id)
        if connection is None or connection.partner_id is None:
            return None

        partner_id = connection.partner_id
        connection.partner_id = None
        connection.paired_at = None

        partner = self._connections.get(partner_id)
        if partner is not None and partner.partner_id == connection_id:
            partner.partner_id = None
            partner.paired_at = None

        return partner_id

    def partner_of(self, connection_id: str) -> Connection | None:
        """Return the partner Connection of ``connection_id``, if any."""
        connection = self._connections.get(connection_id)
        if connection is None or connection.partner_id is None:
            return None
        return self._connections.get(connection.partner_id)

    def ids(self) -> list[str]:
        return list(self._connections)

    def snapshot(self) -> dict[str, int]:
        """Get registry counts for health and metrics reporting."""
        paired = sum(1 for c in self._connections.values() if c.is_paired)
        return {"connections": len(self._connections), "paired": paired}
