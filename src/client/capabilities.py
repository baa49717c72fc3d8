"""Capability interfaces consumed by the negotiation session.

The session drives a call through these seams without knowing how audio is
captured, how the peer transport is implemented, or how the user is told
about problems. ``src.client.webrtc`` provides the aiortc-backed
implementations; tests provide fakes.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel


class MediaUnavailableError(RuntimeError):
    """Raised when the local audio input cannot be acquired."""


class HandshakeError(RuntimeError):
    """Raised when a session description cannot be created or applied."""


class MediaCapability(ABC):
    """Local audio input (microphone)."""

    @abstractmethod
    async def acquire(self) -> None:
        """Request audio-only input.

        Raises:
            MediaUnavailableError: If access is denied or no device exists
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Release the input device. Safe to call when not acquired."""
        pass

    @abstractmethod
    def set_muted(self, muted: bool) -> None:
        """Enable or disable outgoing audio without renegotiating."""
        pass

    @property
    @abstractmethod
    def tracks(self) -> list[Any]:
        """Media tracks to attach to a transport (empty until acquired)."""
        pass

    @property
    @abstractmethod
    def is_acquired(self) -> bool:
        pass


class TransportEvents:
    """Callbacks a PeerTransport invokes; set by the session on creation."""

    def __init__(
        self,
        on_ice_candidate: Callable[[dict[str, Any] | None], None],
        on_ice_connection_state: Callable[[str], None],
        on_connection_state: Callable[[str], None],
        on_track: Callable[[Any], None],
    ) -> None:
        self.on_ice_candidate = on_ice_candidate
        self.on_ice_connection_state = on_ice_connection_state
        self.on_connection_state = on_connection_state
        self.on_track = on_track


class PeerTransport(ABC):
    """Direct media transport to the partner (an RTCPeerConnection)."""

    @abstractmethod
    def add_track(self, track: Any) -> None:
        pass

    @abstractmethod
    async def create_offer(self, ice_restart: bool = False) -> str:
        """Create an offer, set it as the local description and return its SDP.

        Raises:
            HandshakeError: If the offer cannot be created or applied
        """
        pass

    @abstractmethod
    async def create_answer(self) -> str:
        """Create an answer, set it as the local description and return its SDP.

        Raises:
            HandshakeError: If the answer cannot be created or applied
        """
        pass

    @abstractmethod
    async def set_remote_description(self, kind: str, sdp: str) -> None:
        """Apply the partner's offer or answer.

        Args:
            kind: "offer" or "answer"
            sdp: Session description

        Raises:
            HandshakeError: If the description is rejected
        """
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: dict[str, Any] | None) -> None:
        """Apply one remote connectivity artifact (None = end of candidates)."""
        pass

    @property
    @abstractmethod
    def has_remote_description(self) -> bool:
        pass

    @property
    @abstractmethod
    def ice_connection_state(self) -> str:
        pass

    @property
    @abstractmethod
    def connection_state(self) -> str:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class PeerTransportFactory(ABC):
    """Creates a configured PeerTransport wired to the given events."""

    @abstractmethod
    def create(self, events: TransportEvents) -> PeerTransport:
        pass


class SignalingChannel(ABC):
    """Client end of the signaling WebSocket."""

    @abstractmethod
    async def send(self, message: BaseModel) -> None:
        """Send one envelope.

        Raises:
            ConnectionError: If the channel is closed
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass


class SignalingConnector(ABC):
    """Opens signaling channels for a session."""

    @abstractmethod
    async def connect(
        self,
        on_message: Callable[[BaseModel], None],
        on_closed: Callable[[SignalingChannel], None],
    ) -> SignalingChannel:
        """Open a new signaling channel.

        Args:
            on_message: Called with each parsed server envelope
            on_closed: Called once if the channel closes without ``close()``

        Raises:
            ConnectionError: If the relay cannot be reached
        """
        pass


class Notifier(ABC):
    """Surfaces user-facing notifications (toasts, console lines)."""

    @abstractmethod
    def notify(self, title: str, description: str, error: bool = False) -> None:
        pass
