"""Client-side negotiation state machine.

One NegotiationSession drives one user's calls: it acquires the
microphone, opens the signaling channel, reacts to matches, runs the
offer/answer handshake, buffers early ICE candidates and hands link
recovery to a RecoveryController.

Every input (user action, relay envelope, transport callback, timer) is an
event posted with ``dispatch``. A single consumer task applies events one
at a time, so no two handlers for the session ever interleave.

State Transitions:
- IDLE → SEARCHING (on start, after the microphone is acquired)
- SEARCHING → CONNECTING (on match, or on an offer with no call in progress)
- CONNECTING → CONNECTING (offer applied, answer sent)
- CONNECTING → CONNECTED (answer applied, transport connected, or remote media)
- CONNECTING | CONNECTED → SEARCHING (partner left, user next, handshake failure)
- * → IDLE (user end, or signaling channel lost)
"""

import asyncio
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from src.client.candidate_buffer import CandidateBuffer
from src.client.capabilities import (
    HandshakeError,
    MediaCapability,
    MediaUnavailableError,
    Notifier,
    PeerTransport,
    PeerTransportFactory,
    SignalingChannel,
    SignalingConnector,
    TransportEvents,
)
from src.client.config import ClientConfig
from src.client.recovery import RECOVERED_STATES, RecoveryController
from src.client.signaling import Heartbeat
from src.relay.protocol import (
    AnswerMessage,
    ErrorMessage,
    IceMessage,
    LeaveMessage,
    MatchMessage,
    MatchRequest,
    NextMessage,
    OfferMessage,
    PongMessage,
)

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Session state machine states."""

    IDLE = "idle"
    SEARCHING = "searching"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# Valid state transitions
VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.IDLE: {ConnectionState.SEARCHING},
    ConnectionState.SEARCHING: {ConnectionState.CONNECTING, ConnectionState.IDLE},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.SEARCHING,
        ConnectionState.IDLE,
    },
    ConnectionState.CONNECTED: {ConnectionState.SEARCHING, ConnectionState.IDLE},
}


class InvalidTransitionError(ValueError):
    """Raised when an event asks for a transition the table forbids."""

    def __init__(self, current: ConnectionState, requested: ConnectionState) -> None:
        super().__init__(f"Invalid state transition: {current.value} → {requested.value}")
        self.current = current
        self.requested = requested


# === Events ===


@dataclass(frozen=True)
class StartRequested:
    """User pressed start."""


@dataclass(frozen=True)
class NextRequested:
    """User wants a different partner."""


@dataclass(frozen=True)
class EndRequested:
    """User cancelled the search or ended the call."""


@dataclass(frozen=True)
class MuteToggled:
    muted: bool


@dataclass(frozen=True)
class SignalReceived:
    """Envelope arrived from the relay."""

    message: BaseModel


@dataclass(frozen=True)
class SignalingLost:
    """Signaling channel closed without the session asking."""

    channel: SignalingChannel


@dataclass(frozen=True)
class IceCandidateGathered:
    generation: int
    candidate: dict[str, Any] | None


@dataclass(frozen=True)
class IceStateChanged:
    generation: int
    state: str


@dataclass(frozen=True)
class ConnectionStateChanged:
    generation: int
    state: str


@dataclass(frozen=True)
class RemoteTrackArrived:
    generation: int
    track: Any


@dataclass(frozen=True)
class RecoveryTimerExpired:
    generation: int


SessionEvent = (
    StartRequested
    | NextRequested
    | EndRequested
    | MuteToggled
    | SignalReceived
    | SignalingLost
    | IceCandidateGathered
    | IceStateChanged
    | ConnectionStateChanged
    | RemoteTrackArrived
    | RecoveryTimerExpired
)


@dataclass
class CallAttempt:
    """Negotiation state for one pairing.

    Replaced wholesale on rematch or end, never partially reset.
    """

    generation: int
    partner_id: str | None
    initiator: bool
    transport: PeerTransport | None = None
    buffer: CandidateBuffer = field(default_factory=CandidateBuffer)
    recovery: RecoveryController | None = None
    offer_sent: bool = False
    offer_received: bool = False
    awaiting_answer: bool = False
    # False while the call was started by an offer that overtook its match notice
    matched: bool = False
    remote_media: bool = False
    # Set as soon as an abandoning event is queued; in-flight results are discarded
    superseded: bool = False


class NegotiationSession:
    """Per-user call state machine.

    Thread-safety: NOT thread-safe. All events must be dispatched from the
    event loop that runs the session.
    """

    def __init__(
        self,
        media: MediaCapability,
        transport_factory: PeerTransportFactory,
        connector: SignalingConnector,
        notifier: Notifier,
        config: ClientConfig | None = None,
        on_remote_track: Callable[[Any], None] | None = None,
    ) -> None:
        """Initialize negotiation session.

        Args:
            media: Local audio input
            transport_factory: Creates peer transports
            connector: Opens signaling channels
            notifier: Surfaces user-facing notifications
            config: Client configuration (defaults if omitted)
            on_remote_track: Receives the partner's audio track for playback
        """
        self.media = media
        self.transport_factory = transport_factory
        self.connector = connector
        self.notifier = notifier
        self.config = config or ClientConfig()
        self.on_remote_track = on_remote_track

        self.state: ConnectionState = ConnectionState.IDLE
        self.signaling: SignalingChannel | None = None
        self.heartbeat: Heartbeat | None = None
        self.attempt: CallAttempt | None = None
        # Partner abandoned by the last rematch; late offers from it are dropped
        self.left_partner_id: str | None = None
        self.muted = False

        self._generations = itertools.count(1)
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    # === Public entry points ===

    def dispatch(self, event: SessionEvent) -> None:
        """Queue an event for processing. Never blocks."""
        if self._abandons_attempt(event) and self.attempt is not None:
            self.attempt.superseded = True

        self._events.put_nowait(event)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def start(self) -> None:
        self.dispatch(StartRequested())

    def next(self) -> None:
        self.dispatch(NextRequested())

    def end(self) -> None:
        self.dispatch(EndRequested())

    def set_muted(self, muted: bool) -> None:
        self.dispatch(MuteToggled(muted))

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        await self._events.join()

    async def close(self) -> None:
        """End any call, wait for teardown, and stop the worker."""
        self.end()
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

    # === Event loop ===

    def _abandons_attempt(self, event: SessionEvent) -> bool:
        if isinstance(event, NextRequested | EndRequested):
            return True
        if isinstance(event, SignalingLost):
            return event.channel is self.signaling
        return isinstance(event, SignalReceived) and isinstance(event.message, NextMessage)

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handle(event)
            except InvalidTransitionError as e:
                logger.warning(
                    "Event rejected",
                    extra={"event": type(event).__name__, "state": self.state.value, "error": str(e)},
                )
            except Exception as e:
                logger.error(
                    "Unhandled error processing event",
                    extra={"event": type(event).__name__, "error": str(e)},
                    exc_info=True,
                )
                await self._fail_to_idle()
            finally:
                self._events.task_done()

    async def _handle(self, event: SessionEvent) -> None:
        if isinstance(event, StartRequested):
            await self._on_start()
        elif isinstance(event, NextRequested):
            if self.state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                raise InvalidTransitionError(self.state, ConnectionState.SEARCHING)
            await self._rematch()
        elif isinstance(event, EndRequested):
            if self.state != ConnectionState.IDLE:
                await self._teardown_to_idle(send_leave=True)
        elif isinstance(event, MuteToggled):
            self.muted = event.muted
            self.media.set_muted(event.muted)
        elif isinstance(event, SignalReceived):
            await self._on_signal(event.message)
        elif isinstance(event, SignalingLost):
            await self._on_signaling_lost(event.channel)
        elif isinstance(event, IceCandidateGathered):
            await self._on_local_candidate(event)
        elif isinstance(event, IceStateChanged):
            await self._on_ice_state(event)
        elif isinstance(event, ConnectionStateChanged):
            if self._is_current_generation(event.generation) and event.state == "connected":
                self._mark_connected()
        elif isinstance(event, RemoteTrackArrived):
            self._on_remote_track(event)
        elif isinstance(event, RecoveryTimerExpired):
            attempt = self.attempt
            if self._is_current_generation(event.generation) and attempt and attempt.recovery:
                await attempt.recovery.handle_timer_expired()

    def _check_transition(self, new_state: ConnectionState) -> None:
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise InvalidTransitionError(self.state, new_state)

    def _transition(self, new_state: ConnectionState) -> None:
        """Transition session to a new state with validation.

        Raises:
            InvalidTransitionError: If transition is invalid
        """
        self._check_transition(new_state)

        old_state = self.state
        self.state = new_state

        logger.info(
            "Session state transition",
            extra={"from_state": old_state.value, "to_state": new_state.value},
        )

    def _is_current(self, attempt: CallAttempt) -> bool:
        return self.attempt is attempt and not attempt.superseded

    def _is_current_generation(self, generation: int) -> bool:
        return self.attempt is not None and self.attempt.generation == generation

    @staticmethod
    def _from_partner(attempt: CallAttempt, from_id: str | None) -> bool:
        # Envelopes without a sender id cannot be attributed and are accepted
        return attempt.partner_id is None or from_id is None or from_id == attempt.partner_id

    # === User actions ===

    async def _on_start(self) -> None:
        self._check_transition(ConnectionState.SEARCHING)

        logger.info("Requesting microphone access")
        try:
            await self.media.acquire()
        except MediaUnavailableError as e:
            logger.error("Error accessing microphone", extra={"error": str(e)})
            self.notifier.notify(
                "Microphone access required",
                "Please allow microphone access to use voice chat",
                error=True,
            )
            return

        self._transition(ConnectionState.SEARCHING)

        try:
            channel = await self.connector.connect(
                on_message=lambda message: self.dispatch(SignalReceived(message)),
                on_closed=lambda ch: self.dispatch(SignalingLost(ch)),
            )
        except ConnectionError as e:
            logger.error("Failed to connect to server", extra={"error": str(e)})
            self.notifier.notify("Connection error", "Failed to connect to server", error=True)
            await self._teardown_to_idle(send_leave=False)
            return

        self.signaling = channel
        self.heartbeat = Heartbeat(channel, self.config.heartbeat_interval_s)
        self.heartbeat.start()
        await self._send(MatchRequest())

    async def _rematch(self) -> None:
        """Abandon the current pairing and ask the relay for a new one.

        Keeps the microphone and the signaling channel.
        """
        if self.attempt is not None:
            self.left_partner_id = self.attempt.partner_id
        await self._discard_attempt()

        if self.signaling is not None and self.signaling.is_open:
            self._transition(ConnectionState.SEARCHING)
            await self._send(NextMessage())
        else:
            self.notifier.notify("Connection lost", "Please start a new chat")
            await self._teardown_to_idle(send_leave=False)

    # === Relay envelopes ===

    async def _on_signal(self, message: BaseModel) -> None:
        if isinstance(message, MatchMessage):
            await self._on_match(message)
        elif isinstance(message, OfferMessage):
            await self._on_offer(message)
        elif isinstance(message, AnswerMessage):
            await self._on_answer(message)
        elif isinstance(message, IceMessage):
            await self._on_remote_candidate(message)
        elif isinstance(message, NextMessage):
            await self._on_partner_left()
        elif isinstance(message, ErrorMessage):
            logger.error("Server error", extra={"error": message.message})
            self.notifier.notify("Error", message.message, error=True)
        elif isinstance(message, PongMessage):
            if self.heartbeat is not None:
                self.heartbeat.record_pong()

    async def _on_match(self, message: MatchMessage) -> None:
        attempt = self.attempt
        if attempt is not None and not attempt.matched and attempt.partner_id == message.partner_id:
            # The partner's offer overtook the match notice
            logger.debug("Match notice for call already in progress")
            attempt.matched = True
            self.left_partner_id = None
            return
        if self.state == ConnectionState.IDLE:
            raise InvalidTransitionError(self.state, ConnectionState.CONNECTING)

        if attempt is not None:
            # The relay only matches unpaired connections, so this call is already over
            logger.info(
                "Replacing call attempt for previous partner",
                extra={"previous_partner_id": attempt.partner_id, "partner_id": message.partner_id},
            )
            await self._discard_attempt()
            self._transition(ConnectionState.SEARCHING)

        logger.info(
            "Matched with partner",
            extra={"partner_id": message.partner_id, "initiator": message.initiator},
        )
        self.left_partner_id = None
        attempt = self._begin_attempt(message.partner_id, message.initiator)
        attempt.matched = True

        if attempt.initiator:
            await self._send_offer(attempt)

    async def _on_offer(self, message: OfferMessage) -> None:
        if self.state == ConnectionState.IDLE:
            raise InvalidTransitionError(self.state, ConnectionState.CONNECTING)

        attempt = self.attempt
        if attempt is None:
            if message.from_id is not None and message.from_id == self.left_partner_id:
                logger.info("Ignoring offer from previous partner", extra={"from": message.from_id})
                return
            # Offer before (or instead of) our match notification
            attempt = self._begin_attempt(message.from_id, initiator=False)
        elif not self._from_partner(attempt, message.from_id):
            logger.info("Ignoring offer from previous partner", extra={"from": message.from_id})
            return
        elif not message.restart and (attempt.initiator or attempt.offer_received):
            logger.warning(
                "Ignoring offer, negotiation round already started",
                extra={"initiator": attempt.initiator, "from": message.from_id},
            )
            return

        attempt.offer_received = True
        transport = attempt.transport
        if transport is None:
            await self._handshake_failed(attempt, HandshakeError("No peer transport for offer"))
            return

        try:
            await transport.set_remote_description("offer", message.sdp)
            if not self._is_current(attempt):
                return
            await attempt.buffer.drain(transport.add_ice_candidate)
            if not self._is_current(attempt):
                return
            sdp = await transport.create_answer()
        except Exception as e:
            await self._handshake_failed(attempt, e)
            return

        if not self._is_current(attempt):
            logger.info("Discarding answer for abandoned call attempt")
            return

        if self.state == ConnectionState.CONNECTING:
            self._transition(ConnectionState.CONNECTING)
        await self._send(AnswerMessage(sdp=sdp))
        logger.info("Answer sent", extra={"restart": message.restart})

    async def _on_answer(self, message: AnswerMessage) -> None:
        attempt = self.attempt
        if (
            attempt is None
            or attempt.transport is None
            or not attempt.awaiting_answer
            or not self._from_partner(attempt, message.from_id)
        ):
            logger.warning("Ignoring unexpected answer", extra={"from": message.from_id})
            return

        attempt.awaiting_answer = False
        transport = attempt.transport
        try:
            await transport.set_remote_description("answer", message.sdp)
            if not self._is_current(attempt):
                return
            await attempt.buffer.drain(transport.add_ice_candidate)
        except Exception as e:
            await self._handshake_failed(attempt, e)
            return

        if self._is_current(attempt):
            logger.info("Answer processed successfully")
            self._mark_connected()

    async def _on_remote_candidate(self, message: IceMessage) -> None:
        attempt = self.attempt
        if attempt is None or attempt.transport is None:
            logger.debug("ICE candidate with no call in progress dropped")
            return
        if not self._from_partner(attempt, message.from_id):
            logger.debug("ICE candidate from previous partner dropped")
            return

        transport = attempt.transport
        if not transport.has_remote_description and not attempt.buffer.drained:
            logger.debug("Buffering ICE candidate (remote description not yet set)")
            attempt.buffer.add(message.candidate)
            return

        try:
            await transport.add_ice_candidate(message.candidate)
        except Exception as e:
            logger.warning("Error adding ICE candidate", extra={"error": str(e)})

    async def _on_partner_left(self) -> None:
        if self.state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.debug("Partner-left notice with no call in progress ignored")
            return

        logger.info("Partner disconnected")
        self.notifier.notify("Partner disconnected", "Looking for someone new...")
        await self._rematch()

    async def _on_signaling_lost(self, channel: SignalingChannel) -> None:
        if channel is not self.signaling:
            return

        logger.warning("Signaling connection lost", extra={"state": self.state.value})
        self.signaling = None
        if self.state != ConnectionState.IDLE:
            self.notifier.notify("Connection lost", "Please try connecting again")
        await self._teardown_to_idle(send_leave=False)

    # === Transport callbacks ===

    async def _on_local_candidate(self, event: IceCandidateGathered) -> None:
        if not self._is_current_generation(event.generation):
            return
        if event.candidate is None:
            logger.debug("ICE gathering complete")
            return
        await self._send(IceMessage(candidate=event.candidate))

    async def _on_ice_state(self, event: IceStateChanged) -> None:
        attempt = self.attempt
        if attempt is None or attempt.generation != event.generation:
            return

        logger.info("ICE connection state", extra={"ice_state": event.state})
        if event.state in RECOVERED_STATES:
            self._mark_connected()
        if attempt.recovery is not None:
            await attempt.recovery.on_ice_state(event.state)

    def _on_remote_track(self, event: RemoteTrackArrived) -> None:
        attempt = self.attempt
        if attempt is None or attempt.generation != event.generation:
            return

        logger.info("Received remote track", extra={"kind": getattr(event.track, "kind", None)})
        attempt.remote_media = True
        if self.on_remote_track is not None:
            self.on_remote_track(event.track)
        self._mark_connected()

    # === Helpers ===

    def _begin_attempt(self, partner_id: str | None, initiator: bool) -> CallAttempt:
        """Create the transport for a new pairing and move to CONNECTING."""
        self._transition(ConnectionState.CONNECTING)

        generation = next(self._generations)
        attempt = CallAttempt(generation=generation, partner_id=partner_id, initiator=initiator)

        events = TransportEvents(
            on_ice_candidate=lambda c: self.dispatch(IceCandidateGathered(generation, c)),
            on_ice_connection_state=lambda s: self.dispatch(IceStateChanged(generation, s)),
            on_connection_state=lambda s: self.dispatch(ConnectionStateChanged(generation, s)),
            on_track=lambda t: self.dispatch(RemoteTrackArrived(generation, t)),
        )
        transport = self.transport_factory.create(events)
        attempt.transport = transport

        tracks = self.media.tracks
        logger.info("Adding local tracks to peer connection", extra={"count": len(tracks)})
        for track in tracks:
            transport.add_track(track)

        attempt.recovery = RecoveryController(
            restart=lambda: self._restart_ice(attempt),
            current_state=lambda: transport.ice_connection_state,
            delay_s=self.config.recovery_delay_s,
            max_attempts=self.config.max_ice_restarts,
            on_timer_expired=lambda: self.dispatch(RecoveryTimerExpired(generation)),
            on_exhausted=lambda: self.notifier.notify(
                "Connection degraded", "Reconnection attempts exhausted; press next to move on"
            ),
        )

        self.attempt = attempt
        return attempt

    async def _send_offer(self, attempt: CallAttempt) -> None:
        transport = attempt.transport
        if transport is None:
            await self._handshake_failed(attempt, HandshakeError("No peer transport for offer"))
            return

        logger.info("Creating offer as initiator")
        try:
            sdp = await transport.create_offer()
        except Exception as e:
            await self._handshake_failed(attempt, e)
            return

        if not self._is_current(attempt):
            logger.info("Discarding offer for abandoned call attempt")
            return

        attempt.offer_sent = True
        attempt.awaiting_answer = True
        await self._send(OfferMessage(sdp=sdp))

    async def _restart_ice(self, attempt: CallAttempt) -> None:
        if not self._is_current(attempt) or attempt.transport is None:
            return
        if self.signaling is None or not self.signaling.is_open:
            raise ConnectionError("Signaling channel is closed")
        if not attempt.initiator:
            # Restart offers only flow from the initiator so they never collide
            logger.info("Waiting for the initiating peer to restart ICE")
            return

        sdp = await attempt.transport.create_offer(ice_restart=True)
        if not self._is_current(attempt):
            return
        attempt.awaiting_answer = True
        await self._send(OfferMessage(sdp=sdp, restart=True))

    async def _handshake_failed(self, attempt: CallAttempt, error: Exception) -> None:
        if self.attempt is not attempt:
            return
        logger.error("Handshake failed, abandoning pairing", extra={"error": str(error)})
        self.notifier.notify("Connection error", "Failed to establish connection", error=True)
        await self._rematch()

    def _mark_connected(self) -> None:
        if self.state == ConnectionState.CONNECTING:
            self._transition(ConnectionState.CONNECTED)
            self.notifier.notify("Connected!", "Audio call is active")

    async def _send(self, message: BaseModel) -> bool:
        if self.signaling is None or not self.signaling.is_open:
            logger.warning("Cannot send, signaling channel not open", extra={"type": message.type})
            return False
        try:
            await self.signaling.send(message)
            return True
        except ConnectionError as e:
            logger.warning("Send failed", extra={"type": message.type, "error": str(e)})
            return False

    async def _discard_attempt(self) -> None:
        attempt = self.attempt
        self.attempt = None
        if attempt is None:
            return

        attempt.superseded = True
        if attempt.recovery is not None:
            attempt.recovery.cancel()
        attempt.buffer.clear()
        if attempt.transport is not None:
            try:
                await attempt.transport.close()
            except Exception as e:
                logger.warning("Error closing peer transport", extra={"error": str(e)})

    async def _teardown_to_idle(self, send_leave: bool) -> None:
        """Release everything: transport, timers, microphone, signaling."""
        await self._discard_attempt()
        self.left_partner_id = None

        if self.heartbeat is not None:
            self.heartbeat.stop()
            self.heartbeat = None

        await self.media.stop()

        channel = self.signaling
        self.signaling = None
        if channel is not None:
            if send_leave and channel.is_open:
                try:
                    await channel.send(LeaveMessage())
                except ConnectionError as e:
                    logger.debug("Leave not sent", extra={"error": str(e)})
            try:
                await channel.close()
            except Exception as e:
                logger.warning("Error closing signaling channel", extra={"error": str(e)})

        if self.state != ConnectionState.IDLE:
            self._transition(ConnectionState.IDLE)

    async def _fail_to_idle(self) -> None:
        try:
            await self._teardown_to_idle(send_leave=True)
        except Exception as e:
            logger.error("Teardown failed", extra={"error": str(e)}, exc_info=True)
            self.attempt = None
            self.signaling = None
            self.state = ConnectionState.IDLE
