"""Unit tests for the client negotiation state machine.

Drives a NegotiationSession through fake media, transport, signaling and
notifier capabilities and checks state transitions, the envelopes it sends,
candidate buffering, recovery and teardown.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio
from pydantic import BaseModel

from src.client.config import ClientConfig
from src.client.negotiation import ConnectionState, NegotiationSession
from src.relay.protocol import (
    AnswerMessage,
    ErrorMessage,
    IceMessage,
    MatchMessage,
    NextMessage,
    OfferMessage,
    PongMessage,
)
from tests.helpers.client_fakes import (
    FakeConnector,
    FakeMedia,
    FakeNotifier,
    FakeTransport,
    FakeTransportFactory,
)


def _candidate(n: int) -> dict[str, Any]:
    return {"candidate": f"candidate:{n} 1 udp 1 10.0.0.{n} 5000 typ host", "sdpMid": "0"}


class Harness:
    """A session wired to fakes, with helpers to feed it events."""

    def __init__(self, deny_media: bool = False, connect_fails: bool = False) -> None:
        self.media = FakeMedia(deny=deny_media)
        self.factory = FakeTransportFactory()
        self.connector = FakeConnector(fail=connect_fails)
        self.notifier = FakeNotifier()
        self.remote_tracks: list[Any] = []
        self.session = NegotiationSession(
            media=self.media,
            transport_factory=self.factory,
            connector=self.connector,
            notifier=self.notifier,
            config=ClientConfig(heartbeat_interval_s=60, recovery_delay_s=0.01),
            on_remote_track=self.remote_tracks.append,
        )

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def sent_types(self) -> list[str]:
        return self.connector.channel.types()

    @property
    def last_sent(self) -> Any:
        return self.connector.channel.sent[-1]

    async def start(self) -> None:
        self.session.start()
        await self.session.drain()

    async def deliver(self, message: BaseModel) -> None:
        self.connector.deliver(message)
        await self.session.drain()

    async def matched(self, initiator: bool, partner_id: str = "partner") -> FakeTransport:
        if self.state == ConnectionState.IDLE:
            await self.start()
        await self.deliver(MatchMessage(partner_id=partner_id, initiator=initiator))
        return self.factory.latest

    async def connected(self, initiator: bool) -> FakeTransport:
        transport = await self.matched(initiator)
        if initiator:
            await self.deliver(AnswerMessage(sdp="remote-answer", from_id="partner"))
        else:
            await self.deliver(OfferMessage(sdp="remote-offer", from_id="partner"))
            transport.events.on_ice_connection_state("connected")
            await self.session.drain()
        assert self.state == ConnectionState.CONNECTED
        return transport


@pytest_asyncio.fixture
async def make_harness() -> AsyncIterator[Callable[..., Harness]]:
    harnesses: list[Harness] = []

    def factory(**kwargs: Any) -> Harness:
        harness = Harness(**kwargs)
        harnesses.append(harness)
        return harness

    yield factory

    for harness in harnesses:
        await harness.session.close()


@pytest.fixture
def harness(make_harness: Callable[..., Harness]) -> Harness:
    return make_harness()


# === Starting a search ===


@pytest.mark.asyncio
async def test_start_requests_match(harness: Harness) -> None:
    """Test start acquires the microphone, connects and asks for a partner."""
    await harness.start()

    assert harness.state == ConnectionState.SEARCHING
    assert harness.media.acquired
    assert harness.sent_types == ["match"]
    assert harness.session.heartbeat is not None
    assert harness.session.heartbeat.is_running


@pytest.mark.asyncio
async def test_media_denied_stays_idle(make_harness: Callable[..., Harness]) -> None:
    """Test denied microphone access leaves the session idle and connects nowhere."""
    harness = make_harness(deny_media=True)

    await harness.start()

    assert harness.state == ConnectionState.IDLE
    assert harness.connector.channels == []
    assert harness.notifier.notices == [
        ("Microphone access required", "Please allow microphone access to use voice chat", True)
    ]


@pytest.mark.asyncio
async def test_connect_failure_returns_to_idle(make_harness: Callable[..., Harness]) -> None:
    """Test an unreachable relay releases the microphone and returns to idle."""
    harness = make_harness(connect_fails=True)

    await harness.start()

    assert harness.state == ConnectionState.IDLE
    assert harness.notifier.titles == ["Connection error"]
    assert harness.media.stop_calls == 1
    assert harness.session.heartbeat is None


@pytest.mark.asyncio
async def test_start_while_searching_rejected(harness: Harness) -> None:
    """Test a second start does not open another channel."""
    await harness.start()
    await harness.start()

    assert harness.state == ConnectionState.SEARCHING
    assert len(harness.connector.channels) == 1
    assert harness.sent_types == ["match"]


# === Handshake ===


@pytest.mark.asyncio
async def test_initiator_sends_offer(harness: Harness) -> None:
    """Test the initiator attaches its audio and sends the first offer."""
    transport = await harness.matched(initiator=True)

    assert harness.state == ConnectionState.CONNECTING
    assert transport.tracks == ["local-audio"]
    assert transport.offers == [False]
    assert harness.sent_types == ["match", "offer"]
    assert harness.last_sent.sdp == "offer-1"
    assert harness.last_sent.restart is False


@pytest.mark.asyncio
async def test_responder_waits_for_offer(harness: Harness) -> None:
    """Test the non-initiator never produces an offer on match."""
    transport = await harness.matched(initiator=False)

    assert harness.state == ConnectionState.CONNECTING
    assert transport.offers == []
    assert harness.sent_types == ["match"]


@pytest.mark.asyncio
async def test_answer_completes_handshake(harness: Harness) -> None:
    """Test applying the answer connects the call."""
    transport = await harness.matched(initiator=True)

    await harness.deliver(AnswerMessage(sdp="remote-answer", from_id="partner"))

    assert transport.remote == [("answer", "remote-answer")]
    assert harness.state == ConnectionState.CONNECTED
    assert "Connected!" in harness.notifier.titles


@pytest.mark.asyncio
async def test_unexpected_answer_ignored(harness: Harness) -> None:
    """Test an answer we never asked for is not applied."""
    transport = await harness.matched(initiator=False)

    await harness.deliver(AnswerMessage(sdp="stray", from_id="partner"))

    assert transport.remote == []
    assert harness.state == ConnectionState.CONNECTING


@pytest.mark.asyncio
async def test_early_candidates_buffered_then_applied_once(harness: Harness) -> None:
    """Test candidates before the offer are held, then applied in order exactly once."""
    transport = await harness.matched(initiator=False)

    await harness.deliver(IceMessage(candidate=_candidate(1), from_id="partner"))
    await harness.deliver(IceMessage(candidate=_candidate(2), from_id="partner"))
    assert transport.candidates == []

    await harness.deliver(OfferMessage(sdp="remote-offer", from_id="partner"))

    assert transport.remote == [("offer", "remote-offer")]
    assert transport.candidates == [_candidate(1), _candidate(2)]
    assert harness.sent_types == ["match", "answer"]
    assert harness.last_sent.sdp == "answer-1"

    await harness.deliver(IceMessage(candidate=_candidate(3), from_id="partner"))

    assert transport.candidates == [_candidate(1), _candidate(2), _candidate(3)]
    attempt = harness.session.attempt
    assert attempt is not None
    assert attempt.buffer.drained
    assert len(attempt.buffer) == 0


@pytest.mark.asyncio
async def test_duplicate_offer_ignored(harness: Harness) -> None:
    """Test a second non-restart offer does not start another round."""
    transport = await harness.matched(initiator=False)

    await harness.deliver(OfferMessage(sdp="remote-offer", from_id="partner"))
    await harness.deliver(OfferMessage(sdp="remote-offer-again", from_id="partner"))

    assert transport.answers == 1
    assert harness.sent_types.count("answer") == 1


@pytest.mark.asyncio
async def test_offer_before_match_starts_call(harness: Harness) -> None:
    """Test an offer overtaking the match notice starts the call as responder."""
    await harness.start()

    await harness.deliver(OfferMessage(sdp="remote-offer", from_id="partner"))
    await harness.deliver(MatchMessage(partner_id="partner", initiator=False))

    assert harness.state == ConnectionState.CONNECTING
    assert len(harness.factory.created) == 1
    assert harness.factory.latest.offers == []
    assert harness.sent_types == ["match", "answer"]


@pytest.mark.asyncio
async def test_late_offer_from_abandoned_partner_ignored(harness: Harness) -> None:
    """Test an offer from the partner left behind by next never binds the session."""
    await harness.matched(initiator=False, partner_id="A")
    harness.session.next()
    await harness.session.drain()

    await harness.deliver(OfferMessage(sdp="stale-offer", from_id="A"))
    assert harness.state == ConnectionState.SEARCHING
    assert harness.session.attempt is None

    transport = await harness.matched(initiator=False, partner_id="C")
    await harness.deliver(OfferMessage(sdp="fresh-offer", from_id="C"))

    attempt = harness.session.attempt
    assert attempt is not None and attempt.partner_id == "C"
    assert len(harness.factory.created) == 2
    assert transport.remote == [("offer", "fresh-offer")]
    assert harness.sent_types == ["match", "next", "answer"]


@pytest.mark.asyncio
async def test_match_replaces_call_started_by_other_offer(harness: Harness) -> None:
    """Test a match for a new partner replaces a call its offer started."""
    await harness.start()
    await harness.deliver(OfferMessage(sdp="stray-offer", from_id="A"))
    stray = harness.factory.latest

    transport = await harness.matched(initiator=True, partner_id="C")

    attempt = harness.session.attempt
    assert attempt is not None and attempt.partner_id == "C"
    assert stray.closed
    assert transport is not stray
    assert transport.offers == [False]
    assert harness.state == ConnectionState.CONNECTING
    assert harness.sent_types[-1] == "offer"


@pytest.mark.asyncio
async def test_envelopes_from_other_peer_ignored(harness: Harness) -> None:
    """Test answers and candidates not sent by the current partner are dropped."""
    transport = await harness.matched(initiator=True)

    await harness.deliver(AnswerMessage(sdp="other-answer", from_id="other"))
    await harness.deliver(IceMessage(candidate=_candidate(1), from_id="other"))

    assert transport.remote == []
    attempt = harness.session.attempt
    assert attempt is not None and len(attempt.buffer) == 0
    assert harness.state == ConnectionState.CONNECTING


@pytest.mark.asyncio
async def test_missing_transport_abandons_pairing(harness: Harness) -> None:
    """Test an attempt without a transport takes the handshake failure path."""
    await harness.matched(initiator=False)
    attempt = harness.session.attempt
    assert attempt is not None
    attempt.transport = None

    await harness.deliver(OfferMessage(sdp="remote-offer", from_id="partner"))

    assert harness.state == ConnectionState.SEARCHING
    assert harness.sent_types == ["match", "next"]
    assert ("Connection error", "Failed to establish connection", True) in harness.notifier.notices


@pytest.mark.asyncio
async def test_local_candidates_relayed(harness: Harness) -> None:
    """Test gathered candidates are sent and end-of-candidates is not."""
    transport = await harness.matched(initiator=True)

    transport.events.on_ice_candidate(_candidate(7))
    transport.events.on_ice_candidate(None)
    await harness.session.drain()

    assert harness.sent_types == ["match", "offer", "ice"]
    assert harness.last_sent.candidate == _candidate(7)


@pytest.mark.asyncio
async def test_remote_track_connects(harness: Harness) -> None:
    """Test partner audio is handed to the sink and marks the call connected."""
    transport = await harness.matched(initiator=False)
    await harness.deliver(OfferMessage(sdp="remote-offer", from_id="partner"))

    transport.events.on_track("remote-audio")
    await harness.session.drain()

    assert harness.remote_tracks == ["remote-audio"]
    assert harness.state == ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_handshake_failure_rematches(harness: Harness) -> None:
    """Test a failed handshake abandons the pairing and searches again."""
    harness.factory.configure = lambda transport: setattr(transport, "fail_answer", True)
    transport = await harness.matched(initiator=False)

    await harness.deliver(OfferMessage(sdp="remote-offer", from_id="partner"))

    assert harness.state == ConnectionState.SEARCHING
    assert harness.sent_types == ["match", "next"]
    assert ("Connection error", "Failed to establish connection", True) in harness.notifier.notices
    assert transport.closed
    assert harness.session.attempt is None


@pytest.mark.asyncio
async def test_in_flight_answer_discarded_after_next(harness: Harness) -> None:
    """Test an answer finishing after the user pressed next is never sent."""
    gate = asyncio.Event()
    harness.factory.configure = lambda transport: setattr(transport, "answer_gate", gate)
    transport = await harness.matched(initiator=False)

    harness.connector.deliver(OfferMessage(sdp="remote-offer", from_id="partner"))
    await asyncio.wait_for(transport.answer_started.wait(), timeout=1.0)
    harness.session.next()
    gate.set()
    await harness.session.drain()

    assert "answer" not in harness.sent_types
    assert harness.sent_types[-1] == "next"
    assert harness.state == ConnectionState.SEARCHING


# === Leaving a call ===


@pytest.mark.asyncio
async def test_partner_left_rematches_with_fresh_attempt(harness: Harness) -> None:
    """Test partner leaving returns to searching and the next call starts clean."""
    first = await harness.connected(initiator=True)
    first_attempt = harness.session.attempt

    await harness.deliver(NextMessage())

    assert harness.state == ConnectionState.SEARCHING
    assert harness.sent_types[-1] == "next"
    assert "Partner disconnected" in harness.notifier.titles
    assert first.closed

    second = await harness.matched(initiator=False, partner_id="someone-else")

    attempt = harness.session.attempt
    assert second is not first
    assert attempt is not None and attempt is not first_attempt
    assert attempt.partner_id == "someone-else"
    assert not attempt.buffer.drained
    assert len(attempt.buffer) == 0


@pytest.mark.asyncio
async def test_user_next(harness: Harness) -> None:
    """Test next abandons the partner and asks the relay for another."""
    transport = await harness.connected(initiator=True)

    harness.session.next()
    await harness.session.drain()

    assert harness.state == ConnectionState.SEARCHING
    assert harness.sent_types[-1] == "next"
    assert transport.closed
    assert harness.media.acquired


@pytest.mark.asyncio
async def test_next_rejected_without_call(harness: Harness) -> None:
    """Test next outside a call changes nothing."""
    harness.session.next()
    await harness.session.drain()
    assert harness.state == ConnectionState.IDLE

    await harness.start()
    harness.session.next()
    await harness.session.drain()

    assert harness.state == ConnectionState.SEARCHING
    assert harness.sent_types == ["match"]


@pytest.mark.asyncio
async def test_end_releases_everything(harness: Harness) -> None:
    """Test end sends leave and releases transport, microphone and channel."""
    transport = await harness.connected(initiator=True)
    channel = harness.connector.channel

    harness.session.end()
    await harness.session.drain()

    assert harness.state == ConnectionState.IDLE
    assert channel.types()[-1] == "leave"
    assert not channel.is_open
    assert transport.closed
    assert harness.media.stop_calls == 1
    assert harness.session.heartbeat is None
    assert harness.session.attempt is None


@pytest.mark.asyncio
async def test_end_while_searching(harness: Harness) -> None:
    """Test end cancels a search."""
    await harness.start()

    harness.session.end()
    await harness.session.drain()

    assert harness.state == ConnectionState.IDLE
    assert harness.sent_types == ["match", "leave"]


@pytest.mark.asyncio
async def test_signaling_lost_returns_to_idle(harness: Harness) -> None:
    """Test losing the relay connection ends the call without a leave."""
    transport = await harness.connected(initiator=False)

    harness.connector.drop()
    await harness.session.drain()

    assert harness.state == ConnectionState.IDLE
    assert "leave" not in harness.sent_types
    assert "Connection lost" in harness.notifier.titles
    assert transport.closed
    assert harness.media.stop_calls == 1


@pytest.mark.asyncio
async def test_old_channel_loss_ignored(harness: Harness) -> None:
    """Test a close notice for a previous channel does not affect a new search."""
    await harness.start()
    harness.session.end()
    await harness.session.drain()
    await harness.start()

    assert harness.connector.on_closed is not None
    harness.connector.on_closed(harness.connector.channels[0])
    await harness.session.drain()

    assert harness.state == ConnectionState.SEARCHING


# === Recovery ===


@pytest.mark.asyncio
async def test_restart_budget_never_exceeded(harness: Harness) -> None:
    """Test repeated failures cause at most two restarts and keep the call up."""
    transport = await harness.connected(initiator=True)

    for _ in range(3):
        transport.events.on_ice_connection_state("failed")
    await harness.session.drain()

    assert transport.offers == [False, True, True]
    restarts = [m for m in harness.connector.channel.sent if isinstance(m, OfferMessage)]
    assert [m.restart for m in restarts] == [False, True, True]
    assert harness.state == ConnectionState.CONNECTED
    assert harness.notifier.titles.count("Connection degraded") == 1


@pytest.mark.asyncio
async def test_disconnected_restart_after_grace_period(harness: Harness) -> None:
    """Test a link still disconnected after the delay is restarted."""
    transport = await harness.connected(initiator=True)

    transport.ice_state = "disconnected"
    transport.events.on_ice_connection_state("disconnected")
    await harness.session.drain()
    assert transport.offers == [False]

    await asyncio.sleep(0.05)
    await harness.session.drain()

    assert transport.offers == [False, True]
    assert harness.last_sent.restart is True


@pytest.mark.asyncio
async def test_responder_leaves_restart_to_initiator(harness: Harness) -> None:
    """Test the non-initiator spends budget but never sends a restart offer."""
    transport = await harness.connected(initiator=False)

    transport.events.on_ice_connection_state("failed")
    await harness.session.drain()

    assert transport.offers == []
    attempt = harness.session.attempt
    assert attempt is not None and attempt.recovery is not None
    assert attempt.recovery.attempts == 1


@pytest.mark.asyncio
async def test_restart_offer_answered(harness: Harness) -> None:
    """Test a restart offer from the initiator is answered mid-call."""
    transport = await harness.connected(initiator=False)

    await harness.deliver(OfferMessage(sdp="restart-offer", restart=True, from_id="partner"))

    assert transport.answers == 2
    assert transport.remote[-1] == ("offer", "restart-offer")
    assert harness.state == ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_stale_generation_callbacks_ignored(harness: Harness) -> None:
    """Test callbacks from a discarded transport never touch the new call."""
    old = await harness.matched(initiator=True)
    await harness.deliver(NextMessage())
    await harness.matched(initiator=True, partner_id="someone-else")
    sent_before = list(harness.sent_types)

    old.events.on_ice_candidate(_candidate(1))
    old.events.on_ice_connection_state("connected")
    old.events.on_track("stale-audio")
    await harness.session.drain()

    assert harness.sent_types == sent_before
    assert harness.state == ConnectionState.CONNECTING
    assert harness.remote_tracks == []


# === Miscellaneous envelopes ===


@pytest.mark.asyncio
async def test_microphone_mute(harness: Harness) -> None:
    """Test microphone mute silences outgoing audio without renegotiating."""
    transport = await harness.connected(initiator=True)

    harness.session.set_muted(True)
    await harness.session.drain()

    assert harness.session.muted is True
    assert harness.media.muted_calls == [True]
    assert transport.offers == [False]


@pytest.mark.asyncio
async def test_error_envelope_notifies(harness: Harness) -> None:
    """Test relay errors are surfaced without changing state."""
    await harness.start()

    await harness.deliver(ErrorMessage(message="Invalid message format"))

    assert harness.notifier.notices[-1] == ("Error", "Invalid message format", True)
    assert harness.state == ConnectionState.SEARCHING


@pytest.mark.asyncio
async def test_pong_recorded(harness: Harness) -> None:
    """Test pong refreshes heartbeat liveness."""
    await harness.start()

    await harness.deliver(PongMessage(ts=1))

    assert harness.session.heartbeat is not None
    assert harness.session.heartbeat.last_pong_at is not None
