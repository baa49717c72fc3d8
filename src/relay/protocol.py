"""Signaling envelope definitions.

Defines Pydantic models for the JSON envelopes exchanged over the signaling
WebSocket. Every envelope is a single JSON object discriminated by ``type``.
The relay never inspects ``sdp`` or ``candidate`` payloads beyond checking
their shape; it forwards them verbatim tagged with the sender's id.
"""

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class ProtocolError(ValueError):
    """Raised when an inbound envelope fails schema validation."""


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MatchRequest(_Envelope):
    """Client → Server: request pairing with a stranger."""

    type: Literal["match"] = "match"


class MatchMessage(_Envelope):
    """Server → Client: pairing result.

    Exactly one side of a pair receives ``initiator=True`` and is responsible
    for producing the first handshake offer.
    """

    type: Literal["match"] = "match"
    partner_id: str = Field(..., alias="partnerId", description="Opaque partner identifier")
    initiator: bool = Field(..., description="Whether this side creates the first offer")


class OfferMessage(_Envelope):
    """Either direction: handshake offer."""

    type: Literal["offer"] = "offer"
    sdp: str = Field(..., min_length=1, description="Session description")
    restart: bool = Field(default=False, description="Connectivity-restart offer")
    from_id: str | None = Field(default=None, alias="from", description="Set by relay")


class AnswerMessage(_Envelope):
    """Either direction: handshake answer."""

    type: Literal["answer"] = "answer"
    sdp: str = Field(..., min_length=1, description="Session description")
    from_id: str | None = Field(default=None, alias="from", description="Set by relay")


class IceMessage(_Envelope):
    """Either direction: connectivity artifact.

    ``candidate`` is an ``RTCIceCandidateInit``-shaped object, or ``None``
    to signal end-of-candidates.
    """

    type: Literal["ice"] = "ice"
    candidate: dict[str, Any] | None = Field(..., description="ICE candidate init")
    from_id: str | None = Field(default=None, alias="from", description="Set by relay")


class NextMessage(_Envelope):
    """Either direction: abandon the current partner.

    Client → Server asks for a new partner. Server → Client means the
    partner left.
    """

    type: Literal["next"] = "next"


class LeaveMessage(_Envelope):
    """Client → Server: explicit session end."""

    type: Literal["leave"] = "leave"


class ErrorMessage(_Envelope):
    """Server → Client: malformed input or server-side failure."""

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")


class PingMessage(_Envelope):
    """Client → Server: liveness check."""

    type: Literal["ping"] = "ping"
    ts: int = Field(..., description="Client timestamp in epoch milliseconds")


class PongMessage(_Envelope):
    """Server → Client: liveness acknowledgement echoing ``ts``."""

    type: Literal["pong"] = "pong"
    ts: int = Field(..., description="Timestamp copied from the ping")


ClientMessage = Annotated[
    MatchRequest
    | OfferMessage
    | AnswerMessage
    | IceMessage
    | NextMessage
    | LeaveMessage
    | PingMessage,
    Field(discriminator="type"),
]

ServerMessage = Annotated[
    MatchMessage
    | OfferMessage
    | AnswerMessage
    | IceMessage
    | NextMessage
    | ErrorMessage
    | PongMessage,
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)

# Relayed envelope types (forwarded to the partner verbatim)
RELAYED_TYPES = frozenset({"offer", "answer", "ice"})


def _parse(adapter: TypeAdapter[Any], raw: str | bytes) -> Any:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Envelope must be a JSON object")

    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid envelope: {e.error_count()} validation error(s)") from e


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse a client → server envelope.

    Args:
        raw: Raw WebSocket text frame

    Returns:
        Validated envelope model

    Raises:
        ProtocolError: If the payload is not JSON or fails validation
    """
    return _parse(_client_adapter, raw)


def parse_server_message(raw: str | bytes) -> ServerMessage:
    """Parse a server → client envelope.

    Raises:
        ProtocolError: If the payload is not JSON or fails validation
    """
    return _parse(_server_adapter, raw)


def encode(message: BaseModel) -> str:
    """Serialize an envelope to its wire form (aliases, no nulls).

    ``ice.candidate`` is the one field where ``None`` is meaningful, so it
    is always emitted.
    """
    data = message.model_dump(by_alias=True, exclude_none=True)
    if isinstance(message, IceMessage) and "candidate" not in data:
        data["candidate"] = None
    return json.dumps(data)
