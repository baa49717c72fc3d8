"""Voice client: negotiation state machine and its capabilities.

The aiortc-backed implementations live in ``src.client.webrtc`` and are
not imported here.
"""

from src.client.candidate_buffer import CandidateBuffer
from src.client.config import ClientConfig
from src.client.negotiation import ConnectionState, NegotiationSession
from src.client.recovery import RecoveryController

__all__ = [
    "CandidateBuffer",
    "ClientConfig",
    "ConnectionState",
    "NegotiationSession",
    "RecoveryController",
]
