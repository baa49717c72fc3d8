"""Signaling relay for anonymous 1:1 voice calls.

Pairs waiting users first-come first-served and forwards session
negotiation messages between partners. Media never passes through here.
"""

from src.relay.config import RelayConfig
from src.relay.matchmaking import MatchmakingQueue, MatchResult
from src.relay.registry import Connection, ConnectionRegistry, PeerHandle
from src.relay.router import MessageRouter
from src.relay.server import RelayServer

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "MatchResult",
    "MatchmakingQueue",
    "MessageRouter",
    "PeerHandle",
    "RelayConfig",
    "RelayServer",
]
