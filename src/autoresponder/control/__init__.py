"""Control plane: listener lifecycle and credential handshake.

Exports:
    ProcessLifecycleManager - listener start/stop, handshake child spawning
    HandshakeOrchestrator - send-code / authenticate protocol
    ChildProcess - subprocess with multiplexed line events
"""

from .handshake import AuthOutcome, HandshakeOrchestrator, HandshakeSession, HandshakeStage
from .processes import ChildEvent, ChildProcess, ControlResult, ProcessLifecycleManager, StreamName

__all__ = [
    "AuthOutcome",
    "ChildEvent",
    "ChildProcess",
    "ControlResult",
    "HandshakeOrchestrator",
    "HandshakeSession",
    "HandshakeStage",
    "ProcessLifecycleManager",
    "StreamName",
]
