"""Auto-responder core.

Exports:
    ConversationRegistry - per-conversation timers
    DelayedResponseDispatcher - canned reply on timer expiry
    MessageIntakeHandler - inbound message entry point
    SafeSender - delivery with contact-registration retry
"""

from .dispatcher import DelayedResponseDispatcher, SafeSender
from .intake import MessageIntakeHandler, create_intake_handler
from .timers import ConversationRegistry, ConversationState, ResponseTimer

__all__ = [
    "ConversationRegistry",
    "ConversationState",
    "DelayedResponseDispatcher",
    "MessageIntakeHandler",
    "ResponseTimer",
    "SafeSender",
    "create_intake_handler",
]
