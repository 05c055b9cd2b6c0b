"""Telegram auto-responder.

Modules:
    - responder: per-conversation response timers, intake and delayed dispatch
    - messaging: Telethon (userbot) and Bot API clients behind one interface
    - control: listener lifecycle and the credential handshake driver
    - children: entry points of the spawned listener and handshake processes
    - bot: standalone Bot API variant with admin /reply
    - web: FastAPI control panel
"""

__version__ = "1.0.0"
