"""Routes package for the control panel."""

from autoresponder.web.routes import control

__all__ = ["control"]
