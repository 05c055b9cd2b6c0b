"""Allow ``python -m autoresponder``; the control plane spawns its children this way."""

from autoresponder.cli import app

app()
