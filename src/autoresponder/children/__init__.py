"""Entry points of the processes the control plane spawns."""
