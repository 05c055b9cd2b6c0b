"""Web control panel."""
