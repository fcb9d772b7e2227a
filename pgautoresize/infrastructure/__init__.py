"""Platform integration for the auto-resize operator."""
