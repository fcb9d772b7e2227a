"""Storage auto-resize for PostgreSQL clusters on Kubernetes."""

__version__ = "0.1.0"
