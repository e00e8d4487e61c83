"""Sandboxed server data directories with disk quotas, archives, local backups and power-action types."""

__version__ = "0.1.0"