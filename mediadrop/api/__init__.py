"""API endpoints."""

from mediadrop.api import download, health, metrics, status

__all__ = [
    "download",
    "health",
    "metrics",
    "status",
]
