"""Dashboard API for ChronoTask data and the voice assistant."""

from .activity_log import ActivityLog
from .websocket import ConnectionManager
from .server import create_dashboard_app

__all__ = ["ActivityLog", "ConnectionManager", "create_dashboard_app"]
