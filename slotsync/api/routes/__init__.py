"""Route modules for the slotsync server."""

from .admin_routes import register_admin_routes
from .availability_routes import register_availability_routes
from .calendar_routes import register_calendar_routes
from .health_routes import register_health_routes
from .sync_routes import register_sync_routes

__all__ = [
    "register_admin_routes",
    "register_availability_routes",
    "register_calendar_routes",
    "register_health_routes",
    "register_sync_routes",
]
