# backend/consultflow/routes/v1/__init__.py
"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import bookings, cron, payments

__all__ = [
    "bookings",
    "cron",
    "payments",
]
