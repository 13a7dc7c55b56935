"""Birthday greeting service: resilient PostgreSQL access plus birthday arithmetic."""

from __future__ import annotations

from typing import Any

from .calculator import compute_message, days_until_birthday
from .database import ConnectionManager, DatabaseHealth, PoolTopology


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the HTTP application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "ConnectionManager",
    "DatabaseHealth",
    "PoolTopology",
    "compute_message",
    "create_app",
    "days_until_birthday",
]
