"""Data storage layer."""

from app.storage.database import Database, get_database, init_database
from app.storage.coach_repo import CoachRepository
from app.storage import cache

__all__ = [
    "Database",
    "get_database",
    "init_database",
    "CoachRepository",
    "cache",
]
