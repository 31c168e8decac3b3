"""Data access layer for the model lifecycle store."""

from .base import BaseRepository
from .connection_pool import DatabaseConnectionPool

__all__ = [
    "BaseRepository",
    "DatabaseConnectionPool",
]
