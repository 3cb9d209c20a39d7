"""Database module for the moderation relay."""

from .models import Base, CorrelationRecord, CorrelationStatus, ResumePositionRecord
from .connection import DatabaseManager, init_database

__all__ = [
    "Base",
    "CorrelationRecord",
    "CorrelationStatus",
    "ResumePositionRecord",
    "DatabaseManager",
    "init_database"
]
