"""SQL persistence helpers."""

from .database import Database
from .schema import DeadLetters, JobHistoryTable, Jobs, Schedules, metadata

__all__ = ["Database", "DeadLetters", "JobHistoryTable", "Jobs", "Schedules", "metadata"]
