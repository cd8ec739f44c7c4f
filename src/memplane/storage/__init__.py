"""Embedded SQLite storage: engine and host entity tables."""

from memplane.storage.database import Database
from memplane.storage.models import Agent, DocSection, Importance, Memory, MemoryType

__all__ = [
    "Database",
    "Agent",
    "DocSection",
    "Importance",
    "Memory",
    "MemoryType",
]
