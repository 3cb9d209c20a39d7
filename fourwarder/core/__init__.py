"""Core relay system: normalization, correlation, resume cursor and the engine."""

from .events import (
    Ignored, MessageRef, NewMessage, RawEvent, RawEventKind, Reaction, Redaction,
    RelayEvent, ResumePosition, RoomRole, SyncGap
)
from .correlation_store import (
    CorrelationEntry, CorrelationStore, InMemoryCorrelationStore, SqlCorrelationStore
)
from .resume_cursor import InMemoryResumeCursor, ResumeCursor, SqlResumeCursor
from .normalizer import EventNormalizer
from .retry import RetryPolicy
from .relay_engine import RelayEngine

__all__ = [
    "Ignored",
    "MessageRef",
    "NewMessage",
    "RawEvent",
    "RawEventKind",
    "Reaction",
    "Redaction",
    "RelayEvent",
    "ResumePosition",
    "RoomRole",
    "SyncGap",
    "CorrelationEntry",
    "CorrelationStore",
    "InMemoryCorrelationStore",
    "SqlCorrelationStore",
    "InMemoryResumeCursor",
    "ResumeCursor",
    "SqlResumeCursor",
    "EventNormalizer",
    "RetryPolicy",
    "RelayEngine"
]
