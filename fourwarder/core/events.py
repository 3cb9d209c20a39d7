"""
Internal event model.

The transport hands over raw Matrix events wrapped in RawEvent; the normalizer
turns each one into exactly one of the variants below, tagged with the role of
the room it came from.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


class RoomRole(enum.Enum):
    """Role of a configured room."""
    INPUT = "input"
    MODERATION = "moderation"
    OUTPUT = "output"


@dataclass(frozen=True)
class MessageRef:
    """Identity of one event in one room."""
    room_id: str
    event_id: str

    def __str__(self) -> str:
        return f"{self.room_id}/{self.event_id}"


@dataclass(frozen=True, order=True)
class ResumePosition:
    """Stream position within one room.

    Ordered on (batch, offset). `since` is the sync token the batch was
    fetched with and `event_id` the event found at this position; both only
    mean something to the transport.
    """
    batch: int
    offset: int
    since: Optional[str] = field(default=None, compare=False)
    event_id: Optional[str] = field(default=None, compare=False)


class RawEventKind(str, enum.Enum):
    EVENT = "event"
    GAP = "gap"
    CHECKPOINT = "checkpoint"


@dataclass(frozen=True)
class RawEvent:
    """One item of a room stream as delivered by the transport."""
    room_id: str
    position: ResumePosition
    kind: RawEventKind = RawEventKind.EVENT
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NewMessage:
    room_id: str
    role: RoomRole
    position: ResumePosition
    ref: MessageRef
    sender: str
    content: Dict[str, Any]


@dataclass(frozen=True)
class Reaction:
    room_id: str
    role: RoomRole
    position: ResumePosition
    ref: MessageRef
    sender: str
    target: MessageRef
    key: str


@dataclass(frozen=True)
class Redaction:
    room_id: str
    role: RoomRole
    position: ResumePosition
    ref: MessageRef
    sender: str
    redacts: MessageRef


@dataclass(frozen=True)
class SyncGap:
    room_id: str
    role: RoomRole
    position: ResumePosition


@dataclass(frozen=True)
class Ignored:
    room_id: str
    role: Optional[RoomRole]
    position: ResumePosition
    reason: str = ""


RelayEvent = Union[NewMessage, Reaction, Redaction, SyncGap, Ignored]
