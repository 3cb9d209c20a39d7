"""Shared fixtures: an in-memory transport and builders for raw Matrix events."""

import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from fourwarder.core import (
    InMemoryCorrelationStore, InMemoryResumeCursor, MessageRef, RawEvent, RawEventKind,
    RelayEngine, ResumePosition, RetryPolicy, RoomRole
)

INPUT_ROOM = "!input:example.org"
MOD_ROOM = "!moderation:example.org"
OUTPUT_ROOM = "!output:example.org"
BOT = "@4warder:example.org"
ALICE = "@alice:example.org"
MODERATOR = "@mod:example.org"

ROOM_ROLES = {
    INPUT_ROOM: RoomRole.INPUT,
    MOD_ROOM: RoomRole.MODERATION,
    OUTPUT_ROOM: RoomRole.OUTPUT,
}


class FakeTransport:
    """Records calls, honours transaction ids and replays scripted room streams.

    `posts` holds distinct messages; `calls` holds every accepted
    post_message call, including those deduplicated by transaction id.
    """

    def __init__(self):
        self.posts: List[Dict[str, Any]] = []
        self.calls: List[Dict[str, Any]] = []
        self.redactions: List[Dict[str, Any]] = []
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.redact_failures: List[Exception] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.streams: Dict[str, List[RawEvent]] = defaultdict(list)
        self.stream_calls: List[Optional[ResumePosition]] = []
        self._sent: Dict[tuple, MessageRef] = {}
        self._counter = 0

    async def post_message(self, room_id: str, content: Dict[str, Any], txn_id: str) -> MessageRef:
        if self.failures[room_id]:
            raise self.failures[room_id].pop(0)
        gate = self.gates.get(room_id)
        if gate is not None:
            await gate.wait()
        self.calls.append({"room_id": room_id, "content": content, "txn_id": txn_id})
        key = (room_id, txn_id)
        if key in self._sent:
            return self._sent[key]
        self._counter += 1
        ref = MessageRef(room_id, f"$sent{self._counter}")
        self._sent[key] = ref
        self.posts.append({"room_id": room_id, "content": content, "txn_id": txn_id, "ref": ref})
        return ref

    async def redact(self, ref: MessageRef, reason: Optional[str], txn_id: str) -> None:
        if self.redact_failures:
            raise self.redact_failures.pop(0)
        self.redactions.append({"ref": ref, "reason": reason, "txn_id": txn_id})

    async def stream(self, room_id: str, since: Optional[ResumePosition]):
        self.stream_calls.append(since)
        for raw in list(self.streams[room_id]):
            if since is None or raw.position > since:
                yield raw

    def calls_to(self, room_id: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["room_id"] == room_id]

    def posts_to(self, room_id: str) -> List[Dict[str, Any]]:
        return [p for p in self.posts if p["room_id"] == room_id]


class EventFactory:
    """Builds raw stream items with increasing positions per room."""

    def __init__(self):
        self._offsets: Dict[str, int] = defaultdict(int)

    def _position(self, room_id: str) -> ResumePosition:
        self._offsets[room_id] += 1
        return ResumePosition(1, self._offsets[room_id], "s1")

    def raw(self, room_id: str, payload: Dict[str, Any]) -> RawEvent:
        return RawEvent(room_id, self._position(room_id), RawEventKind.EVENT, payload)

    def message(self, room_id: str, event_id: str, body: str, sender: str = ALICE, **extra) -> RawEvent:
        content = {"msgtype": "m.text", "body": body}
        content.update(extra)
        return self.raw(room_id, {
            "type": "m.room.message", "event_id": event_id, "sender": sender, "content": content,
        })

    def reaction(self, room_id: str, event_id: str, target_id: str, key: str = "✅",
                 sender: str = MODERATOR) -> RawEvent:
        return self.raw(room_id, {
            "type": "m.reaction", "event_id": event_id, "sender": sender,
            "content": {"m.relates_to": {"rel_type": "m.annotation", "event_id": target_id, "key": key}},
        })

    def redaction(self, room_id: str, event_id: str, redacts: str, sender: str = ALICE) -> RawEvent:
        return self.raw(room_id, {
            "type": "m.room.redaction", "event_id": event_id, "sender": sender,
            "redacts": redacts, "content": {},
        })

    def gap(self, room_id: str) -> RawEvent:
        return RawEvent(room_id, self._position(room_id), RawEventKind.GAP)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def events():
    return EventFactory()


@pytest.fixture
def store():
    return InMemoryCorrelationStore()


@pytest.fixture
def cursor():
    return InMemoryResumeCursor()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def engine(transport, store, cursor, sleeper):
    return RelayEngine(
        transport=transport,
        correlation_store=store,
        resume_cursor=cursor,
        room_roles=ROOM_ROLES,
        retry_policy=RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0, sleep=sleeper),
    )
