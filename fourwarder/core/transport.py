"""
Contract between the relay engine and the chat transport.
"""
from typing import Any, AsyncIterator, Dict, Optional, Protocol

from fourwarder.core.events import MessageRef, RawEvent, ResumePosition


class Transport(Protocol):
    """Chat-protocol client as seen by the relay engine.

    Every call may raise TransportTransient or TransportPermanent.
    """

    def stream(self, room_id: str, since: Optional[ResumePosition]) -> AsyncIterator[RawEvent]:
        """Yield the room's events in order, starting after `since`."""
        ...

    async def post_message(self, room_id: str, content: Dict[str, Any], txn_id: str) -> MessageRef:
        """Post a message; reusing `txn_id` must not create a second event."""
        ...

    async def redact(self, ref: MessageRef, reason: Optional[str], txn_id: str) -> None:
        ...
