"""
Event normalizer: raw Matrix timeline events to the internal event model.
Recognizes room messages, reactions and redactions; everything else is ignored.
"""
import logging
from typing import Any, Dict, Optional

from fourwarder.core.events import (
    Ignored, MessageRef, NewMessage, RawEvent, RawEventKind, Reaction, Redaction,
    RelayEvent, RoomRole, SyncGap
)

logger = logging.getLogger(__name__)

MESSAGE_EVENT = "m.room.message"
REACTION_EVENT = "m.reaction"
REDACTION_EVENT = "m.room.redaction"

# Relations refer to events of the source room and make no sense in a copy
STRIPPED_CONTENT_KEYS = ("m.relates_to", "m.new_content")


class EventNormalizer:
    """Converts raw stream items into RelayEvent variants."""

    def __init__(self, room_roles: Dict[str, RoomRole], own_user_id: Optional[str] = None):
        self.room_roles = dict(room_roles)
        self.own_user_id = own_user_id

    def normalize(self, raw: RawEvent) -> RelayEvent:
        role = self.room_roles.get(raw.room_id)
        if role is None:
            return Ignored(raw.room_id, None, raw.position, "unconfigured room")

        if raw.kind is RawEventKind.GAP:
            return SyncGap(raw.room_id, role, raw.position)
        if raw.kind is RawEventKind.CHECKPOINT:
            return Ignored(raw.room_id, role, raw.position, "checkpoint")

        event = raw.payload
        event_type = event.get("type")
        event_id = event.get("event_id")
        sender = event.get("sender", "")

        if not isinstance(event_id, str) or "state_key" in event:
            return Ignored(raw.room_id, role, raw.position, "state or malformed event")
        if self.own_user_id and sender == self.own_user_id:
            return Ignored(raw.room_id, role, raw.position, "own event")

        ref = MessageRef(raw.room_id, event_id)
        content = event.get("content")
        if not isinstance(content, dict):
            content = {}

        if event_type == MESSAGE_EVENT:
            return self._message(raw, role, ref, sender, content)
        if event_type == REACTION_EVENT:
            return self._reaction(raw, role, ref, sender, content)
        if event_type == REDACTION_EVENT:
            return self._redaction(raw, role, ref, sender, event, content)

        return Ignored(raw.room_id, role, raw.position, f"unhandled type {event_type}")

    def _message(self, raw: RawEvent, role: RoomRole, ref: MessageRef, sender: str,
                 content: Dict[str, Any]) -> RelayEvent:
        # redacted messages keep their type but lose their body
        if not isinstance(content.get("body"), str) or not isinstance(content.get("msgtype"), str):
            return Ignored(raw.room_id, role, raw.position, "message without body")
        copied = {k: v for k, v in content.items() if k not in STRIPPED_CONTENT_KEYS}
        return NewMessage(raw.room_id, role, raw.position, ref, sender, copied)

    def _reaction(self, raw: RawEvent, role: RoomRole, ref: MessageRef, sender: str,
                  content: Dict[str, Any]) -> RelayEvent:
        relates_to = content.get("m.relates_to")
        if not isinstance(relates_to, dict) or relates_to.get("rel_type") != "m.annotation":
            return Ignored(raw.room_id, role, raw.position, "reaction without annotation")
        target_id = relates_to.get("event_id")
        key = relates_to.get("key")
        if not isinstance(target_id, str) or not isinstance(key, str):
            return Ignored(raw.room_id, role, raw.position, "malformed annotation")
        target = MessageRef(raw.room_id, target_id)
        return Reaction(raw.room_id, role, raw.position, ref, sender, target, key)

    def _redaction(self, raw: RawEvent, role: RoomRole, ref: MessageRef, sender: str,
                   event: Dict[str, Any], content: Dict[str, Any]) -> RelayEvent:
        # room version 11 moved `redacts` into the content
        redacts = content.get("redacts") or event.get("redacts")
        if not isinstance(redacts, str):
            return Ignored(raw.room_id, role, raw.position, "redaction without target")
        return Redaction(raw.room_id, role, raw.position, ref, sender,
                         MessageRef(raw.room_id, redacts))
