"""Tests for raw Matrix event normalization."""

import pytest

from fourwarder.core import (
    EventNormalizer, Ignored, MessageRef, NewMessage, RawEvent, RawEventKind, Reaction,
    Redaction, ResumePosition, RoomRole, SyncGap
)

from conftest import BOT, INPUT_ROOM, MOD_ROOM, ROOM_ROLES

POSITION = ResumePosition(3, 1, "s3")


def raw(payload, room_id=INPUT_ROOM, kind=RawEventKind.EVENT):
    return RawEvent(room_id, POSITION, kind, payload)


@pytest.fixture
def normalizer():
    return EventNormalizer(ROOM_ROLES, own_user_id=BOT)


def test_text_message(normalizer):
    event = normalizer.normalize(raw({
        "type": "m.room.message", "event_id": "$1", "sender": "@a:x",
        "content": {"msgtype": "m.text", "body": "Hello", "format": "org.matrix.custom.html",
                    "formatted_body": "<b>Hello</b>"},
    }))
    assert isinstance(event, NewMessage)
    assert event.role is RoomRole.INPUT
    assert event.ref == MessageRef(INPUT_ROOM, "$1")
    assert event.sender == "@a:x"
    assert event.content["formatted_body"] == "<b>Hello</b>"
    assert event.position == POSITION


def test_relations_are_stripped_from_copied_content(normalizer):
    event = normalizer.normalize(raw({
        "type": "m.room.message", "event_id": "$2", "sender": "@a:x",
        "content": {
            "msgtype": "m.text", "body": "* fixed",
            "m.new_content": {"msgtype": "m.text", "body": "fixed"},
            "m.relates_to": {"rel_type": "m.replace", "event_id": "$1"},
        },
    }))
    assert isinstance(event, NewMessage)
    assert event.content == {"msgtype": "m.text", "body": "* fixed"}


def test_redacted_message_is_ignored(normalizer):
    event = normalizer.normalize(raw({
        "type": "m.room.message", "event_id": "$1", "sender": "@a:x", "content": {},
        "unsigned": {"redacted_because": {}},
    }))
    assert isinstance(event, Ignored)


def test_reaction(normalizer):
    event = normalizer.normalize(raw({
        "type": "m.reaction", "event_id": "$r", "sender": "@mod:x",
        "content": {"m.relates_to": {"rel_type": "m.annotation", "event_id": "$copy", "key": "✅"}},
    }, room_id=MOD_ROOM))
    assert isinstance(event, Reaction)
    assert event.role is RoomRole.MODERATION
    assert event.target == MessageRef(MOD_ROOM, "$copy")
    assert event.key == "✅"


def test_reaction_without_annotation_is_ignored(normalizer):
    event = normalizer.normalize(raw({
        "type": "m.reaction", "event_id": "$r", "sender": "@mod:x",
        "content": {"m.relates_to": {"rel_type": "m.reference", "event_id": "$copy"}},
    }, room_id=MOD_ROOM))
    assert isinstance(event, Ignored)


def test_redaction_with_top_level_redacts(normalizer):
    event = normalizer.normalize(raw({
        "type": "m.room.redaction", "event_id": "$red", "sender": "@a:x",
        "redacts": "$1", "content": {"reason": "oops"},
    }))
    assert isinstance(event, Redaction)
    assert event.redacts == MessageRef(INPUT_ROOM, "$1")


def test_redaction_with_redacts_in_content(normalizer):
    event = normalizer.normalize(raw({
        "type": "m.room.redaction", "event_id": "$red", "sender": "@a:x",
        "content": {"redacts": "$1"},
    }))
    assert isinstance(event, Redaction)
    assert event.redacts == MessageRef(INPUT_ROOM, "$1")


def test_gap_marker(normalizer):
    event = normalizer.normalize(raw({}, kind=RawEventKind.GAP))
    assert isinstance(event, SyncGap)
    assert event.role is RoomRole.INPUT


def test_checkpoint_is_ignored_but_keeps_role(normalizer):
    event = normalizer.normalize(raw({}, kind=RawEventKind.CHECKPOINT))
    assert isinstance(event, Ignored)
    assert event.role is RoomRole.INPUT


@pytest.mark.parametrize("payload", [
    {"type": "m.room.member", "event_id": "$m", "sender": "@a:x", "state_key": "@a:x",
     "content": {"membership": "join"}},
    {"type": "m.typing", "content": {"user_ids": []}},
    {"type": "m.room.encrypted", "event_id": "$e", "sender": "@a:x", "content": {"ciphertext": "..."}},
    {"type": "m.room.message", "sender": "@a:x", "content": {"msgtype": "m.text", "body": "no id"}},
])
def test_irrelevant_events_are_ignored(normalizer, payload):
    assert isinstance(normalizer.normalize(raw(payload)), Ignored)


def test_unconfigured_room_has_no_role(normalizer):
    event = normalizer.normalize(raw({
        "type": "m.room.message", "event_id": "$1", "sender": "@a:x",
        "content": {"msgtype": "m.text", "body": "hi"},
    }, room_id="!other:x"))
    assert isinstance(event, Ignored)
    assert event.role is None


def test_own_events_are_ignored(normalizer):
    event = normalizer.normalize(raw({
        "type": "m.reaction", "event_id": "$r", "sender": BOT,
        "content": {"m.relates_to": {"rel_type": "m.annotation", "event_id": "$c", "key": "✅"}},
    }, room_id=MOD_ROOM))
    assert isinstance(event, Ignored)
