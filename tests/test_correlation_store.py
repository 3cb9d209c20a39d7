"""Tests for the in-memory and SQL correlation stores."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from fourwarder.core import CorrelationEntry, InMemoryCorrelationStore, MessageRef, SqlCorrelationStore
from fourwarder.core.errors import DuplicateCorrelation, InvalidTransition
from fourwarder.database import CorrelationStatus, DatabaseManager, init_database

ORIGINAL = MessageRef("!in:x", "$orig")
COPY = MessageRef("!mod:x", "$copy")
OUTPUT = MessageRef("!out:x", "$out")


def make_entry(original=ORIGINAL, copy=COPY):
    return CorrelationEntry(
        original=original, moderation_copy=copy, sender="@a:x",
        content={"msgtype": "m.text", "body": "Hello"},
    )


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request):
    if request.param == "memory":
        yield InMemoryCorrelationStore()
        return
    db_manager = DatabaseManager("sqlite+aiosqlite://")
    await init_database(db_manager)
    yield SqlCorrelationStore(db_manager)
    await db_manager.close()


async def test_lookup_by_either_key(store):
    await store.put(make_entry())

    by_original = await store.get_by_original(ORIGINAL)
    by_copy = await store.get_by_moderation_copy(COPY)
    assert by_original.moderation_copy == COPY
    assert by_copy.original == ORIGINAL
    assert by_copy.content == {"msgtype": "m.text", "body": "Hello"}
    assert by_copy.status is CorrelationStatus.PENDING


async def test_missing_entries(store):
    assert await store.get_by_original(ORIGINAL) is None
    assert await store.get_by_moderation_copy(COPY) is None


async def test_duplicate_keys_are_rejected(store):
    await store.put(make_entry())
    with pytest.raises(DuplicateCorrelation):
        await store.put(make_entry(copy=MessageRef("!mod:x", "$other")))
    with pytest.raises(DuplicateCorrelation):
        await store.put(make_entry(original=MessageRef("!in:x", "$other")))


async def test_full_lifecycle(store):
    await store.put(make_entry())
    approved = await store.update_status(ORIGINAL, CorrelationStatus.APPROVED)
    assert approved.status is CorrelationStatus.APPROVED
    assert approved.output_copy is None

    forwarded = await store.update_status(ORIGINAL, CorrelationStatus.FORWARDED, output_copy=OUTPUT)
    assert forwarded.status is CorrelationStatus.FORWARDED
    assert (await store.get_by_moderation_copy(COPY)).output_copy == OUTPUT


@pytest.mark.parametrize("path", [
    [CorrelationStatus.FORWARDED],
    [CorrelationStatus.PENDING],
    [CorrelationStatus.APPROVED, CorrelationStatus.PENDING],
    [CorrelationStatus.REDACTED, CorrelationStatus.APPROVED],
    [CorrelationStatus.REDACTED, CorrelationStatus.REDACTED],
])
async def test_disallowed_transitions(store, path):
    await store.put(make_entry())
    *allowed, disallowed = path
    for status in allowed:
        await store.update_status(ORIGINAL, status)
    with pytest.raises(InvalidTransition):
        output = OUTPUT if disallowed is CorrelationStatus.FORWARDED else None
        await store.update_status(ORIGINAL, disallowed, output_copy=output)
    # status left untouched
    current = await store.get_by_original(ORIGINAL)
    assert current.status is (allowed[-1] if allowed else CorrelationStatus.PENDING)


async def test_forwarded_is_terminal(store):
    await store.put(make_entry())
    await store.update_status(ORIGINAL, CorrelationStatus.APPROVED)
    await store.update_status(ORIGINAL, CorrelationStatus.FORWARDED, output_copy=OUTPUT)
    with pytest.raises(InvalidTransition):
        await store.update_status(ORIGINAL, CorrelationStatus.REDACTED)


async def test_forwarding_requires_output_copy(store):
    await store.put(make_entry())
    await store.update_status(ORIGINAL, CorrelationStatus.APPROVED)
    with pytest.raises(ValueError):
        await store.update_status(ORIGINAL, CorrelationStatus.FORWARDED)


async def test_unknown_entry_update_raises_key_error(store):
    with pytest.raises(KeyError):
        await store.update_status(ORIGINAL, CorrelationStatus.APPROVED)


async def test_record_error_and_listing(store):
    await store.put(make_entry())
    await store.update_status(ORIGINAL, CorrelationStatus.APPROVED)
    await store.record_error(ORIGINAL, "copy into output room failed")

    approved = await store.list_by_status(CorrelationStatus.APPROVED)
    assert [e.original for e in approved] == [ORIGINAL]
    assert approved[0].last_error == "copy into output room failed"
    assert await store.list_by_status(CorrelationStatus.PENDING) == []


async def test_count_by_status(store):
    await store.put(make_entry())
    await store.put(make_entry(MessageRef("!in:x", "$2"), MessageRef("!mod:x", "$c2")))
    await store.update_status(ORIGINAL, CorrelationStatus.REDACTED)

    counts = await store.count_by_status()
    assert counts[CorrelationStatus.PENDING] == 1
    assert counts[CorrelationStatus.REDACTED] == 1
    assert counts[CorrelationStatus.FORWARDED] == 0


async def test_prune_only_removes_finished_entries(store):
    await store.put(make_entry())
    pending = make_entry(MessageRef("!in:x", "$2"), MessageRef("!mod:x", "$c2"))
    await store.put(pending)
    await store.update_status(ORIGINAL, CorrelationStatus.REDACTED)

    assert await store.prune(datetime.now(timezone.utc) - timedelta(days=1)) == 0
    assert await store.prune(datetime.now(timezone.utc) + timedelta(days=1)) == 1
    assert await store.get_by_original(ORIGINAL) is None
    assert await store.get_by_moderation_copy(COPY) is None
    assert await store.get_by_original(pending.original) is not None


async def test_returned_entries_are_copies():
    store = InMemoryCorrelationStore()
    await store.put(make_entry())
    entry = await store.get_by_original(ORIGINAL)
    entry.status = CorrelationStatus.FORWARDED
    assert (await store.get_by_original(ORIGINAL)).status is CorrelationStatus.PENDING
