"""
Relay engine that drives the moderation gate.

One task per configured room consumes that room's stream in order. Messages
from the input room are copied into the moderation room, an approval
reaction on a copy forwards the original content to the output room, and a
redaction of the original retracts what was relayed.

All transitions of one correlation entry are serialized by a lock keyed on
the original message. Tie-break between approval and redaction: whichever
takes the lock first wins. A redaction that arrives while the forward is in
flight waits for it, finds the entry forwarded, keeps it that way and
redacts the output copy instead.

The moderation copy exists on the server before its entry is stored. An
approval that finds no entry waits for the copies still in flight and looks
again, so a reaction arriving in that window is not lost.
"""
import asyncio
import hashlib
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog

from fourwarder.core.correlation_store import CorrelationEntry, CorrelationStore
from fourwarder.core.errors import (
    CopyFailed, DuplicateCorrelation, InvalidTransition, TransportError, TransportPermanent
)
from fourwarder.core.events import (
    Ignored, MessageRef, NewMessage, RawEvent, Reaction, Redaction, RelayEvent, RoomRole, SyncGap
)
from fourwarder.core.normalizer import EventNormalizer
from fourwarder.core.resume_cursor import ResumeCursor
from fourwarder.core.retry import RetryPolicy
from fourwarder.core.transport import Transport
from fourwarder.database import CorrelationStatus

logger = structlog.get_logger(__name__)

APPROVAL_SYMBOL = "✅"
ORIGIN_CONTENT_KEY = "fourwarder.origin"
STREAM_RESTART_DELAY = 5.0
PRUNE_INTERVAL = 3600.0


def transaction_id(stage: str, ref: MessageRef) -> str:
    """Deterministic transaction id so a replayed call cannot post twice."""
    digest = hashlib.sha256(f"{ref.room_id}|{ref.event_id}".encode("utf-8")).hexdigest()
    return f"fourwarder-{stage}-{digest[:32]}"


class RelayEngine:
    """Main relay engine that coordinates copy, approval, forward and retraction."""

    def __init__(self, transport: Transport, correlation_store: CorrelationStore,
                 resume_cursor: ResumeCursor, room_roles: Dict[str, RoomRole],
                 approval_symbol: str = APPROVAL_SYMBOL,
                 retry_policy: Optional[RetryPolicy] = None,
                 normalizer: Optional[EventNormalizer] = None,
                 retention: Optional[timedelta] = None):
        rooms_by_role = {role: room_id for room_id, role in room_roles.items()}
        if len(rooms_by_role) != len(RoomRole) or len(room_roles) != len(RoomRole):
            raise ValueError("exactly one room per role is required")

        self.transport = transport
        self.correlation_store = correlation_store
        self.resume_cursor = resume_cursor
        self.room_roles = dict(room_roles)
        self.rooms_by_role = rooms_by_role
        self.approval_symbol = approval_symbol
        self.retry_policy = retry_policy or RetryPolicy()
        self.normalizer = normalizer or EventNormalizer(room_roles)
        self.retention = retention

        self._locks: Dict[MessageRef, asyncio.Lock] = {}
        self._lock_users: Dict[MessageRef, int] = defaultdict(int)
        # originals whose moderation copy may be posted but not yet stored
        self._copies_in_flight: Dict[MessageRef, asyncio.Event] = {}
        self._room_tasks: Dict[str, asyncio.Task] = {}
        self._maintenance_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        """Load the cursor, finish interrupted forwards and start one task per room."""
        if self._running:
            return

        logger.info("Starting relay engine", rooms=len(self.room_roles))
        await self.resume_cursor.load()
        await self.recover()

        self._running = True
        for room_id, role in self.room_roles.items():
            self._room_tasks[room_id] = asyncio.create_task(
                self.run_room(room_id), name=f"relay-{role.value}"
            )
        if self.retention:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        logger.info("Relay engine started")

    async def stop(self) -> None:
        """Cancel room tasks; calls in flight are abandoned and replayed on restart."""
        if not self._running:
            return

        logger.info("Stopping relay engine...")
        self._running = False

        tasks = list(self._room_tasks.values())
        if self._maintenance_task:
            tasks.append(self._maintenance_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._room_tasks.clear()
        self._maintenance_task = None

        logger.info("Relay engine stopped")

    async def run_room(self, room_id: str) -> None:
        """Consume one room's stream until cancelled or permanently failed."""
        role = self.room_roles[room_id]
        log = logger.bind(room_id=room_id, role=role.value)
        log.info("Room stream worker started")

        while True:
            try:
                async for raw in self.transport.stream(room_id, self.resume_cursor.last(room_id)):
                    await self.process(raw)
                log.info("Room stream ended")
                return
            except asyncio.CancelledError:
                raise
            except TransportPermanent as e:
                log.error("Room stream failed permanently", error=str(e))
                return
            except Exception as e:
                log.error("Error in room stream, restarting from cursor", error=str(e), exc_info=True)
                await self.retry_policy.sleep(STREAM_RESTART_DELAY)

    async def process(self, raw: RawEvent) -> RelayEvent:
        """Normalize and handle one stream item, then advance the cursor past it."""
        event = self.normalizer.normalize(raw)
        if await self.handle(event):
            await self.resume_cursor.advance(raw.room_id, raw.position)
        return event

    async def handle(self, event: RelayEvent) -> bool:
        """Apply one normalized event; returns whether it is consumed.

        Items from rooms without a role are never consumed, so the cursor
        does not move for them.
        """
        if event.role is None:
            return False
        if isinstance(event, NewMessage):
            if event.role is RoomRole.INPUT:
                await self._on_new_message(event)
        elif isinstance(event, Reaction):
            if event.role is RoomRole.MODERATION:
                await self._on_reaction(event)
        elif isinstance(event, Redaction):
            if event.role is RoomRole.INPUT:
                await self._on_redaction(event)
        elif isinstance(event, SyncGap):
            logger.warning(
                "Sync gap, events missed in this room will not be relayed",
                room_id=event.room_id, role=event.role.value, batch=event.position.batch,
            )
        elif isinstance(event, Ignored):
            pass
        else:
            raise TypeError(f"unknown relay event {event!r}")
        return True

    async def recover(self) -> int:
        """Re-drive forwards of approved entries whose outcome is unknown."""
        recovered = 0
        for entry in await self.correlation_store.list_by_status(CorrelationStatus.APPROVED):
            async with self._entry_lock(entry.original):
                current = await self.correlation_store.get_by_original(entry.original)
                if current is None or current.status is not CorrelationStatus.APPROVED:
                    continue
                logger.info("Resuming interrupted forward", original=str(current.original))
                if await self._forward(current):
                    recovered += 1
        return recovered

    async def _on_new_message(self, event: NewMessage) -> None:
        done = self._copies_in_flight[event.ref] = asyncio.Event()
        try:
            await self._copy_to_moderation(event)
        finally:
            done.set()
            if self._copies_in_flight.get(event.ref) is done:
                del self._copies_in_flight[event.ref]

    async def _copy_to_moderation(self, event: NewMessage) -> None:
        async with self._entry_lock(event.ref):
            if await self.correlation_store.get_by_original(event.ref) is not None:
                logger.debug("Message already correlated, skipping", original=str(event.ref))
                return

            try:
                copy_ref = await self._post(
                    RoomRole.MODERATION, self._moderation_content(event),
                    transaction_id("moderation", event.ref),
                )
            except CopyFailed as e:
                logger.error(
                    "Copy into moderation room failed, message left un-relayed",
                    room_role=e.room_role.value, original=str(event.ref), sender=event.sender,
                    stage="new", operation="post_message", error=str(e.cause),
                )
                return

            entry = CorrelationEntry(
                original=event.ref,
                moderation_copy=copy_ref,
                sender=event.sender,
                content=dict(event.content),
            )
            try:
                await self.correlation_store.put(entry)
            except DuplicateCorrelation as e:
                logger.warning("Moderation copy already correlated", original=str(event.ref), error=str(e))
                return

            logger.info("Message awaiting moderation",
                        original=str(event.ref), moderation_copy=str(copy_ref))

    async def _on_reaction(self, event: Reaction) -> None:
        if event.key != self.approval_symbol:
            logger.debug("Ignoring non-approval reaction", key=event.key, target=str(event.target))
            return

        entry = await self.correlation_store.get_by_moderation_copy(event.target)
        if entry is None and self._copies_in_flight:
            await asyncio.gather(*(done.wait() for done in list(self._copies_in_flight.values())))
            entry = await self.correlation_store.get_by_moderation_copy(event.target)
        if entry is None or entry.status is not CorrelationStatus.PENDING:
            logger.debug("Ignoring approval", target=str(event.target),
                         status=entry.status.value if entry else None)
            return

        async with self._entry_lock(entry.original):
            # the redaction path may have won the lock while we waited
            entry = await self.correlation_store.get_by_original(entry.original)
            if entry is None or entry.status is not CorrelationStatus.PENDING:
                return
            try:
                entry = await self.correlation_store.update_status(
                    entry.original, CorrelationStatus.APPROVED
                )
            except InvalidTransition as e:
                logger.critical("Invalid correlation transition", original=str(entry.original), error=str(e))
                return

            logger.info("Message approved", original=str(entry.original), approved_by=event.sender)
            await self._forward(entry)

    async def _forward(self, entry: CorrelationEntry) -> bool:
        """Post the original content to the output room; caller holds the entry lock."""
        try:
            output_ref = await self._post(
                RoomRole.OUTPUT, dict(entry.content), transaction_id("output", entry.original)
            )
        except CopyFailed as e:
            logger.error(
                "Forward into output room failed, entry left approved",
                room_role=e.room_role.value, original=str(entry.original),
                moderation_copy=str(entry.moderation_copy), stage="approved",
                operation="post_message", error=str(e.cause),
            )
            await self.correlation_store.record_error(entry.original, str(e))
            return False

        try:
            await self.correlation_store.update_status(
                entry.original, CorrelationStatus.FORWARDED, output_copy=output_ref
            )
        except InvalidTransition as e:
            logger.critical("Invalid correlation transition", original=str(entry.original), error=str(e))
            return False

        logger.info("Message forwarded", original=str(entry.original), output_copy=str(output_ref))
        return True

    async def _on_redaction(self, event: Redaction) -> None:
        async with self._entry_lock(event.redacts):
            entry = await self.correlation_store.get_by_original(event.redacts)
            if entry is None or entry.status is CorrelationStatus.REDACTED:
                logger.debug("Ignoring redaction", redacts=str(event.redacts))
                return

            if entry.status is CorrelationStatus.FORWARDED:
                logger.warning("Original redacted after forwarding, retracting copies",
                               original=str(entry.original), output_copy=str(entry.output_copy))
                await self._retract(entry.output_copy, entry.original, RoomRole.OUTPUT)
                await self._retract(entry.moderation_copy, entry.original, RoomRole.MODERATION)
                return

            try:
                await self.correlation_store.update_status(entry.original, CorrelationStatus.REDACTED)
            except InvalidTransition as e:
                logger.critical("Invalid correlation transition", original=str(entry.original), error=str(e))
                return

            logger.info("Original redacted, moderation case closed",
                        original=str(entry.original), previous_status=entry.status.value)
            await self._retract(entry.moderation_copy, entry.original, RoomRole.MODERATION)

    async def _post(self, role: RoomRole, content: Dict[str, Any], txn_id: str) -> MessageRef:
        room_id = self.rooms_by_role[role]
        try:
            return await self.retry_policy.run(
                lambda: self.transport.post_message(room_id, content, txn_id),
                description=f"post into {role.value} room",
            )
        except TransportError as e:
            raise CopyFailed(role, e) from e

    async def _retract(self, ref: MessageRef, original: MessageRef, role: RoomRole) -> None:
        """Best-effort redaction of a copy; failures are logged for manual cleanup."""
        try:
            await self.retry_policy.run(
                lambda: self.transport.redact(ref, "Original message was redacted",
                                              transaction_id("redact", ref)),
                description=f"redact in {role.value} room",
            )
        except TransportError as e:
            logger.error("Retraction failed", room_role=role.value, original=str(original),
                         copy=str(ref), operation="redact", error=str(e))

    def _moderation_content(self, event: NewMessage) -> Dict[str, Any]:
        content = dict(event.content)
        content[ORIGIN_CONTENT_KEY] = {
            "room_id": event.ref.room_id,
            "event_id": event.ref.event_id,
            "sender": event.sender,
        }
        return content

    @asynccontextmanager
    async def _entry_lock(self, key: MessageRef):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def _maintenance_loop(self) -> None:
        """Periodically prune finished entries older than the retention window."""
        while self._running:
            try:
                await asyncio.sleep(PRUNE_INTERVAL)
                cutoff = datetime.now(timezone.utc) - self.retention
                await self.correlation_store.prune(cutoff)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error pruning correlation entries", error=str(e))

    async def get_statistics(self) -> Dict[str, Any]:
        """Get relay statistics."""
        counts = await self.correlation_store.count_by_status()
        return {
            "entries": {status.value: count for status, count in counts.items()},
            "rooms_running": sum(1 for t in self._room_tasks.values() if not t.done()),
            "cursor": {room: (p.batch, p.offset) for room, p in self.resume_cursor.snapshot().items()},
            "engine_running": self._running,
        }

    @property
    def is_running(self) -> bool:
        """Check if the relay engine is running."""
        return self._running
