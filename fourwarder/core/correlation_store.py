"""
Correlation store: original message <-> moderation copy <-> output copy.

Both correlation keys are looked up with equal cost. The lifecycle of an
entry is enforced here, so neither implementation can be driven backwards.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError

from fourwarder.core.errors import DuplicateCorrelation, InvalidTransition
from fourwarder.core.events import MessageRef
from fourwarder.database import CorrelationRecord, CorrelationStatus, DatabaseManager

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    CorrelationStatus.PENDING: {CorrelationStatus.APPROVED, CorrelationStatus.REDACTED},
    CorrelationStatus.APPROVED: {CorrelationStatus.FORWARDED, CorrelationStatus.REDACTED},
    CorrelationStatus.FORWARDED: set(),
    CorrelationStatus.REDACTED: set(),
}

TERMINAL_STATUSES = (CorrelationStatus.FORWARDED, CorrelationStatus.REDACTED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CorrelationEntry:
    """One moderation case."""
    original: MessageRef
    moderation_copy: MessageRef
    status: CorrelationStatus = CorrelationStatus.PENDING
    output_copy: Optional[MessageRef] = None
    sender: str = ""
    content: Dict[str, Any] = field(default_factory=dict)
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


def check_transition(current: CorrelationStatus, requested: CorrelationStatus,
                     output_copy: Optional[MessageRef]) -> None:
    """Raise InvalidTransition unless current -> requested is a legal step."""
    if requested not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current, requested)
    if (requested is CorrelationStatus.FORWARDED) != (output_copy is not None):
        raise ValueError("output_copy must be given exactly when forwarding")


class CorrelationStore:
    """Interface shared by the in-memory and SQL stores."""

    async def put(self, entry: CorrelationEntry) -> None:
        raise NotImplementedError

    async def get_by_original(self, ref: MessageRef) -> Optional[CorrelationEntry]:
        raise NotImplementedError

    async def get_by_moderation_copy(self, ref: MessageRef) -> Optional[CorrelationEntry]:
        raise NotImplementedError

    async def update_status(self, original: MessageRef, new_status: CorrelationStatus,
                            output_copy: Optional[MessageRef] = None) -> CorrelationEntry:
        """Move the entry keyed by `original` to `new_status`.

        Raises KeyError for an unknown entry and InvalidTransition for a
        step the lifecycle does not allow.
        """
        raise NotImplementedError

    async def record_error(self, original: MessageRef, error: str) -> None:
        """Attach the last failure to an entry without touching its status."""
        raise NotImplementedError

    async def list_by_status(self, status: CorrelationStatus) -> List[CorrelationEntry]:
        raise NotImplementedError

    async def count_by_status(self) -> Dict[CorrelationStatus, int]:
        raise NotImplementedError

    async def prune(self, older_than: datetime) -> int:
        """Drop forwarded and redacted entries last updated before `older_than`."""
        raise NotImplementedError


class InMemoryCorrelationStore(CorrelationStore):
    """Dict-backed store; entries live for the process lifetime."""

    def __init__(self):
        self._by_original: Dict[MessageRef, CorrelationEntry] = {}
        self._by_moderation_copy: Dict[MessageRef, MessageRef] = {}

    async def put(self, entry: CorrelationEntry) -> None:
        if entry.original in self._by_original:
            raise DuplicateCorrelation(f"entry already exists for original {entry.original}")
        if entry.moderation_copy in self._by_moderation_copy:
            raise DuplicateCorrelation(f"entry already exists for copy {entry.moderation_copy}")
        self._by_original[entry.original] = replace(entry)
        self._by_moderation_copy[entry.moderation_copy] = entry.original

    async def get_by_original(self, ref: MessageRef) -> Optional[CorrelationEntry]:
        entry = self._by_original.get(ref)
        return replace(entry) if entry else None

    async def get_by_moderation_copy(self, ref: MessageRef) -> Optional[CorrelationEntry]:
        original = self._by_moderation_copy.get(ref)
        if original is None:
            return None
        return await self.get_by_original(original)

    async def update_status(self, original: MessageRef, new_status: CorrelationStatus,
                            output_copy: Optional[MessageRef] = None) -> CorrelationEntry:
        entry = self._by_original[original]
        check_transition(entry.status, new_status, output_copy)
        entry.status = new_status
        entry.output_copy = output_copy
        entry.updated_at = _utcnow()
        return replace(entry)

    async def record_error(self, original: MessageRef, error: str) -> None:
        entry = self._by_original.get(original)
        if entry is not None:
            entry.last_error = error

    async def list_by_status(self, status: CorrelationStatus) -> List[CorrelationEntry]:
        return [replace(e) for e in self._by_original.values() if e.status is status]

    async def count_by_status(self) -> Dict[CorrelationStatus, int]:
        counts = {status: 0 for status in CorrelationStatus}
        for entry in self._by_original.values():
            counts[entry.status] += 1
        return counts

    async def prune(self, older_than: datetime) -> int:
        stale = [
            e for e in self._by_original.values()
            if e.status in TERMINAL_STATUSES and e.updated_at < older_than
        ]
        for entry in stale:
            del self._by_original[entry.original]
            del self._by_moderation_copy[entry.moderation_copy]
        return len(stale)


class SqlCorrelationStore(CorrelationStore):
    """Durable store; every write is its own transaction."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def _to_entry(record: CorrelationRecord) -> CorrelationEntry:
        output_copy = None
        if record.output_room_id and record.output_event_id:
            output_copy = MessageRef(record.output_room_id, record.output_event_id)
        return CorrelationEntry(
            original=MessageRef(record.original_room_id, record.original_event_id),
            moderation_copy=MessageRef(record.moderation_room_id, record.moderation_event_id),
            status=record.status,
            output_copy=output_copy,
            sender=record.sender,
            content=dict(record.content or {}),
            last_error=record.last_error,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def _original_clause(ref: MessageRef):
        return (
            (CorrelationRecord.original_room_id == ref.room_id)
            & (CorrelationRecord.original_event_id == ref.event_id)
        )

    async def put(self, entry: CorrelationEntry) -> None:
        record = CorrelationRecord(
            original_room_id=entry.original.room_id,
            original_event_id=entry.original.event_id,
            moderation_room_id=entry.moderation_copy.room_id,
            moderation_event_id=entry.moderation_copy.event_id,
            output_room_id=entry.output_copy.room_id if entry.output_copy else None,
            output_event_id=entry.output_copy.event_id if entry.output_copy else None,
            status=entry.status,
            sender=entry.sender,
            content=entry.content,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )
        try:
            async with self.db_manager.get_session() as session:
                session.add(record)
        except IntegrityError as e:
            raise DuplicateCorrelation(
                f"entry already exists for {entry.original} or {entry.moderation_copy}"
            ) from e

    async def get_by_original(self, ref: MessageRef) -> Optional[CorrelationEntry]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(CorrelationRecord).where(self._original_clause(ref))
            )
            record = result.scalar_one_or_none()
            return self._to_entry(record) if record else None

    async def get_by_moderation_copy(self, ref: MessageRef) -> Optional[CorrelationEntry]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(CorrelationRecord).where(
                    CorrelationRecord.moderation_room_id == ref.room_id,
                    CorrelationRecord.moderation_event_id == ref.event_id,
                )
            )
            record = result.scalar_one_or_none()
            return self._to_entry(record) if record else None

    async def update_status(self, original: MessageRef, new_status: CorrelationStatus,
                            output_copy: Optional[MessageRef] = None) -> CorrelationEntry:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(CorrelationRecord).where(self._original_clause(original))
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise KeyError(original)
            check_transition(record.status, new_status, output_copy)
            record.status = new_status
            record.output_room_id = output_copy.room_id if output_copy else None
            record.output_event_id = output_copy.event_id if output_copy else None
            record.updated_at = _utcnow()
            await session.flush()
            return self._to_entry(record)

    async def record_error(self, original: MessageRef, error: str) -> None:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(CorrelationRecord).where(self._original_clause(original))
            )
            record = result.scalar_one_or_none()
            if record is not None:
                record.last_error = error

    async def list_by_status(self, status: CorrelationStatus) -> List[CorrelationEntry]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(CorrelationRecord)
                .where(CorrelationRecord.status == status)
                .order_by(CorrelationRecord.id)
            )
            return [self._to_entry(r) for r in result.scalars().all()]

    async def count_by_status(self) -> Dict[CorrelationStatus, int]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(CorrelationRecord.status, func.count(CorrelationRecord.id))
                .group_by(CorrelationRecord.status)
            )
            counts = {status: 0 for status in CorrelationStatus}
            counts.update(dict(result.all()))
            return counts

    async def prune(self, older_than: datetime) -> int:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                delete(CorrelationRecord).where(
                    or_(*(CorrelationRecord.status == s for s in TERMINAL_STATUSES)),
                    CorrelationRecord.updated_at < older_than,
                )
            )
            deleted_count = result.rowcount
        if deleted_count > 0:
            logger.info(f"Pruned {deleted_count} finished correlation entries")
        return deleted_count
