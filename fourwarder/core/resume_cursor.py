"""
Per-room resume cursor.

Positions only move forward. Duplicate or out-of-order delivery from the
transport is tolerated by ignoring any position that is not strictly ahead
of the one already recorded for that room.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import select

from fourwarder.core.events import ResumePosition
from fourwarder.database import DatabaseManager, ResumePositionRecord

logger = logging.getLogger(__name__)


class ResumeCursor:
    """In-memory cursor; subclasses add durability through `_persist`."""

    def __init__(self):
        self._positions: Dict[str, ResumePosition] = {}

    async def load(self) -> None:
        """Read previously persisted positions; nothing to do in memory."""

    async def advance(self, room_id: str, position: ResumePosition) -> bool:
        """Record `position` for `room_id` if it is ahead of the current one."""
        current = self._positions.get(room_id)
        if current is not None and position <= current:
            return False
        await self._persist(room_id, position)
        self._positions[room_id] = position
        return True

    def last(self, room_id: str) -> Optional[ResumePosition]:
        return self._positions.get(room_id)

    def snapshot(self) -> Dict[str, ResumePosition]:
        return dict(self._positions)

    async def _persist(self, room_id: str, position: ResumePosition) -> None:
        pass


InMemoryResumeCursor = ResumeCursor


class SqlResumeCursor(ResumeCursor):
    """Cursor that writes through to the database before acknowledging a move."""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__()
        self.db_manager = db_manager

    async def load(self) -> None:
        async with self.db_manager.get_session() as session:
            result = await session.execute(select(ResumePositionRecord))
            for record in result.scalars().all():
                self._positions[record.room_id] = ResumePosition(
                    record.batch, record.offset, record.since, record.event_id
                )
        logger.info(f"Loaded resume positions for {len(self._positions)} rooms")

    async def _persist(self, room_id: str, position: ResumePosition) -> None:
        async with self.db_manager.get_session() as session:
            record = await session.get(ResumePositionRecord, room_id)
            if record is None:
                record = ResumePositionRecord(room_id=room_id, batch=0, offset=0)
                session.add(record)
            record.batch = position.batch
            record.offset = position.offset
            record.since = position.since
            record.event_id = position.event_id
            record.updated_at = datetime.now(timezone.utc)
