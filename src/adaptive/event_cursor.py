"""
Event Cursor - Resumable consumption of learner progression events.

Each consumer keeps one cursor per user at the last (occurred_at, id) it
processed. Events are read strictly after the cursor in that order, so a
consumer never sees an event twice and never skips one with a tied timestamp.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from src.db.models import UserEventCursor, UserProgressionEvent, utcnow


class EventCursorStore:
    """
    Load, read past and advance per-consumer event cursors.

    Example:
        >>> store = EventCursorStore(session)
        >>> cursor = store.load(user_id, "runtime_plan")
        >>> events = store.fetch_after(user_id, cursor, limit=200)
        >>> store.advance(user_id, "runtime_plan", events[-1])
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def load(self, user_id: UUID, consumer: str) -> Optional[UserEventCursor]:
        return self.db.scalar(
            select(UserEventCursor).where(
                UserEventCursor.user_id == user_id, UserEventCursor.consumer == consumer.strip()
            )
        )

    def fetch_after(
        self,
        user_id: UUID,
        cursor: Optional[UserEventCursor],
        limit: int = 500,
        path_id: Optional[UUID] = None,
    ) -> list[UserProgressionEvent]:
        """Events ordered by (occurred_at, id), strictly after ``cursor``."""
        q = select(UserProgressionEvent).where(UserProgressionEvent.user_id == user_id)
        if path_id is not None:
            q = q.where(UserProgressionEvent.path_id == path_id)
        if cursor is not None and cursor.last_event_at is not None:
            after = UserProgressionEvent.occurred_at > cursor.last_event_at
            if cursor.last_event_id is not None:
                after = or_(
                    after,
                    and_(
                        UserProgressionEvent.occurred_at == cursor.last_event_at,
                        UserProgressionEvent.id > cursor.last_event_id,
                    ),
                )
            q = q.where(after)
        q = q.order_by(UserProgressionEvent.occurred_at, UserProgressionEvent.id).limit(max(limit, 1))
        return list(self.db.scalars(q).all())

    def advance(self, user_id: UUID, consumer: str, event: UserProgressionEvent) -> UserEventCursor:
        """
        Move the cursor to ``event``; a position at or before the cursor is ignored.

        Returns:
            The (possibly new) cursor row
        """
        cursor = self.load(user_id, consumer)
        if cursor is None:
            cursor = UserEventCursor(user_id=user_id, consumer=consumer.strip())
            self.db.add(cursor)
        elif not _is_after(event.occurred_at, event.id, cursor.last_event_at, cursor.last_event_id):
            logger.debug(f"Cursor {consumer} for user {user_id} already past event {event.id}")
            return cursor
        cursor.last_event_at = event.occurred_at
        cursor.last_event_id = event.id
        cursor.updated_at = utcnow()
        self.db.flush()
        return cursor


def _is_after(
    at: Optional[datetime], event_id: Optional[UUID], cur_at: Optional[datetime], cur_id: Optional[UUID]
) -> bool:
    if cur_at is None:
        return True
    if at is None or at < cur_at:
        return False
    if at > cur_at:
        return True
    if cur_id is None:
        return event_id is not None
    return event_id is not None and str(event_id) > str(cur_id)
