"""
Learner state models.

These rows are written by external assessment consumers; the pipeline only
reads them (concept state, misconceptions, testlets, node runs, events) apart
from the event cursor and library counters.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class UserConceptState(Base):
    """Mastery and uncertainty of a user on a canonical concept."""

    __tablename__ = "user_concept_states"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    concept_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    mastery: Mapped[float] = mapped_column(Float, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    epistemic_uncertainty: Mapped[float] = mapped_column(Float, default=1.0)
    aleatoric_uncertainty: Mapped[float] = mapped_column(Float, default=0.0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    correct: Mapped[int] = mapped_column(Integer, default=0)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_review_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    misconceptions: Mapped[list[Any]] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "concept_id", name="uq_user_concept_state"),)

    def __repr__(self) -> str:
        return f"<UserConceptState user={self.user_id} concept={self.concept_id} mastery={self.mastery:.2f}>"

    @property
    def uncertainty(self) -> float:
        """The larger of epistemic and aleatoric uncertainty, clamped to [0, 1]."""
        return max(_clamp01(self.epistemic_uncertainty), _clamp01(self.aleatoric_uncertainty))


class UserMisconceptionInstance(Base):
    """An observed misconception on a canonical concept."""

    __tablename__ = "user_misconception_instances"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    canonical_concept_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[str] = mapped_column(Text, default="active")
    description: Mapped[str] = mapped_column(Text, default="")
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_misconception_user_concept", "user_id", "canonical_concept_id"),)


class UserTestletState(Base):
    """Beta(a, b) posterior over a user's success on a testlet."""

    __tablename__ = "user_testlet_states"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    testlet_id: Mapped[str] = mapped_column(Text, nullable=False)
    testlet_type: Mapped[str] = mapped_column(Text, default="")
    beta_a: Mapped[float] = mapped_column(Float, default=1.0)
    beta_b: Mapped[float] = mapped_column(Float, default=1.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "testlet_id", name="uq_user_testlet"),)


class NodeRun(Base):
    """A user's run through a single path node."""

    __tablename__ = "node_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    state: Mapped[str] = mapped_column(Text, default="")
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_score: Mapped[float] = mapped_column(Float, default=0.0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "path_node_id", name="uq_node_run_user_node"),)


class UserProgressionEvent(Base):
    """A lesson-level progression event (attempt, completion, dwell)."""

    __tablename__ = "user_progression_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    path_node_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    event_type: Mapped[str] = mapped_column(Text, default="")
    score: Mapped[float] = mapped_column(Float, default=0.0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    dwell_ms: Mapped[int] = mapped_column(Integer, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_progression_user_time", "user_id", "occurred_at", "id"),)


class UserEventCursor(Base):
    """Last consumed (event time, event id) per user and consumer."""

    __tablename__ = "user_event_cursors"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    consumer: Mapped[str] = mapped_column(Text, nullable=False)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_event_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "consumer", name="uq_event_cursor_user_consumer"),)

    def __repr__(self) -> str:
        return f"<UserEventCursor user={self.user_id} consumer={self.consumer} at={self.last_event_at}>"


class UserPreference(Base):
    """Free-form per-user preference values (e.g. ``path_grouping``)."""

    __tablename__ = "user_preferences"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_user_preference_key"),)


class UserLibraryStats(Base):
    """Per-user counters updated when docs are built."""

    __tablename__ = "user_library_stats"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True)
    node_docs_built: Mapped[int] = mapped_column(Integer, default=0)
    last_doc_built_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


def _clamp01(v: float | None) -> float:
    if v is None:
        return 0.0
    return min(1.0, max(0.0, float(v)))
