"""
Learning path models.

A Path groups ordered PathNodes (modules and the lessons under them). Path
metadata carries the intake proposal and the persisted runtime plan; node
metadata carries goals, concept keys, prerequisite keys and per-node plans.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow

NODE_KINDS = ("module", "lesson", "capstone", "review")


class Path(Base):
    """A learning path synthesized from a material set."""

    __tablename__ = "paths"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    material_set_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("material_sets.id", ondelete="SET NULL"), nullable=True
    )
    kind: Mapped[str] = mapped_column(Text, default="")
    title: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="draft")
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Path id={self.id} kind={self.kind} title={self.title!r}>"


class PathNode(Base):
    """A module or lesson within a path."""

    __tablename__ = "path_nodes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    path_id: Mapped[UUID] = mapped_column(ForeignKey("paths.id", ondelete="CASCADE"), nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    parent_node_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("path_nodes.id", ondelete="SET NULL"), nullable=True
    )
    node_kind: Mapped[str] = mapped_column(Text, default="lesson")
    title: Mapped[str] = mapped_column(Text, default="")
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_path_node_order", "path_id", "index"),)

    def __repr__(self) -> str:
        return f"<PathNode id={self.id} index={self.index} kind={self.node_kind}>"

    @property
    def kind(self) -> str:
        """Normalized node kind; unknown values read as ``lesson``."""
        k = (self.node_kind or "").strip().lower()
        return k if k in NODE_KINDS else "lesson"


class PathRun(Base):
    """Per-user progress through a path."""

    __tablename__ = "path_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_id: Mapped[UUID] = mapped_column(ForeignKey("paths.id", ondelete="CASCADE"), nullable=False)
    active_node_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    state: Mapped[str] = mapped_column(Text, default="active")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "path_id", name="uq_path_run_user_path"),)

    def __repr__(self) -> str:
        return f"<PathRun user={self.user_id} path={self.path_id} active={self.active_node_id}>"
