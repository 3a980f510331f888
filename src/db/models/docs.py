"""
Lesson document models.

Doc bodies are stored as canonical JSON text so that ``content_hash`` can be
recomputed byte-for-byte from the stored value.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow

PROBE_STATUSES = ("planned", "shown", "dismissed", "answered")


class LearningNodeDoc(Base):
    """The validated, grounded lesson document for a path node."""

    __tablename__ = "learning_node_docs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    path_node_id: Mapped[UUID] = mapped_column(
        ForeignKey("path_nodes.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    doc_json: Mapped[str] = mapped_column(Text, default="")
    doc_text: Mapped[str] = mapped_column(Text, default="")
    content_hash: Mapped[str] = mapped_column(Text, default="")
    sources_hash: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<LearningNodeDoc node={self.path_node_id} hash={self.content_hash[:12]}>"

    def load_doc(self) -> dict[str, Any] | None:
        """Decode ``doc_json``; None when empty, ``null`` or not an object."""
        return _decode_doc(self.doc_json)


class LearningNodeDocVariant(Base):
    """A per-user variant of a node doc."""

    __tablename__ = "learning_node_doc_variants"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(
        ForeignKey("path_nodes.id", ondelete="CASCADE"), nullable=False
    )
    base_doc_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    variant_kind: Mapped[str] = mapped_column(Text, default="")
    policy_version: Mapped[str] = mapped_column(Text, default="")
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    doc_json: Mapped[str] = mapped_column(Text, default="")
    content_hash: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_doc_variant_user_node", "user_id", "path_node_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<LearningNodeDocVariant user={self.user_id} node={self.path_node_id} kind={self.variant_kind}>"

    def load_doc(self) -> dict[str, Any] | None:
        return _decode_doc(self.doc_json)


class LearningNodeFigure(Base):
    """A generated figure asset planned for a node doc."""

    __tablename__ = "learning_node_figures"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(
        ForeignKey("path_nodes.id", ondelete="CASCADE"), nullable=False
    )
    slot: Mapped[int] = mapped_column(Integer, default=0)
    plan_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    prompt_hash: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="planned")
    asset_storage_key: Mapped[str] = mapped_column(Text, default="")
    asset_url: Mapped[str] = mapped_column(Text, default="")
    asset_mime_type: Mapped[str] = mapped_column(Text, default="")
    error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("path_node_id", "slot", name="uq_node_figure_slot"),)


class LearningNodeVideo(Base):
    """A generated video asset planned for a node doc."""

    __tablename__ = "learning_node_videos"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(
        ForeignKey("path_nodes.id", ondelete="CASCADE"), nullable=False
    )
    slot: Mapped[int] = mapped_column(Integer, default=0)
    plan_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    prompt_hash: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="planned")
    asset_storage_key: Mapped[str] = mapped_column(Text, default="")
    asset_url: Mapped[str] = mapped_column(Text, default="")
    asset_mime_type: Mapped[str] = mapped_column(Text, default="")
    duration_sec: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("path_node_id", "slot", name="uq_node_video_slot"),)


class DocGenerationRun(Base):
    """One generation attempt for a node doc (failed or succeeded)."""

    __tablename__ = "doc_generation_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    artifact_kind: Mapped[str] = mapped_column(Text, default="node_doc")
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(Text, default="")
    prompt_version: Mapped[str] = mapped_column(Text, default="")
    content_hash: Mapped[str] = mapped_column(Text, default="")
    sources_hash: Mapped[str] = mapped_column(Text, default="")
    errors: Mapped[list[str]] = mapped_column(JSON, default=list)
    metrics: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<DocGenerationRun node={self.path_node_id} attempt={self.attempt} status={self.status}>"


class DocProbe(Base):
    """A quick_check/flashcard block selected for adaptive surfacing."""

    __tablename__ = "doc_probes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    block_id: Mapped[str] = mapped_column(Text, nullable=False)
    block_type: Mapped[str] = mapped_column(Text, nullable=False)
    probe_kind: Mapped[str] = mapped_column(Text, default="")
    concept_keys: Mapped[list[str]] = mapped_column(JSON, default=list)
    concept_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    trigger_after_block_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    info_gain: Mapped[float] = mapped_column(Float, default=0.0)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    policy_version: Mapped[str] = mapped_column(Text, default="")
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(Text, default="planned")
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "path_node_id", "block_id", name="uq_doc_probe_user_node_block"),
        Index("idx_doc_probe_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<DocProbe node={self.path_node_id} block={self.block_id} score={self.score:.3f}>"


class DocVariantExposure(Base):
    """A record that a user was shown a doc variant, with a baseline snapshot."""

    __tablename__ = "doc_variant_exposures"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    variant_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    exposure_kind: Mapped[str] = mapped_column(Text, default="")
    variant_kind: Mapped[str] = mapped_column(Text, default="")
    policy_version: Mapped[str] = mapped_column(Text, default="")
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    baseline_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    content_hash: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_variant_exposure_created", "created_at"),)

    def __repr__(self) -> str:
        return f"<DocVariantExposure id={self.id} user={self.user_id} node={self.path_node_id}>"


class DocVariantOutcome(Base):
    """Effect metrics derived for an exposure after a waiting period."""

    __tablename__ = "doc_variant_outcomes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    exposure_id: Mapped[UUID] = mapped_column(
        ForeignKey("doc_variant_exposures.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    variant_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    outcome_kind: Mapped[str] = mapped_column(Text, default="eval_v1")
    metrics: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<DocVariantOutcome exposure={self.exposure_id} kind={self.outcome_kind}>"


def _decode_doc(raw: str | None) -> dict[str, Any] | None:
    raw = (raw or "").strip()
    if not raw or raw == "null":
        return None
    try:
        doc = json.loads(raw)
    except ValueError:
        return None
    return doc if isinstance(doc, dict) else None
