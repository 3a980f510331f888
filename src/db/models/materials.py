"""
Material set models.

Uploaded files are chunked upstream; these tables hold the chunk text and
embeddings plus the per-file signatures and per-set signals (coverage,
compound weights, cross-file edges) that later stages read.
"""

from __future__ import annotations

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


class MaterialSet(Base):
    """A user's uploaded set of files.

    Derived sets point at their source set and share its retrieval namespace.
    """

    __tablename__ = "material_sets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    source_material_set_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    title: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="ready")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<MaterialSet id={self.id} source={self.source_material_set_id}>"

    @property
    def retrieval_set_id(self) -> UUID:
        return self.source_material_set_id or self.id


class MaterialFile(Base):
    """An uploaded file within a material set."""

    __tablename__ = "material_files"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_sets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_name: Mapped[str] = mapped_column(Text, default="")
    mime_type: Mapped[str] = mapped_column(Text, default="")
    storage_key: Mapped[str] = mapped_column(Text, default="")
    file_url: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<MaterialFile id={self.id} name={self.original_name!r}>"


class MaterialChunk(Base):
    """A text chunk of a material file with its embedding."""

    __tablename__ = "material_chunks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    material_file_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_files.id", ondelete="CASCADE"), nullable=False, index=True
    )
    seq: Mapped[int] = mapped_column(Integer, default=0)
    text: Mapped[str] = mapped_column(Text, default="")
    page: Mapped[int | None] = mapped_column(Integer, nullable=True)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<MaterialChunk id={self.id} file={self.material_file_id} seq={self.seq}>"

    @property
    def is_unextractable(self) -> bool:
        kind = str((self.meta or {}).get("kind") or "").strip().lower()
        if kind == "unextractable":
            return True
        return (self.text or "").strip().lower().startswith("no extractable ")


class MaterialFileSignature(Base):
    """Summary signals for a file used by path grouping."""

    __tablename__ = "material_file_signatures"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    material_file_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_files.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    material_set_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    summary_md: Mapped[str] = mapped_column(Text, default="")
    summary_embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    topics: Mapped[list[str]] = mapped_column(JSON, default=list)
    domain_tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    concept_keys: Mapped[list[str]] = mapped_column(JSON, default=list)
    outline_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    difficulty: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<MaterialFileSignature file={self.material_file_id} difficulty={self.difficulty}>"


class MaterialChunkSignal(Base):
    """Per-chunk trajectory signal with a compound weight."""

    __tablename__ = "material_chunk_signals"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    material_set_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    material_chunk_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    compound_weight: Mapped[float] = mapped_column(Float, default=0.0)
    signal_strength: Mapped[float] = mapped_column(Float, default=0.0)
    trajectory: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class MaterialConceptCoverage(Base):
    """How deeply a material set covers a concept key."""

    __tablename__ = "material_concept_coverage"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    material_set_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    concept_key: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_concept_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    coverage_type: Mapped[str] = mapped_column(Text, default="")
    depth: Mapped[str] = mapped_column(Text, default="")
    score: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_material_coverage_set", "material_set_id", "concept_key"),
    )


class MaterialEdge(Base):
    """A directed relation between two files of a set."""

    __tablename__ = "material_edges"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    material_set_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    from_file_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    to_file_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    edge_type: Mapped[str] = mapped_column(Text, default="")
    strength: Mapped[float] = mapped_column(Float, default=0.0)
    bridging_concepts: Mapped[list[str]] = mapped_column(JSON, default=list)


class MaterialIntent(Base):
    """Inferred learning intent for a material set."""

    __tablename__ = "material_intents"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    material_set_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True)
    intent: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class GlobalConceptCoverage(Base):
    """Per-user relevance of a canonical concept across all material sets."""

    __tablename__ = "global_concept_coverage"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    canonical_concept_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    cross_set_relevance: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "canonical_concept_id", name="uq_global_coverage_user_concept"),
    )
