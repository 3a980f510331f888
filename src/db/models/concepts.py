"""
Concept namespace models.

Path-scoped concepts are extracted per learning path; global concepts form the
canonical namespace shared across paths. A concept row whose
``canonical_concept_id`` is NULL is canonical; a non-NULL pointer makes it an
alias that redirects exactly one hop to its canonical row.
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
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow

CONCEPT_SCOPE_PATH = "path"
CONCEPT_SCOPE_GLOBAL = "global"


class Concept(Base):
    """A concept in either a path scope or the global canonical scope."""

    __tablename__ = "concepts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default=CONCEPT_SCOPE_PATH)
    scope_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, default="")
    summary: Mapped[str] = mapped_column(Text, default="")
    key_points: Mapped[list[str]] = mapped_column(JSON, default=list)
    depth: Mapped[int] = mapped_column(Integer, default=0)
    sort_index: Mapped[int] = mapped_column(Integer, default=0)
    vector_id: Mapped[str] = mapped_column(Text, default="")
    canonical_concept_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("concepts.id", ondelete="SET NULL"), nullable=True
    )
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("scope", "scope_id", "key", name="uq_concept_scope_key"),
        Index(
            "uq_concept_global_key",
            "key",
            unique=True,
            postgresql_where=text("scope = 'global'"),
            sqlite_where=text("scope = 'global'"),
        ),
        Index("idx_concept_canonical", "canonical_concept_id"),
    )

    def __repr__(self) -> str:
        return f"<Concept id={self.id} scope={self.scope} key={self.key}>"

    @property
    def is_canonical(self) -> bool:
        return self.canonical_concept_id is None

    @property
    def aliases(self) -> list[str]:
        """Alias keys recorded in metadata (``metadata.aliases``)."""
        raw = (self.meta or {}).get("aliases")
        if not isinstance(raw, list):
            return []
        return [str(a) for a in raw if isinstance(a, str) and a.strip()]


class ConceptMappingOverride(Base):
    """Operator/user pin from a path concept to a canonical concept."""

    __tablename__ = "concept_mapping_overrides"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    path_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    canonical_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, default="")
    created_by: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<ConceptMappingOverride path_concept={self.path_concept_id} -> {self.canonical_concept_id}>"


class ConceptRepresentation(Base):
    """How a path concept was resolved into the canonical namespace."""

    __tablename__ = "concept_representations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    path_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    canonical_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False
    )
    aliases: Mapped[list[str]] = mapped_column(JSON, default=list)
    method: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<ConceptRepresentation path_concept={self.path_concept_id} "
            f"canonical={self.canonical_concept_id} method={self.method}>"
        )
