"""
Material Signal Store - Read-only access to per-set concept signals.

Signals feed prompt context and concept ordering: the inferred intent of a
material set, its concept coverage, cross-file edges, and per-key weights
derived from chunk trajectories (or coverage scores when no compound weights
exist yet).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from src.content.docutil import dedupe_strings, float_from_any, string_slice_from_any
from src.core.env import clamp01
from src.db.models import (
    CONCEPT_SCOPE_GLOBAL,
    Concept,
    GlobalConceptCoverage,
    MaterialChunkSignal,
    MaterialConceptCoverage,
    MaterialEdge,
    MaterialIntent,
)

TRAJECTORY_FIELDS = ("establishes", "reinforces", "builds_on", "points_toward")
MAX_EDGES = 40


@dataclass
class SignalContext:
    intent: dict[str, Any] = field(default_factory=dict)
    coverage: list[dict[str, Any]] = field(default_factory=list)
    edges: list[dict[str, Any]] = field(default_factory=list)
    weights_by_key: dict[str, float] = field(default_factory=dict)


def concept_keys_from_trajectory(trajectory: Any) -> list[str]:
    if not isinstance(trajectory, dict):
        return []
    keys: list[str] = []
    for f in TRAJECTORY_FIELDS:
        keys.extend(k.strip().lower() for k in string_slice_from_any(trajectory.get(f)))
    return dedupe_strings(keys)


class MaterialSignalStore:
    """
    Load concept signals for a material set.

    Example:
        >>> store = MaterialSignalStore(session)
        >>> ctx = store.load_material_set_signal_context(set_id)
        >>> ordered = sort_concept_keys_by_weight(node_keys, ctx.weights_by_key)
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def load_material_set_signal_context(self, material_set_id: UUID, top_concepts: int = 30) -> SignalContext:
        out = SignalContext()
        if material_set_id is None:
            return out
        if top_concepts <= 0:
            top_concepts = 30

        intent = self.db.scalar(select(MaterialIntent).where(MaterialIntent.material_set_id == material_set_id))
        if intent is not None:
            out.intent = dict(intent.intent or {})

        coverage_weights: dict[str, float] = {}
        items = []
        rows = self.db.scalars(
            select(MaterialConceptCoverage).where(MaterialConceptCoverage.material_set_id == material_set_id)
        ).all()
        for c in rows:
            key = (c.concept_key or "").strip().lower()
            if not key:
                continue
            score = clamp01(c.score or 0.0)
            coverage_weights[key] = max(coverage_weights.get(key, 0.0), score)
            items.append(
                {
                    "concept_key": key,
                    "coverage_type": (c.coverage_type or "").strip(),
                    "depth": (c.depth or "").strip(),
                    "score": score,
                }
            )
        items.sort(key=lambda it: -it["score"])
        out.coverage = items[:top_concepts]

        compound = self.load_compound_weights_by_key(material_set_id)
        out.weights_by_key = compound or coverage_weights

        edges = self.db.scalars(
            select(MaterialEdge)
            .where(MaterialEdge.material_set_id == material_set_id)
            .order_by(MaterialEdge.strength.desc())
            .limit(MAX_EDGES)
        ).all()
        out.edges = [
            {
                "from_file_id": str(e.from_file_id),
                "to_file_id": str(e.to_file_id),
                "edge_type": (e.edge_type or "").strip(),
                "strength": clamp01(e.strength or 0.0),
                "bridging_concepts": list(e.bridging_concepts or []),
            }
            for e in edges
        ]
        logger.debug(
            f"Signal context for set {material_set_id}: {len(out.coverage)} concepts, "
            f"{len(out.edges)} edges, {len(out.weights_by_key)} weights"
        )
        return out

    def load_compound_weights_by_key(self, material_set_id: UUID, max_rows: Optional[int] = None) -> dict[str, float]:
        """
        Max compound weight per concept key across the set's chunk signals.

        Returns an empty map when no signal carries a compound weight; callers
        then fall back to coverage scores.
        """
        if max_rows is None:
            max_rows = get_settings().material_signal_compound_max_rows
        if max_rows <= 0:
            max_rows = 2000
        rows = self.db.scalars(
            select(MaterialChunkSignal)
            .where(MaterialChunkSignal.material_set_id == material_set_id)
            .order_by(MaterialChunkSignal.compound_weight.desc())
            .limit(max_rows)
        ).all()
        if not any(clamp01(r.compound_weight or 0.0) > 0 for r in rows):
            return {}
        out: dict[str, float] = {}
        for r in rows:
            weight = clamp01(r.compound_weight or 0.0)
            if weight <= 0:
                continue
            for k in concept_keys_from_trajectory(r.trajectory):
                if weight > out.get(k, 0.0):
                    out[k] = weight
        return out

    def load_cross_set_relevance_by_key(self, user_id: UUID, material_set_id: UUID) -> dict[str, float]:
        """The user's global coverage relevance for each concept key of the set."""
        rows = self.db.scalars(
            select(MaterialConceptCoverage).where(MaterialConceptCoverage.material_set_id == material_set_id)
        ).all()
        key_to_canonical: dict[str, UUID] = {}
        unresolved: list[str] = []
        for c in rows:
            key = (c.concept_key or "").strip().lower()
            if not key:
                continue
            if c.canonical_concept_id is not None:
                key_to_canonical[key] = c.canonical_concept_id
            else:
                unresolved.append(key)

        if unresolved:
            for g in self.db.scalars(
                select(Concept).where(Concept.scope == CONCEPT_SCOPE_GLOBAL, Concept.key.in_(unresolved))
            ).all():
                key_to_canonical.setdefault(g.key, g.canonical_concept_id or g.id)
        if not key_to_canonical:
            return {}

        ids = list(set(key_to_canonical.values()))
        relevance = {
            r.canonical_concept_id: clamp01(r.cross_set_relevance or 0.0)
            for r in self.db.scalars(
                select(GlobalConceptCoverage).where(
                    GlobalConceptCoverage.user_id == user_id,
                    GlobalConceptCoverage.canonical_concept_id.in_(ids),
                )
            ).all()
        }
        return {k: relevance[cid] for k, cid in key_to_canonical.items() if relevance.get(cid, 0.0) > 0}


def sort_concept_keys_by_weight(keys: Iterable[str], weights: Mapping[str, float]) -> list[str]:
    """Heaviest keys first; ties and unweighted keys sort alphabetically."""
    out = dedupe_strings(list(keys))
    if not out or not weights:
        return out
    return sorted(out, key=lambda k: (-weights.get(k.strip().lower(), 0.0), k))


def concept_weights_for_keys(keys: Iterable[str], weights: Mapping[str, float]) -> dict[str, float]:
    out = {}
    for k in keys:
        key = k.strip().lower()
        if key and key in weights:
            out[key] = clamp01(weights[key])
    return out


def concept_signal_weight_factor(meta: Optional[Mapping[str, Any]]) -> float:
    """0.5 + signal_weight; 1.0 when the concept carries no signal."""
    sw = clamp01(float_from_any((meta or {}).get("signal_weight"), 0.0))
    if sw <= 0:
        return 1.0
    return 0.5 + sw
