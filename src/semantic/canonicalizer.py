"""
Concept Canonicalizer - Map path-scoped concepts onto the global namespace.

Every path concept gets a canonical (global) concept id. Global rows live in
the same ``concepts`` table with ``scope="global"``; a global row is either
canonical (``canonical_concept_id`` NULL) or an alias that redirects exactly
one hop to a canonical row.

Resolution order for each path concept:
1. An explicit ConceptMappingOverride always wins (confidence 1.0).
2. An existing global row with the same key (exact_key, or alias when that
   row redirects).
3. A semantic/alias match supplied by the caller creates an alias row.
4. Otherwise a new canonical global row is created (created_global).

Inserts use ON CONFLICT DO NOTHING and are followed by a reload, so
concurrent runs converge on the same rows.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from src.content.docutil import dedupe_strings, string_slice_from_any
from src.db.models import (
    CONCEPT_SCOPE_GLOBAL,
    Concept,
    ConceptMappingOverride,
    ConceptRepresentation,
    utcnow,
)
from src.db.upsert import insert_ignore

METHOD_OVERRIDE = "override"
METHOD_EXACT_KEY = "exact_key"
METHOD_ALIAS = "alias"
METHOD_SEMANTIC = "semantic"
METHOD_CREATED_GLOBAL = "created_global"

ALIAS_MIN_CONFIDENCE = 0.9


@dataclass
class SemanticMatch:
    """A proposed redirect of a concept key onto an existing global concept."""

    canonical_id: UUID
    method: str = METHOD_SEMANTIC  # alias | semantic
    score: float = 0.0


@dataclass
class Resolution:
    canonical_id: UUID
    method: str
    confidence: float


@dataclass
class CanonicalizeResult:
    canonical_by_key: dict[str, UUID] = field(default_factory=dict)
    resolutions: dict[UUID, Resolution] = field(default_factory=dict)
    globals_created: int = 0
    redirects_repaired: int = 0
    path_concepts_updated: int = 0


def _norm_key(k: Any) -> str:
    return str(k or "").strip().lower()


class ConceptCanonicalizer:
    """
    Resolve path concepts to canonical global concepts.

    Example:
        >>> canon = ConceptCanonicalizer(session)
        >>> result = canon.canonicalize(path_concepts, semantic_matches={"tcp": SemanticMatch(root_id, score=0.82)})
        >>> result.resolutions[path_concepts[0].id].method
        'semantic'
    """

    def __init__(self, db_session: Session, semantic_soft_min: Optional[float] = None):
        self.db = db_session
        if semantic_soft_min is None:
            semantic_soft_min = get_settings().canonical_concept_semantic_soft_min
        self.semantic_soft_min = semantic_soft_min

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load_globals(self, keys: list[str]) -> dict[str, Concept]:
        if not keys:
            return {}
        rows = self.db.scalars(
            select(Concept).where(Concept.scope == CONCEPT_SCOPE_GLOBAL, Concept.key.in_(keys))
        ).all()
        return {_norm_key(r.key): r for r in rows if _norm_key(r.key)}

    def _root_of(self, concept_id: UUID) -> UUID:
        """Follow one redirect hop so no alias ever points at another alias."""
        row = self.db.get(Concept, concept_id)
        if row is not None and row.canonical_concept_id is not None:
            return row.canonical_concept_id
        return concept_id

    def _load_overrides(self, path_concept_ids: list[UUID]) -> dict[UUID, UUID]:
        if not path_concept_ids:
            return {}
        rows = self.db.scalars(
            select(ConceptMappingOverride).where(
                ConceptMappingOverride.path_concept_id.in_(path_concept_ids)
            )
        ).all()
        return {r.path_concept_id: r.canonical_concept_id for r in rows}

    @staticmethod
    def _resolved(row: Concept) -> UUID:
        return row.canonical_concept_id or row.id

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def canonicalize(
        self,
        path_concepts: Iterable[Concept],
        semantic_matches: Optional[Mapping[str, SemanticMatch]] = None,
        overrides: Optional[Mapping[UUID, UUID]] = None,
    ) -> CanonicalizeResult:
        """
        Canonicalize path concepts and record how each was resolved.

        Args:
            path_concepts: Path-scoped Concept rows (attached to this session)
            semantic_matches: Normalized key -> proposed redirect
            overrides: path_concept_id -> canonical id; loaded from
                ConceptMappingOverride when not supplied

        Returns:
            CanonicalizeResult with the key map and per-concept resolutions
        """
        result = CanonicalizeResult()
        concepts = [c for c in path_concepts if c is not None]
        semantic_matches = {_norm_key(k): v for k, v in (semantic_matches or {}).items()}

        keys: list[str] = []
        info: dict[str, Concept] = {}
        for c in concepts:
            k = _norm_key(c.key)
            if k and k not in info:
                keys.append(k)
                info[k] = c
        if not keys:
            return result

        globals_by_key = self._load_globals(keys)
        pre_existing = set(globals_by_key)

        # Redirect requests that pass the acceptance rule, resolved to their roots.
        requested: dict[str, SemanticMatch] = {}
        for k in keys:
            m = semantic_matches.get(k)
            if m is None or m.canonical_id is None or m.canonical_id.int == 0:
                continue
            method = (m.method or "").strip().lower()
            if method == METHOD_ALIAS or (method == METHOD_SEMANTIC and m.score >= self.semantic_soft_min):
                requested[k] = SemanticMatch(self._root_of(m.canonical_id), method, m.score)

        now = utcnow()
        to_create = []
        for k in keys:
            if k in globals_by_key:
                continue
            src = info[k]
            aliases = dedupe_strings(string_slice_from_any((src.meta or {}).get("aliases")))
            row_id = uuid4()
            meta: dict[str, Any] = {"source": "canonicalize", "aliases": aliases}
            redirect = requested.get(k)
            if redirect is not None:
                meta["alias_for"] = str(redirect.canonical_id)
            to_create.append(
                {
                    "id": row_id,
                    "scope": CONCEPT_SCOPE_GLOBAL,
                    "scope_id": None,
                    "key": k,
                    "name": (src.name or "").strip() or k,
                    "summary": (src.summary or "").strip(),
                    "key_points": list(src.key_points or []),
                    "depth": 0,
                    "sort_index": 0,
                    "vector_id": f"concept:{row_id}",
                    "canonical_concept_id": redirect.canonical_id if redirect else None,
                    "metadata": meta,
                    "created_at": now,
                    "updated_at": now,
                }
            )

        if to_create:
            inserted = insert_ignore(self.db, Concept, to_create)
            result.globals_created = inserted
            logger.debug(f"Canonicalize: {inserted}/{len(to_create)} global concepts inserted")
            self.db.expire_all()
            globals_by_key = self._load_globals(keys)

            # A concurrent insert may have created the key as its own canonical first.
            for k, redirect in requested.items():
                row = globals_by_key.get(k)
                if row is None or k in pre_existing or row.canonical_concept_id is not None:
                    continue
                if row.id == redirect.canonical_id:
                    continue
                row.canonical_concept_id = redirect.canonical_id
                result.redirects_repaired += 1
            if result.redirects_repaired:
                self.db.flush()

        for k, row in globals_by_key.items():
            result.canonical_by_key[k] = self._resolved(row)

        override_map = dict(overrides) if overrides is not None else self._load_overrides([c.id for c in concepts])

        for c in concepts:
            k = _norm_key(c.key)
            auto_id = result.canonical_by_key.get(k)
            override_id = override_map.get(c.id)

            if override_id is not None:
                res = Resolution(self._root_of(override_id), METHOD_OVERRIDE, 1.0)
            elif auto_id is None:
                continue
            elif k in pre_existing:
                row = globals_by_key[k]
                if row.canonical_concept_id is None:
                    res = Resolution(auto_id, METHOD_EXACT_KEY, 1.0)
                else:
                    res = Resolution(auto_id, METHOD_ALIAS, ALIAS_MIN_CONFIDENCE)
            elif k in requested:
                m = requested[k]
                if m.method == METHOD_ALIAS:
                    res = Resolution(auto_id, METHOD_ALIAS, max(ALIAS_MIN_CONFIDENCE, m.score))
                else:
                    res = Resolution(auto_id, METHOD_SEMANTIC, m.score)
            elif globals_by_key[k].canonical_concept_id is not None:
                res = Resolution(auto_id, METHOD_ALIAS, ALIAS_MIN_CONFIDENCE)
            else:
                res = Resolution(auto_id, METHOD_CREATED_GLOBAL, 1.0)

            result.resolutions[c.id] = res
            if c.canonical_concept_id != res.canonical_id:
                c.canonical_concept_id = res.canonical_id
                result.path_concepts_updated += 1
            self._write_representation(c, res)

        self.db.flush()
        logger.info(
            f"Canonicalized {len(result.resolutions)} path concepts "
            f"(created={result.globals_created}, repaired={result.redirects_repaired}, "
            f"updated={result.path_concepts_updated})"
        )
        return result

    def _write_representation(self, concept: Concept, res: Resolution) -> None:
        aliases = dedupe_strings(string_slice_from_any((concept.meta or {}).get("aliases")))
        rep = self.db.scalar(
            select(ConceptRepresentation).where(ConceptRepresentation.path_concept_id == concept.id)
        )
        if rep is None:
            rep = ConceptRepresentation(path_concept_id=concept.id)
            self.db.add(rep)
        rep.canonical_concept_id = res.canonical_id
        rep.aliases = aliases
        rep.method = res.method
        rep.confidence = float(res.confidence)
