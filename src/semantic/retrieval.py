"""
Retrieval Mixer - Ordered, de-duplicated top-K chunk ids for a query.

Mixes three sources, in priority order:
1. Semantic top-K from the vector store (chunk namespace, filtered to files)
2. Lexical top-K from a full-text index over chunk text
3. Cosine backfill over locally stored chunk embeddings

Ids missing from the caller's chunk map are dropped and the result is
truncated to ``final_k``. Vector and lexical failures are logged and the
mix continues with whatever sources succeeded.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from config import get_settings
from src.core.clients import LexicalIndex, VectorStore, chunk_namespace
from src.db.models import MaterialChunk
from src.semantic.vectors import top_k_cosine

_TOKEN_RE = re.compile(r"[a-z0-9]{3,}")

EmbeddingSource = Callable[[], Iterable[tuple[str, Optional[Sequence[float]]]]]


@dataclass
class RetrievalPlan:
    """One retrieval request."""

    material_set_id: Any
    query_text: str
    query_embedding: list[float]
    file_ids: list[str] = field(default_factory=list)
    semantic_k: int = 14
    lexical_k: int = 8
    final_k: int = 14


def merge_preserve_order(*lists: Iterable[Any]) -> list[str]:
    """Concatenate id lists, keeping the first occurrence of each id."""
    seen: set[str] = set()
    out: list[str] = []
    for ids in lists:
        for raw in ids or []:
            s = str(raw).strip()
            if s and s not in seen:
                seen.add(s)
                out.append(s)
    return out


class RetrievalMixer:
    """
    Combine semantic, lexical and cosine retrieval into one ranked id list.

    Example:
        >>> mixer = RetrievalMixer(vector_store, DatabaseLexicalIndex(session))
        >>> ids = mixer.retrieve(plan, chunk_by_id, local_embeddings)
    """

    def __init__(
        self,
        vector_store: Optional[VectorStore],
        lexical_index: Optional[LexicalIndex] = None,
        timeout_ms: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        cfg = get_settings().get_retrieval_config()
        self.vector_store = vector_store
        self.lexical_index = lexical_index
        self.timeout = (timeout_ms if timeout_ms is not None else cfg["timeout_ms"]) / 1000.0
        self.concurrency = max(1, concurrency if concurrency is not None else cfg["concurrency"])

    def _semantic(self, plan: RetrievalPlan) -> list[str]:
        if self.vector_store is None or not plan.query_embedding or plan.semantic_k <= 0:
            return []
        flt = {"material_file_id": {"$in": list(plan.file_ids)}} if plan.file_ids else None
        try:
            return self.vector_store.query_ids(
                chunk_namespace(plan.material_set_id),
                plan.query_embedding,
                plan.semantic_k,
                flt,
                timeout=self.timeout,
            )
        except Exception as e:  # vector outages degrade to lexical + cosine
            logger.warning(f"Semantic retrieval failed for set {plan.material_set_id}: {e}")
            return []

    def _lexical(self, plan: RetrievalPlan) -> list[str]:
        if self.lexical_index is None or plan.lexical_k <= 0 or not plan.query_text.strip():
            return []
        try:
            return self.lexical_index.search_chunk_ids(
                plan.query_text, list(plan.file_ids), plan.lexical_k, timeout=self.timeout
            )
        except Exception as e:  # full-text errors degrade to semantic + cosine
            logger.warning(f"Lexical retrieval failed: {e}")
            return []

    def _mix(
        self,
        plan: RetrievalPlan,
        semantic_ids: list[str],
        chunk_by_id: Mapping[str, Any],
        local_embeddings: Optional[EmbeddingSource],
    ) -> list[str]:
        ids = merge_preserve_order(semantic_ids, self._lexical(plan))
        ids = [i for i in ids if i in chunk_by_id]
        if len(ids) < plan.final_k and local_embeddings is not None and plan.query_embedding:
            backfill = [cid for cid, _ in top_k_cosine(plan.query_embedding, local_embeddings(), plan.final_k)]
            ids = merge_preserve_order(ids, [i for i in backfill if i in chunk_by_id])
        return ids[: max(plan.final_k, 0)]

    def retrieve(
        self,
        plan: RetrievalPlan,
        chunk_by_id: Mapping[str, Any],
        local_embeddings: Optional[EmbeddingSource] = None,
    ) -> list[str]:
        """
        Retrieve chunk ids for one plan.

        Args:
            plan: Query and limits
            chunk_by_id: Chunks the caller can actually use, keyed by id string
            local_embeddings: Lazily yields (chunk_id, embedding) pairs for backfill

        Returns:
            Up to ``plan.final_k`` chunk ids in first-seen order
        """
        return self._mix(plan, self._semantic(plan), chunk_by_id, local_embeddings)

    def retrieve_many(
        self,
        plans: list[RetrievalPlan],
        chunk_by_id: Mapping[str, Any],
        local_embeddings: Optional[EmbeddingSource] = None,
    ) -> list[list[str]]:
        """Retrieve for several plans; vector queries run in parallel."""
        if not plans:
            return []
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(plans))) as executor:
            semantic = list(executor.map(self._semantic, plans))
        return [self._mix(p, s, chunk_by_id, local_embeddings) for p, s in zip(plans, semantic)]


class DatabaseLexicalIndex:
    """
    Full-text search over ``material_chunks.text``.

    PostgreSQL uses ``to_tsvector``/``plainto_tsquery`` ranking; other
    dialects score chunks by shared query tokens.
    """

    MAX_QUERY_CHARS = 220

    def __init__(self, db_session: Session):
        self.db = db_session

    def search_chunk_ids(
        self, query: str, file_ids: list[str], k: int, timeout: float | None = None
    ) -> list[str]:
        query = (query or "").strip()[: self.MAX_QUERY_CHARS]
        if k <= 0 or not file_ids or not query:
            return []
        if self.db.get_bind().dialect.name == "postgresql":
            rows = self.db.execute(
                text(
                    """
                    SELECT id FROM material_chunks
                    WHERE material_file_id = ANY(CAST(:file_ids AS uuid[]))
                      AND to_tsvector('english', text) @@ plainto_tsquery('english', :q)
                    ORDER BY ts_rank_cd(to_tsvector('english', text), plainto_tsquery('english', :q)) DESC
                    LIMIT :k
                    """
                ),
                {"file_ids": [str(f) for f in file_ids], "q": query, "k": k},
            ).all()
            return merge_preserve_order(str(r[0]) for r in rows)

        tokens = set(_TOKEN_RE.findall(query.lower()))
        if not tokens:
            return []
        chunks = self.db.scalars(
            select(MaterialChunk).where(MaterialChunk.material_file_id.in_([UUID(str(f)) for f in file_ids]))
        ).all()
        scored = []
        for ch in chunks:
            hits = len(tokens & set(_TOKEN_RE.findall((ch.text or "").lower())))
            if hits:
                scored.append((-hits, str(ch.id)))
        scored.sort()
        return [cid for _, cid in scored[:k]]
