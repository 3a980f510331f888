"""
Vector helpers shared by retrieval and path grouping.

Embeddings arrive as plain float lists (JSON columns, client responses);
these helpers convert to numpy only for the arithmetic.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import numpy as np


def cosine_similarity(emb1: Sequence[float] | np.ndarray, emb2: Sequence[float] | np.ndarray) -> float:
    """
    Cosine similarity between two embeddings.

    Returns:
        Score in [-1, 1]; 0.0 when either vector is empty, zero, or the
        dimensions differ.
    """
    a = np.asarray(emb1, dtype=np.float64)
    b = np.asarray(emb2, dtype=np.float64)
    if a.size == 0 or b.size == 0 or a.shape != b.shape:
        return 0.0
    norm1 = np.linalg.norm(a)
    norm2 = np.linalg.norm(b)
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return float(np.dot(a, b) / (norm1 * norm2))


def top_k_cosine(
    query: Sequence[float],
    candidates: Iterable[tuple[str, Sequence[float] | None]],
    k: int,
) -> list[tuple[str, float]]:
    """
    Rank candidates by cosine similarity to ``query``.

    Candidates are sorted by id before scoring so ties resolve the same way
    on every run.

    Returns:
        Up to ``k`` (id, score) pairs, best first
    """
    if k <= 0 or not query:
        return []
    scored = []
    for cid, emb in sorted(candidates, key=lambda c: c[0]):
        if not emb:
            continue
        scored.append((cid, cosine_similarity(query, emb)))
    scored.sort(key=lambda s: -s[1])
    return scored[:k]


def mean_vector(vectors: Iterable[Sequence[float] | None]) -> list[float]:
    """Element-wise mean of same-length vectors; empty when none are usable."""
    usable = [np.asarray(v, dtype=np.float64) for v in vectors if v]
    if not usable:
        return []
    dim = usable[0].shape
    usable = [v for v in usable if v.shape == dim]
    return np.mean(np.stack(usable), axis=0).tolist()
