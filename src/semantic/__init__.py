"""
Semantic layer: vector math, retrieval mixing, concept canonicalization
and material signals.

- vectors: cosine similarity and top-K ranking over float lists (numpy)
- retrieval: semantic + lexical + cosine backfill chunk retrieval
- canonicalizer: path concepts -> global canonical concepts
- signals: per-set intent, coverage, edges and concept weights
"""

from src.semantic.canonicalizer import CanonicalizeResult, ConceptCanonicalizer, SemanticMatch
from src.semantic.retrieval import DatabaseLexicalIndex, RetrievalMixer, RetrievalPlan, merge_preserve_order
from src.semantic.signals import (
    MaterialSignalStore,
    SignalContext,
    concept_signal_weight_factor,
    concept_weights_for_keys,
    sort_concept_keys_by_weight,
)
from src.semantic.vectors import cosine_similarity, mean_vector, top_k_cosine

__all__ = [
    # Vectors
    "cosine_similarity",
    "top_k_cosine",
    "mean_vector",
    # Retrieval
    "RetrievalPlan",
    "RetrievalMixer",
    "DatabaseLexicalIndex",
    "merge_preserve_order",
    # Canonicalization
    "ConceptCanonicalizer",
    "CanonicalizeResult",
    "SemanticMatch",
    # Signals
    "MaterialSignalStore",
    "SignalContext",
    "sort_concept_keys_by_weight",
    "concept_weights_for_keys",
    "concept_signal_weight_factor",
]
