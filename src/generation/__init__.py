"""LLM-backed generation of grounded lesson docs and their media.

Pipeline:
1. NodeDocBuilder retrieves grounding chunks and generates node_doc_v1 JSON
2. The src.content cascade repairs and validates every attempt
3. MediaRenderer turns planned figure/video slots into uploaded assets

Usage:
    from src.generation import NodeDocBuilder

    result = NodeDocBuilder(session, llm, vector_store).build_path(user_id, set_id, path_id)
    print(f"written={result.docs_written} failed={result.docs_failed}")
"""
from src.generation.media_render import MediaRenderer, MediaRenderResult
from src.generation.node_doc_builder import (
    NodeDocBuilder,
    NodeDocBuildResult,
    NodeWork,
    build_equations_json,
    build_excerpts,
    distribute_must_cite,
    fallback_concept_keys,
    polish_node_doc,
)

__all__ = [
    # Doc builder
    "NodeDocBuilder",
    "NodeDocBuildResult",
    "NodeWork",
    "build_excerpts",
    "build_equations_json",
    "distribute_must_cite",
    "fallback_concept_keys",
    "polish_node_doc",
    # Media
    "MediaRenderer",
    "MediaRenderResult",
]
