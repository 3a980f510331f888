"""
Content: node doc structure, validation and deterministic repair.

Core modules:
- docutil: JSON-shaped doc helpers (blocks, citations, ids)
- canonical: canonical JSON bytes and content/sources hashes
- metrics: word counts, block counts and banned meta phrasing
- requirements: per-template structural minima
- validate: node doc, outline, threading and teach-before-test checks
- sanitize: meta scrub, de-duplication, diagram and citation sanitizing
- media: figure/video URL de-duplication
- autofix: minima padding, quick-check ordering, must-cite, threading
- blueprint: per-node blueprint constraints and objectives sync
"""

from .autofix import (
    QuickCheckOrderStats,
    ensure_diagram,
    ensure_interactive_minima,
    ensure_minima,
    ensure_quick_checks_after_teaching,
    ensure_threading_references,
    inject_missing_must_cite,
)
from .blueprint import DocBlueprint, validate_doc_against_blueprint, sync_objectives
from .canonical import canonicalize_json, content_hash, sources_hash
from .docutil import ensure_block_ids
from .media import MediaAsset, dedupe_node_doc_media
from .metrics import node_doc_metrics
from .requirements import NodeDocRequirements, requirements_for_template
from .sanitize import (
    dedupe_node_doc,
    prune_meta_blocks,
    sanitize_citations,
    sanitize_diagrams,
    scrub_node_doc,
)
from .validate import (
    quick_check_order_errors,
    validate_node_doc,
    validate_outline_heading_order,
    validate_threading,
)

__all__ = [
    # Structure and hashing
    "ensure_block_ids",
    "canonicalize_json",
    "content_hash",
    "sources_hash",
    "node_doc_metrics",
    # Requirements and validation
    "NodeDocRequirements",
    "requirements_for_template",
    "validate_node_doc",
    "validate_outline_heading_order",
    "validate_threading",
    "quick_check_order_errors",
    # Sanitizers
    "scrub_node_doc",
    "prune_meta_blocks",
    "dedupe_node_doc",
    "sanitize_diagrams",
    "sanitize_citations",
    "MediaAsset",
    "dedupe_node_doc_media",
    # Auto-fix
    "QuickCheckOrderStats",
    "ensure_minima",
    "ensure_interactive_minima",
    "ensure_quick_checks_after_teaching",
    "inject_missing_must_cite",
    "ensure_diagram",
    "ensure_threading_references",
    # Blueprints
    "DocBlueprint",
    "validate_doc_against_blueprint",
    "sync_objectives",
]
