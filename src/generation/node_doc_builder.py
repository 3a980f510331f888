"""
Node Doc Builder - Grounded lesson documents for every node of a path.

Pipeline per path:
1. LOAD: nodes, existing docs, rendered figures/videos, usable chunks
2. COVERAGE: chunks no existing doc cites are spread over the nodes being built
   as must-cite ids
3. RETRIEVE: one query per node (title + goal + concept keys) through the
   RetrievalMixer; must-cite, figure and video chunks are merged ahead of the
   retrieved ones
4. GENERATE: node_doc_v1 JSON from the LLM, retried with validator feedback
5. REPAIR: deterministic sanitize/auto-fix cascade (src.content)
6. VALIDATE: template minima, citations, outline order, teach-before-test,
   must-cite, threading, blueprint constraints
7. PERSIST: canonical JSON + content/sources hashes, one DocGenerationRun per
   attempt

Usage:
    builder = NodeDocBuilder(session, llm, vector_store, DatabaseLexicalIndex(session))
    result = builder.build_path(user_id, material_set_id, path_id)
"""
from __future__ import annotations

import json
import math
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from src.content.autofix import (
    ensure_diagram,
    ensure_minima,
    ensure_quick_checks_after_teaching,
    ensure_threading_references,
    inject_missing_must_cite,
)
from src.content.blueprint import DocBlueprint, sync_objectives, validate_doc_against_blueprint
from src.content.canonical import canonical_doc_text, content_hash, sources_hash
from src.content.docutil import (
    block_id,
    block_type,
    dedupe_strings,
    doc_blocks,
    ensure_block_ids,
    normalize_concept_keys,
    shorten,
    string_from_any,
    string_slice_from_any,
)
from src.content.media import MediaAsset, dedupe_node_doc_media
from src.content.metrics import detect_doc_meta_phrases
from src.content.requirements import (
    NodeDocRequirements,
    normalize_doc_template,
    normalize_node_kind,
    requirements_for_template,
)
from src.content.sanitize import (
    cap_block_type,
    dedupe_node_doc,
    prune_meta_blocks,
    remove_block_type,
    sanitize_citations,
    sanitize_diagrams,
    scrub_node_doc,
)
from src.content.validate import (
    cited_chunk_ids,
    missing_must_cite_ids,
    quick_check_order_errors,
    validate_node_doc,
    validate_outline_heading_order,
    validate_threading,
)
from src.core.clients import BlobStore, LexicalIndex, LLMClient, VectorStore
from src.core.env import env_int
from src.core.errors import (
    ContextLengthExceededError,
    GenerationFailedError,
    MissingInputError,
    NotFoundError,
    PipelineError,
    RetrievalEmptyError,
    SchemaMismatchError,
    ValidationFailedError,
    is_context_length_error,
)
from src.core.progress import ProgressReporter
from src.db.models import (
    DocGenerationRun,
    LearningNodeDoc,
    LearningNodeFigure,
    LearningNodeVideo,
    MaterialChunk,
    MaterialFile,
    MaterialSet,
    Path,
    PathNode,
    UserLibraryStats,
    utcnow,
)
from src.generation.prompts import (
    NODE_DOC_POLISH_SYSTEM_PROMPT,
    NODE_DOC_SCHEMA,
    NODE_DOC_SCHEMA_NAME,
    NODE_DOC_SYSTEM_PROMPT,
    build_node_doc_user_prompt,
    build_polish_user_prompt,
    validation_feedback,
)
from src.semantic.retrieval import DatabaseLexicalIndex, RetrievalMixer, RetrievalPlan, merge_preserve_order
from src.semantic.signals import MaterialSignalStore, sort_concept_keys_by_weight
from src.semantic.vectors import cosine_similarity

ARTIFACT_NODE_DOC = "node_doc"
RUN_FAILED = "failed"
RUN_SUCCEEDED = "succeeded"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class NodeWork:
    """Everything needed to build one node's doc."""

    node: PathNode
    node_kind: str
    doc_template: str
    goal: str
    concept_keys: list[str]
    prereq_keys: list[str]
    outline_headings: list[str] = field(default_factory=list)
    blueprint: Optional[DocBlueprint] = None
    prev_title: str = ""
    next_title: str = ""
    module_title: str = ""
    query_text: str = ""
    query_embedding: list[float] = field(default_factory=list)
    must_cite_ids: list[str] = field(default_factory=list)
    figure_chunk_ids: list[str] = field(default_factory=list)
    video_chunk_ids: list[str] = field(default_factory=list)
    assets: list[MediaAsset] = field(default_factory=list)


@dataclass
class NodeDocBuildResult:
    """Summary of a build_path run."""

    path_id: Optional[UUID] = None
    docs_written: int = 0
    docs_existing: int = 0
    docs_failed: int = 0
    diagrams_written: int = 0
    figures_written: int = 0
    videos_written: int = 0
    tables_written: int = 0
    failures: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path_id": str(self.path_id) if self.path_id else "",
            "docs_written": self.docs_written,
            "docs_existing": self.docs_existing,
            "docs_failed": self.docs_failed,
            "diagrams_written": self.diagrams_written,
            "figures_written": self.figures_written,
            "videos_written": self.videos_written,
            "tables_written": self.tables_written,
        }


# =============================================================================
# Grounding helpers
# =============================================================================


def build_excerpts(
    ids: Iterable[str],
    chunk_by_id: Mapping[str, MaterialChunk],
    max_lines: int = 24,
    max_chars: int = 900,
) -> str:
    """One ``[chunk_id=...] text`` line per chunk, in order, up to ``max_lines``."""
    if max_lines <= 0:
        max_lines = 18
    if max_chars <= 0:
        max_chars = 850
    lines = []
    for cid in merge_preserve_order(ids):
        ch = chunk_by_id.get(cid)
        if ch is None:
            continue
        txt = shorten(ch.text or "", max_chars)
        if not txt.strip():
            continue
        lines.append(f"[chunk_id={cid}] {txt}")
        if len(lines) >= max_lines:
            break
    return "\n".join(lines).strip()


def build_equations_json(chunk_by_id: Mapping[str, MaterialChunk], chunk_ids: Iterable[str]) -> str:
    """
    Equations carried in chunk metadata, as prompt JSON.

    Reads ``metadata.equations`` items ({latex, display, placeholder}); falls
    back to ``metadata.equation_latex`` strings.

    Returns:
        ``{"equations": [{chunk_id, equations: [...]}]}`` or "" when none
    """
    out = []
    for cid in merge_preserve_order(chunk_ids):
        ch = chunk_by_id.get(cid)
        meta = ch.meta if ch is not None and isinstance(ch.meta, dict) else None
        if not meta:
            continue
        items = []
        raw = meta.get("equations")
        if isinstance(raw, list):
            for it in raw:
                if not isinstance(it, dict):
                    continue
                latex = string_from_any(it.get("latex")).strip()
                if not latex:
                    continue
                item: dict[str, Any] = {"latex": latex, "display": it.get("display") is True}
                placeholder = string_from_any(it.get("placeholder")).strip()
                if placeholder:
                    item["placeholder"] = placeholder
                items.append(item)
        if not items:
            for s in string_slice_from_any(meta.get("equation_latex")):
                if s.strip():
                    items.append({"latex": s.strip(), "display": False})
        if items:
            out.append({"chunk_id": cid, "equations": items})
    if not out:
        return ""
    return json.dumps({"equations": out}, ensure_ascii=False)


def distribute_must_cite(
    uncovered_ids: list[str],
    query_embeddings: list[list[float]],
    embedding_by_id: Mapping[str, Optional[list[float]]],
    per_node: int = 2,
) -> list[list[str]]:
    """
    Assign each uncovered chunk to the node whose query it is closest to.

    Nodes are capped at ``per_node`` ids (raised so every chunk fits, at most
    10); a chunk whose best node is full goes to the least-loaded node.

    Returns:
        One sorted id list per node, parallel to ``query_embeddings``
    """
    n = len(query_embeddings)
    out: list[list[str]] = [[] for _ in range(n)]
    if n == 0 or not uncovered_ids:
        return out
    per_node = min(max(per_node, 1), 8)
    per_node = min(max(per_node, math.ceil(len(uncovered_ids) / n)), 10)

    counts = [0] * n
    for cid in uncovered_ids:
        emb = embedding_by_id.get(cid)
        best = 0
        if emb:
            best_score = -2.0
            for i, q in enumerate(query_embeddings):
                s = cosine_similarity(q, emb)
                if s > best_score or (s == best_score and counts[i] < counts[best]):
                    best, best_score = i, s
        else:
            best = min(range(n), key=lambda i: counts[i])
        if counts[best] >= per_node:
            open_slots = [i for i in range(n) if counts[i] < per_node]
            if open_slots:
                best = min(open_slots, key=lambda i: counts[i])
        out[best].append(cid)
        counts[best] += 1
    return [sorted(ids) for ids in out]


def fallback_concept_keys(work: NodeWork) -> list[str]:
    """Node keys, else outline headings, else prerequisite keys, else the title (or "general")."""
    for keys in (work.concept_keys, normalize_concept_keys(work.outline_headings), work.prereq_keys):
        keys = dedupe_strings(keys)
        if keys:
            return keys
    title = (work.node.title or "").strip()
    return [title or "general"]


def _block_shape(doc: dict[str, Any]) -> list[tuple[str, str]]:
    return [(block_id(b), block_type(b)) for b in doc_blocks(doc)]


def polish_node_doc(
    llm: LLMClient, doc: dict[str, Any], style_json: str = "", narrative_json: str = ""
) -> tuple[dict[str, Any], dict[str, Any], bool]:
    """
    Ask the LLM to rewrite leftover meta phrasing.

    The polished doc is rejected when its block ids or types moved.

    Returns:
        (doc, metrics, applied)
    """
    try:
        obj = llm.generate_json(
            NODE_DOC_POLISH_SYSTEM_PROMPT,
            build_polish_user_prompt(doc, style_json, narrative_json),
            NODE_DOC_SCHEMA_NAME,
            NODE_DOC_SCHEMA,
        )
    except Exception as e:  # polish is optional; keep the unpolished doc
        logger.warning(f"Doc polish failed: {e}")
        return doc, {"polish_error": str(e)}, False
    if not isinstance(obj, dict) or not isinstance(obj.get("blocks"), list):
        return doc, {"polish_error": "unmarshal_failed"}, False
    if _block_shape(obj) != _block_shape(doc):
        return doc, {"polish_error": "structure_changed"}, False
    if not obj.get("schema_version"):
        obj["schema_version"] = doc.get("schema_version", 1)
    return obj, {"polish_meta": True}, True


# =============================================================================
# Builder
# =============================================================================


class NodeDocBuilder:
    """
    Build and persist validated node docs.

    Example:
        >>> builder = NodeDocBuilder(session, llm, vectors)
        >>> result = builder.build_path(user_id, set_id, path_id)
        >>> result.docs_written
        12
    """

    def __init__(
        self,
        db_session: Session,
        llm: LLMClient,
        vector_store: Optional[VectorStore] = None,
        lexical_index: Optional[LexicalIndex] = None,
        blob_store: Optional[BlobStore] = None,
        progress: Optional[ProgressReporter] = None,
    ):
        if llm is None:
            raise PipelineError("node_doc_build: missing llm client")
        self.db = db_session
        self.llm = llm
        self.blob_store = blob_store
        self.progress = progress
        self.settings = get_settings()
        cfg = self.settings.get_doc_build_config()
        self.prompt_version = cfg["prompt_version"]
        self.model = cfg["model"]
        self.max_attempts = cfg["max_attempts"]
        self.quality_mode = cfg["quality_mode"]
        self.polish_enabled = cfg["polish_enabled"]
        self.max_chunk_ids = cfg["max_chunk_ids"]
        self.excerpt_lines = cfg["excerpts"]["max_lines"]
        self.excerpt_chars = cfg["excerpts"]["max_chars"]
        self.diagram_limit = env_int("NODE_DOC_DIAGRAMS_LIMIT", -1, lo=-1)
        self.must_cite_per_node = env_int("NODE_DOC_MUST_CITE_PER_NODE", 2, lo=1, hi=8)
        self.mixer = RetrievalMixer(
            vector_store,
            lexical_index if lexical_index is not None else DatabaseLexicalIndex(db_session),
        )
        self.signals = MaterialSignalStore(db_session)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load_chunks(self, file_ids: list[UUID]) -> dict[str, MaterialChunk]:
        if not file_ids:
            return {}
        rows = self.db.scalars(
            select(MaterialChunk)
            .where(MaterialChunk.material_file_id.in_(file_ids))
            .order_by(MaterialChunk.material_file_id, MaterialChunk.seq)
        ).all()
        return {str(ch.id): ch for ch in rows if not ch.is_unextractable}

    def _load_files(self, material_set_id: UUID, path_meta: dict[str, Any]) -> list[MaterialFile]:
        files = self.db.scalars(
            select(MaterialFile).where(MaterialFile.material_set_id == material_set_id)
        ).all()
        allow = {s.strip() for s in string_slice_from_any(path_meta.get("material_file_ids")) if s.strip()}
        if allow:
            filtered = [f for f in files if str(f.id) in allow]
            if filtered:
                return filtered
            logger.warning("Path file filter excluded every file; ignoring filter")
        return list(files)

    def _media_assets(self, node_ids: list[UUID]) -> dict[UUID, list[tuple[MediaAsset, list[str]]]]:
        """Rendered figures and videos per node, with the chunk ids their plans cite."""
        out: dict[UUID, list[tuple[MediaAsset, list[str]]]] = {}
        if not node_ids:
            return out
        for model, kind, default_mime, ext in (
            (LearningNodeFigure, "image", "image/png", "png"),
            (LearningNodeVideo, "video", "video/mp4", "mp4"),
        ):
            rows = self.db.scalars(
                select(model).where(model.path_node_id.in_(node_ids)).order_by(model.slot)
            ).all()
            for r in rows:
                if r.slot <= 0 or (r.status or "").strip().lower() != "rendered":
                    continue
                url = (r.asset_url or "").strip()
                key = (r.asset_storage_key or "").strip()
                if not url and key and self.blob_store is not None:
                    url = self.blob_store.get_public_url("material", key)
                if not url:
                    continue
                plan = r.plan_json if isinstance(r.plan_json, dict) else {}
                semantic_type = string_from_any(plan.get("semantic_type")).strip()
                prefix = semantic_type or ("figure" if kind == "image" else "video")
                cids = dedupe_strings(string_slice_from_any(plan.get("citations")))
                notes = []
                if semantic_type:
                    notes.append(f"semantic_type={semantic_type}")
                caption = string_from_any(plan.get("caption")).strip()
                if caption:
                    notes.append(f"caption={shorten(caption, 180)}")
                asset = MediaAsset(
                    kind=kind,
                    url=url,
                    key=key,
                    file_name=f"{prefix}_slot_{r.slot}.{ext}",
                    mime_type=(r.asset_mime_type or "").strip() or default_mime,
                    source="derived",
                    asset_kind=f"generated_{'figure' if kind == 'image' else 'video'}",
                    notes=" | ".join(notes),
                    chunk_ids=cids,
                )
                out.setdefault(r.path_node_id, []).append((asset, cids))
        return out

    def _plan_work(self, nodes: list[PathNode], skip: set[UUID]) -> list[NodeWork]:
        by_id = {n.id: n for n in nodes}
        info: dict[UUID, dict[str, Any]] = {}
        for n in nodes:
            meta = n.meta or {}
            kind = normalize_node_kind(string_from_any(meta.get("node_kind")) or n.node_kind)
            info[n.id] = {"kind": kind, "meta": meta}

        # Lessons thread to neighbouring lessons, modules to neighbouring modules.
        lessons = [n for n in nodes if info[n.id]["kind"] != "module"]
        modules = [n for n in nodes if info[n.id]["kind"] == "module"]
        prev_of: dict[UUID, PathNode] = {}
        next_of: dict[UUID, PathNode] = {}
        for seq in (lessons, modules):
            for a, b in zip(seq, seq[1:]):
                prev_of[b.id] = a
                next_of[a.id] = b

        work = []
        for n in nodes:
            if n.id in skip:
                continue
            meta = info[n.id]["meta"]
            kind = info[n.id]["kind"]
            module = self._module_of(n, by_id, info)
            goal = string_from_any(meta.get("goal")).strip()
            keys = normalize_concept_keys(meta.get("concept_keys"))
            outline = string_slice_from_any(meta.get("outline_headings"))
            if not outline and isinstance(meta.get("outline"), dict):
                outline = [
                    string_from_any(s.get("heading")).strip()
                    for s in meta["outline"].get("sections") or []
                    if isinstance(s, dict) and string_from_any(s.get("heading")).strip()
                ]
            blueprint = None
            if isinstance(meta.get("blueprint"), dict):
                blueprint = DocBlueprint.from_dict(meta["blueprint"])
            work.append(
                NodeWork(
                    node=n,
                    node_kind=kind,
                    doc_template=normalize_doc_template(string_from_any(meta.get("doc_template")), kind),
                    goal=goal,
                    concept_keys=keys,
                    prereq_keys=normalize_concept_keys(meta.get("prereq_concept_keys")),
                    outline_headings=outline,
                    blueprint=blueprint,
                    prev_title=(prev_of[n.id].title or "").strip() if n.id in prev_of else "",
                    next_title=(next_of[n.id].title or "").strip() if n.id in next_of else "",
                    module_title=(module.title or "").strip() if module is not None and module.id != n.id else "",
                    query_text=" ".join(p for p in (n.title or "", goal, ", ".join(keys)) if p).strip(),
                )
            )
        return work

    @staticmethod
    def _module_of(node: PathNode, by_id: dict[UUID, PathNode], info: dict[UUID, dict[str, Any]]) -> Optional[PathNode]:
        cur: Optional[PathNode] = node
        seen: set[UUID] = set()
        while cur is not None and cur.id not in seen:
            seen.add(cur.id)
            if info.get(cur.id, {}).get("kind") == "module":
                return cur
            cur = by_id.get(cur.parent_node_id) if cur.parent_node_id else None
        return None

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def build_path(
        self,
        owner_user_id: UUID,
        material_set_id: UUID,
        path_id: UUID,
        force: bool = False,
    ) -> NodeDocBuildResult:
        """
        Build docs for every node of a path that does not have one yet.

        A node that fails validation after all attempts (or has no grounding)
        is counted in ``docs_failed`` and the remaining nodes continue.

        Args:
            owner_user_id: Path owner
            material_set_id: Material set the path was built from
            path_id: Path to build
            force: Rebuild nodes that already have a doc

        Returns:
            NodeDocBuildResult with counters and per-node failure messages
        """
        if owner_user_id is None:
            raise MissingInputError("node_doc_build: missing owner_user_id")
        if material_set_id is None:
            raise MissingInputError("node_doc_build: missing material_set_id")
        result = NodeDocBuildResult(path_id=path_id)

        path = self.db.get(Path, path_id)
        if path is None:
            raise NotFoundError(f"node_doc_build: path {path_id} not found")
        mset = self.db.get(MaterialSet, material_set_id)
        if mset is None:
            raise NotFoundError(f"node_doc_build: material set {material_set_id} not found")

        nodes = self.db.scalars(
            select(PathNode).where(PathNode.path_id == path_id).order_by(PathNode.index)
        ).all()
        if not nodes:
            raise NotFoundError("node_doc_build: no path nodes")
        node_ids = [n.id for n in nodes]

        existing = {
            d.path_node_id: d
            for d in self.db.scalars(
                select(LearningNodeDoc).where(LearningNodeDoc.path_node_id.in_(node_ids))
            ).all()
        }
        skip = set() if force else set(existing)
        result.docs_existing = len(skip)

        files = self._load_files(material_set_id, path.meta or {})
        file_ids = [f.id for f in files]
        chunk_by_id = self._load_chunks(file_ids)
        if not chunk_by_id:
            raise RetrievalEmptyError("node_doc_build: no chunks for material set")

        work = self._plan_work(list(nodes), skip)
        if not work:
            logger.info(f"All {len(nodes)} nodes of path {path_id} already have docs")
            return result
        logger.info(f"Building {len(work)} node docs for path {path_id} ({len(chunk_by_id)} chunks)")

        # Media assets and the URLs other docs already use.
        media = self._media_assets(node_ids)
        used_urls: set[str] = set()
        covered: set[str] = set()
        for nid, d in existing.items():
            doc = d.load_doc()
            if doc is None or nid not in skip:
                continue
            covered.update(cited_chunk_ids(doc))
            for b in doc_blocks(doc):
                url = string_from_any((b.get("asset") or {}).get("url") if isinstance(b.get("asset"), dict) else b.get("url"))
                if url.strip():
                    used_urls.add(url.strip())
        for w in work:
            for asset, cids in media.get(w.node.id, []):
                w.assets.append(asset)
                if asset.kind == "image":
                    w.figure_chunk_ids.extend(cids)
                else:
                    w.video_chunk_ids.extend(cids)

        # Concept emphasis from material signals.
        signal_ctx = self.signals.load_material_set_signal_context(mset.retrieval_set_id)
        for w in work:
            w.concept_keys = sort_concept_keys_by_weight(w.concept_keys, signal_ctx.weights_by_key)
        signals_json = json.dumps({"top_concepts": signal_ctx.coverage[:12]}, ensure_ascii=False) if signal_ctx.coverage else ""

        # Batch query embeddings.
        embeddings = self.llm.embed([w.query_text for w in work])
        if len(embeddings) != len(work):
            raise GenerationFailedError(
                f"node_doc_build: embedding count mismatch (got {len(embeddings)} want {len(work)})"
            )
        for w, emb in zip(work, embeddings):
            if not emb:
                raise GenerationFailedError("node_doc_build: empty query embedding")
            w.query_embedding = list(emb)

        # Spread chunks no doc cites yet over the nodes being built.
        uncovered = sorted(cid for cid in chunk_by_id if cid not in covered)
        embedding_by_id = {cid: ch.embedding for cid, ch in chunk_by_id.items()}
        for w, ids in zip(
            work,
            distribute_must_cite(uncovered, [w.query_embedding for w in work], embedding_by_id, self.must_cite_per_node),
        ):
            w.must_cite_ids = ids

        rcfg = self.settings.get_retrieval_config()
        plans = [
            RetrievalPlan(
                material_set_id=mset.retrieval_set_id,
                query_text=w.query_text,
                query_embedding=w.query_embedding,
                file_ids=[str(f) for f in file_ids],
                semantic_k=rcfg["semantic_k"],
                lexical_k=rcfg["lexical_k"],
                final_k=rcfg["final_k"],
            )
            for w in work
        ]

        def local_embeddings() -> list[tuple[str, Optional[list[float]]]]:
            return [(cid, emb) for cid, emb in embedding_by_id.items() if emb]

        retrieved = self.mixer.retrieve_many(plans, chunk_by_id, local_embeddings)

        step = self.progress.range(5, 95) if self.progress is not None else None
        for i, (w, ids) in enumerate(zip(work, retrieved)):
            chunk_ids = [
                cid
                for cid in merge_preserve_order(w.must_cite_ids, w.figure_chunk_ids, w.video_chunk_ids, ids)
                if cid in chunk_by_id
            ][: self.max_chunk_ids]
            try:
                row, metrics = self.build_node_doc(
                    owner_user_id, path_id, w, chunk_ids, chunk_by_id, used_urls, signals_json
                )
            except (ValidationFailedError, RetrievalEmptyError) as e:
                result.docs_failed += 1
                result.failures[str(w.node.id)] = getattr(e, "errors", None) or [str(e)]
                logger.warning(f"Node {w.node.id} ({w.node.title!r}) failed: {e}")
            else:
                result.docs_written += 1
                bc = metrics.get("block_counts") or {}
                result.diagrams_written += bc.get("diagram", 0)
                result.figures_written += bc.get("figure", 0)
                result.videos_written += bc.get("video", 0)
                result.tables_written += bc.get("table", 0)
                logger.debug(f"Node {w.node.id} doc written (hash={row.content_hash[:12]})")
            if step is not None:
                step(i + 1, len(work), "Building lesson docs")

        logger.info(
            f"Node docs for path {path_id}: written={result.docs_written} "
            f"existing={result.docs_existing} failed={result.docs_failed}"
        )
        return result

    # ------------------------------------------------------------------
    # One node
    # ------------------------------------------------------------------

    def build_node_doc(
        self,
        owner_user_id: UUID,
        path_id: UUID,
        work: NodeWork,
        chunk_ids: list[str],
        chunk_by_id: Mapping[str, MaterialChunk],
        used_urls: Optional[set[str]] = None,
        signals_json: str = "",
    ) -> tuple[LearningNodeDoc, dict[str, Any]]:
        """
        Generate, repair, validate and persist one node doc.

        Each attempt records a DocGenerationRun. Validation errors from one
        attempt are appended to the next prompt.

        Returns:
            (persisted LearningNodeDoc, metrics of the accepted attempt)

        Raises:
            RetrievalEmptyError: No grounding excerpts for the node
            SchemaMismatchError: The LLM rejected the response schema
            ValidationFailedError: Still invalid after ``max_attempts``
        """
        excerpts = build_excerpts(chunk_ids, chunk_by_id, self.excerpt_lines, self.excerpt_chars)
        if not excerpts:
            raise RetrievalEmptyError("node_doc_build: empty grounding excerpts")

        allowed = set(chunk_ids)
        must_cite = [cid for cid in work.must_cite_ids if cid in allowed]
        chunk_text_by_id = {cid: ch.text or "" for cid, ch in chunk_by_id.items() if cid in allowed}
        page_by_id = {cid: ch.page or 0 for cid, ch in chunk_by_id.items() if cid in allowed}

        req = requirements_for_template(work.node_kind, work.doc_template, self.quality_mode)
        diagrams_disabled = self.diagram_limit == 0
        if diagrams_disabled:
            req = replace(req, min_diagrams=0)
        require_diagrams = not diagrams_disabled and req.min_diagrams > 0

        assets_json = ""
        if work.assets:
            assets_json = json.dumps(
                [
                    {"kind": a.kind, "url": a.url, "file_name": a.file_name, "notes": a.notes, "chunk_ids": a.chunk_ids}
                    for a in work.assets
                ],
                ensure_ascii=False,
            )
        user_prompt = build_node_doc_user_prompt(
            title=work.node.title or "",
            goal=work.goal,
            concept_keys=work.concept_keys,
            node_kind=work.node_kind,
            doc_template=work.doc_template,
            req=req,
            excerpts=excerpts,
            allowed_chunk_ids=chunk_ids,
            must_cite_ids=must_cite,
            prev_title=work.prev_title,
            next_title=work.next_title,
            module_title=work.module_title,
            outline_headings=work.outline_headings,
            equations_json=build_equations_json(chunk_by_id, chunk_ids),
            signals_json=signals_json,
            assets_json=assets_json,
            diagrams_disabled=diagrams_disabled,
        )

        last_errors: list[str] = []
        for attempt in range(1, self.max_attempts + 1):
            start = time.monotonic()
            try:
                raw = self.llm.generate_json(
                    NODE_DOC_SYSTEM_PROMPT,
                    user_prompt + validation_feedback(last_errors),
                    NODE_DOC_SCHEMA_NAME,
                    NODE_DOC_SCHEMA,
                )
            except Exception as e:  # client failures are retried within the attempt budget
                if "invalid_json_schema" in str(e).lower():
                    raise SchemaMismatchError(f"node_doc_build: schema rejected: {e}") from e
                last_errors = [f"generate_failed: {e}"]
                self._record_run(owner_user_id, path_id, work, attempt, RUN_FAILED, start, last_errors)
                # the same prompt would overflow again
                if is_context_length_error(e):
                    raise ContextLengthExceededError(
                        f"node_doc_build: prompt exceeds context window (path_node_id={work.node.id})"
                    ) from e
                continue

            if not isinstance(raw, dict):
                last_errors = ["schema_unmarshal_failed"]
                self._record_run(owner_user_id, path_id, work, attempt, RUN_FAILED, start, last_errors)
                continue

            outline_errs = validate_outline_heading_order(raw, work.outline_headings)
            if outline_errs:
                last_errors = ["outline_mismatch"] + outline_errs
                self._record_run(owner_user_id, path_id, work, attempt, RUN_FAILED, start, last_errors)
                continue

            doc, repair_metrics = self._repair(raw, work, req, allowed, chunk_ids, chunk_text_by_id, require_diagrams, used_urls)
            doc, errs, metrics = self._validate(doc, work, req, allowed, must_cite, chunk_text_by_id, page_by_id)
            metrics.update(repair_metrics)

            if errs:
                last_errors = errs
                self._record_run(owner_user_id, path_id, work, attempt, RUN_FAILED, start, errs, metrics)
                continue

            row = self._persist(owner_user_id, path_id, work, doc, chunk_ids, metrics, attempt, start)
            if used_urls is not None:
                for b in doc_blocks(doc):
                    asset = b.get("asset") if isinstance(b.get("asset"), dict) else {}
                    url = string_from_any(asset.get("url") or b.get("url")).strip()
                    if url:
                        used_urls.add(url)
            return row, metrics

        raise ValidationFailedError(
            f"node_doc_build: failed validation after retries (path_node_id={work.node.id})",
            errors=last_errors,
        )

    def _repair(
        self,
        raw: dict[str, Any],
        work: NodeWork,
        req: NodeDocRequirements,
        allowed: set[str],
        chunk_ids: list[str],
        chunk_text_by_id: Mapping[str, str],
        require_diagrams: bool,
        used_urls: Optional[set[str]],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Deterministic sanitize/auto-fix cascade; every pass returns a new doc."""
        metrics: dict[str, Any] = {}
        doc = dict(raw)
        if not normalize_concept_keys(doc.get("concept_keys")):
            doc["concept_keys"] = fallback_concept_keys(work)
            metrics["concept_keys_fallback"] = True
        if not string_from_any(doc.get("title")).strip():
            doc["title"] = work.node.title or "Lesson"

        doc, pruned = prune_meta_blocks(doc)
        doc, scrubbed = scrub_node_doc(doc)
        doc, deduped = dedupe_node_doc(doc)
        if pruned:
            metrics["meta_blocks_pruned"] = pruned
        if scrubbed:
            metrics["meta_phrases_scrubbed"] = scrubbed

        if require_diagrams:
            doc, injected = ensure_diagram(doc, allowed, chunk_ids)
            if injected:
                metrics["diagram_injected"] = True
        if self.diagram_limit == 0:
            doc = remove_block_type(doc, "diagram")
        elif self.diagram_limit > 0:
            doc = cap_block_type(doc, "diagram", self.diagram_limit)
        doc, deduped_again = dedupe_node_doc(doc)
        if deduped or deduped_again:
            metrics["deduped"] = deduped + deduped_again

        doc, padded = ensure_minima(doc, req, allowed, chunk_text_by_id, chunk_ids)
        if padded:
            metrics["minima_padded"] = True
        if work.blueprint is not None:
            doc, added, _ = sync_objectives(doc, work.blueprint)
            if added:
                metrics["objectives_added"] = added
        doc, _ = ensure_block_ids(doc)

        if self.polish_enabled and detect_doc_meta_phrases(doc):
            polished, polish_metrics, ok = polish_node_doc(self.llm, doc)
            metrics.update(polish_metrics)
            if ok:
                doc, _ = scrub_node_doc(polished)
                doc, _ = ensure_block_ids(doc)

        if work.assets:
            doc, media_stats = dedupe_node_doc_media(doc, work.assets, used_urls if used_urls is not None else set())
            if media_stats:
                metrics["media_dedupe"] = media_stats

        doc, _ = sanitize_diagrams(doc)
        doc, cite_stats, cite_changed = sanitize_citations(doc, allowed, chunk_text_by_id, chunk_ids)
        if cite_changed:
            metrics["citations_sanitized"] = True
            metrics["citations_sanitize"] = cite_stats.to_dict()

        doc, order_stats, reordered = ensure_quick_checks_after_teaching(doc, chunk_text_by_id)
        if reordered:
            metrics["quick_check_teach_order"] = order_stats.to_dict()
            doc, _ = ensure_block_ids(doc)

        doc, threaded = ensure_threading_references(
            doc, work.prev_title, work.next_title, work.module_title, allowed, chunk_ids
        )
        if threaded:
            metrics["threading_injected"] = True
            doc, _ = ensure_block_ids(doc)
        return doc, metrics

    def _validate(
        self,
        doc: dict[str, Any],
        work: NodeWork,
        req: NodeDocRequirements,
        allowed: set[str],
        must_cite: list[str],
        chunk_text_by_id: Mapping[str, str],
        page_by_id: Mapping[str, int],
    ) -> tuple[dict[str, Any], list[str], dict[str, Any]]:
        """Validate; missing must-cite ids are injected once before giving up.

        Returns:
            (doc, possibly with injected citations, errors, metrics)
        """
        errs, metrics = validate_node_doc(doc, allowed, req)

        if must_cite:
            missing = missing_must_cite_ids(doc, must_cite)
            if missing:
                patched, injected = inject_missing_must_cite(doc, missing, chunk_text_by_id, page_by_id)
                if injected:
                    doc = patched
                    errs, metrics = validate_node_doc(doc, allowed, req)
                    missing = missing_must_cite_ids(doc, must_cite)
                    if not missing:
                        metrics["must_cite_injected"] = True
            if missing:
                metrics["must_cite_missing"] = missing
                errs.append("missing required citations for chunk_ids: " + ", ".join(missing))

        errs.extend(quick_check_order_errors(doc))

        thread_errs, thread_metrics = validate_threading(
            str(metrics.get("doc_text", "")), work.prev_title, work.next_title, work.module_title
        )
        if thread_metrics:
            metrics["threading"] = thread_metrics
        errs.extend(thread_errs)

        if work.blueprint is not None:
            report = validate_doc_against_blueprint(doc, work.blueprint)
            if report.violations:
                metrics["blueprint_violations"] = report.codes()
                errs.extend(f"blueprint {v.code}: {v.message}" for v in report.violations)

        return doc, dedupe_strings(errs), metrics

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _record_run(
        self,
        owner_user_id: UUID,
        path_id: UUID,
        work: NodeWork,
        attempt: int,
        status: str,
        start: float,
        errors: Optional[list[str]] = None,
        metrics: Optional[dict[str, Any]] = None,
        content_hash_: str = "",
        sources_hash_: str = "",
    ) -> DocGenerationRun:
        run = DocGenerationRun(
            user_id=owner_user_id,
            path_id=path_id,
            path_node_id=work.node.id,
            artifact_kind=ARTIFACT_NODE_DOC,
            attempt=attempt,
            status=status,
            model=self.model or "unknown",
            prompt_version=self.prompt_version,
            content_hash=content_hash_,
            sources_hash=sources_hash_,
            errors=list(errors or []),
            metrics={k: v for k, v in (metrics or {}).items() if k != "doc_text"},
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        self.db.add(run)
        self.db.flush()
        if status == RUN_FAILED:
            logger.debug(f"Node {work.node.id} attempt {attempt} failed: {(errors or [''])[:3]}")
        return run

    def _persist(
        self,
        owner_user_id: UUID,
        path_id: UUID,
        work: NodeWork,
        doc: dict[str, Any],
        chunk_ids: list[str],
        metrics: dict[str, Any],
        attempt: int,
        start: float,
    ) -> LearningNodeDoc:
        """Upsert the doc, the succeeded run and the library counter in one savepoint."""
        c_hash = content_hash(doc)
        s_hash = sources_hash(self.prompt_version, chunk_ids)
        now = utcnow()
        with self.db.begin_nested():
            row = self.db.scalar(select(LearningNodeDoc).where(LearningNodeDoc.path_node_id == work.node.id))
            if row is None:
                row = LearningNodeDoc(
                    user_id=owner_user_id,
                    path_id=path_id,
                    path_node_id=work.node.id,
                    created_at=now,
                )
                self.db.add(row)
            row.schema_version = 1
            row.doc_json = canonical_doc_text(doc)
            row.doc_text = str(metrics.get("doc_text", "")).replace("\x00", "")
            row.content_hash = c_hash
            row.sources_hash = s_hash
            row.updated_at = now

            self._record_run(
                owner_user_id, path_id, work, attempt, RUN_SUCCEEDED, start, None, metrics, c_hash, s_hash
            )

            stats = self.db.scalar(select(UserLibraryStats).where(UserLibraryStats.user_id == owner_user_id))
            if stats is None:
                stats = UserLibraryStats(user_id=owner_user_id, node_docs_built=0)
                self.db.add(stats)
            stats.node_docs_built = (stats.node_docs_built or 0) + 1
            stats.last_doc_built_at = now
        return row

