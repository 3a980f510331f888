"""
Deterministic repairs applied to generated node docs before validation.

Each pass takes a doc dict and returns a modified copy; passes are
idempotent so the doc builder can run the whole cascade on every attempt.
Padding content is generic on purpose: it only fills structural minima
and always carries a citation so grounding checks still pass.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any, Optional

from .docutil import (
    block_type,
    citation_chunk_ids,
    copy_doc,
    derived_block_id,
    int_from_any,
    is_teaching_block,
    shorten,
    string_from_any,
    string_slice_from_any,
    truncate_utf8,
)
from .metrics import has_worked_example, node_doc_metrics, word_count
from .requirements import NodeDocRequirements
from .sanitize import MAX_QUOTE_BYTES, citation_ref, pick_fallback_chunk_id
from .svg import build_simple_flow_svg

MUST_CITE_QUOTE_BYTES = 220
EXCERPT_QUOTE_CHARS = 240

_PADDING_SENTENCES = (
    "Restate the idea in your own words and check that each term you use has a precise meaning.",
    "Trace one small case by hand, writing down every intermediate value rather than skipping ahead.",
    "Compare the idea with a neighbouring one and name the single property that separates them.",
    "Look for the assumption that makes the method work, then picture what breaks when it fails.",
    "Connect the result to the cited passage and confirm the wording matches the source material.",
    "Summarize the core rule in one sentence and test it against a case where it should not apply.",
)

_HEADING_ROTATION = ("Roadmap", "Key idea", "Practice", "Key takeaways")

_TAIL_BLOCK_TYPES = frozenset(
    {
        "key_takeaways",
        "glossary",
        "faq",
        "checklist",
        "common_mistakes",
        "misconceptions",
        "edge_cases",
        "heuristics",
        "connections",
        "divider",
    }
)

_BODY_BLOCK_TYPES = frozenset({"paragraph", "callout", "diagram", "table", "code"})
_MUST_CITE_TARGETS = ("paragraph", "callout", "figure", "diagram", "table")


def padding_text(min_words: int, offset: int = 0) -> str:
    """Rotate the padding sentences from ``offset`` until ``min_words`` is reached."""
    min_words = max(min_words, 40)
    parts: list[str] = []
    n = len(_PADDING_SENTENCES)
    for i in range(200):
        parts.append(_PADDING_SENTENCES[(offset + i) % n])
        if word_count(" ".join(parts)) >= min_words:
            break
    return " ".join(parts)


class _Cite:
    """Picks the citation attached to synthesized blocks."""

    def __init__(
        self,
        allowed: Optional[Collection[str]],
        chunk_text_by_id: Optional[Mapping[str, str]],
        fallback_ids: Iterable[Any],
    ):
        self.chunk_id = pick_fallback_chunk_id(allowed, fallback_ids)
        self.text = (chunk_text_by_id or {}).get(self.chunk_id, "")

    def refs(self) -> list[dict[str, Any]]:
        if not self.chunk_id:
            return []
        return [citation_ref(self.chunk_id, truncate_utf8(self.text.strip(), MAX_QUOTE_BYTES))]


# ==============================================================================
# Minima padding
# ==============================================================================


def ensure_minima(
    doc: dict[str, Any],
    req: NodeDocRequirements,
    allowed: Optional[Collection[str]] = None,
    chunk_text_by_id: Optional[Mapping[str, str]] = None,
    fallback_ids: Iterable[Any] = (),
) -> tuple[dict[str, Any], bool]:
    """
    Append scaffold blocks until every structural minimum in ``req`` is met.

    Blocks are appended in a fixed order (worked example, headings, narrative
    blocks, paragraphs, callouts, interactive blocks, lists, tables, then a
    final word-count paragraph) so repeated runs produce the same doc.

    Returns:
        (doc copy, changed)
    """
    out = copy_doc(doc)
    cite = _Cite(allowed, chunk_text_by_id, fallback_ids)
    blocks = out["blocks"]
    changed = False

    if int_from_any(out.get("schema_version"), 0) == 0:
        out["schema_version"] = 1
        changed = True
    if not string_from_any(out.get("title")).strip():
        out["title"] = "Lesson"
        changed = True

    def counts() -> dict[str, int]:
        return node_doc_metrics(out)["block_counts"]

    def add(block: dict[str, Any]) -> None:
        nonlocal changed
        if block_type(block) != "heading":
            block["citations"] = cite.refs()
        blocks.append(block)
        changed = True

    if req.require_example and not has_worked_example(out):
        add(
            {
                "type": "callout",
                "variant": "tip",
                "title": "Worked example",
                "md": (
                    "Take the smallest input the cited material discusses and apply the idea one step "
                    "at a time. Write the state after every step, then compare the final state with "
                    "what the source says should happen."
                ),
            }
        )

    bc = counts()
    for i in range(bc.get("heading", 0), req.min_headings):
        add({"type": "heading", "level": 2, "text": _HEADING_ROTATION[i % len(_HEADING_ROTATION)]})

    narrative = (
        ("why_it_matters", req.min_why_it_matters, "Why it matters"),
        ("intuition", req.min_intuition, "Intuition"),
        ("mental_model", req.min_mental_models, "Mental model"),
    )
    for t, n, title in narrative:
        for i in range(counts().get(t, 0), n):
            add({"type": t, "title": title, "md": padding_text(40, i + len(t))})

    n_para = counts().get("paragraph", 0)
    for i in range(n_para, req.min_paragraphs):
        add({"type": "paragraph", "md": padding_text(90, i)})

    for i in range(counts().get("callout", 0), req.min_callouts):
        add({"type": "callout", "variant": "info", "title": "Tip", "md": padding_text(40, i + 1)})

    out, interactive_changed = _append_interactive(out, req, cite)
    blocks = out["blocks"]
    changed = changed or interactive_changed

    bc = counts()
    if req.min_pitfalls > 0 and bc.get("misconceptions", 0) + bc.get("common_mistakes", 0) < req.min_pitfalls:
        for _ in range(bc.get("misconceptions", 0) + bc.get("common_mistakes", 0), req.min_pitfalls):
            add(
                {
                    "type": "common_mistakes",
                    "title": "Common mistakes",
                    "items_md": [
                        "Applying the rule without checking that its assumptions hold.",
                        "Skipping intermediate steps and losing track of the state.",
                        "Confusing a related term with the one defined here.",
                    ],
                }
            )
    for _ in range(bc.get("steps", 0), req.min_steps):
        add(
            {
                "type": "steps",
                "title": "Procedure",
                "steps_md": [
                    "Identify the inputs and what is being asked.",
                    "Select the rule or definition that applies.",
                    "Apply it one step at a time, recording each result.",
                    "Check the result against the source material.",
                ],
            }
        )
    for _ in range(bc.get("checklist", 0), req.min_checklist):
        add(
            {
                "type": "checklist",
                "title": "Checklist",
                "items_md": [
                    "Every term used is defined.",
                    "Each step follows from the previous one.",
                    "The result agrees with the cited passage.",
                ],
            }
        )
    for _ in range(bc.get("connections", 0), req.min_connections):
        add(
            {
                "type": "connections",
                "title": "Connections",
                "items_md": [
                    "Relates to the definitions introduced earlier in this path.",
                    "Supports the techniques practiced in later lessons.",
                    "Shares its core assumption with neighbouring concepts.",
                ],
            }
        )
    for _ in range(bc.get("table", 0), req.min_tables):
        add(
            {
                "type": "table",
                "caption": "Summary table",
                "columns": ["Item", "Notes"],
                "rows": [
                    ["Definition", "State it precisely, in one sentence."],
                    ["Example", "Work one small case by hand."],
                    ["Pitfall", "Name the assumption most often forgotten."],
                ],
            }
        )

    bc = counts()
    if req.require_media and not (bc.get("figure") or bc.get("diagram") or bc.get("table")):
        add(
            {
                "type": "table",
                "caption": "Self-check table",
                "columns": ["Question", "Where to look"],
                "rows": [
                    ["What does the key term mean?", "The definition paragraph."],
                    ["When does the rule apply?", "The worked example."],
                ],
            }
        )

    words = node_doc_metrics(out)["word_count"]
    if req.min_word_count > 0 and words < req.min_word_count:
        missing = req.min_word_count - words
        add({"type": "paragraph", "md": padding_text(missing + 140, words)})

    return out, changed


def _append_interactive(
    doc: dict[str, Any], req: NodeDocRequirements, cite: _Cite
) -> tuple[dict[str, Any], bool]:
    bc = node_doc_metrics(doc)["block_counts"]
    # Scaffold checks cite a chunk an earlier teaching block already cites, so ordering holds.
    taught = [
        cid
        for b in doc["blocks"]
        if is_teaching_block(block_type(b))
        for cid in citation_chunk_ids(b.get("citations"))
    ]
    refs = [citation_ref(taught[0])] if taught else cite.refs()
    title = string_from_any(doc.get("title")).strip() or "this lesson"
    changed = False

    for i in range(bc.get("quick_check", 0), req.min_quick_checks):
        doc["blocks"].append(
            {
                "type": "quick_check",
                "kind": "short_answer",
                "prompt_md": f"In one or two sentences, explain the central idea of {title} (check {i + 1}).",
                "answer_md": "A good answer restates the core definition and names one case where it applies.",
                "options": [],
                "answer_id": "",
                "citations": list(refs),
            }
        )
        changed = True
    for i in range(bc.get("flashcard", 0), req.min_flashcards):
        doc["blocks"].append(
            {
                "type": "flashcard",
                "front_md": f"What is the key idea of {title}? ({i + 1})",
                "back_md": "The core definition, stated precisely, plus one example where it applies.",
                "citations": list(refs),
            }
        )
        changed = True
    return doc, changed


def ensure_interactive_minima(
    doc: dict[str, Any],
    req: NodeDocRequirements,
    allowed: Optional[Collection[str]] = None,
    chunk_text_by_id: Optional[Mapping[str, str]] = None,
    fallback_ids: Iterable[Any] = (),
) -> tuple[dict[str, Any], bool]:
    """Append quick checks and flashcards until their minima are met."""
    return _append_interactive(copy_doc(doc), req, _Cite(allowed, chunk_text_by_id, fallback_ids))


# ==============================================================================
# Teach before test
# ==============================================================================


@dataclass
class QuickCheckOrderStats:
    quick_checks_seen: int = 0
    quick_checks_reordered: int = 0
    context_paragraphs_inserted: int = 0
    pending_quick_checks_resolved: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _excerpt_paragraph(missing: list[str], chunk_text_by_id: Mapping[str, str]) -> dict[str, Any]:
    lines = []
    for cid in missing:
        text = " ".join(chunk_text_by_id.get(cid, "").split())
        if text:
            lines.append("> " + shorten(text, EXCERPT_QUOTE_CHARS))
    body = "\n>\n".join(lines) if lines else "_(Relevant passage is cited below.)_"
    return {
        "id": derived_block_id("context", *missing),
        "type": "paragraph",
        "md": "Relevant excerpt (from your materials):\n\n" + body,
        "citations": [
            citation_ref(cid, truncate_utf8(chunk_text_by_id.get(cid, "").strip(), MAX_QUOTE_BYTES))
            for cid in missing
        ],
    }


def ensure_quick_checks_after_teaching(
    doc: dict[str, Any], chunk_text_by_id: Optional[Mapping[str, str]] = None
) -> tuple[dict[str, Any], QuickCheckOrderStats, bool]:
    """
    Move each quick check after the teaching blocks that cover its citations.

    A quick check whose cited chunks were not yet taught is held back and
    re-emitted right after the teaching block that completes its coverage.
    Checks still uncovered at the end are emitted behind a short excerpt
    paragraph that cites exactly the untaught chunks.

    Returns:
        (doc copy, stats, changed)
    """
    out = copy_doc(doc)
    chunk_text_by_id = chunk_text_by_id or {}
    stats = QuickCheckOrderStats()
    taught: set[str] = set()
    pending: list[tuple[dict[str, Any], list[str]]] = []
    result: list[dict[str, Any]] = []

    def flush() -> None:
        still = []
        for q, ids in pending:
            if all(cid in taught for cid in ids):
                result.append(q)
                stats.pending_quick_checks_resolved += 1
            else:
                still.append((q, ids))
        pending[:] = still

    for b in out["blocks"]:
        t = block_type(b)
        ids = citation_chunk_ids(b.get("citations"))
        if t == "quick_check":
            stats.quick_checks_seen += 1
            if all(cid in taught for cid in ids):
                result.append(b)
            else:
                pending.append((b, ids))
                stats.quick_checks_reordered += 1
            continue
        result.append(b)
        if is_teaching_block(t) and ids:
            taught.update(ids)
            if pending:
                flush()

    for q, ids in pending:
        missing = [cid for cid in ids if cid not in taught]
        if missing:
            result.append(_excerpt_paragraph(missing, chunk_text_by_id))
            stats.context_paragraphs_inserted += 1
            taught.update(missing)
        result.append(q)

    out["blocks"] = result
    changed = stats.quick_checks_reordered > 0 or stats.context_paragraphs_inserted > 0
    return out, stats, changed


# ==============================================================================
# Must-cite
# ==============================================================================


def inject_missing_must_cite(
    doc: dict[str, Any],
    missing_ids: Iterable[str],
    chunk_text_by_id: Optional[Mapping[str, str]] = None,
    page_by_id: Optional[Mapping[str, int]] = None,
) -> tuple[dict[str, Any], list[str]]:
    """
    Add missing must-cite chunk ids to the first citation-bearing body block.

    Quick checks are never touched so teach-before-test ordering is preserved.

    Returns:
        (doc copy, chunk ids injected)
    """
    out = copy_doc(doc)
    chunk_text_by_id = chunk_text_by_id or {}
    page_by_id = page_by_id or {}
    target = next((b for b in out["blocks"] if block_type(b) in _MUST_CITE_TARGETS), None)
    if target is None:
        return out, []

    citations = list(target.get("citations") or []) if isinstance(target.get("citations"), list) else []
    present = set(citation_chunk_ids(citations))
    injected = []
    for cid in missing_ids:
        cid = str(cid).strip()
        if not cid or cid in present:
            continue
        quote = truncate_utf8(chunk_text_by_id.get(cid, "").strip(), MUST_CITE_QUOTE_BYTES)
        citations.append(citation_ref(cid, quote, page=max(int(page_by_id.get(cid, 0) or 0), 0)))
        present.add(cid)
        injected.append(cid)
    target["citations"] = citations
    return out, injected


# ==============================================================================
# Placement helpers
# ==============================================================================


def insert_after_first_body_block(blocks: list[dict[str, Any]], block: dict[str, Any]) -> list[dict[str, Any]]:
    for i, b in enumerate(blocks):
        if block_type(b) in _BODY_BLOCK_TYPES:
            return blocks[: i + 1] + [block] + blocks[i + 1 :]
    return blocks + [block]


def insert_before_tail_blocks(blocks: list[dict[str, Any]], block: dict[str, Any]) -> list[dict[str, Any]]:
    for i, b in enumerate(blocks):
        if block_type(b) in _TAIL_BLOCK_TYPES:
            return blocks[:i] + [block] + blocks[i:]
    return blocks + [block]


# ==============================================================================
# Auto diagram
# ==============================================================================


def auto_diagram_labels(doc: dict[str, Any]) -> list[str]:
    labels = []
    for k in string_slice_from_any(doc.get("concept_keys")):
        label = shorten(k.replace("_", " ").strip(), 28)
        if label and label not in labels:
            labels.append(label)
        if len(labels) == 4:
            break
    if labels:
        return labels
    title = string_from_any(doc.get("title")).strip()
    return [shorten(title, 28)] if title else ["Core idea"]


def ensure_diagram(
    doc: dict[str, Any],
    allowed: Optional[Collection[str]] = None,
    fallback_ids: Iterable[Any] = (),
) -> tuple[dict[str, Any], bool]:
    """Insert a simple concept flow SVG when the doc has no diagram."""
    out = copy_doc(doc)
    if any(block_type(b) == "diagram" for b in out["blocks"]):
        return out, False
    svg = build_simple_flow_svg(auto_diagram_labels(out))
    if not svg:
        return out, False
    cid = pick_fallback_chunk_id(allowed, fallback_ids)
    block = {
        "id": derived_block_id("auto_diagram", svg, cid),
        "type": "diagram",
        "kind": "svg",
        "source": svg,
        "caption": "Concept relationship overview",
        "citations": [citation_ref(cid)] if cid else [],
    }
    out["blocks"] = insert_after_first_body_block(out["blocks"], block)
    return out, True


# ==============================================================================
# Threading
# ==============================================================================


def ensure_threading_references(
    doc: dict[str, Any],
    prev_title: str = "",
    next_title: str = "",
    module_title: str = "",
    allowed: Optional[Collection[str]] = None,
    fallback_ids: Iterable[Any] = (),
) -> tuple[dict[str, Any], bool]:
    """
    Name the neighbouring lesson and module titles when the doc does not.

    Returns:
        (doc copy, changed)
    """
    out = copy_doc(doc)
    text = str(node_doc_metrics(out)["doc_text"]).lower()

    def absent(title: str) -> bool:
        t = (title or "").strip()
        return bool(t) and t.lower() not in text

    sentences = []
    if absent(prev_title):
        sentences.append(f'Earlier in "{prev_title.strip()}", you met the groundwork this lesson builds on.')
    if absent(module_title):
        sentences.append(f'This fits within "{module_title.strip()}", alongside the related lessons.')
    if absent(next_title):
        sentences.append(f'After this, "{next_title.strip()}" carries these ideas forward.')
    if not sentences:
        return out, False

    cid = pick_fallback_chunk_id(allowed, fallback_ids)
    block = {
        "id": derived_block_id("thread", *sentences),
        "type": "paragraph",
        "md": " ".join(sentences),
        "citations": [citation_ref(cid)] if cid else [],
    }
    out["blocks"] = insert_before_tail_blocks(out["blocks"], block)
    return out, True

