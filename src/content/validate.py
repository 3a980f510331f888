"""
Node doc validation.

Validators return human-readable error strings (de-duplicated, in discovery
order) so they can be fed back to the model verbatim on retry. Banned phrases
are reported by count only; echoing them would teach the model the phrase.
"""

from __future__ import annotations

import uuid
from collections.abc import Collection, Iterable
from typing import Any

from .docutil import (
    LIST_BLOCK_TYPES,
    NARRATIVE_BLOCK_TYPES,
    UNCITED_BLOCK_TYPES,
    block_type,
    citation_chunk_ids,
    dedupe_strings,
    doc_blocks,
    int_from_any,
    is_teaching_block,
    string_from_any,
    string_matrix_from_any,
    string_slice_from_any,
)
from .metrics import find_banned_phrases, has_worked_example, node_doc_metrics
from .requirements import NodeDocRequirements

MAX_QUOTE_BYTES = 240


def _blank(v: Any) -> bool:
    return not string_from_any(v).strip()


def validate_citations(
    prefix: str, raw: Any, allowed: Collection[str] | None = None
) -> list[str]:
    """Check a block's ``citations`` array. An empty ``allowed`` accepts any uuid."""
    refs = [c for c in raw if isinstance(c, dict)] if isinstance(raw, list) else []
    if not refs:
        return [f"{prefix} citations missing"]

    errs: list[str] = []
    seen: set[str] = set()
    for c in refs:
        cid = string_from_any(c.get("chunk_id")).strip()
        if not cid:
            errs.append(f"{prefix} citation.chunk_id missing")
            continue
        if not _is_uuid(cid):
            errs.append(f"{prefix} citation.chunk_id invalid uuid: {cid}")
            continue
        if allowed and cid not in allowed:
            errs.append(f"{prefix} citation.chunk_id not allowed: {cid}")
        if cid in seen:
            continue
        seen.add(cid)

        quote = string_from_any(c.get("quote")).strip()
        if len(quote.encode("utf-8")) > MAX_QUOTE_BYTES:
            errs.append(f"{prefix} citation.quote too long")
        loc = c.get("loc") if isinstance(c.get("loc"), dict) else {}
        page = int_from_any(loc.get("page"), 0)
        start = int_from_any(loc.get("start"), 0)
        end = int_from_any(loc.get("end"), 0)
        if start < 0 or end < 0 or page < 0:
            errs.append(f"{prefix} citation.loc must be non-negative")
        if end > 0 and start > 0 and end < start:
            errs.append(f"{prefix} citation.loc end < start")
    return errs


def _is_uuid(s: str) -> bool:
    try:
        uuid.UUID(s)
    except ValueError:
        return False
    return True


def _validate_quick_check(i: int, b: dict[str, Any]) -> list[str]:
    errs: list[str] = []
    if _blank(b.get("prompt_md")):
        errs.append(f"block[{i}] quick_check.prompt_md missing")
    if _blank(b.get("answer_md")):
        errs.append(f"block[{i}] quick_check.answer_md missing")

    kind = string_from_any(b.get("kind")).strip().lower()
    answer_id = string_from_any(b.get("answer_id")).strip()
    options = b.get("options") if isinstance(b.get("options"), list) else []
    if not (kind in ("mcq", "true_false") or options or answer_id):
        return errs

    label = kind or "choice"
    if len(options) < 2:
        errs.append(f"block[{i}] quick_check.options needs >=2 options for {label}")
    option_ids: set[str] = set()
    for j, opt in enumerate(options):
        if not isinstance(opt, dict):
            errs.append(f"block[{i}] quick_check.options[{j}] invalid")
            continue
        oid = string_from_any(opt.get("id")).strip()
        if not oid:
            errs.append(f"block[{i}] quick_check.options[{j}].id missing")
        elif oid in option_ids:
            errs.append(f'block[{i}] quick_check.options[{j}].id duplicate "{oid}"')
        if _blank(opt.get("text")):
            errs.append(f"block[{i}] quick_check.options[{j}].text missing")
        if oid:
            option_ids.add(oid)
    if not answer_id:
        errs.append(f"block[{i}] quick_check.answer_id missing")
    elif option_ids and answer_id not in option_ids:
        errs.append(f'block[{i}] quick_check.answer_id "{answer_id}" not in options')
    return errs


def _validate_pairs(i: int, t: str, field: str, a: str, b_key: str, raw: Any) -> list[str]:
    if not isinstance(raw, list) or not raw:
        return [f"block[{i}] {t}.{field} missing"]
    errs = []
    for j, item in enumerate(raw):
        if not isinstance(item, dict):
            errs.append(f"block[{i}] {t}.{field}[{j}] invalid")
            continue
        if _blank(item.get(a)):
            errs.append(f"block[{i}] {t}.{field}[{j}].{a} missing")
        if _blank(item.get(b_key)):
            errs.append(f"block[{i}] {t}.{field}[{j}].{b_key} missing")
    return errs


def _validate_block(i: int, b: dict[str, Any]) -> list[str]:
    t = block_type(b)
    errs: list[str] = []

    if t == "heading":
        level = int_from_any(b.get("level"), 0)
        if level < 2 or level > 4:
            errs.append(f"block[{i}] heading.level must be 2-4 (got {level})")
        if _blank(b.get("text")):
            errs.append(f"block[{i}] heading.text missing")
    elif t == "paragraph":
        if _blank(b.get("md")):
            errs.append(f"block[{i}] paragraph.md missing")
    elif t == "callout":
        variant = string_from_any(b.get("variant")).strip().lower()
        if variant not in ("info", "tip", "warning"):
            errs.append(f'block[{i}] callout.variant invalid ("{variant}")')
        if _blank(b.get("md")):
            errs.append(f"block[{i}] callout.md missing")
    elif t == "code":
        if _blank(b.get("code")):
            errs.append(f"block[{i}] code.code missing")
    elif t == "figure":
        asset = b.get("asset") if isinstance(b.get("asset"), dict) else {}
        if _blank(asset.get("url")):
            errs.append(f"block[{i}] figure.asset.url missing")
    elif t == "video":
        if _blank(b.get("url")):
            errs.append(f"block[{i}] video.url missing")
    elif t == "diagram":
        kind = string_from_any(b.get("kind")).strip().lower()
        if kind not in ("svg", "mermaid"):
            errs.append(f'block[{i}] diagram.kind invalid ("{kind}")')
        if _blank(b.get("source")):
            errs.append(f"block[{i}] diagram.source missing")
    elif t == "table":
        if not string_slice_from_any(b.get("columns")):
            errs.append(f"block[{i}] table.columns missing")
        if not string_matrix_from_any(b.get("rows")):
            errs.append(f"block[{i}] table.rows missing")
    elif t == "equation":
        if _blank(b.get("latex")):
            errs.append(f"block[{i}] equation.latex missing")
        if not isinstance(b.get("display"), (bool, int, float)):
            errs.append(f"block[{i}] equation.display missing")
    elif t == "quick_check":
        errs.extend(_validate_quick_check(i, b))
    elif t == "flashcard":
        if _blank(b.get("front_md")):
            errs.append(f"block[{i}] flashcard.front_md missing")
        if _blank(b.get("back_md")):
            errs.append(f"block[{i}] flashcard.back_md missing")
    elif t == "divider":
        pass
    elif t in LIST_BLOCK_TYPES:
        if not string_slice_from_any(b.get("items_md")):
            errs.append(f"block[{i}] {t}.items_md missing")
    elif t == "steps":
        if not string_slice_from_any(b.get("steps_md")):
            errs.append(f"block[{i}] steps.steps_md missing")
    elif t == "glossary":
        errs.extend(_validate_pairs(i, t, "terms", "term", "definition_md", b.get("terms")))
    elif t == "faq":
        errs.extend(_validate_pairs(i, t, "qas", "question_md", "answer_md", b.get("qas")))
    elif t in NARRATIVE_BLOCK_TYPES:
        if _blank(b.get("md")):
            errs.append(f"block[{i}] {t}.md missing")
    else:
        errs.append(f'block[{i}] unknown type "{t}"')
    return errs


def validate_node_doc(
    doc: dict[str, Any],
    allowed_chunk_ids: Collection[str] | None,
    req: NodeDocRequirements,
) -> tuple[list[str], dict[str, Any]]:
    """
    Validate a node doc against template minima and per-block field rules.

    Args:
        doc: Node doc dict
        allowed_chunk_ids: Chunk ids citations may reference; empty allows any uuid
        req: Structural minima

    Returns:
        (errors, metrics) where metrics comes from ``node_doc_metrics`` and may
        carry ``banned_phrases``
    """
    errs: list[str] = []

    schema_version = int_from_any(doc.get("schema_version"), 0)
    if schema_version != 1:
        errs.append(f"schema_version must be 1 (got {schema_version})")
    if _blank(doc.get("title")):
        errs.append("title missing")
    if not dedupe_strings(string_slice_from_any(doc.get("concept_keys"))):
        errs.append("concept_keys missing")
    blocks = doc_blocks(doc)
    if not blocks:
        errs.append("blocks missing")

    metrics = node_doc_metrics(doc)
    words = metrics["word_count"]
    bc = metrics["block_counts"]
    count = lambda t: bc.get(t, 0)  # noqa: E731

    if req.min_word_count > 0 and words < req.min_word_count:
        errs.append(f"word_count too low ({words} < {req.min_word_count})")
    if req.min_headings > 0 and count("heading") < req.min_headings:
        errs.append(f"need >={req.min_headings} headings (got {count('heading')})")

    minima = (
        ("paragraph", req.min_paragraphs),
        ("callout", req.min_callouts),
        ("quick_check", req.min_quick_checks),
        ("flashcard", req.min_flashcards),
        ("diagram", req.min_diagrams),
        ("table", req.min_tables),
        ("why_it_matters", req.min_why_it_matters),
        ("intuition", req.min_intuition),
        ("mental_model", req.min_mental_models),
    )
    for t, n in minima:
        if n > 0 and count(t) < n:
            errs.append(f"need >={n} {t} blocks (got {count(t)})")

    pitfalls = count("misconceptions") + count("common_mistakes")
    if req.min_pitfalls > 0 and pitfalls < req.min_pitfalls:
        errs.append(f"need >={req.min_pitfalls} misconceptions|common_mistakes blocks (got {pitfalls})")
    for t, n in (("steps", req.min_steps), ("checklist", req.min_checklist), ("connections", req.min_connections)):
        if n > 0 and count(t) < n:
            errs.append(f"need >={n} {t} blocks (got {count(t)})")

    if req.require_media and not (count("figure") or count("diagram") or count("table")):
        errs.append("need at least one figure|diagram|table block")
    if req.require_example and not has_worked_example(doc):
        errs.append(
            "missing worked example (heading containing 'example' or a tip callout titled 'Worked example')"
        )

    banned = find_banned_phrases(metrics["doc_text"])
    if banned:
        metrics["banned_phrases"] = banned
        errs.append(f"contains banned meta phrasing ({len(banned)} hits)")

    for i, b in enumerate(blocks):
        errs.extend(_validate_block(i, b))
        t = block_type(b)
        if t in UNCITED_BLOCK_TYPES or not _is_known(t):
            # optional here, but anything present must still resolve
            if isinstance(b.get("citations"), list) and b["citations"]:
                errs.extend(validate_citations(f"block[{i}]", b["citations"], allowed_chunk_ids))
            continue
        errs.extend(validate_citations(f"block[{i}]", b.get("citations"), allowed_chunk_ids))

    return dedupe_strings(errs), metrics


_KNOWN_CITED = frozenset(
    {
        "paragraph",
        "callout",
        "figure",
        "diagram",
        "table",
        "equation",
        "quick_check",
        "flashcard",
        "steps",
        "glossary",
        "faq",
        *LIST_BLOCK_TYPES,
        *NARRATIVE_BLOCK_TYPES,
    }
)


def _is_known(t: str) -> bool:
    return t in _KNOWN_CITED


def validate_outline_heading_order(doc: dict[str, Any], outline_headings: Iterable[str]) -> list[str]:
    """Doc headings must contain the outline headings as an ordered, case-insensitive subsequence."""
    expected = [h.strip() for h in outline_headings if h and h.strip()]
    if not expected:
        return []
    actual = [
        string_from_any(b.get("text")).strip()
        for b in doc_blocks(doc)
        if block_type(b) == "heading" and string_from_any(b.get("text")).strip()
    ]
    if not actual:
        return ["order missing headings required by outline"]
    idx = 0
    for h in actual:
        if idx >= len(expected):
            break
        if h.lower() == expected[idx].lower():
            idx += 1
    if idx < len(expected):
        return ["headings do not follow outline order"]
    return []


def _contains_insensitive(haystack: str, needle: str) -> bool:
    h = (haystack or "").strip().lower()
    n = (needle or "").strip().lower()
    return bool(h and n and n in h)


def validate_threading(
    doc_text: str, prev_title: str = "", next_title: str = "", module_title: str = ""
) -> tuple[list[str], dict[str, bool]]:
    errs: list[str] = []
    metrics: dict[str, bool] = {}
    if not (doc_text or "").strip():
        return errs, metrics
    checks = (
        ("prev_title_present", prev_title, "missing explicit reference to previous lesson title"),
        ("next_title_present", next_title, "missing explicit reference to next lesson title"),
        ("module_title_present", module_title, "missing explicit reference to module title"),
    )
    for key, title, message in checks:
        if not (title or "").strip():
            continue
        ok = _contains_insensitive(doc_text, title)
        metrics[key] = ok
        if not ok:
            errs.append(message)
    return errs, metrics


def cited_chunk_ids(doc: dict[str, Any]) -> list[str]:
    out: list[str] = []
    for b in doc_blocks(doc):
        for cid in citation_chunk_ids(b.get("citations")):
            if cid not in out:
                out.append(cid)
    return out


def missing_must_cite_ids(doc: dict[str, Any], must_cite_ids: Iterable[Any]) -> list[str]:
    cited = set(cited_chunk_ids(doc))
    out = []
    for cid in must_cite_ids:
        s = str(cid).strip()
        if s and s not in cited and s not in out:
            out.append(s)
    return out


def quick_check_order_errors(doc: dict[str, Any]) -> list[str]:
    """
    Report quick checks whose cited chunks were not cited by an earlier teaching block.
    """
    taught: set[str] = set()
    errs = []
    for i, b in enumerate(doc_blocks(doc)):
        t = block_type(b)
        ids = citation_chunk_ids(b.get("citations"))
        if t == "quick_check":
            untaught = [cid for cid in ids if cid not in taught]
            if untaught:
                errs.append(f"block[{i}] quick_check cites untaught chunk_ids: {', '.join(untaught)}")
            continue
        if is_teaching_block(t):
            taught.update(ids)
    return errs
