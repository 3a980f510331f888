"""
Deterministic clean-up passes over generated node docs.

Every pass takes a doc dict and returns a new doc plus what it changed; the
input is never mutated. Passes are idempotent: running one twice yields the
same doc as running it once.
"""

from __future__ import annotations

import re
from collections.abc import Collection, Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from .docutil import (
    LIST_BLOCK_TYPES,
    NARRATIVE_BLOCK_TYPES,
    UNCITED_BLOCK_TYPES,
    block_type,
    copy_doc,
    dedupe_strings,
    int_from_any,
    parse_uuid,
    shorten,
    string_from_any,
    string_slice_from_any,
    truncate_utf8,
)
from .metrics import strip_md

MAX_QUOTE_BYTES = 240

# ==============================================================================
# Meta phrase scrub
# ==============================================================================

_WS_RE = re.compile(r"\s{2,}")

SCRUB_RULES: tuple[tuple[str, re.Pattern[str], str], ...] = (
    ("quick check-in", re.compile(r"quick check-in", re.I), "quick check"),
    ("here's the plan", re.compile(r"here's the plan", re.I), "overview"),
    ("here is the plan", re.compile(r"here is the plan", re.I), "overview"),
    ("plan:", re.compile(r"\bplan:", re.I), "overview:"),
    ("i can tailor this", re.compile(r"i can tailor this", re.I), ""),
    ("before we dive in", re.compile(r"before we dive in", re.I), ""),
    ("answer these", re.compile(r"\banswer these\b", re.I), ""),
    ("pick one", re.compile(r"\bpick\s+one\b\s*:?\s*", re.I), ""),
    ("if you want to go deeper", re.compile(r"if you want to go deeper", re.I), ""),
    ("if you'd like to go deeper", re.compile(r"if you'd like to go deeper", re.I), ""),
    ("let me know if you want", re.compile(r"let me know if you want", re.I), ""),
)

_SCRUB_TEXT_FIELDS = ("text", "md", "title", "caption", "prompt_md", "answer_md", "language", "filename")
_SCRUB_LIST_FIELDS = ("items_md", "steps_md")
_SCRUB_PAIR_FIELDS = (("terms", ("term", "definition_md")), ("qas", ("question_md", "answer_md")), ("options", ("text",)))


def scrub_meta_text(s: str) -> tuple[str, list[str]]:
    """Rewrite meta phrasing in one string. Returns (text, rule labels hit)."""
    if not isinstance(s, str) or not s.strip():
        return s, []
    orig = s
    hits = []
    for label, pattern, replacement in SCRUB_RULES:
        if pattern.search(s):
            s = pattern.sub(replacement, s)
            hits.append(label)
    if s != orig:
        s = _WS_RE.sub(" ", s)
        s = s.replace(" \n", "\n").replace("\n ", "\n").strip()
    return s, dedupe_strings(hits)


def scrub_node_doc(doc: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Scrub learner-facing text fields. Code and diagram sources are left alone."""
    out = copy_doc(doc)
    hits: list[str] = []

    def scrub_field(container: dict[str, Any], key: str) -> None:
        v = container.get(key)
        if not isinstance(v, str) or not v.strip():
            return
        new, h = scrub_meta_text(v)
        container[key] = new
        hits.extend(h)

    scrub_field(out, "title")
    scrub_field(out, "summary")

    for b in out["blocks"]:
        for key in _SCRUB_TEXT_FIELDS:
            scrub_field(b, key)
        for key in _SCRUB_LIST_FIELDS:
            items = b.get(key)
            if not isinstance(items, list):
                continue
            for j, item in enumerate(items):
                if isinstance(item, str) and item.strip():
                    items[j], h = scrub_meta_text(item)
                    hits.extend(h)
        for key, subkeys in _SCRUB_PAIR_FIELDS:
            items = b.get(key)
            if not isinstance(items, list):
                continue
            for item in items:
                if isinstance(item, dict):
                    for sub in subkeys:
                        scrub_field(item, sub)

    return out, dedupe_strings(hits)


# ==============================================================================
# Meta block pruning
# ==============================================================================

META_BODY_MARKERS = (
    "before we dive in",
    "answer these",
    "so i can",
    "to tailor",
    "what are you using this for",
    "what's your current",
    "what is your current",
    "do you prefer",
    "any constraints",
    "while you think about that",
    "tell me",
)


def is_meta_heading(s: Any) -> bool:
    low = string_from_any(s).strip().lower()
    if not low:
        return False
    return (
        "entry check" in low
        or "format preference" in low
        or ("your goal" in low and "level" in low)
        or "goal, level" in low
        or "check-in" in low
    )


def is_meta_body(s: Any) -> bool:
    low = string_from_any(s).strip().lower()
    return bool(low) and any(m in low for m in META_BODY_MARKERS)


def _joined_pairs(raw: Any, a: str, b: str) -> str:
    if not isinstance(raw, list):
        return ""
    return "\n".join(
        f"{string_from_any(m.get(a))} {string_from_any(m.get(b))}" for m in raw if isinstance(m, dict)
    )


def _meta_reason(b: dict[str, Any]) -> str | None:
    t = block_type(b)
    title = b.get("title")
    if t == "heading":
        return "meta_heading" if is_meta_heading(b.get("text")) else None
    if t == "paragraph":
        return "meta_paragraph" if is_meta_body(b.get("md")) else None
    if t == "callout":
        return "meta_callout" if is_meta_heading(title) or is_meta_body(b.get("md")) else None
    if t in NARRATIVE_BLOCK_TYPES:
        return "meta_section" if is_meta_heading(title) or is_meta_body(b.get("md")) else None
    if t in LIST_BLOCK_TYPES:
        body = "\n".join(string_from_any(x) for x in b.get("items_md") or [])
        return "meta_list" if is_meta_heading(title) or is_meta_body(body) else None
    if t == "steps":
        body = "\n".join(string_from_any(x) for x in b.get("steps_md") or [])
        return "meta_steps" if is_meta_heading(title) or is_meta_body(body) else None
    if t == "glossary":
        body = _joined_pairs(b.get("terms"), "term", "definition_md")
        return "meta_glossary" if is_meta_heading(title) or is_meta_body(body) else None
    if t == "faq":
        body = _joined_pairs(b.get("qas"), "question_md", "answer_md")
        return "meta_faq" if is_meta_heading(title) or is_meta_body(body) else None
    return None


def prune_meta_blocks(doc: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Drop onboarding-style blocks ("entry check", "tell me your level", ...)."""
    out = copy_doc(doc)
    kept = []
    removed = []
    for b in out["blocks"]:
        reason = _meta_reason(b)
        if reason:
            removed.append(reason)
            continue
        kept.append(b)
    if not removed:
        return out, []
    out["blocks"] = kept
    return out, dedupe_strings(removed)


# ==============================================================================
# Duplicate blocks
# ==============================================================================


def _norm(s: str) -> str:
    s = (s or "").strip()
    if not s:
        return ""
    s = s.replace("\r\n", "\n").replace("\r", "\n")
    s = strip_md(s).strip().lower()
    return _WS_RE.sub(" ", s).strip()


def _dedupe_text(t: str, b: dict[str, Any]) -> tuple[str, str, str] | None:
    """(key prefix, normalized text, empty reason) for tracked content blocks."""
    g = lambda k: string_from_any(b.get(k)).strip()  # noqa: E731
    if t == "callout":
        return f"callout:{g('variant').lower()}", _norm(g("title") + "\n" + g("md")), "empty_callout"
    if t == "equation":
        return t, _norm(g("latex") + "\n" + g("caption")), "empty_equation"
    if t == "quick_check":
        return t, _norm(g("prompt_md") + "\n" + g("answer_md")), "empty_quick_check"
    if t in LIST_BLOCK_TYPES:
        items = "\n".join(string_slice_from_any(b.get("items_md")))
        return t, _norm(g("title") + "\n" + items), "empty_list_block"
    if t == "steps":
        steps = "\n".join(string_slice_from_any(b.get("steps_md")))
        return t, _norm(g("title") + "\n" + steps), "empty_steps"
    if t == "glossary":
        return t, _norm(g("title") + "\n" + _joined_pairs(b.get("terms"), "term", "definition_md")), "empty_glossary"
    if t == "faq":
        return t, _norm(g("title") + "\n" + _joined_pairs(b.get("qas"), "question_md", "answer_md")), "empty_faq"
    if t in NARRATIVE_BLOCK_TYPES:
        return t, _norm(g("title") + "\n" + g("md")), f"empty_{t}"
    return None


def dedupe_node_doc(doc: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """
    Remove empty and repeated blocks.

    Headings are only compared with the previous heading; content blocks are
    compared across the whole doc. Paragraphs (and a "Summary" section) that
    merely restate ``doc.summary`` are dropped too.
    """
    out = copy_doc(doc)
    blocks = out["blocks"]
    summary_norm = _norm(string_from_any(out.get("summary")))

    kept: list[dict[str, Any]] = []
    removed: list[str] = []
    seen: set[str] = set()
    last_heading_key = ""
    last_was_divider = False

    i = 0
    while i < len(blocks):
        b = blocks[i]
        i += 1
        t = block_type(b)

        if t == "heading":
            text = string_from_any(b.get("text")).strip()
            if not text:
                removed.append("empty_heading")
                continue
            if summary_norm and text.lower() == "summary" and i < len(blocks):
                nb = blocks[i]
                if block_type(nb) in ("paragraph", "callout") and _norm(string_from_any(nb.get("md"))) == summary_norm:
                    removed.append("summary_section_dup")
                    i += 1
                    continue
            key = f"heading:{int_from_any(b.get('level'), 2)}:{_norm(text)}"
            if key == last_heading_key:
                removed.append("duplicate_heading")
                continue
            last_heading_key = key
            last_was_divider = False

        elif t == "divider":
            if last_was_divider:
                removed.append("duplicate_divider")
                continue
            last_was_divider = True
            last_heading_key = ""

        elif t == "paragraph":
            norm = _norm(string_from_any(b.get("md")))
            if not norm:
                removed.append("empty_paragraph")
                continue
            if summary_norm and norm == summary_norm:
                removed.append("summary_dup_paragraph")
                continue
            key = "paragraph:" + norm
            if key in seen:
                removed.append("duplicate_paragraph")
                continue
            seen.add(key)
            last_was_divider = False

        else:
            tracked = _dedupe_text(t, b)
            if tracked is not None:
                prefix, norm, empty_reason = tracked
                if not norm:
                    removed.append(empty_reason)
                    continue
                if (
                    t == "callout"
                    and summary_norm
                    and string_from_any(b.get("title")).strip().lower() == "summary"
                    and _norm(string_from_any(b.get("md"))) == summary_norm
                ):
                    removed.append("summary_dup_callout")
                    continue
                key = f"{prefix}:{norm}"
                if key in seen:
                    removed.append(f"duplicate_{t}")
                    continue
                seen.add(key)
            last_was_divider = False

        kept.append(b)

    if len(kept) == len(blocks):
        return out, []
    out["blocks"] = kept
    return out, dedupe_strings(removed)


# ==============================================================================
# Diagrams
# ==============================================================================

_SVG_SCRIPT_RE = re.compile(r"<script[\s\S]*?>[\s\S]*?</script>", re.I | re.S)
_SVG_ON_ATTR_RE = re.compile(r"""\son[a-z]+\s*=\s*('[^']*'|"[^"]*")""", re.I)

_MERMAID_KEYWORDS = (
    "flowchart",
    "graph",
    "sequencediagram",
    "classdiagram",
    "statediagram",
    "erdiagram",
    "journey",
    "gantt",
    "pie",
    "mindmap",
    "timeline",
    "quadrantchart",
)


def strip_code_fences(src: str) -> str:
    s = (src or "").strip()
    if not s.startswith("```"):
        return s
    lines = s.split("\n")
    if len(lines) < 2:
        return s
    body = lines[1:-1] if lines[-1].strip() == "```" else lines[1:]
    return "\n".join(body).strip()


def looks_like_caption_line(s: str) -> bool:
    """Prose rather than Mermaid syntax."""
    s = (s or "").strip()
    if not s:
        return False
    low = s.lower()
    if "-->" in low or ":::" in low or "--" in low:
        return False
    if any(ch in s for ch in "[]{}<>|"):
        return False
    if any(low.startswith(k) for k in _MERMAID_KEYWORDS):
        return False
    if len(s.split()) >= 6:
        return True
    return s.endswith((".", "!", "?"))


def split_mermaid_source_and_caption(raw: str) -> tuple[str, str]:
    s = (raw or "").strip()
    if not s:
        return "", ""
    lines = strip_code_fences(s).split("\n")
    if lines and lines[0].strip().lower() == "diagram":
        lines = lines[1:]
    while lines and not lines[0].strip():
        lines = lines[1:]
    while lines and not lines[-1].strip():
        lines = lines[:-1]
    if not lines:
        return "", ""

    caption = ""
    if len(lines) >= 2 and looks_like_caption_line(lines[-1]):
        caption = shorten(lines[-1].strip(), 220)
        lines = lines[:-1]
        while lines and not lines[-1].strip():
            lines = lines[:-1]
    return "\n".join(lines).strip(), caption


def extract_and_sanitize_svg(raw: str) -> str:
    """Cut to the outermost ``<svg>...</svg>`` and strip scripts and ``on*`` handlers."""
    s = (raw or "").strip()
    if not s:
        return ""
    low = s.lower()
    i0 = low.find("<svg")
    i1 = low.rfind("</svg>")
    if i0 >= 0 and i1 > i0:
        s = s[i0 : i1 + len("</svg>")]
    s = _SVG_SCRIPT_RE.sub("", s)
    s = _SVG_ON_ATTR_RE.sub("", s)
    return s.strip()


def sanitize_diagrams(doc: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    out = copy_doc(doc)
    changed = False
    for b in out["blocks"]:
        if block_type(b) != "diagram":
            continue
        kind = string_from_any(b.get("kind")).strip().lower()
        source = string_from_any(b.get("source")).strip()
        caption = string_from_any(b.get("caption")).strip()

        if kind not in ("svg", "mermaid"):
            if "<svg" in source.lower():
                kind = "svg"
            elif source:
                kind = "mermaid"
            b["kind"] = kind
            changed = True

        if kind == "svg":
            cleaned = extract_and_sanitize_svg(source)
            if cleaned and cleaned != source:
                b["source"] = cleaned
                changed = True
        elif kind == "mermaid":
            cleaned, cap = split_mermaid_source_and_caption(source)
            if cleaned and cleaned != source:
                b["source"] = cleaned
                changed = True
            if not caption and cap:
                b["caption"] = cap
                changed = True
    return out, changed


def remove_block_type(doc: dict[str, Any], t: str) -> dict[str, Any]:
    out = copy_doc(doc)
    t = t.strip().lower()
    if t:
        out["blocks"] = [b for b in out["blocks"] if block_type(b) != t]
    return out


def cap_block_type(doc: dict[str, Any], t: str, max_count: int) -> dict[str, Any]:
    """Keep the first ``max_count`` blocks of type ``t``; negative means unlimited."""
    if max_count < 0:
        return copy_doc(doc)
    if max_count == 0:
        return remove_block_type(doc, t)
    out = copy_doc(doc)
    t = t.strip().lower()
    kept = []
    n = 0
    for b in out["blocks"]:
        if block_type(b) == t:
            n += 1
            if n > max_count:
                continue
        kept.append(b)
    out["blocks"] = kept
    return out


# ==============================================================================
# Citations
# ==============================================================================


@dataclass
class CitationSanitizeStats:
    blocks_touched: int = 0
    citations_kept: int = 0
    citations_dropped: int = 0
    blocks_backfilled: int = 0
    chunk_ids_normalized: int = 0
    quotes_truncated: int = 0
    loc_repaired: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def pick_fallback_chunk_id(
    allowed: Collection[str] | None, fallback_ids: Iterable[Any]
) -> str:
    """First fallback id inside ``allowed``; else the smallest allowed id."""
    fallback = [str(u) for u in (parse_uuid(x) for x in fallback_ids) if u is not None]
    if allowed:
        for cid in fallback:
            if cid in allowed:
                return cid
        for cid in sorted(allowed):
            if cid.strip():
                return cid.strip()
        return ""
    return fallback[0] if fallback else ""


def citation_ref(chunk_id: str, quote: str = "", page: int = 0) -> dict[str, Any]:
    return {"chunk_id": chunk_id, "quote": quote, "loc": {"page": page, "start": 0, "end": 0}}


def sanitize_citations(
    doc: dict[str, Any],
    allowed: Collection[str] | None,
    chunk_text_by_id: Mapping[str, str] | None = None,
    fallback_ids: Iterable[Any] = (),
) -> tuple[dict[str, Any], CitationSanitizeStats, bool]:
    """
    Normalize and filter citations on every citation-bearing block.

    Drops malformed, disallowed and duplicate refs; truncates quotes to 240
    UTF-8 bytes; repairs negative or inverted locations. A block left with no
    citations gets one fallback citation.
    """
    stats = CitationSanitizeStats()
    out = copy_doc(doc)
    chunk_text_by_id = chunk_text_by_id or {}
    fallback_ids = list(fallback_ids)
    changed = False

    for b in out["blocks"]:
        if block_type(b) in UNCITED_BLOCK_TYPES:
            if "citations" in b:
                raw = b.pop("citations")
                stats.citations_dropped += len(raw) if isinstance(raw, list) else 1
                changed = True
            continue
        stats.blocks_touched += 1
        raw = b.get("citations") if isinstance(b.get("citations"), list) else []
        kept: list[dict[str, Any]] = []
        seen: set[str] = set()

        for c in raw:
            if not isinstance(c, dict):
                stats.citations_dropped += 1
                changed = True
                continue
            orig = string_from_any(c.get("chunk_id")).strip()
            parsed = parse_uuid(orig)
            if parsed is None:
                stats.citations_dropped += 1
                changed = True
                continue
            cid = str(parsed)
            if orig != cid:
                stats.chunk_ids_normalized += 1
                changed = True
            if (allowed and cid not in allowed) or cid in seen:
                stats.citations_dropped += 1
                changed = True
                continue
            seen.add(cid)

            quote = string_from_any(c.get("quote")).strip()
            if len(quote.encode("utf-8")) > MAX_QUOTE_BYTES:
                quote = truncate_utf8(quote, MAX_QUOTE_BYTES)
                stats.quotes_truncated += 1
                changed = True

            loc = c.get("loc") if isinstance(c.get("loc"), dict) else {}
            page = int_from_any(loc.get("page"), 0)
            start = int_from_any(loc.get("start"), 0)
            end = int_from_any(loc.get("end"), 0)
            for v in (page, start, end):
                if v < 0:
                    stats.loc_repaired += 1
                    changed = True
            page, start, end = max(page, 0), max(start, 0), max(end, 0)
            if end > 0 and start > 0 and end < start:
                start, end = 0, 0
                stats.loc_repaired += 1
                changed = True

            kept.append({"chunk_id": cid, "quote": quote, "loc": {"page": page, "start": start, "end": end}})
            stats.citations_kept += 1

        if not kept:
            cid = pick_fallback_chunk_id(allowed, fallback_ids)
            if cid:
                quote = truncate_utf8(chunk_text_by_id.get(cid, "").strip(), MAX_QUOTE_BYTES)
                kept = [citation_ref(cid, quote)]
                stats.blocks_backfilled += 1
                stats.citations_kept += 1
                changed = True

        if kept != raw:
            changed = True
        b["citations"] = kept

    return out, stats, changed
