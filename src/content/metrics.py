"""
Node doc metrics: word counts, block counts and learner-facing text.

Only learner-facing fields are counted; code bodies and diagram sources are
ignored. The concatenated ``doc_text`` is what banned-phrase detection,
threading checks and objective coverage look at.
"""

from __future__ import annotations

import re
from typing import Any

from .docutil import (
    LIST_BLOCK_TYPES,
    NARRATIVE_BLOCK_TYPES,
    block_type,
    doc_blocks,
    string_from_any,
    string_slice_from_any,
)

WORD_RE = re.compile(r"[A-Za-z0-9]+(?:'[A-Za-z0-9]+)?")

BANNED_PHRASES = (
    "quick check-in",
    "entry check",
    "before we dive in",
    "answer these",
    "here's the plan",
    "here is the plan",
    "plan:",
    "up next",
    "next up",
    "next lesson",
    "next module",
    "in the next lesson",
    "you've seen the plan",
    "youve seen the plan",
    "let's anchor",
    "lets anchor",
    "no magic",
    "no sorcery",
    # "next hop" alone is a networking term; only the learner-directed form is banned.
    "your next hop",
    "bridge-in",
    "bridge in",
    "bridge-out",
    "bridge out",
    "recommended drills",
    "reveal answer",
    "wrap-up",
    "wrap up",
    "i can tailor this",
    "pick one",
    "what are you using this for",
    "what's your current",
    "what is your current",
    "do you prefer",
    "any constraints",
    "while you think about that",
    "if you want to go deeper",
    "if you'd like to go deeper",
    "let me know if you want",
)


def strip_md(s: str) -> str:
    return s.replace("`", " ").replace("*", " ").replace("#", " ")


def word_count(s: str) -> int:
    s = (s or "").strip()
    if not s:
        return 0
    return len(WORD_RE.findall(s))


def _pairs(raw: Any, a: str, b: str) -> list[tuple[str, str]]:
    if not isinstance(raw, list):
        return []
    out = []
    for item in raw:
        if isinstance(item, dict):
            out.append((string_from_any(item.get(a)), string_from_any(item.get(b))))
    return out


def node_doc_metrics(doc: dict[str, Any]) -> dict[str, Any]:
    """
    Compute ``word_count``, ``block_counts`` and ``doc_text`` for a doc.

    Example:
        >>> m = node_doc_metrics({"title": "HTTP", "blocks": [{"type": "paragraph", "md": "A **server** replies."}]})
        >>> m["word_count"], m["block_counts"]["paragraph"]
        (4, 1)
    """
    title = string_from_any(doc.get("title"))
    summary = string_from_any(doc.get("summary"))
    counts: dict[str, int] = {}
    words = word_count(title) + word_count(summary)
    concat = [title, summary]

    def add(text: str, counted: bool = True) -> None:
        nonlocal words
        concat.append(text)
        if counted:
            words += word_count(strip_md(text))

    for b in doc_blocks(doc):
        t = block_type(b) or "unknown"
        counts[t] = counts.get(t, 0) + 1
        g = lambda k: string_from_any(b.get(k))  # noqa: E731

        if t == "heading":
            add(g("text"))
        elif t == "paragraph":
            add(g("md"))
        elif t == "callout":
            concat.append(g("title"))
            add(g("md"), counted=False)
            words += word_count(strip_md(g("title") + " " + g("md")))
        elif t == "code":
            concat.extend([g("filename"), g("language")])
        elif t in ("figure", "video", "diagram", "table"):
            add(g("caption"))
        elif t == "equation":
            concat.append(g("latex"))
            add(g("caption"))
        elif t == "quick_check":
            add(g("prompt_md") + " " + g("answer_md"))
            opts = []
            for o in b.get("options") or []:
                if isinstance(o, dict):
                    txt = string_from_any(o.get("text")).strip()
                    if txt:
                        opts.append(txt)
            if opts:
                add("\n".join(opts))
        elif t == "flashcard":
            add(g("front_md") + " " + g("back_md"))
        elif t in LIST_BLOCK_TYPES:
            add(g("title") + " " + "\n".join(string_slice_from_any(b.get("items_md"))))
        elif t == "steps":
            add(g("title") + " " + "\n".join(string_slice_from_any(b.get("steps_md"))))
        elif t == "glossary":
            add(g("title"))
            for term, definition in _pairs(b.get("terms"), "term", "definition_md"):
                add(term + " " + definition)
        elif t == "faq":
            add(g("title"))
            for q, a in _pairs(b.get("qas"), "question_md", "answer_md"):
                add(q + " " + a)
        elif t in NARRATIVE_BLOCK_TYPES:
            add(g("title") + " " + g("md"))

    return {
        "word_count": words,
        "block_counts": counts,
        "doc_text": "\n".join(concat).strip(),
    }


def find_banned_phrases(text: str) -> list[str]:
    """Banned meta phrases present in ``text`` (case-insensitive), sorted."""
    if not (text or "").strip():
        return []
    lower = text.lower()
    return sorted(p for p in BANNED_PHRASES if p in lower)


def detect_doc_meta_phrases(doc: dict[str, Any]) -> list[str]:
    return find_banned_phrases(node_doc_metrics(doc)["doc_text"])


def has_worked_example(doc: dict[str, Any]) -> bool:
    for b in doc_blocks(doc):
        t = block_type(b)
        if t == "heading":
            if "example" in string_from_any(b.get("text")).strip().lower():
                return True
        elif t == "callout":
            variant = string_from_any(b.get("variant")).strip().lower()
            title = string_from_any(b.get("title")).strip().lower()
            if variant == "tip" and title.startswith("worked example"):
                return True
    return False
