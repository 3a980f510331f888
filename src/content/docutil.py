"""
Helpers for working with node docs as JSON-shaped dicts.

A node doc is ``{schema_version, title, summary, concept_keys,
estimated_minutes, blocks: [...]}`` where each block is a dict with a ``type``
and type-specific fields. Unknown block types are preserved untouched.
"""

from __future__ import annotations

import copy
import hashlib
import re
import uuid
from typing import Any

NIL_UUID = "00000000-0000-0000-0000-000000000000"

LIST_BLOCK_TYPES = (
    "objectives",
    "prerequisites",
    "key_takeaways",
    "common_mistakes",
    "misconceptions",
    "edge_cases",
    "heuristics",
    "checklist",
    "connections",
)
NARRATIVE_BLOCK_TYPES = ("intuition", "mental_model", "why_it_matters")

# Block types that never carry citations.
UNCITED_BLOCK_TYPES = frozenset({"heading", "code", "video", "divider"})

# Blocks that do not count as "teaching" for the quick-check ordering rule.
NON_TEACHING_FOR_QUICK_CHECKS = frozenset(
    {
        "",
        "quick_check",
        "flashcard",
        "heading",
        "divider",
        "video",
        "code",
        "objectives",
        "prerequisites",
        "key_takeaways",
    }
)

_WS_RE = re.compile(r"\s{2,}")


def string_from_any(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, str):
        return v
    return str(v)


def int_from_any(v: Any, default: int = 0) -> int:
    if isinstance(v, bool):
        return default
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v)
    return default


def float_from_any(v: Any, default: float = 0.0) -> float:
    if isinstance(v, bool):
        return float(v)
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v.strip())
        except ValueError:
            return default
    return default


def string_slice_from_any(v: Any) -> list[str]:
    """Non-empty, trimmed strings from a list value; anything else yields []."""
    if not isinstance(v, (list, tuple)):
        return []
    out = []
    for item in v:
        s = string_from_any(item).strip()
        if s:
            out.append(s)
    return out


def string_matrix_from_any(v: Any) -> list[list[str]]:
    if not isinstance(v, (list, tuple)):
        return []
    return [string_slice_from_any(row) for row in v]


def dedupe_strings(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out = []
    for s in items:
        s = (s or "").strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def collapse_ws(s: str) -> str:
    return _WS_RE.sub(" ", s)


def block_type(block: Any) -> str:
    if not isinstance(block, dict):
        return ""
    return string_from_any(block.get("type")).strip().lower()


def block_id(block: Any) -> str:
    if not isinstance(block, dict):
        return ""
    return string_from_any(block.get("id")).strip()


def doc_blocks(doc: dict[str, Any]) -> list[dict[str, Any]]:
    blocks = doc.get("blocks")
    if not isinstance(blocks, list):
        return []
    return [b for b in blocks if isinstance(b, dict)]


def copy_doc(doc: dict[str, Any]) -> dict[str, Any]:
    """Deep copy with ``blocks`` normalized to a list of dicts."""
    out = copy.deepcopy(doc) if isinstance(doc, dict) else {}
    out["blocks"] = doc_blocks(out)
    return out


def is_teaching_block(t: str) -> bool:
    return t.strip().lower() not in NON_TEACHING_FOR_QUICK_CHECKS


def parse_uuid(s: Any) -> uuid.UUID | None:
    """Parse a UUID string; None when invalid or nil."""
    if isinstance(s, uuid.UUID):
        return None if s.int == 0 else s
    try:
        u = uuid.UUID(string_from_any(s).strip())
    except (ValueError, AttributeError):
        return None
    return None if u.int == 0 else u


def citation_chunk_ids(raw: Any) -> list[str]:
    """Chunk ids referenced by a ``citations`` array, in order, de-duplicated."""
    out: list[str] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        if isinstance(item, dict):
            cid = string_from_any(item.get("chunk_id")).strip()
        elif isinstance(item, str):
            cid = item.strip()
        else:
            continue
        if cid and cid not in out:
            out.append(cid)
    return out


def derived_block_id(prefix: str, *parts: Any) -> str:
    """Block id hashed from the inserted block's inputs, so repeat builds agree."""
    h = hashlib.sha256("\x1f".join(string_from_any(p) for p in parts).encode("utf-8"))
    return f"{prefix}_{h.hexdigest()[:12]}"


def ensure_block_ids(doc: dict[str, Any]) -> tuple[dict[str, Any], int]:
    """
    Give every block a unique, stable id.

    Existing unique ids are kept; missing or duplicate ids are replaced with
    ``<type>_<n>`` style ids derived from block position so re-runs converge.

    Returns:
        (doc copy, number of ids assigned)
    """
    out = copy_doc(doc)
    seen: set[str] = set()
    assigned = 0
    for i, b in enumerate(out["blocks"]):
        bid = block_id(b)
        if bid and bid not in seen:
            seen.add(bid)
            continue
        base = block_type(b) or "block"
        n = i + 1
        candidate = f"{base}_{n}"
        while candidate in seen:
            n += 1
            candidate = f"{base}_{n}"
        b["id"] = candidate
        seen.add(candidate)
        assigned += 1
    return out, assigned


def shorten(s: str, max_len: int) -> str:
    s = (s or "").strip()
    if max_len <= 0 or len(s) <= max_len:
        return s
    return s[:max_len] + "..."


def truncate_utf8(s: str, max_bytes: int) -> str:
    """Truncate to at most ``max_bytes`` UTF-8 bytes without splitting a code point."""
    raw = s.encode("utf-8")
    if len(raw) <= max_bytes:
        return s
    return raw[:max_bytes].decode("utf-8", errors="ignore")


def normalize_concept_key(k: Any) -> str:
    return string_from_any(k).strip().lower()


def normalize_concept_keys(keys: Any) -> list[str]:
    """Lowercased, trimmed, de-duplicated and sorted keys."""
    out = {normalize_concept_key(k) for k in (keys or [])}
    out.discard("")
    return sorted(out)
