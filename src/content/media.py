"""Figure/video de-duplication against the assets available to a node."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, MutableSet
from dataclasses import dataclass, field
from typing import Any, Optional

from .docutil import block_type, copy_doc, doc_blocks, string_from_any


@dataclass
class MediaAsset:
    """A rendered image or video a doc may reference."""

    kind: str  # image | video
    url: str
    key: str = ""
    file_name: str = ""
    mime_type: str = ""
    source: str = ""
    asset_kind: str = ""
    notes: str = ""
    chunk_ids: list[str] = field(default_factory=list)


def node_doc_media_urls(doc: dict[str, Any]) -> list[str]:
    urls: list[str] = []
    for b in doc_blocks(doc):
        t = block_type(b)
        if t == "figure":
            asset = b.get("asset") if isinstance(b.get("asset"), dict) else {}
            url = string_from_any(asset.get("url")).strip()
        elif t == "video":
            url = string_from_any(b.get("url")).strip()
        else:
            continue
        if url and url not in urls:
            urls.append(url)
    return urls


def dedupe_node_doc_media(
    doc: dict[str, Any],
    assets: Iterable[MediaAsset],
    used_global: Optional[MutableSet[str]] = None,
) -> tuple[dict[str, Any], dict[str, int]]:
    """
    Ensure each figure/video URL appears once, within the doc and across ``used_global``.

    Blocks without a URL are filled from a matching asset (by storage key or
    file name, else the first unused one). Duplicates are swapped for an unused
    asset; blocks that cannot be satisfied are dropped. URLs kept in the doc
    are added to ``used_global``.

    Returns:
        (doc copy, counters such as ``figure_replaced`` or ``video_dropped``)
    """
    out = copy_doc(doc)
    counters: Counter[str] = Counter()
    used_global = used_global if used_global is not None else set()
    used_local: set[str] = set()

    usable = [a for a in assets if a.url.strip() and a.kind.strip().lower() in ("image", "video")]
    by_kind = {
        "figure": [a for a in usable if a.kind.strip().lower() == "image"],
        "video": [a for a in usable if a.kind.strip().lower() == "video"],
    }

    def taken(url: str) -> bool:
        return url in used_local or url in used_global

    def pick_unused(cands: list[MediaAsset]) -> Optional[MediaAsset]:
        return next((c for c in cands if not taken(c.url.strip())), None)

    def match(cands: list[MediaAsset], key: str, file_name: str) -> Optional[MediaAsset]:
        for c in cands:
            if taken(c.url.strip()):
                continue
            if key and c.key.strip().lower() == key.lower():
                return c
            if file_name and c.file_name.strip().lower() == file_name.lower():
                return c
        return None

    def apply(b: dict[str, Any], t: str, repl: MediaAsset) -> None:
        url = repl.url.strip()
        if t == "video":
            b["url"] = url
        else:
            asset = dict(b.get("asset")) if isinstance(b.get("asset"), dict) else {}
            asset["url"] = url
            for k, v in (
                ("storage_key", repl.key),
                ("mime_type", repl.mime_type),
                ("file_name", repl.file_name),
                ("source", repl.source),
            ):
                if v.strip():
                    asset[k] = v.strip()
            b["asset"] = asset
        used_local.add(url)

    kept = []
    for b in out["blocks"]:
        t = block_type(b)
        if t not in ("figure", "video"):
            kept.append(b)
            continue
        holder = b if t == "video" else (b.get("asset") if isinstance(b.get("asset"), dict) else {})
        url = string_from_any(holder.get("url")).strip()
        cands = by_kind[t]

        if not url:
            key = string_from_any(holder.get("storage_key")).strip()
            file_name = string_from_any(holder.get("file_name")).strip()
            repl = match(cands, key, file_name) or pick_unused(cands)
            if repl is None:
                counters[f"{t}_dropped_missing_url"] += 1
                continue
            apply(b, t, repl)
            counters[f"{t}_filled_missing_url"] += 1
        elif taken(url):
            repl = pick_unused(cands)
            if repl is None:
                counters[f"{t}_dropped"] += 1
                continue
            apply(b, t, repl)
            counters[f"{t}_replaced"] += 1
        else:
            used_local.add(url)
        kept.append(b)

    out["blocks"] = kept
    used_global.update(node_doc_media_urls(out))
    return out, dict(counters)
