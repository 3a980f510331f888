"""
Canonical JSON and content hashing.

``canonicalize_json`` is the single serialization used for hashing and for
storage: object keys sorted, no insignificant whitespace, UTF-8 text kept
as-is. Any key reordering of the same logical document yields identical bytes.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from typing import Any


def canonicalize_json(value: Any) -> bytes:
    """Serialize ``value`` to canonical JSON bytes."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def content_hash(doc: Any) -> str:
    """sha256 of the canonical JSON of ``doc``."""
    return hash_bytes(canonicalize_json(doc))


def sources_hash(prompt_version: str, chunk_ids: Iterable[Any]) -> str:
    """sha256 of ``prompt_version|id1,id2,...`` over sorted, de-duplicated chunk ids."""
    ids = sorted({str(c).strip() for c in chunk_ids if str(c).strip()})
    return hash_bytes(f"{prompt_version}|{','.join(ids)}".encode("utf-8"))


def canonical_doc_text(doc: Any) -> str:
    """Canonical JSON as text, the form stored in ``doc_json`` columns."""
    return canonicalize_json(doc).decode("utf-8")
