"""
Doc blueprints: immutable per-node constraints checked after generation.

A blueprint pins what a node doc must contain (objectives, concept keys,
required claims) and bounds its shape (block counts, required block kinds,
forbidden phrasing). Violations are reported with stable codes so callers
can decide which ones to auto-fix.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .docutil import (
    block_type,
    citation_chunk_ids,
    copy_doc,
    int_from_any,
    string_slice_from_any,
)
from .metrics import node_doc_metrics

BLUEPRINT_SCHEMA_VERSION = 1
CONSTRAINT_REPORT_SCHEMA_VERSION = 1


@dataclass
class ClaimRef:
    claim_id: str
    citation_ids: list[str] = field(default_factory=list)
    concept_keys: list[str] = field(default_factory=list)
    required: bool = True
    weight: float = 0.0


@dataclass
class BlueprintConstraints:
    min_blocks: int = 0
    max_blocks: int = 0
    min_quick_checks: int = 0
    max_quick_checks: int = 0
    min_flashcards: int = 0
    max_flashcards: int = 0
    required_block_kinds: list[str] = field(default_factory=list)
    forbidden_phrases: list[str] = field(default_factory=list)


@dataclass
class DocBlueprint:
    """Constraints a node doc must satisfy, fixed before generation starts."""

    path_id: str = ""
    path_node_id: str = ""
    blueprint_version: str = "doc_blueprint_v1.0.0"
    schema_version: int = BLUEPRINT_SCHEMA_VERSION
    objectives: list[str] = field(default_factory=list)
    required_concept_keys: list[str] = field(default_factory=list)
    required_claims: list[ClaimRef] = field(default_factory=list)
    constraints: BlueprintConstraints = field(default_factory=BlueprintConstraints)

    def validate(self) -> list[str]:
        errs = []
        if self.schema_version != BLUEPRINT_SCHEMA_VERSION:
            errs.append("invalid_schema_version")
        if not self.blueprint_version.strip():
            errs.append("missing_blueprint_version")
        if not self.path_id.strip() or not self.path_node_id.strip():
            errs.append("missing_path_ids")
        return errs

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "DocBlueprint":
        raw = raw or {}
        c = raw.get("constraints") if isinstance(raw.get("constraints"), dict) else {}
        claims = []
        for item in raw.get("required_claims") or []:
            if not isinstance(item, dict):
                continue
            claims.append(
                ClaimRef(
                    claim_id=str(item.get("claim_id") or ""),
                    citation_ids=string_slice_from_any(item.get("citation_ids")),
                    concept_keys=string_slice_from_any(item.get("concept_keys")),
                    required=bool(item.get("required", True)),
                    weight=float(item.get("weight") or 0.0),
                )
            )
        return cls(
            path_id=str(raw.get("path_id") or ""),
            path_node_id=str(raw.get("path_node_id") or ""),
            blueprint_version=str(raw.get("blueprint_version") or "doc_blueprint_v1.0.0"),
            schema_version=int_from_any(raw.get("schema_version"), BLUEPRINT_SCHEMA_VERSION),
            objectives=string_slice_from_any(raw.get("objectives")),
            required_concept_keys=string_slice_from_any(raw.get("required_concept_keys")),
            required_claims=claims,
            constraints=BlueprintConstraints(
                min_blocks=int_from_any(c.get("min_blocks")),
                max_blocks=int_from_any(c.get("max_blocks")),
                min_quick_checks=int_from_any(c.get("min_quick_checks")),
                max_quick_checks=int_from_any(c.get("max_quick_checks")),
                min_flashcards=int_from_any(c.get("min_flashcards")),
                max_flashcards=int_from_any(c.get("max_flashcards")),
                required_block_kinds=string_slice_from_any(c.get("required_block_kinds")),
                forbidden_phrases=string_slice_from_any(c.get("forbidden_phrases")),
            ),
        )


@dataclass
class ConstraintViolation:
    code: str
    message: str
    severity: str = "error"
    block_id: str = ""


@dataclass
class ConstraintReport:
    passed: bool = True
    violations: list[ConstraintViolation] = field(default_factory=list)
    checked_at: str = ""
    schema_version: int = CONSTRAINT_REPORT_SCHEMA_VERSION

    def codes(self) -> list[str]:
        return [v.code for v in self.violations]

    def add(self, code: str, message: str) -> None:
        self.violations.append(ConstraintViolation(code=code, message=message))
        self.passed = False


def _doc_concept_keys(doc: dict[str, Any]) -> set[str]:
    keys = {k.strip().lower() for k in string_slice_from_any(doc.get("concept_keys")) if k.strip()}
    for b in doc.get("blocks") or []:
        if isinstance(b, dict):
            keys.update(k.strip().lower() for k in string_slice_from_any(b.get("concept_keys")) if k.strip())
    return keys


def validate_doc_against_blueprint(doc: dict[str, Any], blueprint: DocBlueprint) -> ConstraintReport:
    """
    Check a node doc against its blueprint.

    Args:
        doc: Node doc dict
        blueprint: Constraints to enforce

    Returns:
        ConstraintReport; ``passed`` is False when any violation was recorded
    """
    report = ConstraintReport(checked_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"))
    for e in blueprint.validate():
        report.add("blueprint_invalid", e)

    if int_from_any(doc.get("schema_version"), 0) != 1:
        report.add("doc_schema_version", "doc schema_version must be 1")

    metrics = node_doc_metrics(doc)
    counts: dict[str, int] = metrics["block_counts"]
    doc_text: str = metrics["doc_text"]
    total = len([b for b in doc.get("blocks") or [] if isinstance(b, dict)])
    c = blueprint.constraints

    bounds = (
        ("blocks", total, c.min_blocks, c.max_blocks),
        ("quick_checks", counts.get("quick_check", 0), c.min_quick_checks, c.max_quick_checks),
        ("flashcards", counts.get("flashcard", 0), c.min_flashcards, c.max_flashcards),
    )
    for name, n, lo, hi in bounds:
        if lo > 0 and n < lo:
            report.add(f"min_{name}", f"doc has fewer {name} than min ({n} < {lo})")
        if hi > 0 and n > hi:
            report.add(f"max_{name}", f"doc has more {name} than max ({n} > {hi})")

    for kind in c.required_block_kinds:
        k = kind.strip().lower()
        if not k:
            continue
        if k == "pitfalls":
            if counts.get("misconceptions", 0) + counts.get("common_mistakes", 0) == 0:
                report.add("required_block_kind", "missing pitfalls block")
        elif counts.get(k, 0) == 0:
            report.add("required_block_kind", f"missing required block kind: {k}")

    doc_keys = _doc_concept_keys(doc)
    for key in blueprint.required_concept_keys:
        s = key.strip().lower()
        if s and s not in doc_keys:
            report.add("missing_required_concept", f"missing required concept key: {key}")

    cited: set[str] = set()
    for b in doc.get("blocks") or []:
        if isinstance(b, dict):
            cited.update(citation_chunk_ids(b.get("citations")))
    for claim in blueprint.required_claims:
        if claim.required and not any(cid and cid in cited for cid in claim.citation_ids):
            report.add("missing_required_claim", f"missing required claim: {claim.claim_id}")

    lower = doc_text.lower()
    if doc_text:
        for obj in blueprint.objectives:
            s = obj.strip().lower()
            if s and s not in lower:
                report.add("missing_objective", f"missing objective: {obj}")
        for phrase in c.forbidden_phrases:
            p = phrase.strip().lower()
            if p and p in lower:
                report.add("forbidden_phrase", f"forbidden phrase present: {phrase}")

    return report


def sync_objectives(
    doc: dict[str, Any], blueprint: DocBlueprint
) -> tuple[dict[str, Any], list[str], bool]:
    """
    Make every blueprint objective appear in the doc.

    Missing objectives are appended to the first ``objectives`` block; when
    the doc has none, a new one is inserted at the top (after a leading
    heading, if any).

    Returns:
        (doc copy, objectives added, changed)
    """
    out = copy_doc(doc)
    lower = node_doc_metrics(out)["doc_text"].lower()
    missing = []
    for obj in blueprint.objectives:
        s = obj.strip()
        if s and s.lower() not in lower and s not in missing:
            missing.append(s)
    if not missing:
        return out, [], False

    blocks = out["blocks"]
    existing = next((b for b in blocks if block_type(b) == "objectives"), None)
    if existing is not None:
        items = list(existing.get("items_md") or []) if isinstance(existing.get("items_md"), list) else []
        items.extend(missing)
        existing["items_md"] = items
        return out, missing, True

    at = 1 if blocks and block_type(blocks[0]) == "heading" else 0
    blocks.insert(at, {"type": "objectives", "title": "Objectives", "items_md": list(missing)})
    return out, missing, True
