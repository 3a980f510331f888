"""
Probe Selector.

Chooses which quick_check/flashcard blocks in the upcoming lesson docs should
be surfaced as adaptive probes for a learner.

Each candidate block is scored by the expected information gain over its
concepts (low mastery, high uncertainty), plus boosts for uncertain testlets,
active misconceptions and unresolved prerequisites. The best candidates are
persisted as DocProbe rows within per-node, per-window and hourly limits, and
the chosen blocks are annotated in the node doc (and the learner's variant).
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.adaptive.doc_policy import DocPolicy
from src.content.canonical import canonical_doc_text, content_hash
from src.content.docutil import (
    block_id,
    block_type,
    citation_chunk_ids,
    doc_blocks,
    normalize_concept_keys,
    string_from_any,
    string_slice_from_any,
)
from src.core.env import clamp01
from src.core.errors import MissingInputError, NotFoundError
from src.db.models import (
    CONCEPT_SCOPE_PATH,
    Concept,
    DocProbe,
    LearningNodeDoc,
    LearningNodeDocVariant,
    Path,
    PathNode,
    PathRun,
    UserConceptState,
    UserMisconceptionInstance,
    UserTestletState,
    utcnow,
)

PROBE_BLOCK_TYPES = ("quick_check", "flashcard")
ACTIVE_PROBE_STATUSES = ("planned", "shown")
MAX_TRIGGER_IDS = 3
UNRESOLVED_UNCERTAINTY = 0.6

# Blocks a probe can never be triggered after.
NON_TRIGGER_BLOCK_TYPES = frozenset(
    {"", "quick_check", "flashcard", "heading", "divider", "objectives", "prerequisites", "key_takeaways", "glossary"}
)


@dataclass
class ProbeCandidate:
    node_id: UUID
    block_id: str
    block_type: str
    block_index: int
    concept_keys: list[str] = field(default_factory=list)
    concept_ids: list[UUID] = field(default_factory=list)
    testlet_id: str = ""
    testlet_type: str = ""
    trigger_after: list[str] = field(default_factory=list)
    targeted_prereq: bool = False
    testlet_uncertainty: float = 0.0
    info_gain: float = 0.0
    score: float = 0.0
    score_components: dict[str, float] = field(default_factory=dict)


@dataclass
class ProbeSelectionResult:
    path_id: Optional[UUID] = None
    lookahead: int = 0
    nodes_considered: int = 0
    docs_considered: int = 0
    blocks_considered: int = 0
    probes_selected: int = 0
    docs_updated: int = 0
    rate_limited: bool = False


# =============================================================================
# Scoring helpers
# =============================================================================


def _state_uncertainty(st: UserConceptState) -> float:
    return max(clamp01(st.epistemic_uncertainty or 0.0), clamp01(st.aleatoric_uncertainty or 0.0))


def compute_info_gain(concept_ids: list[UUID], states: dict[UUID, UserConceptState]) -> float:
    """
    Mean expected information gain over a candidate's concepts.

    Unknown concepts count 0.5; a candidate with no concepts gets 0.1.
    """
    if not concept_ids:
        return 0.1
    gain = 0.0
    for cid in concept_ids:
        st = states.get(cid)
        if st is None:
            gain += 0.5
            continue
        mastery = clamp01(st.mastery or 0.0)
        conf = clamp01(st.confidence or 0.0)
        gain += (1.0 - mastery) * (0.5 + 0.5 * max(_state_uncertainty(st), 1.0 - conf))
    return gain / len(concept_ids)


def beta_variance(a: float, b: float) -> float:
    if a <= 0 or b <= 0:
        return 0.0
    s = a + b
    return (a * b) / (s * s * (s + 1))


def testlet_uncertainty(st: Optional[UserTestletState]) -> float:
    """Beta posterior variance scaled to 0..1 (0.25 is the maximum variance)."""
    if st is None:
        return 0.5
    a = st.beta_a if st.beta_a and st.beta_a > 0 else 1.0
    b = st.beta_b if st.beta_b and st.beta_b > 0 else 1.0
    v = beta_variance(a, b)
    if v <= 0:
        return 0.0
    return clamp01(v / 0.25)


def infer_testlet_type(kind: str) -> str:
    return (kind or "").strip().lower() or "quick_check"


def infer_testlet_id(block: dict[str, Any], kind: str, concept_keys: list[str]) -> str:
    for key in ("testlet_id", "testlet_key"):
        v = string_from_any(block.get(key)).strip()
        if v:
            return v
    t = infer_testlet_type(kind)
    keys = sorted(k.strip().lower() for k in concept_keys if k.strip())
    if keys:
        return f"{t}:{'|'.join(keys)}"
    bid = block_id(block)
    return f"{t}:{bid}" if bid else t


def infer_trigger_ids(blocks: list[dict[str, Any]], idx: int) -> list[str]:
    """
    Teaching blocks a probe should follow.

    Walks back from ``idx`` collecting up to three teaching blocks that share
    a cited chunk with the probe; falls back to the nearest teaching block.
    """
    if idx <= 0:
        return []
    cites = set(citation_chunk_ids(blocks[idx].get("citations")))
    out: list[str] = []
    nearest = ""
    for b in reversed(blocks[:idx]):
        if block_type(b) in NON_TRIGGER_BLOCK_TYPES:
            continue
        bid = block_id(b)
        if not bid:
            continue
        nearest = nearest or bid
        if cites and not cites.intersection(citation_chunk_ids(b.get("citations"))):
            continue
        out.append(bid)
        if len(out) >= MAX_TRIGGER_IDS:
            break
    if not out and nearest:
        out.append(nearest)
    return out


def annotate_probe_block(block: dict[str, Any], cand: ProbeCandidate) -> None:
    block["probe"] = True
    block["probe_score"] = cand.score
    block["probe_info_gain"] = cand.info_gain
    if cand.concept_keys:
        block["probe_concept_keys"] = list(cand.concept_keys)
    if cand.concept_ids:
        block["probe_concept_ids"] = [str(c) for c in cand.concept_ids]
    if cand.trigger_after and not string_slice_from_any(block.get("trigger_after_block_ids")):
        block["trigger_after_block_ids"] = list(cand.trigger_after)


# =============================================================================
# Selector
# =============================================================================


class ProbeSelector:
    """
    Select adaptive probes for the nodes ahead of a learner.

    Example:
        >>> selector = ProbeSelector(session)
        >>> result = selector.select(user_id, set_id, path_id=path_id)
        >>> result.probes_selected
        4
    """

    def __init__(self, db_session: Session, policy: Optional[DocPolicy] = None):
        self.db = db_session
        self.policy = policy or DocPolicy.from_env()

    def _window(
        self, owner_user_id: UUID, path_id: UUID, anchor_node_id: Optional[UUID], lookahead: int
    ) -> list[PathNode]:
        if lookahead <= 0:
            return []
        if anchor_node_id is None:
            run = self.db.scalar(
                select(PathRun).where(PathRun.user_id == owner_user_id, PathRun.path_id == path_id)
            )
            if run is not None:
                anchor_node_id = run.active_node_id
        nodes = list(
            self.db.scalars(select(PathNode).where(PathNode.path_id == path_id).order_by(PathNode.index)).all()
        )
        start = 0
        if anchor_node_id is not None:
            for i, n in enumerate(nodes):
                if n.id == anchor_node_id:
                    start = i + 1
                    break
        return nodes[start : start + lookahead]

    def select(
        self,
        owner_user_id: UUID,
        material_set_id: UUID,
        path_id: UUID,
        anchor_node_id: Optional[UUID] = None,
        lookahead: int = 0,
        node_ids: Optional[list[UUID]] = None,
    ) -> ProbeSelectionResult:
        """
        Score candidate blocks and persist the selected probes.

        Args:
            owner_user_id: Learner
            material_set_id: Material set backing the path
            path_id: Path whose docs are scanned
            anchor_node_id: Window starts after this node (default: active node)
            lookahead: Window size (default: policy value for the path kind)
            node_ids: Explicit nodes; overrides the window

        Returns:
            ProbeSelectionResult counters; ``rate_limited`` is set instead of raising
        """
        if owner_user_id is None:
            raise MissingInputError("probe_select: missing owner_user_id")
        if material_set_id is None:
            raise MissingInputError("probe_select: missing material_set_id")
        path = self.db.get(Path, path_id)
        if path is None:
            raise NotFoundError(f"probe_select: path {path_id} not found")

        out = ProbeSelectionResult(path_id=path_id)
        out.lookahead = lookahead if lookahead > 0 else self.policy.lookahead_for_path_kind(path.kind)

        ids: list[UUID] = []
        for nid in node_ids or []:
            if nid is not None and nid not in ids:
                ids.append(nid)
        if ids:
            nodes = list(self.db.scalars(select(PathNode).where(PathNode.id.in_(ids))).all())
            order = {nid: i for i, nid in enumerate(ids)}
            nodes.sort(key=lambda n: order[n.id])
        else:
            nodes = self._window(owner_user_id, path_id, anchor_node_id, out.lookahead)
        if not nodes:
            return out
        out.nodes_considered = len(nodes)
        node_ids_ = [n.id for n in nodes]

        prereq_keys_by_node = {
            n.id: keys for n in nodes if (keys := normalize_concept_keys((n.meta or {}).get("prereq_concept_keys")))
        }

        doc_rows = {
            d.path_node_id: d
            for d in self.db.scalars(select(LearningNodeDoc).where(LearningNodeDoc.path_node_id.in_(node_ids_))).all()
        }

        concept_by_key: dict[str, UUID] = {}
        for c in self.db.scalars(
            select(Concept).where(Concept.scope == CONCEPT_SCOPE_PATH, Concept.scope_id == path_id)
        ).all():
            key = (c.key or "").strip().lower()
            if key:
                concept_by_key[key] = c.canonical_concept_id or c.id

        docs: dict[UUID, dict[str, Any]] = {}
        candidates: list[ProbeCandidate] = []
        for nid in node_ids_:
            row = doc_rows.get(nid)
            doc = row.load_doc() if row is not None else None
            if not doc or not doc_blocks(doc):
                continue
            out.docs_considered += 1
            docs[nid] = doc
            blocks = doc["blocks"]
            for i, b in enumerate(blocks):
                t = block_type(b)
                bid = block_id(b)
                if t not in PROBE_BLOCK_TYPES or not bid:
                    continue
                out.blocks_considered += 1
                keys = normalize_concept_keys(b.get("concept_keys")) or normalize_concept_keys(doc.get("concept_keys"))
                concept_ids = sorted({concept_by_key[k] for k in keys if k in concept_by_key}, key=str)
                trigger = string_slice_from_any(b.get("trigger_after_block_ids")) or infer_trigger_ids(blocks, i)
                candidates.append(
                    ProbeCandidate(
                        node_id=nid,
                        block_id=bid,
                        block_type=t,
                        block_index=i,
                        concept_keys=keys,
                        concept_ids=concept_ids,
                        testlet_id=infer_testlet_id(b, t, keys),
                        testlet_type=infer_testlet_type(t),
                        trigger_after=trigger,
                    )
                )
        if not candidates:
            return out

        concept_ids_all = {cid for c in candidates for cid in c.concept_ids}
        for keys in prereq_keys_by_node.values():
            concept_ids_all.update(concept_by_key[k] for k in keys if k in concept_by_key)

        states: dict[UUID, UserConceptState] = {}
        miscon: set[UUID] = set()
        if concept_ids_all:
            for st in self.db.scalars(
                select(UserConceptState).where(
                    UserConceptState.user_id == owner_user_id, UserConceptState.concept_id.in_(concept_ids_all)
                )
            ).all():
                states[st.concept_id] = st
            miscon = set(
                self.db.scalars(
                    select(UserMisconceptionInstance.canonical_concept_id).where(
                        UserMisconceptionInstance.user_id == owner_user_id,
                        UserMisconceptionInstance.status == "active",
                        UserMisconceptionInstance.canonical_concept_id.in_(concept_ids_all),
                    )
                ).all()
            )

        targets_by_node: dict[UUID, set[str]] = {}
        for nid, keys in prereq_keys_by_node.items():
            for k in keys:
                cid = concept_by_key.get(k)
                st = states.get(cid) if cid is not None else None
                unresolved = (
                    st is None
                    or clamp01(st.mastery or 0.0) < self.policy.prereq_ready_min
                    or _state_uncertainty(st) > UNRESOLVED_UNCERTAINTY
                    or cid in miscon
                )
                if unresolved:
                    targets_by_node.setdefault(nid, set()).add(k)

        testlet_ids = {c.testlet_id for c in candidates if c.testlet_id}
        testlets = {
            t.testlet_id: t
            for t in self.db.scalars(
                select(UserTestletState).where(
                    UserTestletState.user_id == owner_user_id, UserTestletState.testlet_id.in_(testlet_ids)
                )
            ).all()
        }

        existing: dict[UUID, set[str]] = {}
        active_count: dict[UUID, int] = {}
        for p in self.db.scalars(
            select(DocProbe).where(DocProbe.user_id == owner_user_id, DocProbe.path_node_id.in_(node_ids_))
        ).all():
            existing.setdefault(p.path_node_id, set()).add(p.block_id)
            if (p.status or "").strip().lower() in ACTIVE_PROBE_STATUSES:
                active_count[p.path_node_id] = active_count.get(p.path_node_id, 0) + 1

        scored = []
        for cand in candidates:
            if targets_by_node.get(cand.node_id) and set(cand.concept_keys) & targets_by_node[cand.node_id]:
                cand.targeted_prereq = True
            cand.info_gain = compute_info_gain(cand.concept_ids, states)
            if cand.info_gain < self.policy.min_info_gain and not cand.targeted_prereq:
                continue
            score = cand.info_gain
            parts = {"info_gain": cand.info_gain}
            if cand.testlet_id:
                cand.testlet_uncertainty = testlet_uncertainty(testlets.get(cand.testlet_id))
                if cand.testlet_uncertainty > 0 and self.policy.testlet_weight > 0:
                    boost = cand.testlet_uncertainty * self.policy.testlet_weight
                    score += boost
                    parts["testlet_uncertainty"] = boost
            if self.policy.misconception_boost > 0 and any(cid in miscon for cid in cand.concept_ids):
                score += self.policy.misconception_boost
                parts["misconception_boost"] = self.policy.misconception_boost
            if cand.targeted_prereq and self.policy.prereq_boost > 0:
                score += self.policy.prereq_boost
                parts["prereq_target_boost"] = self.policy.prereq_boost
            cand.score = score
            cand.score_components = parts
            scored.append(cand)

        # Stable sort: equal (score, block_id) pairs keep node order.
        scored.sort(key=lambda c: (-c.score, c.block_id))

        rate_limit = math.ceil(self.policy.rate_per_hour)
        if rate_limit <= 0:
            out.rate_limited = True
            return out
        since = utcnow() - timedelta(hours=1)
        recent = self.db.scalar(
            select(func.count()).select_from(DocProbe).where(
                DocProbe.user_id == owner_user_id, DocProbe.created_at >= since
            )
        ) or 0
        remaining = rate_limit - recent
        if remaining <= 0:
            out.rate_limited = True
            return out

        per_node = dict(active_count)
        selected: list[ProbeCandidate] = []
        for cand in scored:
            if self.policy.max_per_lookahead > 0 and len(selected) >= self.policy.max_per_lookahead:
                break
            if remaining <= 0:
                out.rate_limited = True
                break
            if self.policy.max_per_node > 0 and per_node.get(cand.node_id, 0) >= self.policy.max_per_node:
                continue
            if cand.block_id in existing.get(cand.node_id, set()):
                continue
            selected.append(cand)
            per_node[cand.node_id] = per_node.get(cand.node_id, 0) + 1
            remaining -= 1

        if not selected:
            return out
        out.probes_selected = len(selected)
        self._persist(owner_user_id, path_id, selected, docs, doc_rows, out)
        logger.info(
            f"Probe selection for path {path_id}: selected={out.probes_selected} "
            f"candidates={len(scored)} docs_updated={out.docs_updated}"
        )
        return out

    def _persist(
        self,
        owner_user_id: UUID,
        path_id: UUID,
        selected: list[ProbeCandidate],
        docs: dict[UUID, dict[str, Any]],
        doc_rows: dict[UUID, LearningNodeDoc],
        out: ProbeSelectionResult,
    ) -> None:
        now = utcnow()
        with self.db.begin_nested():
            updated: set[UUID] = set()
            for cand in selected:
                self.db.add(
                    DocProbe(
                        user_id=owner_user_id,
                        path_id=path_id,
                        path_node_id=cand.node_id,
                        block_id=cand.block_id,
                        block_type=cand.block_type,
                        probe_kind=cand.block_type,
                        concept_keys=list(cand.concept_keys),
                        concept_ids=[str(c) for c in cand.concept_ids],
                        trigger_after_block_ids=list(cand.trigger_after),
                        info_gain=cand.info_gain,
                        score=cand.score,
                        policy_version=self.policy.policy_version,
                        schema_version=1,
                        status="planned",
                        meta={
                            "score_components": cand.score_components,
                            "testlet_id": cand.testlet_id,
                            "testlet_type": cand.testlet_type,
                            "testlet_uncertainty": cand.testlet_uncertainty,
                            "targeted_prereq": cand.targeted_prereq,
                            "selected_at": now.isoformat(),
                        },
                        created_at=now,
                        updated_at=now,
                    )
                )
                doc = docs.get(cand.node_id)
                if doc is not None and 0 <= cand.block_index < len(doc["blocks"]):
                    annotate_probe_block(doc["blocks"][cand.block_index], cand)
                    updated.add(cand.node_id)

            for nid in updated:
                row = doc_rows[nid]
                row.doc_json = canonical_doc_text(docs[nid])
                row.content_hash = content_hash(docs[nid])
                row.updated_at = now
                out.docs_updated += 1
                self._annotate_variant(owner_user_id, nid, [c for c in selected if c.node_id == nid], now)
            self.db.flush()

    def _annotate_variant(self, owner_user_id: UUID, node_id: UUID, cands: list[ProbeCandidate], now) -> None:
        variant = self.db.scalar(
            select(LearningNodeDocVariant)
            .where(LearningNodeDocVariant.user_id == owner_user_id, LearningNodeDocVariant.path_node_id == node_id)
            .order_by(LearningNodeDocVariant.created_at.desc())
            .limit(1)
        )
        if variant is None:
            return
        vdoc = variant.load_doc()
        if not vdoc or not doc_blocks(vdoc):
            return
        index = {block_id(b): b for b in vdoc["blocks"] if block_id(b)}
        changed = False
        for cand in cands:
            b = index.get(cand.block_id)
            if b is not None:
                annotate_probe_block(b, cand)
                changed = True
        if changed:
            variant.doc_json = canonical_doc_text(vdoc)
            variant.content_hash = content_hash(vdoc)
            variant.updated_at = now
