"""
Path Grouping Refiner.

Revisits the intake's proposed paths by clustering the uploaded files on
their signatures (summary embedding, topics, domains, outline, difficulty).

Pair similarity feeds a union-find over edges above the merge threshold.
Cluster separation and bridge files (files close to two clusters) pick the
mode: merge, split, recluster, segmented or single. Confident results are
written back into the path's intake metadata; uncertain ones either become a
two-option question in the chat thread or are skipped.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from src.content.docutil import dedupe_strings, float_from_any, shorten, string_from_any, string_slice_from_any
from src.core.clients import ScoreClient
from src.core.env import clamp01
from src.core.errors import MissingInputError, NotFoundError
from src.db.models import (
    ChatMessage,
    ChatThread,
    MaterialFile,
    MaterialFileSignature,
    Path,
    UserPreference,
    utcnow,
)
from src.semantic.vectors import cosine_similarity

MODE_MERGE = "merge"
MODE_SPLIT = "split"
MODE_RECLUSTER = "recluster"
MODE_SEGMENTED = "segmented"
MODE_SINGLE = "single"

PREFERENCE_KEY = "path_grouping"
QUESTION_ID = "structure_choice"


@dataclass(frozen=True)
class GroupingThresholds:
    merge: float = 0.60
    split: float = 0.55
    bridge_strong: float = 0.70
    bridge_weak: float = 0.40
    max_files: int = 40
    pair_topk: int = 12

    @classmethod
    def from_settings(cls) -> "GroupingThresholds":
        cfg = get_settings().get_grouping_config()
        return cls(
            merge=clamp01(cfg["merge"]),
            split=clamp01(cfg["split"]),
            bridge_strong=clamp01(cfg["bridge_strong"]),
            bridge_weak=clamp01(cfg["bridge_weak"]),
            max_files=max(0, cfg["max_files"]),
            pair_topk=max(0, cfg["pair_topk"]),
        )

    def with_preferences(self, prefs: "GroupingPreferences") -> "GroupingThresholds":
        """
        Shift thresholds by the learner's grouping preferences.

        prefer_single_path lowers split/merge, prefer_multi_path raises them,
        and merge_bias is added to the merge threshold.
        """
        merge, split = self.merge, self.split
        if prefs.prefer_single:
            split = clamp01(split - 0.05)
            merge = clamp01(merge - 0.03)
        if prefs.prefer_multi:
            split = clamp01(split + 0.05)
            merge = clamp01(merge + 0.03)
        if prefs.merge_bias:
            merge = clamp01(merge + prefs.merge_bias)
        weak = self.bridge_weak
        if weak > self.bridge_strong:
            weak = self.bridge_strong * 0.85
        return replace(self, merge=merge, split=split, bridge_weak=weak)


@dataclass(frozen=True)
class GroupingPreferences:
    prefer_single: bool = False
    prefer_multi: bool = False
    merge_bias: float = 0.0

    @classmethod
    def from_value(cls, value: Any) -> "GroupingPreferences":
        if not isinstance(value, dict):
            return cls()
        return cls(
            prefer_single=bool(value.get("prefer_single_path")),
            prefer_multi=bool(value.get("prefer_multi_path")),
            merge_bias=float_from_any(value.get("merge_bias")),
        )


@dataclass
class BridgeInfo:
    strong: set[UUID] = field(default_factory=set)
    medium: set[UUID] = field(default_factory=set)

    @property
    def any(self) -> bool:
        return bool(self.strong or self.medium)


@dataclass
class GroupingRefineResult:
    path_id: UUID
    status: str = "skipped"
    paths_before: int = 0
    paths_after: int = 0
    files_considered: int = 0
    confidence: float = 0.0
    mode: str = ""
    thread_id: Optional[UUID] = None
    question: dict[str, Any] = field(default_factory=dict)
    intake: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Signature features
# =============================================================================


def normalize_token(s: str) -> str:
    s = (s or "").strip().lower().replace("_", " ").replace("-", " ")
    return " ".join(s.split())


def normalize_tokens(items: Any) -> list[str]:
    return dedupe_strings([t for t in (normalize_token(x) for x in string_slice_from_any(items)) if t])


def signature_tokens(sig: Optional[MaterialFileSignature]) -> list[str]:
    """Topics, domain tags and concept keys, lower-cased."""
    if sig is None:
        return []
    raw = string_slice_from_any(sig.topics) + string_slice_from_any(sig.domain_tags)
    raw += string_slice_from_any(sig.concept_keys)
    return dedupe_strings([t.strip().lower() for t in raw if t.strip()])


def signature_domains(sig: Optional[MaterialFileSignature]) -> list[str]:
    return normalize_tokens(sig.domain_tags) if sig is not None else []


def signature_topics(sig: Optional[MaterialFileSignature]) -> list[str]:
    return normalize_tokens(sig.topics) if sig is not None else []


def signature_outline_tokens(sig: Optional[MaterialFileSignature]) -> list[str]:
    if sig is None or not isinstance(sig.outline_json, dict):
        return []
    out = []
    for section in sig.outline_json.get("sections") or []:
        if isinstance(section, dict):
            title = normalize_token(string_from_any(section.get("title")))
            if title:
                out.append(title)
    return dedupe_strings(out)


def jaccard(a: list[str], b: list[str]) -> float:
    sa = {t for t in a if t}
    sb = {t for t in b if t}
    if not sa or not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


DIFFICULTY_RANKS = {"intro": 0, "beginner": 0, "intermediate": 1, "mixed": 1, "advanced": 2}


def difficulty_penalty(a: Optional[MaterialFileSignature], b: Optional[MaterialFileSignature]) -> float:
    ra = DIFFICULTY_RANKS.get((a.difficulty or "").strip().lower()) if a is not None else None
    rb = DIFFICULTY_RANKS.get((b.difficulty or "").strip().lower()) if b is not None else None
    if ra is None or rb is None:
        return 0.0
    diff = abs(ra - rb)
    if diff == 0:
        return 0.0
    return 0.07 if diff == 1 else 0.15


def pair_key(a: UUID, b: UUID) -> tuple[str, str]:
    sa, sb = str(a), str(b)
    return (sa, sb) if sa < sb else (sb, sa)


def score_pair(sa: Optional[MaterialFileSignature], sb: Optional[MaterialFileSignature]) -> float:
    """
    Similarity of two files from their signatures, clamped to [0, 1].

    0.65 embedding cosine + 0.2 token jaccard + 0.1 domain jaccard +
    0.05 outline jaccard, less the difficulty penalty. Strong domain and topic
    agreement adds 0.08; unrelated files are shrunk by 0.7.
    """
    emb_a = sa.summary_embedding if sa is not None and sa.summary_embedding else []
    emb_b = sb.summary_embedding if sb is not None and sb.summary_embedding else []
    emb = cosine_similarity(emb_a, emb_b)
    topic = jaccard(signature_tokens(sa), signature_tokens(sb))
    domain = jaccard(signature_domains(sa), signature_domains(sb))
    outline = jaccard(signature_outline_tokens(sa), signature_outline_tokens(sb))

    score = 0.65 * emb + 0.2 * topic + 0.1 * domain + 0.05 * outline
    score -= difficulty_penalty(sa, sb)
    if domain >= 0.6 and topic >= 0.3:
        score += 0.08
    if domain == 0 and topic < 0.05 and emb < 0.25:
        score *= 0.7
    return clamp01(score)


def compute_pair_scores(
    files: list[MaterialFile], sigs: dict[UUID, MaterialFileSignature]
) -> dict[tuple[str, str], float]:
    out = {}
    for i, fa in enumerate(files):
        for fb in files[i + 1 :]:
            out[pair_key(fa.id, fb.id)] = score_pair(sigs.get(fa.id), sigs.get(fb.id))
    return out


def describe_file(f: MaterialFile, sig: Optional[MaterialFileSignature]) -> str:
    lines = [f"name: {(f.original_name or '').strip()}"]
    if sig is not None:
        summary = (sig.summary_md or "").strip()
        if summary:
            lines.append(f"summary: {shorten(summary, 400)}")
        toks = signature_tokens(sig)
        if toks:
            lines.append("topics: " + ", ".join(toks[:12]))
    return "\n".join(lines).strip()


def select_top_pairs(
    files: list[MaterialFile], scores: dict[tuple[str, str], float], top_k: int
) -> list[tuple[MaterialFile, MaterialFile]]:
    """The ``top_k`` highest-scoring pairs of every file, de-duplicated."""
    if top_k <= 0:
        return []
    per_file: dict[UUID, list[tuple[MaterialFile, MaterialFile]]] = {}
    for i, fa in enumerate(files):
        for fb in files[i + 1 :]:
            per_file.setdefault(fa.id, []).append((fa, fb))
            per_file.setdefault(fb.id, []).append((fa, fb))
    seen: set[tuple[str, str]] = set()
    out = []
    for f in files:
        pairs = sorted(per_file.get(f.id, []), key=lambda p: -scores.get(pair_key(p[0].id, p[1].id), 0.0))
        for fa, fb in pairs[:top_k]:
            key = pair_key(fa.id, fb.id)
            if key in seen:
                continue
            seen.add(key)
            out.append((fa, fb))
    return out


# =============================================================================
# Clustering
# =============================================================================


class DisjointSet:
    """Union-find with path compression and union by rank."""

    def __init__(self, ids: list[UUID]):
        self.parent = {i: i for i in ids}
        self.rank = {i: 0 for i in ids}

    def find(self, x: UUID) -> UUID:
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, a: UUID, b: UUID) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1


def cluster_by_threshold(
    ids: list[UUID], scores: dict[tuple[str, str], float], threshold: float
) -> list[list[UUID]]:
    """Connected components over pairs scoring at least ``threshold``; largest first."""
    ds = DisjointSet(ids)
    for i, a in enumerate(ids):
        for b in ids[i + 1 :]:
            if scores.get(pair_key(a, b), 0.0) >= threshold:
                ds.union(a, b)
    groups: dict[UUID, list[UUID]] = {}
    for i in ids:
        groups.setdefault(ds.find(i), []).append(i)
    clusters = [sorted(g, key=str) for g in groups.values()]
    clusters.sort(key=lambda g: (-len(g), str(g[0])))
    return clusters


def cluster_separation(clusters: list[list[UUID]], scores: dict[tuple[str, str], float]) -> tuple[float, float]:
    """Mean within-cluster and mean cross-cluster pair similarity."""
    intra = [
        scores.get(pair_key(g[i], g[j]), 0.0) for g in clusters for i in range(len(g)) for j in range(i + 1, len(g))
    ]
    inter = [
        scores.get(pair_key(a, b), 0.0)
        for i in range(len(clusters))
        for j in range(i + 1, len(clusters))
        for a in clusters[i]
        for b in clusters[j]
    ]
    intra_avg = sum(intra) / len(intra) if intra else 0.0
    inter_avg = sum(inter) / len(inter) if inter else 0.0
    return intra_avg, inter_avg


def detect_bridges(
    clusters: list[list[UUID]], scores: dict[tuple[str, str], float], strong: float, weak: float
) -> BridgeInfo:
    """
    Files whose average similarity to two clusters is high.

    Strong: the top two cluster averages are both >= strong. Medium: the top
    is >= strong and the second >= weak, or both are >= weak.
    """
    info = BridgeInfo()
    if len(clusters) < 2 or strong <= 0:
        return info
    if weak <= 0:
        weak = strong * 0.6
    for group in clusters:
        for fid in group:
            avgs = []
            for other in clusters:
                vals = [scores.get(pair_key(fid, oid), 0.0) for oid in other if oid != fid]
                if vals:
                    avgs.append(sum(vals) / len(vals))
            if len(avgs) < 2:
                continue
            avgs.sort(reverse=True)
            top, second = avgs[0], avgs[1]
            if top >= strong and second >= strong:
                info.strong.add(fid)
            elif (top >= strong and second >= weak) or (top >= weak and second >= weak):
                info.medium.add(fid)
    return info


def grouping_mode(paths_before: int, cluster_count: int, has_bridges: bool) -> str:
    if cluster_count <= 1:
        return MODE_MERGE if paths_before > 1 else MODE_SINGLE
    if has_bridges:
        return MODE_SEGMENTED
    if paths_before <= 1:
        return MODE_SPLIT
    return MODE_RECLUSTER


def should_apply(mode: str, intra: float, inter: float, th: GroupingThresholds, bridges: BridgeInfo) -> bool:
    if mode == MODE_MERGE:
        return intra >= th.merge
    if mode == MODE_SPLIT:
        return inter <= th.split and not bridges.any
    if mode == MODE_RECLUSTER:
        return intra >= th.merge and inter <= th.split and not bridges.any
    if mode == MODE_SEGMENTED:
        return bridges.any and inter >= th.bridge_weak
    return False


def grouping_reason(mode: str, intra: float, inter: float, bridges: BridgeInfo) -> str:
    parts = []
    if mode == MODE_MERGE:
        parts.append(f"high coherence (intra {intra:.2f})")
    elif mode == MODE_SPLIT:
        parts.append(f"low cross-similarity (inter {inter:.2f})")
    elif mode == MODE_RECLUSTER:
        parts.append(f"clusters separate (intra {intra:.2f} / inter {inter:.2f})")
    elif mode == MODE_SEGMENTED:
        parts.append("bridge files connect clusters")
    if bridges.strong:
        parts.append(f"{len(bridges.strong)} strong bridge file(s)")
    elif bridges.medium:
        parts.append(f"{len(bridges.medium)} bridge file(s)")
    return "; ".join(parts) or "uncertain similarity"


# =============================================================================
# Candidate paths
# =============================================================================


def title_case(s: str) -> str:
    return " ".join(p[:1].upper() + p[1:].lower() for p in s.replace("_", " ").split())


def _top_tokens(counts: dict[str, int], limit: int, min_count: int) -> list[str]:
    ranked = sorted(((t, c) for t, c in counts.items() if t and c >= min_count), key=lambda tc: (-tc[1], tc[0]))
    return [title_case(t) for t, _ in ranked[:limit]]


def evidence_note(group: list[UUID], sigs: dict[UUID, MaterialFileSignature], intra: float, inter: float) -> str:
    topics: dict[str, int] = {}
    domains: dict[str, int] = {}
    difficulties: set[str] = set()
    for fid in group:
        sig = sigs.get(fid)
        for t in signature_topics(sig):
            topics[t] = topics.get(t, 0) + 1
        for d in signature_domains(sig):
            domains[d] = domains.get(d, 0) + 1
        if sig is not None:
            diff = (sig.difficulty or "").strip().lower()
            if diff and diff != "unknown":
                difficulties.add(diff)
    shared_min = 3 if len(group) >= 6 else 2 if len(group) >= 3 else 1

    parts = []
    domain_top = _top_tokens(domains, 3, shared_min) or _top_tokens(domains, 3, 1)
    if domain_top:
        parts.append("Domains: " + ", ".join(domain_top))
    topic_top = _top_tokens(topics, 3, shared_min) or _top_tokens(topics, 3, 1)
    if topic_top:
        parts.append("Topics: " + ", ".join(topic_top))
    if difficulties:
        parts.append("Difficulty: " + (next(iter(difficulties)) if len(difficulties) == 1 else "mixed"))
    parts.append(f"intra-sim={intra:.2f}, inter-sim={inter:.2f}")
    return ". ".join(parts) + "."


def derive_title(group: list[UUID], files_by_id: dict[UUID, MaterialFile], sigs: dict[UUID, MaterialFileSignature]) -> str:
    counts: dict[str, int] = {}
    for fid in group:
        for t in signature_tokens(sigs.get(fid)):
            counts[t] = counts.get(t, 0) + 1
    if counts:
        token = sorted(counts.items(), key=lambda tc: (-tc[1], tc[0]))[0][0]
        return title_case(token)
    for fid in group:
        f = files_by_id.get(fid)
        if f is not None and (f.original_name or "").strip():
            return f.original_name.strip()
    return ""


def bridge_names(group: list[UUID], files_by_id: dict[UUID, MaterialFile], bridges: BridgeInfo) -> list[str]:
    names = []
    for fid in group:
        if fid in bridges.strong or fid in bridges.medium:
            f = files_by_id.get(fid)
            names.append((f.original_name or "").strip() if f is not None and f.original_name else str(fid))
    return dedupe_strings(names)


def path_group_key(p: dict[str, Any]) -> str:
    ids = dedupe_strings(string_slice_from_any(p.get("core_file_ids")) + string_slice_from_any(p.get("support_file_ids")))
    return "|".join(sorted(ids))


def groupings_equivalent(candidate: list[dict[str, Any]], paths: list[Any]) -> bool:
    cand = sorted(path_group_key(p) for p in candidate if isinstance(p, dict))
    cur = sorted(path_group_key(p) for p in paths if isinstance(p, dict))
    return cand == cur


def _goal(title: str) -> str:
    return f"Learn {title}" if title else "Learn the uploaded materials"


def build_candidate_paths(
    clusters: list[list[UUID]],
    mode: str,
    intake: dict[str, Any],
    files_by_id: dict[UUID, MaterialFile],
    sigs: dict[UUID, MaterialFileSignature],
    intra: float,
    inter: float,
    bridges: BridgeInfo,
) -> list[dict[str, Any]]:
    """
    Proposed intake paths for the clustering.

    Segmented mode yields one path with ordered ``segments`` and the bridge
    file ids; every other mode yields one path per cluster, reusing the
    title, goal and id of an existing path with the same file set.
    """
    if not clusters:
        return []
    confidence = clamp01((intra - inter + 1) / 2)
    existing_paths = [p for p in (intake.get("paths") or []) if isinstance(p, dict)]

    if mode == MODE_SEGMENTED:
        all_ids = [fid for g in clusters for fid in g]
        path_id, title, goal = "path_1", "", ""
        if len(existing_paths) == 1:
            p = existing_paths[0]
            path_id = string_from_any(p.get("path_id")).strip() or path_id
            title = string_from_any(p.get("title")).strip()
            goal = string_from_any(p.get("goal")).strip()
        title = title or derive_title(all_ids, files_by_id, sigs)
        notes = evidence_note(all_ids, sigs, intra, inter) + " Segments reflect bridged subtopics."
        names = bridge_names(all_ids, files_by_id, bridges)
        if names:
            notes += " Bridge file(s): " + ", ".join(names) + "."
        segments = [
            {
                "segment_id": f"segment_{i + 1}",
                "title": derive_title(g, files_by_id, sigs),
                "file_ids": dedupe_strings([str(fid) for fid in g]),
                "notes": evidence_note(g, sigs, intra, inter),
            }
            for i, g in enumerate(clusters)
        ]
        bridge_ids = sorted(str(fid) for fid in bridges.strong)
        bridge_ids += sorted(str(fid) for fid in bridges.medium - bridges.strong)
        return [
            {
                "path_id": path_id,
                "title": title,
                "goal": goal or _goal(title),
                "core_file_ids": dedupe_strings([str(fid) for fid in all_ids]),
                "support_file_ids": [],
                "confidence": confidence,
                "notes": notes,
                "segments": segments,
                "segment_bridge_file_ids": bridge_ids,
            }
        ]

    existing = {path_group_key(p): p for p in existing_paths if path_group_key(p)}
    out = []
    for i, group in enumerate(clusters):
        ids = [str(fid) for fid in group]
        note = evidence_note(group, sigs, intra, inter)
        path_id, title, goal, notes = f"path_{i + 1}", "", "", note
        prior = existing.get("|".join(sorted(dedupe_strings(ids))))
        if prior is not None:
            title = string_from_any(prior.get("title")).strip()
            goal = string_from_any(prior.get("goal")).strip()
            prior_notes = string_from_any(prior.get("notes")).strip()
            notes = f"{prior_notes} {note}" if prior_notes else note
            path_id = string_from_any(prior.get("path_id")).strip() or path_id
        title = title or derive_title(group, files_by_id, sigs)
        names = bridge_names(group, files_by_id, bridges)
        if names:
            notes = notes.strip() + " Bridge file(s): " + ", ".join(names) + "."
        out.append(
            {
                "path_id": path_id,
                "title": title,
                "goal": goal or _goal(title),
                "core_file_ids": ids,
                "support_file_ids": [],
                "confidence": confidence,
                "notes": notes,
            }
        )
    return out


def format_paths_preview(paths: list[Any], files_by_id: dict[UUID, MaterialFile]) -> str:
    names = {str(fid): (f.original_name or "").strip() or str(fid) for fid, f in files_by_id.items()}
    lines = []
    for p in paths:
        if not isinstance(p, dict):
            continue
        title = string_from_any(p.get("title")).strip() or "Untitled path"
        file_ids = string_slice_from_any(p.get("core_file_ids")) + string_slice_from_any(p.get("support_file_ids"))
        lines.append(f"- **{title}** ({len(file_ids)} file(s))")
        for fid in file_ids:
            lines.append(f"  - {names.get(fid, fid)}")
        for seg in p.get("segments") or []:
            if isinstance(seg, dict):
                lines.append(f"  - Segment: {string_from_any(seg.get('title')).strip() or seg.get('segment_id')}")
    return "\n".join(lines)


def format_choice_markdown(current: list[Any], refined: list[Any], files_by_id: dict[UUID, MaterialFile]) -> str:
    parts = ["I can keep the current grouping or use a refined grouping."]
    preview = format_paths_preview(current, files_by_id)
    if preview:
        parts.append("Option 1: keep current\n" + preview)
    preview = format_paths_preview(refined, files_by_id)
    if preview:
        parts.append("Option 2: use refined\n" + preview)
    parts.append("Reply 1 or 2.")
    return "\n\n".join(parts)


# =============================================================================
# Refiner
# =============================================================================


class GroupingRefiner:
    """
    Refine an intake's proposed paths by clustering the material files.

    Example:
        >>> refiner = GroupingRefiner(session)
        >>> result = refiner.refine(user_id, set_id, path_id, thread_id=thread.id)
        >>> result.status, result.mode
        ('refined', 'split')
    """

    def __init__(
        self,
        db_session: Session,
        score_client: Optional[ScoreClient] = None,
        thresholds: Optional[GroupingThresholds] = None,
    ):
        self.db = db_session
        self.score_client = score_client
        self.thresholds = thresholds or GroupingThresholds.from_settings()

    def refine(
        self,
        owner_user_id: UUID,
        material_set_id: UUID,
        path_id: UUID,
        thread_id: Optional[UUID] = None,
        job_id: Optional[UUID] = None,
        wait_for_user: Optional[bool] = None,
    ) -> GroupingRefineResult:
        if owner_user_id is None or material_set_id is None or path_id is None:
            raise MissingInputError("path_grouping_refine: missing user, material set or path id")
        if wait_for_user is None:
            wait_for_user = get_settings().path_grouping_wait_for_user

        out = GroupingRefineResult(path_id=path_id)
        path = self.db.get(Path, path_id)
        if path is None or path.user_id != owner_user_id:
            raise NotFoundError(f"path_grouping_refine: path {path_id} not found")

        meta = dict(path.meta or {})
        if meta.get("intake_locked") or meta.get("intake_confirmed_by_user"):
            return out
        intake = meta.get("intake")
        if not isinstance(intake, dict):
            return out
        intake = dict(intake)
        paths_before = list(intake.get("paths") or [])
        if not paths_before:
            return out
        out.paths_before = len(paths_before)
        out.intake = intake

        if intake.get("paths_refined") and intake.get("paths_confirmed"):
            out.status = "confirmed"
            out.paths_after = len(paths_before)
            return out

        files = list(
            self.db.scalars(
                select(MaterialFile)
                .where(MaterialFile.material_set_id == material_set_id)
                .order_by(MaterialFile.created_at, MaterialFile.id)
            ).all()
        )
        if len(files) < 2:
            return out
        th = self.thresholds
        if th.max_files > 0 and len(files) > th.max_files:
            out.status = "skipped_too_many_files"
            logger.info(f"Grouping refine skipped for path {path_id}: {len(files)} files > {th.max_files}")
            return out

        sigs = {
            s.material_file_id: s
            for s in self.db.scalars(
                select(MaterialFileSignature).where(MaterialFileSignature.material_set_id == material_set_id)
            ).all()
        }
        if not sigs:
            return out
        out.files_considered = len(files)
        files_by_id = {f.id: f for f in files}

        th = th.with_preferences(self._preferences(owner_user_id))
        scores = compute_pair_scores(files, sigs)
        scores = self._cross_encode(files, sigs, scores)

        clusters = cluster_by_threshold([f.id for f in files], scores, th.merge)
        intra, inter = cluster_separation(clusters, scores)
        conf = clamp01((intra - inter + 1) / 2)
        out.confidence = conf
        bridges = detect_bridges(clusters, scores, th.bridge_strong, th.bridge_weak)
        mode = grouping_mode(len(paths_before), len(clusters), bridges.any)
        out.mode = mode
        logger.debug(
            f"Grouping path {path_id}: clusters={len(clusters)} intra={intra:.2f} inter={inter:.2f} "
            f"bridges={len(bridges.strong)}/{len(bridges.medium)} mode={mode}"
        )

        candidate = build_candidate_paths(clusters, mode, intake, files_by_id, sigs, intra, inter, bridges)
        if not candidate:
            out.status = "skipped_empty"
            return out
        if groupings_equivalent(candidate, paths_before):
            out.status = "no_change"
            out.paths_after = len(candidate)
            return out

        now = utcnow().isoformat()
        if not should_apply(mode, intra, inter, th, bridges):
            thread = self.db.get(ChatThread, thread_id) if thread_id is not None else None
            if wait_for_user and thread is not None and job_id is not None:
                reason = grouping_reason(mode, intra, inter, bridges)
                return self._ask_user(out, path, meta, intake, paths_before, candidate, thread, job_id, files_by_id, reason, now)
            out.status = "skipped_low_confidence"
            logger.info(f"Grouping refine for path {path_id}: low confidence ({conf:.2f}), mode={mode}")
            return out

        intake.update(
            {
                "paths": candidate,
                "needs_clarification": False,
                "paths_confirmed": True,
                "paths_refined": True,
                "paths_refined_at": now,
                "paths_refine_mode": mode,
            }
        )
        intake.pop("paths_refine_candidate", None)
        intake.pop("clarifying_questions", None)
        if conf > float_from_any(intake.get("confidence")):
            intake["confidence"] = conf
        primary = string_from_any(intake.get("primary_path_id")).strip()
        if not primary or primary not in {string_from_any(p.get("path_id")).strip() for p in candidate}:
            intake["primary_path_id"] = string_from_any(candidate[0].get("path_id")).strip()

        meta.update(
            {"intake": intake, "intake_updated_at": now, "intake_refined_at": now, "intake_refine_pending": False}
        )
        with self.db.begin_nested():
            path.meta = meta
            self.db.flush()

        out.status = "refined"
        out.paths_after = len(candidate)
        out.intake = intake
        logger.info(f"Grouping refined for path {path_id}: mode={mode} paths {len(paths_before)} -> {len(candidate)}")
        return out

    def _preferences(self, user_id: UUID) -> GroupingPreferences:
        row = self.db.scalar(
            select(UserPreference).where(UserPreference.user_id == user_id, UserPreference.key == PREFERENCE_KEY)
        )
        return GroupingPreferences.from_value(row.value if row is not None else None)

    def _cross_encode(
        self,
        files: list[MaterialFile],
        sigs: dict[UUID, MaterialFileSignature],
        scores: dict[tuple[str, str], float],
    ) -> dict[tuple[str, str], float]:
        """Blend cross-encoder scores 60/40 into the top pairs; any client failure keeps the base scores."""
        if self.score_client is None:
            return scores
        pairs = select_top_pairs(files, scores, self.thresholds.pair_topk)
        if not pairs:
            return scores
        try:
            ce = self.score_client.score_pairs(
                [(describe_file(a, sigs.get(a.id)), describe_file(b, sigs.get(b.id))) for a, b in pairs]
            )
        except Exception as e:  # scoring is an optional refinement
            logger.warning(f"Cross-encoder scoring failed; using base pair scores: {e}")
            return scores
        if len(ce) != len(pairs):
            logger.warning(f"Cross-encoder returned {len(ce)} scores for {len(pairs)} pairs; ignoring")
            return scores
        out = dict(scores)
        for (a, b), s in zip(pairs, ce):
            key = pair_key(a.id, b.id)
            out[key] = clamp01(0.6 * float(s) + 0.4 * out.get(key, 0.0))
        return out

    def _ask_user(
        self,
        out: GroupingRefineResult,
        path: Path,
        meta: dict[str, Any],
        intake: dict[str, Any],
        current: list[Any],
        candidate: list[dict[str, Any]],
        thread: ChatThread,
        job_id: UUID,
        files_by_id: dict[UUID, MaterialFile],
        reason: str,
        now: str,
    ) -> GroupingRefineResult:
        intake.update(
            {
                "needs_clarification": True,
                "paths_confirmed": False,
                "paths_refined": False,
                "paths_refine_candidate": candidate,
                "paths_refine_mode": out.mode,
                "paths_refine_confidence": out.confidence,
                "paths_refine_reason": reason,
                "clarifying_questions": [
                    {
                        "id": QUESTION_ID,
                        "question": (
                            f"I can keep the current grouping or use a refined grouping ({reason}). "
                            "Reply 1 to keep current, or 2 to use the refined grouping."
                        ),
                    }
                ],
            }
        )
        if out.confidence > float_from_any(intake.get("confidence")):
            intake["confidence"] = out.confidence
        meta.update({"intake": intake, "intake_refine_pending": True, "intake_updated_at": now})

        with self.db.begin_nested():
            path.meta = meta
            seq = self.db.scalar(
                select(func.coalesce(func.max(ChatMessage.seq), 0)).where(ChatMessage.thread_id == thread.id)
            )
            msg = ChatMessage(
                thread_id=thread.id,
                user_id=path.user_id,
                seq=int(seq or 0) + 1,
                role="assistant",
                kind="path_intake_questions",
                content=format_choice_markdown(current, candidate, files_by_id),
                meta={
                    "job_id": str(job_id),
                    "path_id": str(path.id),
                    "material_set_id": str(path.material_set_id) if path.material_set_id else "",
                    "question_id": QUESTION_ID,
                },
            )
            self.db.add(msg)
            self.db.flush()

        out.status = "waiting_user"
        out.thread_id = thread.id
        out.intake = intake
        out.question = {
            "message_id": str(msg.id),
            "message_seq": msg.seq,
            "options": [
                {
                    "id": "keep_current",
                    "choice": "1",
                    "label": "Keep current grouping",
                    "paths": current,
                    "prefer_single_path": len(current) == 1,
                },
                {
                    "id": "use_refined",
                    "choice": "2",
                    "label": "Use refined grouping",
                    "paths": candidate,
                    "prefer_single_path": len(candidate) == 1,
                },
            ],
        }
        logger.info(f"Grouping refine for path {path.id} waiting on user (thread {thread.id})")
        return out
