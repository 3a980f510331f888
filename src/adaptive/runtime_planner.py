"""
Runtime Planner.

Derives the study cadence for a path: how long a session should run, when to
take breaks, and how often quick checks and flashcards surface. A heuristic
plan is always computed from the rendered docs and the learner's progression
history; when a model is configured the LLM may refine it, and every refined
number is clamped back into its valid range.

The plan is stored in the path metadata (``runtime_plan``) and in each node's
metadata with ``runtime_plan_scope`` set to ``module`` or ``lesson``.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from src.content.docutil import float_from_any, int_from_any, parse_uuid, string_from_any
from src.content.metrics import node_doc_metrics
from src.core.clients import LLMClient
from src.core.env import round_half_up
from src.core.errors import MissingInputError, NotFoundError
from src.db.models import LearningNodeDoc, Path, PathNode, UserProgressionEvent, utcnow
from src.generation.prompts import (
    RUNTIME_PLAN_SCHEMA,
    RUNTIME_PLAN_SCHEMA_NAME,
    RUNTIME_PLAN_SYSTEM_PROMPT,
    build_runtime_plan_user_prompt,
)

PLAN_SCHEMA_VERSION = 1
SOURCE_HEURISTIC = "heuristic"
SOURCE_LLM = "llm"
POLICY_PROFILES = ("balanced", "gentle", "intensive", "review")
DEFAULT_WEIGHTS = {"mastery": 0.35, "retention": 0.25, "pace": 0.25, "fatigue": 0.15}
RECENT_WINDOW = timedelta(days=30)
MIN_LESSON_MINUTES = 4

# Field fallbacks for partial policies on LLM module/lesson entries.
_ENTRY_BREAK = {"after_minutes": 12, "min_break_minutes": 2, "max_break_minutes": 10}
_ENTRY_QUICK_CHECK = {"after_blocks": 3, "after_minutes": 6, "max_per_lesson": 4, "min_gap_blocks": 1}
_ENTRY_FLASHCARD = {"after_blocks": 4, "after_minutes": 8, "after_fail_streak": 2, "max_per_lesson": 6}


def clamp_int(v: int, lo: int, hi: int) -> int:
    """Clamp to [lo, hi]; a non-positive ``hi`` leaves the top open."""
    if v < lo:
        return lo
    if hi > 0 and v > hi:
        return hi
    return v


def clamp_float(v: float, lo: float, hi: float) -> float:
    if v < lo:
        return lo
    if hi > 0 and v > hi:
        return hi
    return v


def estimate_minutes(word_count: int, quick_checks: int, flashcards: int, wpm: float = 180.0) -> int:
    """
    Estimated lesson length in minutes.

    Reading time plus 0.6 min per quick check and 0.3 min per flashcard,
    never below MIN_LESSON_MINUTES.
    """
    if wpm <= 0:
        wpm = 180.0
    est = math.ceil(word_count / wpm) if word_count > 0 else 0
    est += math.ceil(quick_checks * 0.6 + flashcards * 0.3)
    return max(est, MIN_LESSON_MINUTES)


def normalize_weights(w: dict[str, float]) -> dict[str, float]:
    clamped = {k: clamp_float(float(w.get(k, 0.0)), 0.0, 1.0) for k in DEFAULT_WEIGHTS}
    total = sum(clamped.values())
    if total <= 0:
        return dict(DEFAULT_WEIGHTS)
    return {k: v / total for k, v in clamped.items()}


@dataclass
class NodeSummary:
    node_id: UUID
    index: int
    title: str
    node_kind: str
    module_index: int = 0
    lesson_index: int = 0
    parent_index: int = 0
    word_count: int = 0
    block_count: int = 0
    quick_checks: int = 0
    flashcards: int = 0
    estimated_minutes: int = MIN_LESSON_MINUTES

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": str(self.node_id),
            "index": self.index,
            "title": self.title,
            "node_kind": self.node_kind,
            "module_index": self.module_index,
            "lesson_index": self.lesson_index,
            "word_count": self.word_count,
            "block_count": self.block_count,
            "quick_checks": self.quick_checks,
            "flashcards": self.flashcards,
            "estimated_minutes": self.estimated_minutes,
        }


@dataclass
class UserStats:
    event_count: int = 0
    avg_score: float = 0.0
    avg_attempts: float = 0.0
    avg_dwell_ms: float = 0.0
    completion_rate: float = 0.0
    recent_count: int = 0
    last_event_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "event_count": self.event_count,
            "avg_score": self.avg_score,
            "avg_attempts": self.avg_attempts,
            "avg_dwell_ms": self.avg_dwell_ms,
            "completion_rate": self.completion_rate,
            "recent_event_count": self.recent_count,
        }
        if self.last_event_at is not None:
            out["last_event_at"] = self.last_event_at.isoformat()
        return out


@dataclass
class RuntimePlanResult:
    path_id: UUID
    source: str
    model: str = ""
    plan: dict[str, Any] = field(default_factory=dict)
    nodes_updated: int = 0
    reused: bool = False


def summarize_user_stats(events: list[UserProgressionEvent], now: Optional[datetime] = None) -> UserStats:
    """Averages over progression events; dwell is averaged over events that report it."""
    stats = UserStats()
    if not events:
        return stats
    now = now or utcnow()
    total_score = total_attempts = total_dwell = 0.0
    dwell_count = completed = 0
    for e in events:
        stats.event_count += 1
        total_score += e.score or 0.0
        total_attempts += e.attempts or 0
        if (e.dwell_ms or 0) > 0:
            total_dwell += e.dwell_ms
            dwell_count += 1
        if e.completed:
            completed += 1
        if e.occurred_at is not None:
            if now - e.occurred_at <= RECENT_WINDOW:
                stats.recent_count += 1
            if stats.last_event_at is None or e.occurred_at > stats.last_event_at:
                stats.last_event_at = e.occurred_at
    stats.avg_score = total_score / stats.event_count
    stats.avg_attempts = total_attempts / stats.event_count
    stats.completion_rate = completed / stats.event_count
    if dwell_count:
        stats.avg_dwell_ms = total_dwell / dwell_count
    return stats


# =============================================================================
# Heuristic plan
# =============================================================================


def heuristic_plan(nodes: list[NodeSummary], stats: UserStats) -> dict[str, Any]:
    """
    Build the fallback plan from lesson sizes and learner history.

    Args:
        nodes: Node summaries in path order
        stats: Aggregated progression stats for the learner

    Returns:
        Plan dict with ``schema_version``, ``path``, ``modules`` and ``lessons``
    """
    lessons = [n for n in nodes if n.node_kind != "module"]
    avg_minutes = avg_blocks = avg_quick = avg_flash = 0.0
    if lessons:
        avg_minutes = sum(n.estimated_minutes for n in lessons) / len(lessons)
        avg_blocks = sum(n.block_count for n in lessons) / len(lessons)
        avg_quick = sum(n.quick_checks for n in lessons) / len(lessons)
        avg_flash = sum(n.flashcards for n in lessons) / len(lessons)
    if avg_minutes <= 0:
        avg_minutes = 10.0
    if avg_blocks <= 0:
        avg_blocks = 6.0

    completed_some = stats.completion_rate > 0
    strong = stats.avg_score > 0.85 and stats.completion_rate > 0.8

    target = clamp_int(round_half_up(avg_minutes * 2.0), 10, 45)
    if completed_some and stats.completion_rate < 0.5:
        target = clamp_int(round_half_up(target * 0.85), 8, 45)
    if strong:
        target = clamp_int(round_half_up(target * 1.1), 12, 60)

    min_break = clamp_int(round_half_up(target * 0.12), 2, 12)
    break_policy = {
        "after_minutes": clamp_int(round_half_up(target * 0.7), 8, target),
        "min_break_minutes": min_break,
        "max_break_minutes": clamp_int(min_break + 6, min_break + 2, 20),
    }

    q_after_blocks = clamp_int(round_half_up(max(2.0, avg_blocks / 3)), 2, 8)
    quick_check_policy = {
        "after_blocks": q_after_blocks,
        "after_minutes": clamp_int(round_half_up(max(3.0, avg_minutes / 2)), 3, 15),
        "max_per_lesson": clamp_int(round_half_up(max(1.0, avg_quick)), 1, 8),
        "min_gap_blocks": clamp_int(round_half_up(max(1.0, q_after_blocks / 2)), 1, 5),
    }
    flashcard_policy = {
        "after_blocks": clamp_int(round_half_up(max(3.0, avg_blocks / 2)), 3, 12),
        "after_minutes": clamp_int(round_half_up(max(4.0, avg_minutes * 0.6)), 4, 18),
        "after_fail_streak": 1 if completed_some and stats.completion_rate < 0.55 else 2,
        "max_per_lesson": clamp_int(round_half_up(max(1.0, avg_flash)), 1, 10),
    }

    profile = "balanced"
    if completed_some and stats.completion_rate < 0.6:
        profile = "gentle"
    if strong:
        profile = "intensive"

    weights = dict(DEFAULT_WEIGHTS)
    if completed_some and stats.completion_rate < 0.6:
        weights["mastery"] += 0.1
        weights["fatigue"] += 0.05
        weights["pace"] -= 0.1
    if stats.avg_score > 0.85:
        weights["pace"] += 0.05
        weights["mastery"] -= 0.05

    path_policy = {
        "target_session_minutes": target,
        "max_prompts_per_hour": clamp_int(round_half_up(target * 0.6), 4, 20),
        "break_policy": break_policy,
        "quick_check_policy": quick_check_policy,
        "flashcard_policy": flashcard_policy,
        "policy_profile": profile,
        "objective_weights": normalize_weights(weights),
        "cadence_multipliers": {"break": 1.0, "quick_check": 1.0, "flashcard": 1.0},
    }
    return {
        "schema_version": PLAN_SCHEMA_VERSION,
        "path": path_policy,
        "modules": module_plans(nodes, path_policy),
        "lessons": lesson_plans(nodes, path_policy),
    }


def module_plans(nodes: list[NodeSummary], base: dict[str, Any]) -> list[dict[str, Any]]:
    """One entry per module; the session target shrinks to the module's total lesson time."""
    minutes_by_module: dict[int, float] = {}
    for n in nodes:
        if n.node_kind == "module":
            minutes_by_module.setdefault(n.index, 0.0)
        elif n.module_index > 0:
            minutes_by_module[n.module_index] = minutes_by_module.get(n.module_index, 0.0) + n.estimated_minutes

    base_target = base["target_session_minutes"]
    out = []
    for idx in sorted(minutes_by_module):
        minutes = minutes_by_module[idx]
        target = base_target
        if minutes > 0:
            target = clamp_int(round_half_up(min(base_target, minutes)), 8, base_target)
        out.append(
            {
                "module_index": idx,
                "target_session_minutes": target,
                "break_policy": dict(base["break_policy"]),
                "quick_check_policy": dict(base["quick_check_policy"]),
                "flashcard_policy": dict(base["flashcard_policy"]),
                "policy_profile": base["policy_profile"],
            }
        )
    return out


def _lesson_entry(n: NodeSummary, base: dict[str, Any], est: int, break_after: int) -> dict[str, Any]:
    return {
        "node_id": str(n.node_id),
        "node_index": n.index,
        "lesson_index": n.lesson_index,
        "estimated_minutes": est,
        "break_policy": {
            "after_minutes": break_after,
            "min_break_minutes": base["break_policy"]["min_break_minutes"],
            "max_break_minutes": base["break_policy"]["max_break_minutes"],
        },
        "quick_check_policy": dict(base["quick_check_policy"]),
        "flashcard_policy": dict(base["flashcard_policy"]),
        "policy_profile": base["policy_profile"],
    }


def lesson_plans(nodes: list[NodeSummary], base: dict[str, Any]) -> list[dict[str, Any]]:
    base_target = base["target_session_minutes"]
    base_break = base["break_policy"]["after_minutes"]
    out = []
    for n in nodes:
        if n.node_kind == "module":
            continue
        est = n.estimated_minutes
        if est <= 0:
            est = clamp_int(round_half_up(base_target * 0.5), 6, base_target)
        break_after = clamp_int(round_half_up(max(float(est), base_break * 0.6)), 6, base_break)
        out.append(_lesson_entry(n, base, est, break_after))
    out.sort(key=lambda l: l["node_index"])
    return out


# =============================================================================
# LLM plan coercion
# =============================================================================


def coerce_break_policy(obj: dict[str, Any], fallback: dict[str, Any]) -> dict[str, Any]:
    min_break = clamp_int(int_from_any(obj.get("min_break_minutes"), fallback["min_break_minutes"]), 1, 20)
    return {
        "after_minutes": clamp_int(int_from_any(obj.get("after_minutes"), fallback["after_minutes"]), 4, 120),
        "min_break_minutes": min_break,
        "max_break_minutes": clamp_int(
            int_from_any(obj.get("max_break_minutes"), fallback["max_break_minutes"]), min_break, 30
        ),
    }


def coerce_quick_check_policy(obj: dict[str, Any], fallback: dict[str, Any]) -> dict[str, Any]:
    return {
        "after_blocks": clamp_int(int_from_any(obj.get("after_blocks"), fallback["after_blocks"]), 1, 12),
        "after_minutes": clamp_int(int_from_any(obj.get("after_minutes"), fallback["after_minutes"]), 2, 30),
        "max_per_lesson": clamp_int(int_from_any(obj.get("max_per_lesson"), fallback["max_per_lesson"]), 1, 12),
        "min_gap_blocks": clamp_int(int_from_any(obj.get("min_gap_blocks"), fallback["min_gap_blocks"]), 1, 8),
    }


def coerce_flashcard_policy(obj: dict[str, Any], fallback: dict[str, Any]) -> dict[str, Any]:
    return {
        "after_blocks": clamp_int(int_from_any(obj.get("after_blocks"), fallback["after_blocks"]), 1, 20),
        "after_minutes": clamp_int(int_from_any(obj.get("after_minutes"), fallback["after_minutes"]), 2, 30),
        "after_fail_streak": clamp_int(
            int_from_any(obj.get("after_fail_streak"), fallback["after_fail_streak"]), 1, 5
        ),
        "max_per_lesson": clamp_int(int_from_any(obj.get("max_per_lesson"), fallback["max_per_lesson"]), 1, 20),
    }


def _profile(raw: Any, default: str) -> str:
    s = string_from_any(raw).strip().lower()
    return s if s in POLICY_PROFILES else default


def coerce_path_policy(obj: dict[str, Any], fallback: dict[str, Any]) -> dict[str, Any]:
    p = dict(fallback)
    p["target_session_minutes"] = clamp_int(
        int_from_any(obj.get("target_session_minutes"), fallback["target_session_minutes"]), 8, 90
    )
    p["max_prompts_per_hour"] = clamp_int(
        int_from_any(obj.get("max_prompts_per_hour"), fallback["max_prompts_per_hour"]), 2, 30
    )
    if isinstance(obj.get("break_policy"), dict):
        p["break_policy"] = coerce_break_policy(obj["break_policy"], fallback["break_policy"])
    if isinstance(obj.get("quick_check_policy"), dict):
        p["quick_check_policy"] = coerce_quick_check_policy(obj["quick_check_policy"], fallback["quick_check_policy"])
    if isinstance(obj.get("flashcard_policy"), dict):
        p["flashcard_policy"] = coerce_flashcard_policy(obj["flashcard_policy"], fallback["flashcard_policy"])
    p["policy_profile"] = _profile(obj.get("policy_profile"), fallback["policy_profile"])
    if isinstance(obj.get("objective_weights"), dict):
        raw = obj["objective_weights"]
        base = fallback["objective_weights"]
        p["objective_weights"] = normalize_weights({k: float_from_any(raw.get(k), base[k]) for k in DEFAULT_WEIGHTS})
    if isinstance(obj.get("cadence_multipliers"), dict):
        raw = obj["cadence_multipliers"]
        base = fallback["cadence_multipliers"]
        p["cadence_multipliers"] = {
            k: clamp_float(float_from_any(raw.get(k), base[k]), 0.5, 2.0) for k in ("break", "quick_check", "flashcard")
        }
    return p


def _coerce_entry_policies(entry: dict[str, Any], raw: dict[str, Any], base: dict[str, Any]) -> None:
    """Coerce the policies an entry supplies; the ones it omits are copied from ``base``."""
    entry["break_policy"] = (
        coerce_break_policy(raw["break_policy"], _ENTRY_BREAK)
        if isinstance(raw.get("break_policy"), dict)
        else dict(base["break_policy"])
    )
    entry["quick_check_policy"] = (
        coerce_quick_check_policy(raw["quick_check_policy"], _ENTRY_QUICK_CHECK)
        if isinstance(raw.get("quick_check_policy"), dict)
        else dict(base["quick_check_policy"])
    )
    entry["flashcard_policy"] = (
        coerce_flashcard_policy(raw["flashcard_policy"], _ENTRY_FLASHCARD)
        if isinstance(raw.get("flashcard_policy"), dict)
        else dict(base["flashcard_policy"])
    )
    entry["policy_profile"] = _profile(raw.get("policy_profile"), base.get("policy_profile", "balanced"))


def coerce_modules(
    arr: list[Any], fallback: list[dict[str, Any]], path_policy: dict[str, Any]
) -> list[dict[str, Any]]:
    by_index = {f["module_index"]: f for f in fallback}
    out = []
    for m in arr:
        if not isinstance(m, dict):
            continue
        idx = int_from_any(m.get("module_index"), 0)
        if idx <= 0:
            continue
        entry: dict[str, Any] = {
            "module_index": idx,
            "target_session_minutes": clamp_int(int_from_any(m.get("target_session_minutes"), 10), 6, 90),
        }
        _coerce_entry_policies(entry, m, by_index.get(idx, path_policy))
        out.append(entry)
    if not out:
        return fallback
    out.sort(key=lambda e: e["module_index"])
    return out


def coerce_lessons(
    arr: list[Any], fallback: list[dict[str, Any]], path_policy: dict[str, Any]
) -> list[dict[str, Any]]:
    by_node = {f["node_id"]: f for f in fallback}
    out = []
    for m in arr:
        if not isinstance(m, dict):
            continue
        node_id = parse_uuid(m.get("node_id"))
        if node_id is None:
            continue
        entry: dict[str, Any] = {
            "node_id": str(node_id),
            "node_index": int_from_any(m.get("node_index"), 0),
            "lesson_index": int_from_any(m.get("lesson_index"), 0),
            "estimated_minutes": clamp_int(int_from_any(m.get("estimated_minutes"), 0), 1, 120),
        }
        _coerce_entry_policies(entry, m, by_node.get(entry["node_id"], path_policy))
        out.append(entry)
    if not out:
        return fallback
    out.sort(key=lambda e: e["node_index"])
    return out


def normalize_llm_plan(
    obj: Any, fallback: dict[str, Any], nodes: list[NodeSummary]
) -> Optional[dict[str, Any]]:
    """
    Clamp an LLM plan into range, falling back to the heuristic field by field.

    Lessons the LLM left out are filled from the path-wide policy; modules it
    left out keep their heuristic entry. An entry that omits a policy inherits
    it from its heuristic entry, or from the path policy when it has none.

    Returns:
        The normalized plan, or None when ``obj`` is not an object
    """
    if not isinstance(obj, dict):
        return None
    plan = {
        "schema_version": PLAN_SCHEMA_VERSION,
        "path": fallback["path"],
        "modules": fallback["modules"],
        "lessons": fallback["lessons"],
    }
    if isinstance(obj.get("path"), dict):
        plan["path"] = coerce_path_policy(obj["path"], fallback["path"])
    if isinstance(obj.get("modules"), list):
        plan["modules"] = coerce_modules(obj["modules"], fallback["modules"], plan["path"])
    if isinstance(obj.get("lessons"), list):
        plan["lessons"] = coerce_lessons(obj["lessons"], fallback["lessons"], plan["path"])

    lessons = list(plan["lessons"])
    covered = {l["node_id"] for l in lessons}
    base = plan["path"]
    for n in nodes:
        if n.node_kind == "module" or str(n.node_id) in covered:
            continue
        lessons.append(_lesson_entry(n, base, n.estimated_minutes, base["break_policy"]["after_minutes"]))
    lessons.sort(key=lambda l: l["node_index"])
    plan["lessons"] = lessons

    modules = list(plan["modules"])
    have = {m["module_index"] for m in modules}
    modules += [m for m in fallback["modules"] if m["module_index"] not in have]
    modules.sort(key=lambda m: m["module_index"])
    plan["modules"] = modules
    return plan


# =============================================================================
# Planner
# =============================================================================


def _meta_value(meta: dict[str, Any], key: str) -> Any:
    if key in meta:
        return meta[key]
    patterns = meta.get("patterns")
    if isinstance(patterns, dict):
        return patterns.get(key)
    return None


class RuntimePlanner:
    """
    Build and persist runtime (cadence) plans for paths.

    Example:
        >>> planner = RuntimePlanner(session, llm)
        >>> result = planner.build(user_id, path_id)
        >>> result.plan["path"]["target_session_minutes"]
        24
    """

    def __init__(self, db_session: Session, llm: Optional[LLMClient] = None, model: Optional[str] = None):
        self.db = db_session
        self.llm = llm
        self.settings = get_settings()
        self.model = (model if model is not None else self.settings.runtime_plan_model).strip()
        self.wpm = float(self.settings.runtime_plan_wpm or 180)

    def build(self, owner_user_id: UUID, path_id: UUID, force: bool = False) -> RuntimePlanResult:
        if owner_user_id is None or path_id is None:
            raise MissingInputError("runtime_plan_build: missing user or path id")
        path = self.db.get(Path, path_id)
        if path is None:
            raise NotFoundError(f"runtime_plan_build: path {path_id} not found")

        existing = (path.meta or {}).get("runtime_plan")
        if not force and isinstance(existing, dict) and existing:
            logger.info(f"Runtime plan for path {path_id} already present; reusing")
            return RuntimePlanResult(
                path_id=path_id,
                source=str(existing.get("source") or ""),
                model=str(existing.get("model") or ""),
                plan=existing,
                reused=True,
            )

        nodes = list(
            self.db.scalars(select(PathNode).where(PathNode.path_id == path_id).order_by(PathNode.index)).all()
        )
        if not nodes:
            raise NotFoundError(f"runtime_plan_build: path {path_id} has no nodes")

        summaries = self.node_summaries(nodes)
        stats = summarize_user_stats(self._events(owner_user_id, path_id))
        plan = heuristic_plan(summaries, stats)
        source = SOURCE_HEURISTIC
        model = ""

        if self.llm is not None and self.model:
            refined = self._refine(path, summaries, stats, plan)
            if refined is not None:
                plan, source, model = refined, SOURCE_LLM, self.model

        plan["generated_at"] = utcnow().isoformat()
        plan["source"] = source
        if model:
            plan["model"] = model

        updated = self._persist(path, nodes, plan)
        logger.info(
            f"Runtime plan for path {path_id}: source={source} lessons={len(plan['lessons'])} "
            f"modules={len(plan['modules'])} target={plan['path']['target_session_minutes']}min"
        )
        return RuntimePlanResult(path_id=path_id, source=source, model=model, plan=plan, nodes_updated=updated)

    def node_summaries(self, nodes: list[PathNode]) -> list[NodeSummary]:
        """Per-node sizes from the rendered docs, in path order."""
        docs = {
            d.path_node_id: d
            for d in self.db.scalars(
                select(LearningNodeDoc).where(LearningNodeDoc.path_node_id.in_([n.id for n in nodes]))
            ).all()
        }
        index_by_id = {n.id: n.index for n in nodes}
        out = []
        for n in nodes:
            meta = n.meta or {}
            kind = string_from_any(_meta_value(meta, "node_kind")).strip().lower() or n.kind
            module_index = int_from_any(_meta_value(meta, "module_index"), 0)
            parent_index = int_from_any(_meta_value(meta, "parent_index"), 0)
            if parent_index == 0 and n.parent_node_id in index_by_id:
                parent_index = index_by_id[n.parent_node_id]
            if kind == "module":
                module_index = n.index
            if module_index == 0 and parent_index > 0:
                module_index = parent_index
            s = NodeSummary(
                node_id=n.id,
                index=n.index,
                title=(n.title or "").strip(),
                node_kind=kind,
                module_index=module_index,
                lesson_index=int_from_any(_meta_value(meta, "lesson_index"), 0) or n.index,
                parent_index=parent_index,
            )
            doc = docs.get(n.id)
            if doc is not None:
                metrics = node_doc_metrics(doc.load_doc())
                s.word_count = int_from_any(metrics.get("word_count"), 0)
                for t, c in (metrics.get("block_counts") or {}).items():
                    c = int_from_any(c, 0)
                    s.block_count += c
                    if t == "quick_check":
                        s.quick_checks += c
                    elif t == "flashcard":
                        s.flashcards += c
            s.estimated_minutes = estimate_minutes(s.word_count, s.quick_checks, s.flashcards, self.wpm)
            out.append(s)
        out.sort(key=lambda s: s.index)
        return out

    def _events(self, user_id: UUID, path_id: UUID) -> list[UserProgressionEvent]:
        limit = max(1, self.settings.runtime_plan_event_limit)
        return list(
            self.db.scalars(
                select(UserProgressionEvent)
                .where(UserProgressionEvent.user_id == user_id, UserProgressionEvent.path_id == path_id)
                .order_by(UserProgressionEvent.occurred_at.desc())
                .limit(limit)
            ).all()
        )

    def _refine(
        self, path: Path, summaries: list[NodeSummary], stats: UserStats, heuristic: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        meta = path.meta or {}
        path_summary: dict[str, Any] = {
            "path_id": str(path.id),
            "title": (path.title or "").strip(),
            "kind": (path.kind or "").strip(),
            "nodes": [s.to_dict() for s in summaries],
        }
        for key in ("charter", "structure", "pattern_hierarchy", "pattern_signals"):
            if key in meta:
                path_summary[key] = meta[key]
        try:
            obj = self.llm.generate_json(
                RUNTIME_PLAN_SYSTEM_PROMPT,
                build_runtime_plan_user_prompt(path_summary, stats.to_dict(), heuristic),
                RUNTIME_PLAN_SCHEMA_NAME,
                RUNTIME_PLAN_SCHEMA,
            )
        except Exception as e:  # the heuristic plan stands in for any model failure
            logger.warning(f"Runtime plan refinement failed for path {path.id}: {e}")
            return None
        plan = normalize_llm_plan(obj, heuristic, summaries)
        if plan is None:
            logger.warning(f"Runtime plan refinement for path {path.id} returned no object")
        return plan

    def _persist(self, path: Path, nodes: list[PathNode], plan: dict[str, Any]) -> int:
        now = utcnow().isoformat()
        modules = {m["module_index"]: m for m in plan["modules"]}
        lessons = {l["node_id"]: l for l in plan["lessons"]}
        updated = 0
        with self.db.begin_nested():
            meta = dict(path.meta or {})
            meta["runtime_plan"] = plan
            meta["runtime_plan_version"] = plan["schema_version"]
            meta["runtime_plan_generated_at"] = plan["generated_at"]
            meta["runtime_plan_source"] = plan["source"]
            if plan.get("model"):
                meta["runtime_plan_model"] = plan["model"]
            path.meta = meta

            for n in nodes:
                if n.kind == "module":
                    entry, scope = modules.get(n.index), "module"
                else:
                    entry, scope = lessons.get(str(n.id)), "lesson"
                if entry is None:
                    continue
                node_meta = dict(n.meta or {})
                node_meta["runtime_plan"] = entry
                node_meta["runtime_plan_scope"] = scope
                node_meta["runtime_plan_version"] = plan["schema_version"]
                node_meta["runtime_plan_updated_at"] = now
                n.meta = node_meta
                updated += 1
            self.db.flush()
        return updated
