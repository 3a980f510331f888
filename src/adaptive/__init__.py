"""
Adaptive layer: per-learner decisions on top of the built docs.

Components:
- DocPolicy: env-tuned probe and variant-evaluation knobs
- ProbeSelector: picks quick_check/flashcard blocks to surface as probes
- RuntimePlanner: session length, break and probe cadence per path
- VariantEvaluator: outcome rows for matured doc variant exposures
- EventCursorStore: resumable reads of learner progression events
"""
from src.adaptive.doc_policy import DocPolicy
from src.adaptive.event_cursor import EventCursorStore
from src.adaptive.probe_selector import (
    ProbeCandidate,
    ProbeSelectionResult,
    ProbeSelector,
    compute_info_gain,
    infer_trigger_ids,
    testlet_uncertainty,
)
from src.adaptive.runtime_planner import (
    RuntimePlanner,
    RuntimePlanResult,
    estimate_minutes,
    heuristic_plan,
    normalize_llm_plan,
)
from src.adaptive.variant_evaluator import VariantEvalResult, VariantEvaluator

__all__ = [
    # Policy
    "DocPolicy",
    # Probes
    "ProbeSelector",
    "ProbeSelectionResult",
    "ProbeCandidate",
    "compute_info_gain",
    "testlet_uncertainty",
    "infer_trigger_ids",
    # Runtime plan
    "RuntimePlanner",
    "RuntimePlanResult",
    "estimate_minutes",
    "heuristic_plan",
    "normalize_llm_plan",
    # Variants and events
    "VariantEvaluator",
    "VariantEvalResult",
    "EventCursorStore",
]
