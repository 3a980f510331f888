"""
Variant Evaluator.

Turns doc variant exposures into outcome rows once learners have had time to
act on them: per-concept state deltas against the baseline captured at
exposure time, plus the node run context.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.adaptive.doc_policy import DocPolicy
from src.content.docutil import float_from_any, parse_uuid
from src.core.env import clamp01
from src.db.models import DocVariantExposure, DocVariantOutcome, NodeRun, UserConceptState, utcnow

OUTCOME_KIND = "eval_v1"


@dataclass
class VariantEvalResult:
    considered: int = 0
    outcomes_created: int = 0
    outcomes_skipped: int = 0


def baseline_items(raw: Any) -> list[dict[str, Any]]:
    """Baseline snapshot entries; accepts a bare list or ``{"concepts": [...]}``."""
    if isinstance(raw, dict):
        raw = raw.get("concepts")
    if not isinstance(raw, list):
        return []
    return [it for it in raw if isinstance(it, dict)]


def _uncertainty(epistemic: float, aleatoric: float) -> float:
    return max(clamp01(epistemic), clamp01(aleatoric))


class VariantEvaluator:
    """
    Evaluate matured doc variant exposures.

    Example:
        >>> evaluator = VariantEvaluator(session)
        >>> result = evaluator.evaluate(limit=100)
        >>> result.outcomes_created
        12
    """

    def __init__(self, db_session: Session, policy: Optional[DocPolicy] = None):
        self.db = db_session
        self.policy = policy or DocPolicy.from_env()

    def pending_exposures(self, user_id: Optional[UUID] = None, limit: Optional[int] = None) -> list[DocVariantExposure]:
        """Exposures older than the minimum age that have no outcome yet, oldest first."""
        cutoff = utcnow() - timedelta(minutes=self.policy.variant_eval_min_age_minutes)
        evaluated = select(DocVariantOutcome.exposure_id)
        q = select(DocVariantExposure).where(
            DocVariantExposure.created_at <= cutoff,
            DocVariantExposure.id.not_in(evaluated),
        )
        if user_id is not None:
            q = q.where(DocVariantExposure.user_id == user_id)
        q = q.order_by(DocVariantExposure.created_at, DocVariantExposure.id).limit(limit or self.policy.variant_eval_limit)
        return list(self.db.scalars(q).all())

    def evaluate(self, user_id: Optional[UUID] = None, limit: Optional[int] = None) -> VariantEvalResult:
        out = VariantEvalResult()
        exposures = self.pending_exposures(user_id, limit)
        logger.info(f"Evaluating {len(exposures)} variant exposures")
        for exp in exposures:
            out.considered += 1
            try:
                with self.db.begin_nested():
                    self.db.add(
                        DocVariantOutcome(
                            exposure_id=exp.id,
                            user_id=exp.user_id,
                            path_node_id=exp.path_node_id,
                            variant_id=exp.variant_id,
                            outcome_kind=OUTCOME_KIND,
                            metrics=self.outcome_metrics(exp),
                            created_at=utcnow(),
                        )
                    )
            except SQLAlchemyError as e:
                out.outcomes_skipped += 1
                logger.warning(f"Skipping exposure {exp.id}: {e}")
                continue
            out.outcomes_created += 1
        logger.info(
            f"Variant evaluation: considered={out.considered} created={out.outcomes_created} "
            f"skipped={out.outcomes_skipped}"
        )
        return out

    def outcome_metrics(self, exp: DocVariantExposure) -> dict[str, Any]:
        now = utcnow()
        metrics: dict[str, Any] = {
            "exposure_id": str(exp.id),
            "exposure_kind": (exp.exposure_kind or "").strip(),
            "variant_kind": (exp.variant_kind or "").strip(),
            "policy_version": (exp.policy_version or "").strip(),
            "schema_version": exp.schema_version,
            "exposure_age_sec": (now - exp.created_at).total_seconds() if exp.created_at else 0.0,
            "content_hash": (exp.content_hash or "").strip(),
            "concepts_total": 0,
            "concepts_with_state": 0,
        }

        baseline = []
        for item in baseline_items(exp.baseline_json):
            cid = parse_uuid(item.get("concept_id"))
            if cid is not None:
                baseline.append((cid, item))
        metrics["concepts_total"] = len(baseline)

        current: dict[UUID, UserConceptState] = {}
        if baseline:
            rows = self.db.scalars(
                select(UserConceptState).where(
                    UserConceptState.user_id == exp.user_id,
                    UserConceptState.concept_id.in_([cid for cid, _ in baseline]),
                )
            ).all()
            current = {r.concept_id: r for r in rows}

        base_mastery_sum = cur_mastery_sum = 0.0
        d_mastery = d_conf = d_unc = 0.0
        paired = 0
        for cid, item in baseline:
            base_mastery = clamp01(float_from_any(item.get("mastery")))
            base_conf = clamp01(float_from_any(item.get("confidence")))
            base_unc = _uncertainty(
                float_from_any(item.get("epistemic_uncertainty")), float_from_any(item.get("aleatoric_uncertainty"))
            )
            base_mastery_sum += base_mastery
            st = current.get(cid)
            if st is None:
                continue
            cur_mastery = clamp01(st.mastery or 0.0)
            cur_mastery_sum += cur_mastery
            d_mastery += cur_mastery - base_mastery
            d_conf += clamp01(st.confidence or 0.0) - base_conf
            d_unc += _uncertainty(st.epistemic_uncertainty or 0.0, st.aleatoric_uncertainty or 0.0) - base_unc
            paired += 1

        if baseline:
            metrics["baseline_mastery_mean"] = base_mastery_sum / len(baseline)
        if paired:
            metrics["concepts_with_state"] = paired
            metrics["current_mastery_mean"] = cur_mastery_sum / paired
            metrics["mastery_delta_mean"] = d_mastery / paired
            metrics["confidence_delta_mean"] = d_conf / paired
            metrics["uncertainty_delta_mean"] = d_unc / paired

        run = self.db.scalar(
            select(NodeRun).where(NodeRun.user_id == exp.user_id, NodeRun.path_node_id == exp.path_node_id)
        )
        if run is not None:
            state = (run.state or "").strip()
            metrics["node_state"] = state
            metrics["node_completed"] = run.completed_at is not None or state.lower() == "completed"
            metrics["node_attempts"] = run.attempt_count
            metrics["node_last_score"] = run.last_score
            if run.started_at is not None and run.completed_at is not None:
                metrics["time_to_complete_sec"] = (run.completed_at - run.started_at).total_seconds()
            if run.last_seen_at is not None:
                metrics["node_last_seen_at"] = run.last_seen_at.isoformat()
        return metrics
