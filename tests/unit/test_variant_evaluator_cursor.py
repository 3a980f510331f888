"""
Tests for VariantEvaluator outcomes and EventCursorStore resumption.
"""
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select

from src.adaptive.doc_policy import DocPolicy
from src.adaptive.event_cursor import EventCursorStore
from src.adaptive.variant_evaluator import VariantEvaluator, baseline_items
from src.db.models import (
    DocVariantExposure,
    DocVariantOutcome,
    NodeRun,
    UserConceptState,
    UserEventCursor,
    UserProgressionEvent,
    utcnow,
)


def uid(n):
    return UUID(int=n)


class TestVariantEvaluator:
    def test_baseline_items(self):
        assert baseline_items(None) == []
        assert baseline_items([{"a": 1}, "x"]) == [{"a": 1}]
        assert baseline_items({"concepts": [{"b": 2}]}) == [{"b": 2}]

    def test_outcome_metrics_against_baseline(self, db_session, user_id):
        node_id, seen, unseen = uuid4(), uuid4(), uuid4()
        exposure = DocVariantExposure(
            user_id=user_id,
            path_node_id=node_id,
            exposure_kind="served",
            variant_kind="remedial",
            policy_version="doc_policy_v1.0.0",
            content_hash="abc",
            baseline_json={
                "concepts": [
                    {"concept_id": str(seen), "mastery": 0.2, "confidence": 0.1, "epistemic_uncertainty": 0.8},
                    {"concept_id": str(unseen), "mastery": 0.4},
                    {"concept_id": "not-a-uuid", "mastery": 1.0},
                ]
            },
            created_at=utcnow() - timedelta(hours=2),
        )
        fresh = DocVariantExposure(user_id=user_id, path_node_id=node_id, created_at=utcnow())
        started = datetime(2024, 3, 1, 9, 0, 0)
        db_session.add_all(
            [
                exposure,
                fresh,
                UserConceptState(
                    user_id=user_id, concept_id=seen, mastery=0.6, confidence=0.5,
                    epistemic_uncertainty=0.3, aleatoric_uncertainty=0.0,
                ),
                NodeRun(
                    user_id=user_id, path_node_id=node_id, state="completed", attempt_count=2, last_score=0.9,
                    started_at=started, completed_at=started + timedelta(minutes=10),
                ),
            ]
        )
        db_session.flush()

        evaluator = VariantEvaluator(db_session, DocPolicy())
        result = evaluator.evaluate()
        assert result.considered == 1
        assert result.outcomes_created == 1

        outcome = db_session.scalar(select(DocVariantOutcome))
        assert outcome.exposure_id == exposure.id
        assert outcome.outcome_kind == "eval_v1"
        m = outcome.metrics
        assert m["variant_kind"] == "remedial"
        assert m["concepts_total"] == 2
        assert m["concepts_with_state"] == 1
        assert m["baseline_mastery_mean"] == pytest.approx(0.3)
        assert m["current_mastery_mean"] == pytest.approx(0.6)
        assert m["mastery_delta_mean"] == pytest.approx(0.4)
        assert m["confidence_delta_mean"] == pytest.approx(0.4)
        assert m["uncertainty_delta_mean"] == pytest.approx(-0.5)
        assert m["node_completed"] is True
        assert m["node_attempts"] == 2
        assert m["time_to_complete_sec"] == 600.0
        assert m["exposure_age_sec"] >= 7200

        again = evaluator.evaluate()
        assert again.considered == 0

    def test_user_filter_and_min_age(self, db_session, user_id):
        old = utcnow() - timedelta(minutes=45)
        db_session.add_all(
            [
                DocVariantExposure(user_id=user_id, path_node_id=uuid4(), created_at=old),
                DocVariantExposure(user_id=uuid4(), path_node_id=uuid4(), created_at=old),
            ]
        )
        db_session.flush()
        evaluator = VariantEvaluator(db_session, DocPolicy(variant_eval_min_age_minutes=30))
        assert len(evaluator.pending_exposures(user_id)) == 1
        assert len(evaluator.pending_exposures()) == 2
        strict = VariantEvaluator(db_session, DocPolicy(variant_eval_min_age_minutes=60))
        assert strict.pending_exposures() == []


class TestEventCursor:
    @pytest.fixture
    def events(self, db_session, user_id):
        t0 = datetime(2024, 5, 1, 12, 0, 0)
        t1 = t0 + timedelta(minutes=1)
        path_id = uuid4()
        rows = [
            UserProgressionEvent(id=uid(1), user_id=user_id, path_id=path_id, event_type="attempt", occurred_at=t0),
            UserProgressionEvent(id=uid(3), user_id=user_id, path_id=path_id, event_type="attempt", occurred_at=t1),
            UserProgressionEvent(id=uid(2), user_id=user_id, path_id=None, event_type="dwell", occurred_at=t1),
            UserProgressionEvent(id=uid(4), user_id=uuid4(), event_type="attempt", occurred_at=t1),
        ]
        db_session.add_all(rows)
        db_session.flush()
        return path_id

    def test_ordering_and_resume(self, db_session, user_id, events):
        store = EventCursorStore(db_session)
        assert store.load(user_id, "runtime_plan") is None

        first = store.fetch_after(user_id, None)
        assert [e.id for e in first] == [uid(1), uid(2), uid(3)]

        cursor = store.advance(user_id, "runtime_plan", first[1])
        assert cursor.last_event_id == uid(2)
        rest = store.fetch_after(user_id, store.load(user_id, " runtime_plan "))
        assert [e.id for e in rest] == [uid(3)]

    def test_advance_never_moves_backwards(self, db_session, user_id, events):
        store = EventCursorStore(db_session)
        ordered = store.fetch_after(user_id, None)
        store.advance(user_id, "probe", ordered[2])
        cursor = store.advance(user_id, "probe", ordered[0])
        assert cursor.last_event_id == uid(3)
        assert store.fetch_after(user_id, cursor) == []
        assert len(db_session.scalars(select(UserEventCursor)).all()) == 1

    def test_path_filter_and_limit(self, db_session, user_id, events):
        store = EventCursorStore(db_session)
        assert [e.id for e in store.fetch_after(user_id, None, path_id=events)] == [uid(1), uid(3)]
        assert [e.id for e in store.fetch_after(user_id, None, limit=1)] == [uid(1)]
