"""
Tests for the runtime (cadence) planner.

Expected numbers are worked out by hand from the heuristic: a path whose
lessons have no docs estimates 4 minutes per lesson, which puts the session
target at its floor of 10 minutes.
"""
from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import FakeLLM
from src.adaptive.runtime_planner import (
    DEFAULT_WEIGHTS,
    NodeSummary,
    RuntimePlanner,
    UserStats,
    clamp_int,
    estimate_minutes,
    heuristic_plan,
    normalize_llm_plan,
    normalize_weights,
    summarize_user_stats,
)
from src.core.errors import MissingInputError, NotFoundError
from src.db.models import Path, PathNode, UserProgressionEvent, utcnow
from src.generation.prompts import RUNTIME_PLAN_SCHEMA_NAME


def lessons(*minutes):
    return [
        NodeSummary(node_id=uuid4(), index=i + 1, title=f"L{i + 1}", node_kind="lesson", estimated_minutes=m)
        for i, m in enumerate(minutes)
    ]


@pytest.fixture
def course(db_session, user_id):
    path = Path(user_id=user_id, kind="course", title="Networking", meta={"charter": {"goal": "CCNA"}})
    db_session.add(path)
    db_session.flush()
    module = PathNode(path_id=path.id, index=1, node_kind="module", title="Foundations")
    db_session.add(module)
    db_session.flush()
    l1 = PathNode(path_id=path.id, index=2, node_kind="lesson", title="Addressing", parent_node_id=module.id)
    l2 = PathNode(path_id=path.id, index=3, node_kind="lesson", title="Routing", parent_node_id=module.id)
    db_session.add_all([l1, l2])
    db_session.flush()
    return path, module, l1, l2


class TestHelpers:
    def test_estimate_minutes(self):
        assert estimate_minutes(0, 0, 0) == 4
        assert estimate_minutes(181, 0, 0) == 4
        assert estimate_minutes(900, 2, 3) == 8
        assert estimate_minutes(360, 0, 0, wpm=0) == 4

    def test_clamp_int_open_top(self):
        assert clamp_int(50, 1, 10) == 10
        assert clamp_int(50, 1, 0) == 50
        assert clamp_int(-3, 1, 10) == 1

    def test_normalize_weights(self):
        assert normalize_weights({}) == DEFAULT_WEIGHTS
        w = normalize_weights({"mastery": 2.0, "retention": 1.0})
        assert w == {"mastery": 0.5, "retention": 0.5, "pace": 0.0, "fatigue": 0.0}

    def test_summarize_user_stats(self):
        now = utcnow()
        events = [
            UserProgressionEvent(score=0.9, attempts=1, dwell_ms=0, completed=True, occurred_at=now - timedelta(days=1)),
            UserProgressionEvent(score=0.5, attempts=3, dwell_ms=1000, completed=False, occurred_at=now - timedelta(days=40)),
        ]
        stats = summarize_user_stats(events, now)
        assert stats.event_count == 2
        assert stats.avg_score == pytest.approx(0.7)
        assert stats.avg_attempts == pytest.approx(2.0)
        assert stats.avg_dwell_ms == pytest.approx(1000.0)
        assert stats.completion_rate == pytest.approx(0.5)
        assert stats.recent_count == 1
        assert stats.last_event_at == now - timedelta(days=1)
        assert summarize_user_stats([]).event_count == 0


class TestHeuristicPlan:
    def test_balanced_defaults(self):
        plan = heuristic_plan(lessons(10, 10), UserStats())
        path = plan["path"]
        assert plan["schema_version"] == 1
        assert path["target_session_minutes"] == 20
        assert path["policy_profile"] == "balanced"
        assert path["break_policy"] == {"after_minutes": 14, "min_break_minutes": 2, "max_break_minutes": 8}
        assert path["flashcard_policy"]["after_fail_streak"] == 2
        assert sum(path["objective_weights"].values()) == pytest.approx(1.0)
        assert [l["node_index"] for l in plan["lessons"]] == [1, 2]
        assert plan["modules"] == []

    def test_struggling_learner_gets_gentle_profile(self):
        plan = heuristic_plan(lessons(10, 10), UserStats(event_count=4, avg_score=0.5, completion_rate=0.4))
        path = plan["path"]
        assert path["policy_profile"] == "gentle"
        assert path["target_session_minutes"] == 17
        assert path["flashcard_policy"]["after_fail_streak"] == 1
        w = path["objective_weights"]
        assert w["mastery"] > DEFAULT_WEIGHTS["mastery"]
        assert w["pace"] < DEFAULT_WEIGHTS["pace"]

    def test_strong_learner_gets_intensive_profile(self):
        plan = heuristic_plan(lessons(10, 10), UserStats(event_count=10, avg_score=0.9, completion_rate=0.9))
        assert plan["path"]["policy_profile"] == "intensive"
        assert plan["path"]["target_session_minutes"] == 22


class TestNormalizeLlmPlan:
    def test_clamps_and_fills_missing_lessons(self):
        nodes = lessons(10, 12)
        fallback = heuristic_plan(nodes, UserStats())
        obj = {
            "path": {"target_session_minutes": 500, "policy_profile": "weird", "cadence_multipliers": {"break": 9}},
            "lessons": [{"node_id": str(nodes[1].node_id), "node_index": 2, "estimated_minutes": 0}],
        }
        plan = normalize_llm_plan(obj, fallback, nodes)
        assert plan["path"]["target_session_minutes"] == 90
        assert plan["path"]["policy_profile"] == "balanced"
        assert plan["path"]["cadence_multipliers"] == {"break": 2.0, "quick_check": 1.0, "flashcard": 1.0}
        assert [l["node_id"] for l in plan["lessons"]] == [str(nodes[0].node_id), str(nodes[1].node_id)]
        assert plan["lessons"][1]["estimated_minutes"] == 1
        assert plan["lessons"][1]["break_policy"] == fallback["lessons"][1]["break_policy"]
        assert plan["lessons"][0]["estimated_minutes"] == 10

    def test_entries_without_policies_inherit_them(self):
        nodes = [
            NodeSummary(node_id=uuid4(), index=1, title="M1", node_kind="module"),
            NodeSummary(node_id=uuid4(), index=2, title="L1", node_kind="lesson", module_index=1, estimated_minutes=10),
        ]
        stray = uuid4()
        fallback = heuristic_plan(nodes, UserStats())
        obj = {
            "path": {"break_policy": {"min_break_minutes": 5, "max_break_minutes": 9, "after_minutes": 30}},
            "modules": [{"module_index": 1}],
            "lessons": [
                {"node_id": str(nodes[1].node_id), "node_index": 2, "estimated_minutes": 10},
                {"node_id": str(stray), "node_index": 9, "estimated_minutes": 10},
            ],
        }
        plan = normalize_llm_plan(obj, fallback, nodes)

        assert plan["modules"][0]["break_policy"] == fallback["modules"][0]["break_policy"]
        assert plan["modules"][0]["flashcard_policy"] == fallback["modules"][0]["flashcard_policy"]
        lesson, unknown = plan["lessons"]
        assert lesson["quick_check_policy"] == fallback["lessons"][0]["quick_check_policy"]
        assert unknown["break_policy"] == plan["path"]["break_policy"]
        for entry in plan["modules"] + plan["lessons"]:
            bp = entry["break_policy"]
            assert 1 <= bp["min_break_minutes"] <= 20
            assert bp["min_break_minutes"] <= bp["max_break_minutes"] <= 30

    def test_missing_modules_keep_heuristic_entries(self):
        nodes = [
            NodeSummary(node_id=uuid4(), index=1, title="M1", node_kind="module"),
            NodeSummary(node_id=uuid4(), index=2, title="L1", node_kind="lesson", module_index=1, estimated_minutes=10),
            NodeSummary(node_id=uuid4(), index=3, title="M2", node_kind="module"),
            NodeSummary(node_id=uuid4(), index=4, title="L2", node_kind="lesson", module_index=3, estimated_minutes=10),
        ]
        fallback = heuristic_plan(nodes, UserStats())
        plan = normalize_llm_plan({"modules": [{"module_index": 3, "target_session_minutes": 40}]}, fallback, nodes)
        assert [m["module_index"] for m in plan["modules"]] == [1, 3]
        assert plan["modules"][0] == fallback["modules"][0]
        assert plan["modules"][1]["target_session_minutes"] == 40

    def test_rejects_non_objects_and_keeps_fallback(self):
        nodes = lessons(10)
        fallback = heuristic_plan(nodes, UserStats())
        assert normalize_llm_plan(["x"], fallback, nodes) is None
        plan = normalize_llm_plan({"lessons": [{"node_id": "bad"}], "modules": [{"module_index": 0}]}, fallback, nodes)
        assert plan["lessons"] == fallback["lessons"]
        assert plan["modules"] == fallback["modules"]


class TestRuntimePlanner:
    def test_heuristic_plan_is_persisted(self, db_session, user_id, course):
        path, module, l1, l2 = course
        result = RuntimePlanner(db_session, None, model="").build(user_id, path.id)

        assert result.source == "heuristic"
        assert result.model == ""
        assert not result.reused
        assert result.nodes_updated == 3
        plan = result.plan
        assert plan["path"]["target_session_minutes"] == 10
        assert plan["modules"][0]["module_index"] == 1
        assert plan["modules"][0]["target_session_minutes"] == 8
        assert [l["estimated_minutes"] for l in plan["lessons"]] == [4, 4]
        assert plan["lessons"][0]["break_policy"]["after_minutes"] == 6

        assert path.meta["runtime_plan"]["source"] == "heuristic"
        assert path.meta["runtime_plan_version"] == 1
        assert path.meta["charter"] == {"goal": "CCNA"}
        assert module.meta["runtime_plan_scope"] == "module"
        assert l1.meta["runtime_plan_scope"] == "lesson"
        assert l2.meta["runtime_plan"]["node_id"] == str(l2.id)

    def test_existing_plan_is_reused_unless_forced(self, db_session, user_id, course):
        path = course[0]
        planner = RuntimePlanner(db_session, None, model="")
        planner.build(user_id, path.id)
        again = planner.build(user_id, path.id)
        assert again.reused
        assert again.source == "heuristic"
        assert again.nodes_updated == 0
        assert not planner.build(user_id, path.id, force=True).reused

    def test_llm_refinement(self, db_session, user_id, course):
        path, _, l1, _ = course
        llm = FakeLLM(
            {
                RUNTIME_PLAN_SCHEMA_NAME: {
                    "path": {"target_session_minutes": 30, "policy_profile": "review"},
                    "lessons": [{"node_id": str(l1.id), "node_index": 2, "estimated_minutes": 7}],
                }
            }
        )
        result = RuntimePlanner(db_session, llm, model="planner-model").build(user_id, path.id)

        assert result.source == "llm"
        assert result.model == "planner-model"
        assert result.plan["path"]["target_session_minutes"] == 30
        assert result.plan["path"]["policy_profile"] == "review"
        assert len(result.plan["lessons"]) == 2
        assert path.meta["runtime_plan_model"] == "planner-model"
        assert '"charter"' in llm.json_calls[0]["user"]

    def test_llm_failure_falls_back(self, db_session, user_id, course):
        path = course[0]
        llm = FakeLLM(fail_schemas=[RUNTIME_PLAN_SCHEMA_NAME])
        result = RuntimePlanner(db_session, llm, model="planner-model").build(user_id, path.id)
        assert result.source == "heuristic"
        assert len(llm.json_calls) == 1

    def test_llm_unused_without_model(self, db_session, user_id, course):
        llm = FakeLLM()
        RuntimePlanner(db_session, llm, model="").build(user_id, course[0].id)
        assert llm.json_calls == []

    def test_errors(self, db_session, user_id):
        planner = RuntimePlanner(db_session, None, model="")
        with pytest.raises(MissingInputError):
            planner.build(None, uuid4())
        with pytest.raises(NotFoundError):
            planner.build(user_id, uuid4())
        empty = Path(user_id=user_id, kind="course")
        db_session.add(empty)
        db_session.flush()
        with pytest.raises(NotFoundError):
            planner.build(user_id, empty.id)
