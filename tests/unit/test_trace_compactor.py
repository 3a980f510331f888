"""
Tests for decision-trace compaction.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from src.db.models import DecisionTrace, StructuralDecisionTrace, utcnow
from src.db.trace_compactor import (
    TraceCompactionConfig,
    TraceCompactor,
    compact_candidate_array,
    compact_candidates,
)

BIG_LIST = [{"i": i, "label": "x" * 20} for i in range(20)]
BIG_DICT = {f"k{i}": "v" * 30 for i in range(20)}


def stored(db_session, model, row_id):
    return db_session.execute(select(model.candidates).where(model.id == row_id)).scalar_one()


class TestCompactCandidates:
    def test_within_budget_is_untouched(self):
        raw = [1, 2, 3]
        assert compact_candidates(raw, 300, 5) == (False, raw)
        assert compact_candidates(None, 300, 5) == (False, None)
        assert compact_candidates("null", 300, 5) == (False, "null")
        assert compact_candidates(BIG_LIST, 0, 5) == (False, BIG_LIST)

    def test_long_array_within_budget_is_trimmed(self):
        changed, out = compact_candidates(list(range(10)), 10_000, 3)
        assert changed
        assert out[:3] == [0, 1, 2]
        assert out[3]["_compacted"] is True
        assert out[3]["original_count"] == 10
        assert out[3]["kept"] == 3

    def test_oversized_payloads(self):
        changed, out = compact_candidates(BIG_LIST, 300, 3)
        assert changed
        assert len(out) == 4
        assert out[-1]["original_count"] == 20

        changed, out = compact_candidates(BIG_DICT, 300, 3)
        assert changed
        assert out["keys"] == 20
        assert out["_compacted"] is True

        _, out = compact_candidates('"' + "y" * 400 + '"', 300, 3)
        assert out["original_type"] == "string"

        _, out = compact_candidates("{not json" + "z" * 400, 300, 3)
        assert out["original_format"] == "unknown"

    def test_json_text_is_decoded(self):
        changed, out = compact_candidates('{"a": "' + "b" * 400 + '"}', 300, 3)
        assert changed
        assert out["keys"] == 1

    def test_sentinel_alone_when_kept_items_overflow(self):
        out = compact_candidate_array(BIG_LIST, 999, 20, 100)
        assert out == {"_compacted": True, "original_count": 20, "original_bytes": 999, "kept": 0}


class TestTraceCompactionConfig:
    def test_normalization(self):
        cfg = TraceCompactionConfig(min_age_days=0, batch_size=10**6, max_items=-1, tables=[" Decision_Trace ", ""])
        assert cfg.min_age_days == 30
        assert cfg.batch_size == 5000
        assert cfg.max_items == 50
        assert cfg.tables == ["decision_trace"]
        assert TraceCompactionConfig(tables=[]).tables == ["structural_decision_trace", "decision_trace"]

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TRACE_COMPACTION_ENABLED", "yes")
        monkeypatch.setenv("TRACE_COMPACTION_TABLES", "decision_trace, ,")
        monkeypatch.setenv("TRACE_COMPACTION_MAX_ITEMS", "oops")
        cfg = TraceCompactionConfig.from_env()
        assert cfg.enabled
        assert cfg.tables == ["decision_trace"]
        assert cfg.max_items == 50


class TestTraceCompactor:
    @pytest.fixture
    def traces(self, db_session):
        old = utcnow() - timedelta(days=40)
        rows = {
            "old_big": DecisionTrace(occurred_at=old, candidates=BIG_LIST),
            "old_small": DecisionTrace(occurred_at=old + timedelta(seconds=1), candidates=[1, 2]),
            "recent_big": DecisionTrace(occurred_at=utcnow(), candidates=BIG_LIST),
            "structural": StructuralDecisionTrace(occurred_at=old, candidates=BIG_DICT),
        }
        db_session.add_all(rows.values())
        db_session.flush()
        return rows

    def config(self, **kw):
        return TraceCompactionConfig(enabled=True, max_json_bytes=300, max_items=3, batch_size=1, **kw)

    def test_disabled_is_a_no_op(self, db_session, traces):
        result = TraceCompactor(db_session, TraceCompactionConfig(enabled=False)).run()
        assert result.tables == []
        assert stored(db_session, DecisionTrace, traces["old_big"].id) == BIG_LIST

    def test_dry_run_counts_without_writing(self, db_session, traces):
        result = TraceCompactor(db_session, self.config()).run(dry_run=True)
        by_table = {t.table: t for t in result.tables}
        assert by_table["decision_trace"].scanned == 2
        assert by_table["decision_trace"].updated == 1
        assert by_table["decision_trace"].skipped == 1
        assert by_table["structural_decision_trace"].updated == 1
        assert result.total_updated == 2
        assert stored(db_session, DecisionTrace, traces["old_big"].id) == BIG_LIST

    def test_compacts_old_rows_only(self, db_session, traces):
        result = TraceCompactor(db_session, self.config()).run()
        assert result.total_scanned == 3
        assert result.total_updated == 2

        big = stored(db_session, DecisionTrace, traces["old_big"].id)
        assert big[:3] == BIG_LIST[:3]
        assert big[3]["_compacted"] is True
        assert stored(db_session, DecisionTrace, traces["recent_big"].id) == BIG_LIST
        assert stored(db_session, DecisionTrace, traces["old_small"].id) == [1, 2]
        assert stored(db_session, StructuralDecisionTrace, traces["structural"].id)["keys"] == 20

        again = TraceCompactor(db_session, self.config()).run()
        assert again.total_updated == 0

    def test_limit_and_unknown_table(self, db_session, traces):
        cfg = self.config(tables=["decision_trace", "bogus"])
        result = TraceCompactor(db_session, cfg).run(limit=1)
        assert [t.table for t in result.tables] == ["decision_trace"]
        assert result.tables[0].scanned == 1
