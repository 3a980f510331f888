"""
Tests for the path grouping refiner.

Three files are used throughout: two near-identical networking files and a
third on an unrelated subject whose embedding overlap is tuned per test.
"""
from uuid import uuid4

import pytest
from sqlalchemy import select

from src.core.errors import MissingInputError, NotFoundError
from src.curriculum.grouping_refiner import (
    MODE_MERGE,
    MODE_RECLUSTER,
    MODE_SEGMENTED,
    MODE_SINGLE,
    MODE_SPLIT,
    DisjointSet,
    GroupingPreferences,
    GroupingRefiner,
    GroupingThresholds,
    cluster_by_threshold,
    detect_bridges,
    difficulty_penalty,
    grouping_mode,
    jaccard,
    pair_key,
    score_pair,
)
from src.db.models import (
    ChatMessage,
    ChatThread,
    MaterialFile,
    MaterialFileSignature,
    MaterialSet,
    Path,
    UserPreference,
)


class FakeScoreClient:
    def __init__(self, score=1.0, fail=False, short=False):
        self.score = score
        self.fail = fail
        self.short = short
        self.calls = []

    def score_pairs(self, pairs, timeout=None):
        self.calls.append(pairs)
        if self.fail:
            raise RuntimeError("scorer down")
        n = len(pairs) - 1 if self.short else len(pairs)
        return [self.score] * n


def build_materials(db_session, user_id, third_embedding=(0.0, 1.0)):
    mset = MaterialSet(user_id=user_id, title="Uploads")
    db_session.add(mset)
    db_session.flush()
    files = [MaterialFile(material_set_id=mset.id, original_name=n) for n in ("ospf.pdf", "bgp.pdf", "pasta.pdf")]
    db_session.add_all(files)
    db_session.flush()
    specs = [
        ((1.0, 0.0), ["routing"], ["networking"]),
        ((1.0, 0.0), ["routing"], ["networking"]),
        (third_embedding, ["cooking"], ["food"]),
    ]
    for f, (emb, topics, domains) in zip(files, specs):
        db_session.add(
            MaterialFileSignature(
                material_file_id=f.id,
                material_set_id=mset.id,
                summary_embedding=list(emb),
                topics=topics,
                domain_tags=domains,
            )
        )
    db_session.flush()
    return mset, files


def make_path(db_session, user_id, mset, groups, **meta):
    paths = [
        {"path_id": f"path_{i + 1}", "title": f"Group {i + 1}", "core_file_ids": [str(f.id) for f in g]}
        for i, g in enumerate(groups)
    ]
    path = Path(user_id=user_id, material_set_id=mset.id, kind="program", meta={"intake": {"paths": paths}, **meta})
    db_session.add(path)
    db_session.flush()
    return path


class TestSignatureScoring:
    def test_jaccard_and_difficulty(self):
        assert jaccard(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
        assert jaccard([], ["a"]) == 0.0
        intro = MaterialFileSignature(difficulty="Intro")
        mid = MaterialFileSignature(difficulty="intermediate")
        hard = MaterialFileSignature(difficulty="advanced")
        assert difficulty_penalty(intro, mid) == 0.07
        assert difficulty_penalty(intro, hard) == 0.15
        assert difficulty_penalty(intro, MaterialFileSignature(difficulty="?")) == 0.0

    def test_score_pair(self):
        a = MaterialFileSignature(summary_embedding=[1.0, 0.0], topics=["routing"], domain_tags=["networking"])
        b = MaterialFileSignature(summary_embedding=[1.0, 0.0], topics=["routing"], domain_tags=["networking"])
        far = MaterialFileSignature(summary_embedding=[0.0, 1.0], topics=["cooking"], domain_tags=["food"])
        assert score_pair(a, b) == 1.0
        assert score_pair(a, far) == 0.0
        assert score_pair(None, None) == 0.0


class TestClustering:
    def test_disjoint_set(self):
        ids = [uuid4() for _ in range(4)]
        ds = DisjointSet(ids)
        ds.union(ids[0], ids[1])
        ds.union(ids[2], ids[3])
        assert ds.find(ids[1]) == ds.find(ids[0])
        assert ds.find(ids[0]) != ds.find(ids[3])

    def test_cluster_by_threshold_largest_first(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        scores = {pair_key(a, b): 0.8, pair_key(a, c): 0.1, pair_key(b, c): 0.2}
        clusters = cluster_by_threshold([c, a, b], scores, 0.6)
        assert len(clusters) == 2
        assert set(clusters[0]) == {a, b}
        assert clusters[1] == [c]

    def test_detect_bridges(self):
        a, b, c, d = uuid4(), uuid4(), uuid4(), uuid4()
        scores = {
            pair_key(a, b): 0.9,
            pair_key(c, d): 0.9,
            pair_key(a, c): 0.8,
            pair_key(a, d): 0.8,
            pair_key(b, c): 0.1,
            pair_key(b, d): 0.1,
        }
        info = detect_bridges([[a, b], [c, d]], scores, 0.7, 0.4)
        assert info.strong == {a}
        assert info.any
        assert not detect_bridges([[a, b, c, d]], scores, 0.7, 0.4).any

    def test_grouping_mode(self):
        assert grouping_mode(1, 1, False) == MODE_SINGLE
        assert grouping_mode(3, 1, False) == MODE_MERGE
        assert grouping_mode(1, 2, True) == MODE_SEGMENTED
        assert grouping_mode(1, 2, False) == MODE_SPLIT
        assert grouping_mode(2, 3, False) == MODE_RECLUSTER


class TestThresholds:
    def test_preferences_shift_thresholds(self):
        base = GroupingThresholds()
        single = base.with_preferences(GroupingPreferences(prefer_single=True))
        assert single.split == pytest.approx(0.50)
        assert single.merge == pytest.approx(0.57)
        multi = base.with_preferences(GroupingPreferences(prefer_multi=True, merge_bias=0.1))
        assert multi.split == pytest.approx(0.60)
        assert multi.merge == pytest.approx(0.73)

    def test_preferences_from_value(self):
        prefs = GroupingPreferences.from_value({"prefer_single_path": True, "merge_bias": "0.2"})
        assert prefs.prefer_single
        assert prefs.merge_bias == pytest.approx(0.2)
        assert GroupingPreferences.from_value("nope") == GroupingPreferences()


class TestGroupingRefiner:
    def test_splits_unrelated_files(self, db_session, user_id):
        mset, files = build_materials(db_session, user_id)
        path = make_path(db_session, user_id, mset, [files])

        result = GroupingRefiner(db_session, thresholds=GroupingThresholds()).refine(
            user_id, mset.id, path.id, wait_for_user=False
        )

        assert result.status == "refined"
        assert result.mode == MODE_SPLIT
        assert result.paths_before == 1
        assert result.paths_after == 2
        assert result.files_considered == 3
        assert result.confidence == pytest.approx(1.0)

        intake = path.meta["intake"]
        assert intake["paths_refined"] and intake["paths_confirmed"]
        assert intake["paths_refine_mode"] == MODE_SPLIT
        assert intake["primary_path_id"] == "path_1"
        first, second = intake["paths"]
        assert set(first["core_file_ids"]) == {str(files[0].id), str(files[1].id)}
        assert first["title"] == "Networking"
        assert second["core_file_ids"] == [str(files[2].id)]
        assert second["goal"] == "Learn Cooking"
        assert path.meta["intake_refine_pending"] is False

    def test_matching_grouping_is_a_no_change(self, db_session, user_id):
        mset, files = build_materials(db_session, user_id)
        path = make_path(db_session, user_id, mset, [files[:2], files[2:]])
        result = GroupingRefiner(db_session, thresholds=GroupingThresholds()).refine(
            user_id, mset.id, path.id, wait_for_user=False
        )
        assert result.status == "no_change"
        assert result.paths_after == 2
        assert "paths_refined" not in path.meta["intake"]

    def test_low_confidence_asks_the_user(self, db_session, user_id):
        # The third file shares 0.6 cosine with the others: inter-similarity 0.39.
        mset, files = build_materials(db_session, user_id, third_embedding=(0.6, 0.8))
        path = make_path(db_session, user_id, mset, [files])
        thread = ChatThread(user_id=user_id, path_id=path.id)
        db_session.add(thread)
        db_session.flush()
        job_id = uuid4()

        refiner = GroupingRefiner(db_session, thresholds=GroupingThresholds(split=0.3))
        result = refiner.refine(user_id, mset.id, path.id, thread_id=thread.id, job_id=job_id, wait_for_user=True)

        assert result.status == "waiting_user"
        assert result.thread_id == thread.id
        assert [o["id"] for o in result.question["options"]] == ["keep_current", "use_refined"]
        assert result.question["options"][0]["prefer_single_path"] is True
        intake = path.meta["intake"]
        assert intake["needs_clarification"] is True
        assert len(intake["paths_refine_candidate"]) == 2
        assert intake["clarifying_questions"][0]["id"] == "structure_choice"
        assert path.meta["intake_refine_pending"] is True

        msg = db_session.scalar(select(ChatMessage).where(ChatMessage.thread_id == thread.id))
        assert msg.seq == 1
        assert msg.kind == "path_intake_questions"
        assert msg.meta["job_id"] == str(job_id)
        assert "Reply 1 or 2." in msg.content
        assert "pasta.pdf" in msg.content

    def test_low_confidence_without_thread_is_skipped(self, db_session, user_id):
        mset, files = build_materials(db_session, user_id, third_embedding=(0.6, 0.8))
        path = make_path(db_session, user_id, mset, [files])
        result = GroupingRefiner(db_session, thresholds=GroupingThresholds(split=0.3)).refine(
            user_id, mset.id, path.id, wait_for_user=True
        )
        assert result.status == "skipped_low_confidence"
        assert "needs_clarification" not in path.meta["intake"]

    def test_guards(self, db_session, user_id):
        mset, files = build_materials(db_session, user_id)
        refiner = GroupingRefiner(db_session, thresholds=GroupingThresholds())

        locked = make_path(db_session, user_id, mset, [files], intake_locked=True)
        assert refiner.refine(user_id, mset.id, locked.id, wait_for_user=False).status == "skipped"

        confirmed = make_path(db_session, user_id, mset, [files])
        confirmed.meta = {"intake": {"paths": [{"path_id": "p"}], "paths_refined": True, "paths_confirmed": True}}
        db_session.flush()
        assert refiner.refine(user_id, mset.id, confirmed.id, wait_for_user=False).status == "confirmed"

        capped = GroupingRefiner(db_session, thresholds=GroupingThresholds(max_files=2))
        path = make_path(db_session, user_id, mset, [files])
        assert capped.refine(user_id, mset.id, path.id, wait_for_user=False).status == "skipped_too_many_files"

    def test_single_path_preference_is_loaded(self, db_session, user_id):
        mset, files = build_materials(db_session, user_id)
        db_session.add(UserPreference(user_id=user_id, key="path_grouping", value={"prefer_single_path": True}))
        db_session.flush()
        prefs = GroupingRefiner(db_session, thresholds=GroupingThresholds())._preferences(user_id)
        assert prefs.prefer_single

    def test_cross_encoder_blending(self, db_session, user_id):
        mset, files = build_materials(db_session, user_id)
        base = {pair_key(files[0].id, files[2].id): 0.5}
        client = FakeScoreClient(score=1.0)
        refiner = GroupingRefiner(db_session, score_client=client, thresholds=GroupingThresholds())
        sigs = {
            s.material_file_id: s
            for s in db_session.scalars(select(MaterialFileSignature).where(MaterialFileSignature.material_set_id == mset.id))
        }

        blended = refiner._cross_encode(files, sigs, base)
        assert blended[pair_key(files[0].id, files[2].id)] == pytest.approx(0.8)
        assert len(client.calls[0]) == 3
        assert client.calls[0][0][0].startswith("name: ")

        for broken in (FakeScoreClient(fail=True), FakeScoreClient(short=True)):
            refiner.score_client = broken
            assert refiner._cross_encode(files, sigs, base) == base

    def test_missing_inputs(self, db_session, user_id):
        mset, files = build_materials(db_session, user_id)
        path = make_path(db_session, user_id, mset, [files])
        refiner = GroupingRefiner(db_session, thresholds=GroupingThresholds())
        with pytest.raises(MissingInputError):
            refiner.refine(user_id, None, path.id)
        with pytest.raises(NotFoundError):
            refiner.refine(uuid4(), mset.id, path.id, wait_for_user=False)
