"""
Tests for vector helpers, the retrieval mixer, the database lexical index
and the material signal store.
"""
from uuid import uuid4

import pytest

from src.db.models import (
    CONCEPT_SCOPE_GLOBAL,
    Concept,
    GlobalConceptCoverage,
    MaterialChunk,
    MaterialChunkSignal,
    MaterialConceptCoverage,
    MaterialEdge,
    MaterialFile,
    MaterialIntent,
    MaterialSet,
)
from src.semantic.retrieval import DatabaseLexicalIndex, RetrievalMixer, RetrievalPlan, merge_preserve_order
from src.semantic.signals import (
    MaterialSignalStore,
    concept_keys_from_trajectory,
    concept_signal_weight_factor,
    concept_weights_for_keys,
    sort_concept_keys_by_weight,
)
from src.semantic.vectors import cosine_similarity, mean_vector, top_k_cosine
from conftest import FakeLexicalIndex, FakeVectorStore


class TestVectors:
    def test_cosine_edge_cases(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0
        assert cosine_similarity([], [1]) == 0.0
        assert cosine_similarity([0, 0], [1, 1]) == 0.0

    def test_top_k_breaks_ties_by_id(self):
        cands = [("b", [1, 0]), ("a", [1, 0]), ("c", [0, 1]), ("d", None)]
        assert [cid for cid, _ in top_k_cosine([1, 0], cands, 2)] == ["a", "b"]
        assert top_k_cosine([1, 0], cands, 0) == []

    def test_mean_vector(self):
        assert mean_vector([[1, 3], [3, 5], None]) == [2.0, 4.0]
        assert mean_vector([]) == []


class TestRetrievalMixer:
    def plan(self, **kw):
        base = dict(
            material_set_id="set-1",
            query_text="packet routing",
            query_embedding=[1.0, 0.0],
            file_ids=["f1"],
            semantic_k=5,
            lexical_k=5,
            final_k=3,
        )
        base.update(kw)
        return RetrievalPlan(**base)

    def test_merge_preserve_order(self):
        assert merge_preserve_order(["a", "b"], ["b", "c", ""], None, ["a", "d"]) == ["a", "b", "c", "d"]

    def test_semantic_then_lexical_filtered_to_known_chunks(self):
        vs = FakeVectorStore(ids=["c1", "ghost", "c2"])
        lex = FakeLexicalIndex(ids=["c2", "c3", "c4"])
        mixer = RetrievalMixer(vs, lex, timeout_ms=100, concurrency=2)
        known = {"c1": 1, "c2": 2, "c3": 3, "c4": 4}

        assert mixer.retrieve(self.plan(), known) == ["c1", "c2", "c3"]
        namespace, k, flt = vs.queries[0]
        assert namespace == "chunks:set-1"
        assert k == 5
        assert flt == {"material_file_id": {"$in": ["f1"]}}

    def test_failures_degrade_to_cosine_backfill(self):
        mixer = RetrievalMixer(FakeVectorStore(fail=True), FakeLexicalIndex(fail=True), timeout_ms=100)
        known = {"c1": 1, "c2": 2, "c3": 3}

        def local():
            return [("c1", [0.0, 1.0]), ("c2", [1.0, 0.1]), ("c3", [1.0, 0.0])]

        assert mixer.retrieve(self.plan(final_k=2), known, local) == ["c3", "c2"]

    def test_no_sources_yields_empty(self):
        mixer = RetrievalMixer(None, None, timeout_ms=100)
        assert mixer.retrieve(self.plan(), {"c1": 1}) == []

    def test_retrieve_many(self):
        mixer = RetrievalMixer(FakeVectorStore(ids=["c1", "c2"]), None, timeout_ms=100, concurrency=4)
        known = {"c1": 1, "c2": 2}
        out = mixer.retrieve_many([self.plan(final_k=1), self.plan(final_k=2)], known)
        assert out == [["c1"], ["c1", "c2"]]
        assert mixer.retrieve_many([], known) == []


class TestDatabaseLexicalIndex:
    def test_scores_by_shared_tokens(self, db_session, user_id):
        ms = MaterialSet(user_id=user_id)
        db_session.add(ms)
        db_session.flush()
        f = MaterialFile(material_set_id=ms.id, original_name="net.pdf")
        other = MaterialFile(material_set_id=ms.id, original_name="other.pdf")
        db_session.add_all([f, other])
        db_session.flush()
        best = MaterialChunk(material_file_id=f.id, seq=0, text="Routing tables guide each packet.")
        some = MaterialChunk(material_file_id=f.id, seq=1, text="A packet has a header.")
        none = MaterialChunk(material_file_id=f.id, seq=2, text="Unrelated prose.")
        elsewhere = MaterialChunk(material_file_id=other.id, seq=0, text="Routing packet tables.")
        db_session.add_all([best, some, none, elsewhere])
        db_session.flush()

        index = DatabaseLexicalIndex(db_session)
        assert index.search_chunk_ids("packet routing tables", [str(f.id)], 5) == [str(best.id), str(some.id)]
        assert index.search_chunk_ids("packet", [], 5) == []
        assert index.search_chunk_ids("a b", [str(f.id)], 5) == []


class TestSignals:
    def test_trajectory_keys(self):
        traj = {"establishes": ["TCP", "udp"], "builds_on": ["tcp"], "other": ["x"]}
        assert concept_keys_from_trajectory(traj) == ["tcp", "udp"]
        assert concept_keys_from_trajectory(None) == []

    def test_compound_weights(self, db_session):
        set_id = uuid4()
        db_session.add_all(
            [
                MaterialChunkSignal(
                    material_set_id=set_id, material_chunk_id=uuid4(), compound_weight=0.4,
                    trajectory={"establishes": ["tcp"]},
                ),
                MaterialChunkSignal(
                    material_set_id=set_id, material_chunk_id=uuid4(), compound_weight=0.7,
                    trajectory={"reinforces": ["tcp", "udp"]},
                ),
                MaterialChunkSignal(
                    material_set_id=set_id, material_chunk_id=uuid4(), compound_weight=0.0,
                    trajectory={"establishes": ["ip"]},
                ),
            ]
        )
        db_session.flush()
        store = MaterialSignalStore(db_session)
        assert store.load_compound_weights_by_key(set_id) == {"tcp": 0.7, "udp": 0.7}
        assert store.load_compound_weights_by_key(uuid4()) == {}

    def test_context_falls_back_to_coverage(self, db_session):
        set_id = uuid4()
        db_session.add_all(
            [
                MaterialIntent(material_set_id=set_id, intent={"goal": "pass the exam"}),
                MaterialConceptCoverage(material_set_id=set_id, concept_key="TCP", score=0.4, depth="deep"),
                MaterialConceptCoverage(material_set_id=set_id, concept_key="udp", score=1.5),
                MaterialEdge(
                    material_set_id=set_id, from_file_id=uuid4(), to_file_id=uuid4(),
                    edge_type="builds_on", strength=0.6, bridging_concepts=["tcp"],
                ),
            ]
        )
        db_session.flush()
        ctx = MaterialSignalStore(db_session).load_material_set_signal_context(set_id)
        assert ctx.intent == {"goal": "pass the exam"}
        assert [c["concept_key"] for c in ctx.coverage] == ["udp", "tcp"]
        assert ctx.weights_by_key == {"tcp": 0.4, "udp": 1.0}
        assert ctx.edges[0]["edge_type"] == "builds_on"
        assert ctx.edges[0]["bridging_concepts"] == ["tcp"]

    def test_cross_set_relevance(self, db_session, user_id):
        set_id = uuid4()
        resolved_id = uuid4()
        g = Concept(scope=CONCEPT_SCOPE_GLOBAL, key="udp")
        db_session.add(g)
        db_session.flush()
        db_session.add_all(
            [
                MaterialConceptCoverage(material_set_id=set_id, concept_key="tcp", canonical_concept_id=resolved_id),
                MaterialConceptCoverage(material_set_id=set_id, concept_key="udp"),
                MaterialConceptCoverage(material_set_id=set_id, concept_key="ip"),
                GlobalConceptCoverage(user_id=user_id, canonical_concept_id=resolved_id, cross_set_relevance=0.6),
                GlobalConceptCoverage(user_id=user_id, canonical_concept_id=g.id, cross_set_relevance=0.3),
                GlobalConceptCoverage(user_id=uuid4(), canonical_concept_id=g.id, cross_set_relevance=0.9),
            ]
        )
        db_session.flush()
        rel = MaterialSignalStore(db_session).load_cross_set_relevance_by_key(user_id, set_id)
        assert rel == {"tcp": 0.6, "udp": 0.3}

    def test_weight_helpers(self):
        assert sort_concept_keys_by_weight(["b", "a", "c"], {"c": 0.9}) == ["c", "a", "b"]
        assert sort_concept_keys_by_weight(["b", "a"], {}) == ["b", "a"]
        assert concept_weights_for_keys(["TCP", "x"], {"tcp": 1.2}) == {"tcp": 1.0}
        assert concept_signal_weight_factor({"signal_weight": 0.3}) == pytest.approx(0.8)
        assert concept_signal_weight_factor(None) == 1.0
