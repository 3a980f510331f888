"""
Tests for NodeDocBuilder and its grounding helpers.

The builder runs end to end against the in-memory database with a fake
LLM that returns a deliberately thin doc; the repair cascade has to bring
it up to the template minima before it is persisted.
"""
import json

import pytest
from sqlalchemy import select

from conftest import FakeLLM, fake_embedding
from src.content.canonical import canonical_doc_text, content_hash
from src.core.errors import (
    ContextLengthExceededError,
    MissingInputError,
    NotFoundError,
    PipelineError,
    RetrievalEmptyError,
)
from src.core.progress import ProgressReporter
from src.db.models import (
    DocGenerationRun,
    LearningNodeDoc,
    MaterialChunk,
    MaterialFile,
    MaterialSet,
    Path,
    PathNode,
    UserLibraryStats,
)
from src.generation.node_doc_builder import (
    NodeDocBuilder,
    NodeWork,
    build_equations_json,
    build_excerpts,
    distribute_must_cite,
    fallback_concept_keys,
    polish_node_doc,
)
from src.generation.prompts import NODE_DOC_SCHEMA_NAME, NODE_DOC_SYSTEM_PROMPT

CHUNK_TEXTS = (
    "Routers forward packets between networks using routing tables.",
    "A routing table maps destination prefixes to next-hop interfaces.",
)


@pytest.fixture
def material(db_session, user_id):
    ms = MaterialSet(user_id=user_id, title="Networking")
    db_session.add(ms)
    db_session.flush()
    f = MaterialFile(material_set_id=ms.id, original_name="routing.pdf", mime_type="application/pdf")
    db_session.add(f)
    db_session.flush()
    chunks = [
        MaterialChunk(material_file_id=f.id, seq=i, text=t, page=i + 1, embedding=fake_embedding(t))
        for i, t in enumerate(CHUNK_TEXTS)
    ]
    chunks.append(MaterialChunk(material_file_id=f.id, seq=9, text="No extractable text on this page."))
    db_session.add_all(chunks)
    db_session.flush()
    return ms, f, chunks


@pytest.fixture
def path(db_session, user_id, material):
    ms, _, _ = material
    p = Path(user_id=user_id, material_set_id=ms.id, kind="course", title="Networking basics")
    db_session.add(p)
    db_session.flush()
    node = PathNode(
        path_id=p.id,
        index=1,
        node_kind="lesson",
        title="Routing basics",
        meta={"goal": "Explain how routers pick a next hop", "concept_keys": ["Routing", "routing_table"]},
    )
    db_session.add(node)
    db_session.flush()
    return p, node


def thin_doc(chunk_id):
    return {
        "schema_version": 1,
        "title": "Routing basics",
        "concept_keys": ["routing"],
        "blocks": [
            {
                "type": "paragraph",
                "md": "Routers forward packets between networks by consulting a routing table.",
                "citations": [{"chunk_id": chunk_id, "quote": "", "loc": {"page": 1, "start": 0, "end": 0}}],
            }
        ],
    }


class TestHelpers:
    def test_build_excerpts(self):
        chunks = {"a": MaterialChunk(text="Alpha text"), "b": MaterialChunk(text="   "), "c": MaterialChunk(text="x" * 50)}
        out = build_excerpts(["a", "missing", "b", "c", "a"], chunks, max_lines=5, max_chars=10)
        assert out == "[chunk_id=a] Alpha text\n[chunk_id=c] xxxxxxxxxx..."
        assert build_excerpts(["a", "c"], chunks, max_lines=1) == "[chunk_id=a] Alpha text"

    def test_build_equations_json(self):
        chunks = {
            "a": MaterialChunk(meta={"equations": [{"latex": "E=mc^2", "display": True, "placeholder": "[EQ1]"}]}),
            "b": MaterialChunk(meta={"equation_latex": ["a^2+b^2=c^2"]}),
            "c": MaterialChunk(meta={}),
        }
        out = json.loads(build_equations_json(chunks, ["a", "b", "c"]))
        assert out == {
            "equations": [
                {"chunk_id": "a", "equations": [{"latex": "E=mc^2", "display": True, "placeholder": "[EQ1]"}]},
                {"chunk_id": "b", "equations": [{"latex": "a^2+b^2=c^2", "display": False}]},
            ]
        }
        assert build_equations_json(chunks, ["c"]) == ""

    def test_distribute_must_cite_by_similarity(self):
        queries = [[1.0, 0.0], [0.0, 1.0]]
        emb = {"a": [1.0, 0.0], "b": [0.9, 0.1], "c": [0.0, 1.0]}
        assert distribute_must_cite(["a", "b", "c"], queries, emb, per_node=2) == [["a", "b"], ["c"]]

    def test_distribute_must_cite_overflow(self):
        queries = [[1.0, 0.0], [0.0, 1.0]]
        emb = {"a": [1.0, 0.0], "b": [1.0, 0.0], "c": [1.0, 0.0]}
        assert distribute_must_cite(["a", "b", "c"], queries, emb, per_node=1) == [["a", "b"], ["c"]]
        assert distribute_must_cite([], queries, emb) == [[], []]
        assert distribute_must_cite(["a"], [], emb) == []

    def test_fallback_concept_keys(self):
        node = PathNode(title="Subnetting")
        work = NodeWork(node=node, node_kind="lesson", doc_template="concept", goal="", concept_keys=[],
                        prereq_keys=[], outline_headings=["Intro", "Masks"])
        assert fallback_concept_keys(work) == ["intro", "masks"]
        work.outline_headings = []
        assert fallback_concept_keys(work) == ["Subnetting"]
        work.node = PathNode(title="")
        assert fallback_concept_keys(work) == ["general"]

    def test_polish_rejects_structure_change(self):
        doc = {"schema_version": 1, "blocks": [{"id": "p1", "type": "paragraph", "md": "Up next: x"}]}
        moved = {"blocks": [{"id": "p2", "type": "paragraph", "md": "x"}]}
        same = {"blocks": [{"id": "p1", "type": "paragraph", "md": "x"}]}

        out, metrics, applied = polish_node_doc(FakeLLM({NODE_DOC_SCHEMA_NAME: moved}), doc)
        assert not applied
        assert out is doc
        assert metrics == {"polish_error": "structure_changed"}

        out, metrics, applied = polish_node_doc(FakeLLM({NODE_DOC_SCHEMA_NAME: same}), doc)
        assert applied
        assert out["schema_version"] == 1
        assert out["blocks"][0]["md"] == "x"

        _, metrics, applied = polish_node_doc(FakeLLM(fail_schemas=[NODE_DOC_SCHEMA_NAME]), doc)
        assert not applied
        assert "polish_error" in metrics


class TestBuildPath:
    def test_requires_llm(self, db_session):
        with pytest.raises(PipelineError):
            NodeDocBuilder(db_session, None)

    def test_builds_and_persists_grounded_doc(self, db_session, user_id, material, path):
        ms, _, chunks = material
        p, node = path
        c1, c2 = str(chunks[0].id), str(chunks[1].id)
        llm = FakeLLM({NODE_DOC_SCHEMA_NAME: thin_doc(c1)})
        emitted = []
        progress = ProgressReporter(lambda pct, msg: emitted.append(pct), min_interval=0)

        result = NodeDocBuilder(db_session, llm, progress=progress).build_path(user_id, ms.id, p.id)

        assert result.docs_written == 1
        assert result.docs_failed == 0
        assert result.failures == {}
        assert len(llm.embed_calls) == 1
        assert llm.embed_calls[0] == ["Routing basics Explain how routers pick a next hop routing, routing_table"]
        assert emitted and emitted[-1] == 95

        row = db_session.scalar(select(LearningNodeDoc).where(LearningNodeDoc.path_node_id == node.id))
        doc = row.load_doc()
        assert row.content_hash == content_hash(doc)
        assert row.doc_json == canonical_doc_text(doc)
        assert "Routers forward packets" in row.doc_text

        cited = {c["chunk_id"] for b in doc["blocks"] for c in b.get("citations") or []}
        # Both usable chunks were uncovered, so both are must-cite.
        assert {c1, c2} <= cited
        assert str(chunks[2].id) not in cited
        assert all(b.get("id") for b in doc["blocks"])

        runs = db_session.scalars(select(DocGenerationRun).where(DocGenerationRun.path_node_id == node.id)).all()
        assert [(r.attempt, r.status) for r in runs] == [(1, "succeeded")]
        assert runs[0].content_hash == row.content_hash

        stats = db_session.scalar(select(UserLibraryStats).where(UserLibraryStats.user_id == user_id))
        assert stats.node_docs_built == 1

    def test_rebuild_reproduces_content_hash(self, db_session, user_id, material, path):
        ms, _, chunks = material
        p, node = path
        second = PathNode(path_id=p.id, index=2, node_kind="lesson", title="Switching basics",
                          meta={"goal": "Contrast switches with routers", "concept_keys": ["switching"]})
        db_session.add(second)
        db_session.flush()
        llm = FakeLLM({NODE_DOC_SCHEMA_NAME: thin_doc(str(chunks[0].id))})
        builder = NodeDocBuilder(db_session, llm)

        def hashes():
            rows = db_session.scalars(select(LearningNodeDoc).order_by(LearningNodeDoc.path_node_id)).all()
            return {r.path_node_id: (r.content_hash, r.doc_json) for r in rows}

        builder.build_path(user_id, ms.id, p.id)
        first = hashes()
        builder.build_path(user_id, ms.id, p.id, force=True)

        assert len(first) == 2
        assert hashes() == first
        doc = json.loads(first[node.id][1])
        assert any(b["id"].startswith("thread_") for b in doc["blocks"])

    def test_context_length_failure_is_not_retried(self, db_session, user_id, material, path):
        ms, _, _ = material
        p, node = path

        def overflow(system, user):
            raise RuntimeError("This model's maximum context length is 8192 tokens")

        llm = FakeLLM({NODE_DOC_SCHEMA_NAME: overflow})

        with pytest.raises(ContextLengthExceededError):
            NodeDocBuilder(db_session, llm).build_path(user_id, ms.id, p.id)

        assert len([c for c in llm.json_calls if c["system"] == NODE_DOC_SYSTEM_PROMPT]) == 1
        runs = db_session.scalars(select(DocGenerationRun).where(DocGenerationRun.path_node_id == node.id)).all()
        assert [(r.attempt, r.status) for r in runs] == [(1, "failed")]

    def test_existing_docs_are_skipped(self, db_session, user_id, material, path):
        ms, _, chunks = material
        p, _ = path
        llm = FakeLLM({NODE_DOC_SCHEMA_NAME: thin_doc(str(chunks[0].id))})
        builder = NodeDocBuilder(db_session, llm)
        builder.build_path(user_id, ms.id, p.id)
        calls = len(llm.json_calls)

        again = builder.build_path(user_id, ms.id, p.id)
        assert again.docs_existing == 1
        assert again.docs_written == 0
        assert len(llm.json_calls) == calls

        forced = builder.build_path(user_id, ms.id, p.id, force=True)
        assert forced.docs_written == 1
        assert len(db_session.scalars(select(LearningNodeDoc)).all()) == 1

    def test_retries_then_records_failure(self, db_session, user_id, material, path):
        ms, _, _ = material
        p, node = path
        llm = FakeLLM({NODE_DOC_SCHEMA_NAME: lambda system, user: ["not", "an", "object"]})

        result = NodeDocBuilder(db_session, llm).build_path(user_id, ms.id, p.id)

        assert result.docs_written == 0
        assert result.docs_failed == 1
        assert result.failures[str(node.id)] == ["schema_unmarshal_failed"]
        runs = db_session.scalars(
            select(DocGenerationRun).where(DocGenerationRun.path_node_id == node.id).order_by(DocGenerationRun.attempt)
        ).all()
        assert [(r.attempt, r.status) for r in runs] == [(1, "failed"), (2, "failed"), (3, "failed")]
        assert db_session.scalar(select(LearningNodeDoc)) is None

    def test_feedback_is_sent_on_retry(self, db_session, user_id, material, path):
        ms, _, chunks = material
        p, _ = path
        seen = []

        def reply(system, user):
            seen.append(user)
            return "not json" if len(seen) == 1 else thin_doc(str(chunks[0].id))

        llm = FakeLLM({NODE_DOC_SCHEMA_NAME: reply})

        result = NodeDocBuilder(db_session, llm).build_path(user_id, ms.id, p.id)

        assert result.docs_written == 1
        doc_calls = [c for c in llm.json_calls if c["system"] == NODE_DOC_SYSTEM_PROMPT]
        assert len(doc_calls) == 2
        assert "VALIDATION_ERRORS_TO_FIX" not in doc_calls[0]["user"]
        assert doc_calls[1]["user"].endswith("- schema_unmarshal_failed")

    def test_missing_inputs(self, db_session, user_id, material, path):
        ms, _, _ = material
        p, _ = path
        builder = NodeDocBuilder(db_session, FakeLLM())
        with pytest.raises(MissingInputError):
            builder.build_path(None, ms.id, p.id)
        with pytest.raises(MissingInputError):
            builder.build_path(user_id, None, p.id)
        with pytest.raises(NotFoundError):
            builder.build_path(user_id, ms.id, ms.id)

    def test_no_chunks(self, db_session, user_id, path):
        p, _ = path
        empty = MaterialSet(user_id=user_id)
        db_session.add(empty)
        db_session.flush()
        with pytest.raises(RetrievalEmptyError):
            NodeDocBuilder(db_session, FakeLLM()).build_path(user_id, empty.id, p.id)
