"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests:
an in-memory SQLite session with every model table created, and fake
collaborators (LLM, vector store, lexical index, blob store) that record
their calls.
"""
import hashlib
import sys
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.core.clients import GeneratedMedia, VectorMatch  # noqa: E402
from src.db.models import Base  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    """In-memory SQLite engine with SAVEPOINT support."""
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
    @event.listens_for(eng, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db_session(engine):
    """A session bound to the in-memory engine; rolled back after the test."""
    Session = sessionmaker(bind=engine, expire_on_commit=False)
    session = Session()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def user_id():
    return uuid4()


# =============================================================================
# Fake collaborators
# =============================================================================


def fake_embedding(text: str, dims: int = 8) -> list[float]:
    """Deterministic small embedding derived from the text hash."""
    digest = hashlib.sha256((text or "").encode("utf-8")).digest()
    return [(b / 255.0) + 0.01 for b in digest[:dims]]


class FakeLLM:
    """Records calls; returns canned JSON per schema name."""

    def __init__(self, responses=None, fail_schemas=None):
        self.responses = dict(responses or {})
        self.fail_schemas = set(fail_schemas or [])
        self.json_calls = []
        self.embed_calls = []
        self.image_prompts = []
        self.video_prompts = []

    def generate_json(self, system, user, schema_name, schema, timeout=None):
        self.json_calls.append({"system": system, "user": user, "schema_name": schema_name})
        if schema_name in self.fail_schemas:
            raise RuntimeError(f"model unavailable for {schema_name}")
        resp = self.responses.get(schema_name)
        if callable(resp):
            return resp(system, user)
        if resp is None:
            raise RuntimeError(f"no canned response for {schema_name}")
        return resp

    def embed(self, texts, timeout=None):
        self.embed_calls.append(list(texts))
        return [fake_embedding(t) for t in texts]

    def generate_image(self, prompt, timeout=None):
        self.image_prompts.append(prompt)
        return GeneratedMedia(data=b"\x89PNG fake", mime_type="image/png")

    def generate_video(self, prompt, duration_sec=8, timeout=None):
        self.video_prompts.append((prompt, duration_sec))
        return GeneratedMedia(data=b"fake mp4", mime_type="video/mp4")


class FakeVectorStore:
    """Returns preset ids for every query."""

    def __init__(self, ids=None, fail=False):
        self.ids = list(ids or [])
        self.fail = fail
        self.queries = []

    def query_matches(self, namespace, vector, k, filter=None, timeout=None):
        self.queries.append((namespace, k, filter))
        if self.fail:
            raise RuntimeError("vector store down")
        return [VectorMatch(id=i, score=1.0 - 0.01 * n) for n, i in enumerate(self.ids[:k])]

    def query_ids(self, namespace, vector, k, filter=None, timeout=None):
        return [m.id for m in self.query_matches(namespace, vector, k, filter, timeout)]

    def upsert(self, namespace, records, timeout=None):
        return None


class FakeLexicalIndex:
    def __init__(self, ids=None, fail=False):
        self.ids = list(ids or [])
        self.fail = fail
        self.queries = []

    def search_chunk_ids(self, query, file_ids, k, timeout=None):
        self.queries.append((query, list(file_ids), k))
        if self.fail:
            raise RuntimeError("lexical index down")
        return self.ids[:k]


class FakeBlobStore:
    """Keeps uploads in memory; optionally fails every upload."""

    def __init__(self, fail=False):
        self.fail = fail
        self.uploads = {}

    def upload_file(self, category, key, reader):
        if self.fail:
            raise IOError("bucket unavailable")
        self.uploads[(category, key)] = reader.read()

    def get_public_url(self, category, key):
        return f"https://cdn.example.test/{category}/{key}"


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_blob_store():
    return FakeBlobStore()
