"""
Contracts for the external collaborators.

The pipeline never talks to a concrete LLM, vector index or blob store
directly; stages accept any object that satisfies these protocols. Every
call takes an optional ``timeout`` in seconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, BinaryIO, Protocol


@dataclass
class GeneratedMedia:
    """Bytes returned by image/video generation."""

    data: bytes
    mime_type: str


@dataclass
class VectorMatch:
    id: str
    score: float


@dataclass
class VectorRecord:
    id: str
    values: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


class LLMClient(Protocol):
    """Language model operations used by the generation stages."""

    def generate_json(
        self,
        system: str,
        user: str,
        schema_name: str,
        schema: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]: ...

    def embed(self, texts: list[str], timeout: float | None = None) -> list[list[float]]: ...

    def generate_image(self, prompt: str, timeout: float | None = None) -> GeneratedMedia: ...

    def generate_video(
        self, prompt: str, duration_sec: int = 8, timeout: float | None = None
    ) -> GeneratedMedia: ...


class ScoreClient(Protocol):
    """Cross-encoder style relevance scoring over text pairs."""

    def score_pairs(
        self, pairs: list[tuple[str, str]], timeout: float | None = None
    ) -> list[float]: ...


class VectorStore(Protocol):
    """Namespaced vector index."""

    def query_matches(
        self,
        namespace: str,
        vector: list[float],
        k: int,
        filter: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[VectorMatch]: ...

    def query_ids(
        self,
        namespace: str,
        vector: list[float],
        k: int,
        filter: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[str]: ...

    def upsert(
        self, namespace: str, records: list[VectorRecord], timeout: float | None = None
    ) -> None: ...


class LexicalIndex(Protocol):
    """Full-text search over chunk text."""

    def search_chunk_ids(
        self, query: str, file_ids: list[str], k: int, timeout: float | None = None
    ) -> list[str]: ...


class BlobStore(Protocol):
    def upload_file(self, category: str, key: str, reader: BinaryIO) -> None: ...

    def get_public_url(self, category: str, key: str) -> str: ...


def chunk_namespace(material_set_id: Any) -> str:
    """Vector namespace holding chunk embeddings of a material set."""
    return f"chunks:{material_set_id}"


def concept_namespace(scope: str) -> str:
    return f"concepts:{scope}"


TEACHING_PATTERNS_NAMESPACE = "teaching_patterns"
