"""
Core Module - Shared errors, client contracts and env parsing.

Components:
- errors: PipelineError and one subclass per failure kind
- clients: LLM, vector store, lexical index, blob store and scorer protocols
- env: safe env parsing for stage-local options
- progress: monotonic progress reporting

Design Principle:
Stage modules (src/generation/, src/adaptive/, src/curriculum/) import their
collaborator contracts from src/core/ rather than from concrete clients.
"""

from src.core.errors import (
    AssetUploadError,
    ContextLengthExceededError,
    GenerationFailedError,
    MissingDependencyError,
    MissingInputError,
    NotFoundError,
    PipelineError,
    RetrievalEmptyError,
    SchemaMismatchError,
    ValidationFailedError,
    WebFetchError,
    is_context_length_error,
)
from src.core.progress import ProgressReporter

__all__ = [
    # Errors
    "PipelineError",
    "MissingDependencyError",
    "MissingInputError",
    "NotFoundError",
    "ValidationFailedError",
    "GenerationFailedError",
    "RetrievalEmptyError",
    "SchemaMismatchError",
    "AssetUploadError",
    "ContextLengthExceededError",
    "WebFetchError",
    "is_context_length_error",
    # Progress
    "ProgressReporter",
]
