"""
Pipeline error types.

Every stage raises a subclass of ``PipelineError`` whose ``kind`` names the
failure class. Rate limiting is never raised; stages report it as a flag.
"""

from __future__ import annotations

CONTEXT_LENGTH_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "context length exceeded",
    "too many tokens",
    "prompt is too long",
)


class PipelineError(Exception):
    """Base class for stage failures."""

    kind = "pipeline_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)


class MissingDependencyError(PipelineError):
    """A required collaborator (repo, client) was not supplied."""

    kind = "missing_dependency"


class MissingInputError(PipelineError):
    """A required input identifier was empty."""

    kind = "missing_input"


class NotFoundError(PipelineError):
    kind = "not_found"


class ValidationFailedError(PipelineError):
    """Content failed validation; ``errors`` holds the individual messages."""

    kind = "validation_failed"

    def __init__(self, message: str = "", errors: list[str] | None = None):
        self.errors = list(errors or [])
        super().__init__(message or f"validation failed ({len(self.errors)} errors)")


class GenerationFailedError(PipelineError):
    kind = "generation_failed"


class RetrievalEmptyError(PipelineError):
    kind = "retrieval_empty"


class SchemaMismatchError(PipelineError):
    kind = "schema_mismatch"


class AssetUploadError(PipelineError):
    kind = "asset_upload_failed"


class ContextLengthExceededError(GenerationFailedError):
    kind = "context_length_exceeded"


def is_context_length_error(exc: BaseException | None) -> bool:
    """True when an LLM failure reports that the prompt exceeded the context window."""
    if exc is None:
        return False
    if isinstance(exc, ContextLengthExceededError):
        return True
    msg = str(exc).lower()
    return any(marker in msg for marker in CONTEXT_LENGTH_MARKERS)


class WebFetchError(PipelineError):
    """A web resource was blocked, unreachable, too large or returned a non-2xx status."""

    kind = "web_fetch_failed"
