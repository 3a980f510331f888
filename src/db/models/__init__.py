# SQLAlchemy models
from .base import Base, utcnow
from .concepts import (
    CONCEPT_SCOPE_GLOBAL,
    CONCEPT_SCOPE_PATH,
    Concept,
    ConceptMappingOverride,
    ConceptRepresentation,
)
from .docs import (
    DocGenerationRun,
    DocProbe,
    DocVariantExposure,
    DocVariantOutcome,
    LearningNodeDoc,
    LearningNodeDocVariant,
    LearningNodeFigure,
    LearningNodeVideo,
)
from .learner import (
    NodeRun,
    UserConceptState,
    UserEventCursor,
    UserLibraryStats,
    UserMisconceptionInstance,
    UserPreference,
    UserProgressionEvent,
    UserTestletState,
)
from .materials import (
    GlobalConceptCoverage,
    MaterialChunk,
    MaterialChunkSignal,
    MaterialConceptCoverage,
    MaterialEdge,
    MaterialFile,
    MaterialFileSignature,
    MaterialIntent,
    MaterialSet,
)
from .ops import (
    ChatMessage,
    ChatThread,
    DecisionTrace,
    JobRun,
    JobRunEvent,
    StructuralDecisionTrace,
)
from .paths import NODE_KINDS, Path, PathNode, PathRun

__all__ = [
    # Base
    "Base",
    "utcnow",
    # Concepts
    "CONCEPT_SCOPE_GLOBAL",
    "CONCEPT_SCOPE_PATH",
    "Concept",
    "ConceptMappingOverride",
    "ConceptRepresentation",
    # Paths
    "NODE_KINDS",
    "Path",
    "PathNode",
    "PathRun",
    # Materials
    "MaterialSet",
    "MaterialFile",
    "MaterialChunk",
    "MaterialFileSignature",
    "MaterialChunkSignal",
    "MaterialConceptCoverage",
    "MaterialEdge",
    "MaterialIntent",
    "GlobalConceptCoverage",
    # Docs
    "LearningNodeDoc",
    "LearningNodeDocVariant",
    "LearningNodeFigure",
    "LearningNodeVideo",
    "DocGenerationRun",
    "DocProbe",
    "DocVariantExposure",
    "DocVariantOutcome",
    # Learner state
    "UserConceptState",
    "UserMisconceptionInstance",
    "UserTestletState",
    "NodeRun",
    "UserProgressionEvent",
    "UserEventCursor",
    "UserPreference",
    "UserLibraryStats",
    # Ops
    "ChatThread",
    "ChatMessage",
    "JobRun",
    "JobRunEvent",
    "StructuralDecisionTrace",
    "DecisionTrace",
]
