"""Central package for Scenecraft data models."""

from .generation_models import (
    BeatGenerationResult,
    ContextWindow,
    GeneratedBeat,
    GenerationResponse,
    NarrativePassResult,
    ParseResult,
    SafetyResult,
    SceneNotes,
    SceneStatus,
    StructuredGenerationOutput,
    SummaryRefreshResult,
    ValidationResult,
)
from .story_models import (
    STAGE_SPEAKER,
    SUMMARY_PREFIX,
    AppSettings,
    Beat,
    Character,
    ModelConfig,
    ProseVersion,
    SceneSkeleton,
    SkeletonConstraints,
    StateTrackerSnapshot,
    StoryState,
    now_iso,
    reindex_beats,
)

__all__ = [
    "STAGE_SPEAKER",
    "SUMMARY_PREFIX",
    "AppSettings",
    "Beat",
    "BeatGenerationResult",
    "Character",
    "ContextWindow",
    "GeneratedBeat",
    "GenerationResponse",
    "ModelConfig",
    "NarrativePassResult",
    "ParseResult",
    "ProseVersion",
    "SafetyResult",
    "SceneNotes",
    "SceneSkeleton",
    "SceneStatus",
    "SkeletonConstraints",
    "StateTrackerSnapshot",
    "StoryState",
    "StructuredGenerationOutput",
    "SummaryRefreshResult",
    "ValidationResult",
    "now_iso",
    "reindex_beats",
]
