# models/generation_models.py
"""Structures exchanged between the engine, the parser and the validator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Generic, Literal, TypeVar

from pydantic import BaseModel, Field, StrictStr

from .story_models import Beat, SceneSkeleton, StateTrackerSnapshot

SceneStatus = Literal["continue", "climax", "end"]

NoteScore = Annotated[float, Field(ge=0, le=10, strict=True)]


class GeneratedBeat(BaseModel):
    speaker: StrictStr
    content: StrictStr
    beat_goal: StrictStr | None = None


class SceneNotes(BaseModel):
    tension: NoteScore
    mystery: NoteScore
    romance: NoteScore


class StructuredGenerationOutput(BaseModel):
    """Contract the backend must honor for beat generation."""

    beats: list[GeneratedBeat]
    scene_status: SceneStatus
    notes: SceneNotes


T = TypeVar("T", StructuredGenerationOutput, SceneSkeleton)


@dataclass
class ParseResult(Generic[T]):
    """Outcome of a structured parse; ``parsed`` is ``None`` on failure."""

    parsed: T | None
    error: str | None = None
    recovered_from_substring: bool = False

    @property
    def ok(self) -> bool:
        return self.parsed is not None


@dataclass
class SafetyResult:
    blocked: bool
    categories: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    """Passive-scene check outcome with the snapshot it produced."""

    valid: bool
    missing: list[str]
    repair_instruction: str | None
    tracker: StateTrackerSnapshot


@dataclass
class ContextWindow:
    summary: str
    recent_beats: list[Beat]


@dataclass
class GenerationResponse:
    text: str


@dataclass
class BeatGenerationResult:
    new_beats: list[Beat]
    scene_status: SceneStatus
    notes: SceneNotes
    passive_warning: str | None = None
    tracker_snapshot: StateTrackerSnapshot | None = None
    repair_applied: bool = False


@dataclass
class SummaryRefreshResult:
    summary: str | None = None
    tracker_snapshot: StateTrackerSnapshot | None = None
    guidance_note: str | None = None

    @property
    def refreshed(self) -> bool:
        return self.summary is not None


@dataclass
class NarrativePassResult:
    prose: str
    continuation_attempts: int = 0
