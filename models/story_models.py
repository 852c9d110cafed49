# models/story_models.py
"""Persistent story state models.

``StoryState`` is a frozen value: operations never modify it in place but
return a new instance. The caller owns the single "current state" cell and
replaces it wholesale with whatever the engine returns.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

import structlog
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from config import settings
from core.errors import SkeletonLockedError

logger = structlog.get_logger(__name__)

SUMMARY_PREFIX = "[SCENE SUMMARY]"
STAGE_SPEAKER = "NARRATOR/STAGE"

LengthTarget = Literal["short", "medium", "long"]


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class Character(BaseModel):
    """A cast member card."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    source_work: str
    public_domain_note: str
    persona_prompt: str
    voice_constraints: list[str] = Field(..., min_length=5, max_length=10)
    motivations: list[str] = Field(..., min_length=3, max_length=6)
    conflicts: list[str] = Field(..., min_length=3, max_length=6)
    voice_style: str
    taboo_list: list[str] | None = None


class Beat(BaseModel):
    """One turn of narrative content attributed to a speaker."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    speaker: str
    content: str
    beat_goal: str | None = None
    timestamp: str = Field(default_factory=now_iso)
    pinned: bool = False
    is_summary: bool = Field(
        False, validation_alias=AliasChoices("is_summary", "isSummary")
    )

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Beat content must not be empty.")
        return value


class SkeletonConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    must_include: list[str] = Field(default_factory=list)
    must_avoid: list[str] = Field(default_factory=list)


class SceneSkeleton(BaseModel):
    """Structural outline a scene's beats are checked against."""

    model_config = ConfigDict(frozen=True)

    goal: str = Field(..., min_length=1)
    opposition: str = Field(..., min_length=1)
    plan: str = Field(..., min_length=1)
    turn: str = Field(..., min_length=1)
    choice: str = Field(..., min_length=1)
    cost: str = Field(..., min_length=1)
    outcome: str = Field(..., min_length=1)
    protagonist: str = Field(..., min_length=1)
    constraints: SkeletonConstraints


class StateTrackerSnapshot(BaseModel):
    """Whether decision/consequence requirements were met as of a beat index."""

    model_config = ConfigDict(frozen=True)

    timestamp: str
    beat_index: int = Field(..., ge=0)
    protagonist_intent: str
    protagonist_commitment: str | None = None
    has_decision: bool
    has_cost_or_consequence: bool
    guidance_note: str | None = None


class ModelConfig(BaseModel):
    """Sampling options sent to the backend with every call."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model: str = settings.DEFAULT_MODEL
    temperature: float = Field(settings.TEMPERATURE_DEFAULT, ge=0, le=2)
    top_p: float = Field(settings.TOP_P_DEFAULT, ge=0, le=1)
    num_ctx: int = Field(settings.NUM_CTX_DEFAULT, gt=0)
    num_predict: int = Field(settings.NUM_PREDICT_DEFAULT, gt=0)

    def capped(
        self, temperature: float | None = None, num_predict: int | None = None
    ) -> ModelConfig:
        """Return a copy with temperature and/or token budget capped."""
        update: dict[str, Any] = {}
        if temperature is not None:
            update["temperature"] = min(self.temperature, temperature)
        if num_predict is not None:
            update["num_predict"] = min(self.num_predict, num_predict)
        return self.model_copy(update=update)


class ProseVersion(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: str
    generation: ModelConfig
    prose_text: str


class AppSettings(BaseModel):
    """User-level settings persisted next to the projects."""

    ollama_base_url: str = settings.OLLAMA_BASE_URL
    generation: ModelConfig = Field(default_factory=ModelConfig)
    style_pacing: int = Field(50, ge=0, le=100)
    style_atmosphere: int = Field(55, ge=0, le=100)
    default_outline_mode: bool = False
    repair_beats_count: int = Field(settings.REPAIR_BEATS_COUNT_DEFAULT, ge=1, le=6)


def reindex_beats(beats: list[Beat]) -> list[Beat]:
    """Re-issue contiguous zero-based indices in list order."""
    return [
        beat if beat.index == position else beat.model_copy(update={"index": position})
        for position, beat in enumerate(beats)
    ]


class StoryState(BaseModel):
    """Complete state of one story project.

    Outline-related fields are optional in stored documents; older documents
    load with outline mode off, an unlocked (absent) skeleton, no snapshots
    and no warnings.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    cast: list[Character] = Field(
        ...,
        min_length=2,
        max_length=6,
        validation_alias=AliasChoices("cast", "selected_characters"),
    )
    setting: str
    premise: str
    tone: str
    length_target: LengthTarget = "medium"
    beats: list[Beat] = Field(
        default_factory=list,
        validation_alias=AliasChoices("beats", "script_beats"),
    )
    final_prose_versions: list[ProseVersion] = Field(default_factory=list)
    scene_summary: str = ""
    outline_mode_enabled: bool = False
    scene_skeleton: SceneSkeleton | None = None
    scene_skeleton_locked: bool = False
    state_tracker_snapshots: list[StateTrackerSnapshot] = Field(default_factory=list)
    passive_warning: str | None = None
    pending_guidance_note: str | None = None

    @field_validator(
        "outline_mode_enabled", "scene_skeleton_locked", mode="before"
    )
    @classmethod
    def _null_flag_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("state_tracker_snapshots", mode="before")
    @classmethod
    def _drop_invalid_snapshots(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            logger.warning(
                "Stored tracker snapshots are not a list. Ignoring.",
                value_type=type(value).__name__,
            )
            return []
        kept: list[Any] = []
        for raw in value:
            try:
                kept.append(StateTrackerSnapshot.model_validate(raw))
            except ValidationError as exc:
                logger.warning(
                    "Dropping invalid stored tracker snapshot.", error=str(exc)
                )
        return kept

    @field_validator("scene_skeleton", mode="before")
    @classmethod
    def _drop_invalid_skeleton(cls, value: Any) -> Any:
        if value is None or isinstance(value, SceneSkeleton):
            return value
        try:
            return SceneSkeleton.model_validate(value)
        except ValidationError as exc:
            logger.warning("Dropping invalid stored scene skeleton.", error=str(exc))
            return None

    # --- derived views -------------------------------------------------

    @property
    def story_beats(self) -> list[Beat]:
        """Beats excluding synthetic summary markers."""
        return [beat for beat in self.beats if not beat.is_summary]

    @property
    def latest_snapshot(self) -> StateTrackerSnapshot | None:
        if not self.state_tracker_snapshots:
            return None
        return self.state_tracker_snapshots[-1]

    @property
    def next_beat_index(self) -> int:
        return self.beats[-1].index + 1 if self.beats else 0

    # --- functional updates --------------------------------------------

    def _updated(self, **changes: Any) -> StoryState:
        changes.setdefault("updated_at", now_iso())
        return self.model_copy(update=changes)

    def with_beats(self, beats: list[Beat]) -> StoryState:
        return self._updated(beats=reindex_beats(beats))

    def append_beats(self, new_beats: list[Beat]) -> StoryState:
        return self.with_beats([*self.beats, *new_beats])

    def delete_beat(self, index: int) -> StoryState:
        return self.with_beats([beat for beat in self.beats if beat.index != index])

    def move_beat(self, from_index: int, to_index: int) -> StoryState:
        beats = list(self.beats)
        if not 0 <= from_index < len(beats):
            raise IndexError(f"No beat at index {from_index}.")
        moved = beats.pop(from_index)
        to_index = max(0, min(to_index, len(beats)))
        beats.insert(to_index, moved)
        return self.with_beats(beats)

    def edit_beat(self, index: int, content: str) -> StoryState:
        return self.with_beats(
            [
                Beat.model_validate({**beat.model_dump(), "content": content})
                if beat.index == index
                else beat
                for beat in self.beats
            ]
        )

    def toggle_pin(self, index: int) -> StoryState:
        return self.with_beats(
            [
                beat.model_copy(update={"pinned": not beat.pinned})
                if beat.index == index
                else beat
                for beat in self.beats
            ]
        )

    def append_snapshot(self, snapshot: StateTrackerSnapshot) -> StoryState:
        return self._updated(
            state_tracker_snapshots=[*self.state_tracker_snapshots, snapshot]
        )

    def with_scene_skeleton(
        self, skeleton: SceneSkeleton | None, locked: bool | None = None
    ) -> StoryState:
        if self.scene_skeleton_locked and skeleton != self.scene_skeleton:
            raise SkeletonLockedError(
                "Scene skeleton is locked; unlock it before replacing."
            )
        changes: dict[str, Any] = {"scene_skeleton": skeleton}
        if locked is not None:
            changes["scene_skeleton_locked"] = locked
        return self._updated(**changes)

    def with_skeleton_lock(self, locked: bool) -> StoryState:
        return self._updated(scene_skeleton_locked=locked)

    def with_prose_version(
        self, prose_text: str, generation: ModelConfig, version_id: str
    ) -> StoryState:
        version = ProseVersion(
            id=version_id,
            created_at=now_iso(),
            generation=generation,
            prose_text=prose_text,
        )
        return self._updated(
            final_prose_versions=[*self.final_prose_versions, version]
        )
