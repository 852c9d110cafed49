# orchestration/story_engine.py
"""Generation orchestrator for constrained multi-turn scenes.

Every public coroutine takes a :class:`StoryState` snapshot and either
returns a result (or a new state) or raises; the input state is never
modified, so a failed call leaves the caller's state untouched.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from config import settings

from core.cancellation import CancellationToken
from core.errors import ContentBlockedError, GenerationError, MalformedOutputError
from core.llm_interface import TextGenerator, TokenCallback, clean_model_response
from core.safety import LexicalSafetyGate, SafetyGate
from models import (
    AppSettings,
    Beat,
    BeatGenerationResult,
    Character,
    ModelConfig,
    NarrativePassResult,
    ParseResult,
    SceneSkeleton,
    StateTrackerSnapshot,
    StoryState,
    StructuredGenerationOutput,
    SummaryRefreshResult,
    now_iso,
)
from orchestration.raw_output_log import RawOutputLog
from parsing import parse_scene_skeleton_json, parse_script_json
from processing.context_window import should_refresh_summary, summary_to_beat
from processing.passive_scene import PassiveSceneAnalyzer
from processing.prompt_builders import (
    build_beat_repair_prompt,
    build_json_repair_prompt,
    build_narrative_continuation_prompt,
    build_narrative_prompt,
    build_premise_suggestion_prompt,
    build_scene_skeleton_prompt,
    build_scene_skeleton_repair_prompt,
    build_script_prompt,
    build_summary_prompt,
)

logger = structlog.get_logger(__name__)

PASSIVE_WARNING = "Scene may be passive; consider regenerating."
SUMMARY_GUIDANCE_NOTE = "Next beats must include protagonist decision + cost."

_SENTENCE_END = re.compile(r"[.!?][\"')\]]*$")


def ends_like_complete_sentence(text: str) -> bool:
    """True when ``text`` ends in terminal punctuation plus optional closers."""
    trimmed = text.strip()
    if not trimmed:
        return False
    return bool(_SENTENCE_END.search(trimmed))


def to_beats(parsed: StructuredGenerationOutput, start_index: int) -> list[Beat]:
    """Convert structured beats to :class:`Beat` records at contiguous indices."""
    beats: list[Beat] = []
    for generated in parsed.beats:
        content = generated.content.strip()
        if not content:
            logger.warning(
                "Dropping generated beat with empty content.", speaker=generated.speaker
            )
            continue
        beats.append(
            Beat(
                index=start_index + len(beats),
                speaker=generated.speaker,
                content=content,
                beat_goal=generated.beat_goal,
                timestamp=now_iso(),
            )
        )
    return beats


@dataclass
class StoryAdvance:
    """New state after one beat request plus what happened along the way."""

    state: StoryState
    beats: BeatGenerationResult
    summary: SummaryRefreshResult


def apply_beat_result(state: StoryState, result: BeatGenerationResult) -> StoryState:
    """Append generated beats and record the snapshot and warning.

    The pending guidance note was consumed by the prompt and is cleared.
    """
    return _record_outcome(state.append_beats(result.new_beats), result)


def _record_outcome(state: StoryState, result: BeatGenerationResult) -> StoryState:
    next_state = state
    if result.tracker_snapshot is not None:
        next_state = next_state.append_snapshot(result.tracker_snapshot)
    return next_state.model_copy(
        update={"passive_warning": result.passive_warning, "pending_guidance_note": None}
    )


def apply_summary_refresh(state: StoryState, refresh: SummaryRefreshResult) -> StoryState:
    next_state = state
    if refresh.summary:
        next_state = next_state.model_copy(
            update={"scene_summary": refresh.summary, "updated_at": now_iso()}
        )
    if refresh.tracker_snapshot is not None:
        next_state = next_state.append_snapshot(refresh.tracker_snapshot)
    if refresh.guidance_note:
        next_state = next_state.model_copy(
            update={"pending_guidance_note": refresh.guidance_note}
        )
    return next_state


def insert_summary_marker(state: StoryState, summary: str | None = None) -> StoryState:
    """Append a synthetic marker beat carrying the current or given summary."""
    text = (summary if summary is not None else state.scene_summary).strip()
    if not text:
        raise ValueError("No summary to insert.")
    return state.append_beats([summary_to_beat(text, state.next_beat_index)])


def apply_scene_skeleton(state: StoryState, skeleton: SceneSkeleton) -> StoryState:
    """Install a new skeleton, enabling outline mode and clearing stale notes."""
    next_state = state.with_scene_skeleton(skeleton)
    return next_state.model_copy(
        update={
            "outline_mode_enabled": True,
            "passive_warning": None,
            "pending_guidance_note": None,
        }
    )


class StoryEngine:
    """Sequences backend calls, parsing, repair and validation."""

    def __init__(
        self,
        generator: TextGenerator,
        app_settings: AppSettings | None = None,
        safety_gate: SafetyGate | None = None,
        raw_log: RawOutputLog | None = None,
        analyzer: PassiveSceneAnalyzer | None = None,
    ) -> None:
        self.generator = generator
        self.app_settings = app_settings or AppSettings()
        self.safety_gate = safety_gate or LexicalSafetyGate()
        self.raw_log = raw_log if raw_log is not None else RawOutputLog()
        self.analyzer = analyzer or PassiveSceneAnalyzer()

    @property
    def generation_config(self) -> ModelConfig:
        return self.app_settings.generation

    # --- shared steps ---------------------------------------------------

    def _check_safety(self, text: str, direction: str) -> None:
        result = self.safety_gate.scan(text)
        if result.blocked:
            logger.warning(
                f"Safety gate blocked {direction} text.", reasons=result.reasons
            )
            raise ContentBlockedError(result.reasons)

    async def _call(
        self,
        prompt: str,
        config: ModelConfig,
        label: str,
        *,
        cancel_token: CancellationToken | None = None,
        stream: bool = False,
        on_token: TokenCallback | None = None,
    ) -> str:
        """Safety-check the prompt, call the backend and log the raw output."""
        self._check_safety(prompt, "inbound")
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if not stream:
            response = await self.generator.generate(
                prompt, config, stream=False, cancel_token=cancel_token
            )
            raw = response.text
        else:
            chunks: list[str] = []

            def _collect(token: str) -> None:
                chunks.append(token)
                if on_token is not None:
                    on_token(token)

            response = await self.generator.generate(
                prompt,
                config,
                stream=True,
                cancel_token=cancel_token,
                on_token=_collect,
            )
            raw = "".join(chunks) or response.text

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        self.raw_log.append(label, raw)
        return raw

    async def _parse_with_json_repair(
        self,
        raw: str,
        parser: Callable[[str], ParseResult],
        repair_prompt_builder: Callable[[str], str],
        label: str,
        cancel_token: CancellationToken | None,
    ) -> ParseResult:
        """Parse ``raw``; on failure issue exactly one low-temperature repair call."""
        parsed = parser(raw)
        if parsed.ok:
            return parsed

        logger.warning(
            "Structured output did not parse. Requesting JSON repair.",
            label=label,
            error=parsed.error,
        )
        repaired_raw = await self._call(
            repair_prompt_builder(raw),
            self.generation_config.capped(temperature=settings.JSON_REPAIR_TEMPERATURE_CAP),
            f"{label}_jsonfix",
            cancel_token=cancel_token,
        )
        return parser(repaired_raw)

    # --- beat generation ------------------------------------------------

    async def generate_script_beats(
        self,
        state: StoryState,
        beats_to_generate: int = 1,
        *,
        cancel_token: CancellationToken | None = None,
        on_raw_stream: TokenCallback | None = None,
    ) -> BeatGenerationResult:
        """Generate the next beats, repairing passive content once in outline mode."""
        prompt = build_script_prompt(state, beats_to_generate)
        raw = await self._call(
            prompt,
            self.generation_config,
            "script_raw",
            cancel_token=cancel_token,
            stream=True,
            on_token=on_raw_stream,
        )

        parsed = await self._parse_with_json_repair(
            raw, parse_script_json, build_json_repair_prompt, "script", cancel_token
        )
        if parsed.parsed is None:
            raise MalformedOutputError(
                "Model output was not valid JSON after repair.", parsed.error
            )
        output: StructuredGenerationOutput = parsed.parsed

        self._check_safety(output.model_dump_json(), "outbound")

        start_index = state.next_beat_index
        new_beats = to_beats(output, start_index)
        result = BeatGenerationResult(
            new_beats=new_beats,
            scene_status=output.scene_status,
            notes=output.notes,
        )
        logger.info(
            "Generated beats.",
            requested=beats_to_generate,
            received=len(new_beats),
            scene_status=output.scene_status,
            recovered_from_substring=parsed.recovered_from_substring,
        )

        skeleton = state.scene_skeleton
        if not (state.outline_mode_enabled and skeleton is not None):
            return result

        validation = self.analyzer.analyze([*state.beats, *new_beats], skeleton)
        result.tracker_snapshot = validation.tracker
        if validation.valid or not validation.repair_instruction:
            return result

        await self._constraint_repair(
            state, result, skeleton, validation.repair_instruction, cancel_token
        )
        return result

    async def _constraint_repair(
        self,
        state: StoryState,
        result: BeatGenerationResult,
        skeleton: SceneSkeleton,
        repair_instruction: str,
        cancel_token: CancellationToken | None,
    ) -> None:
        """One attempt to regenerate the tail of ``result.new_beats``.

        Updates ``result`` in place. Never raises for an unsatisfied
        constraint; it degrades to :data:`PASSIVE_WARNING` instead.
        """
        new_beats = result.new_beats
        repair_count = max(
            1, min(self.app_settings.repair_beats_count, len(new_beats))
        )
        kept = new_beats[: max(0, len(new_beats) - repair_count)]
        base_state = state.model_copy(update={"beats": [*state.beats, *kept]})

        logger.info(
            "Scene looks passive. Attempting constraint repair.",
            repair_count=repair_count,
            instruction=repair_instruction,
        )
        raw = await self._call(
            build_beat_repair_prompt(base_state, repair_count, repair_instruction),
            self.generation_config,
            "script_constraint_repair_raw",
            cancel_token=cancel_token,
        )
        parsed = await self._parse_with_json_repair(
            raw,
            parse_script_json,
            build_json_repair_prompt,
            "script_constraint_repair",
            cancel_token,
        )
        if parsed.parsed is None:
            logger.warning(
                "Constraint repair output unusable. Keeping original beats.",
                error=parsed.error,
            )
            result.passive_warning = PASSIVE_WARNING
            return

        self._check_safety(parsed.parsed.model_dump_json(), "outbound")

        repaired_beats = to_beats(parsed.parsed, base_state.next_beat_index)
        result.new_beats = [*kept, *repaired_beats]
        result.repair_applied = True

        second = self.analyzer.analyze([*state.beats, *result.new_beats], skeleton)
        result.tracker_snapshot = second.tracker
        if not second.valid:
            logger.warning(
                "Scene still passive after constraint repair.", missing=second.missing
            )
            result.passive_warning = PASSIVE_WARNING

    # --- scene skeleton -------------------------------------------------

    async def generate_scene_skeleton(
        self, state: StoryState, *, cancel_token: CancellationToken | None = None
    ) -> SceneSkeleton:
        raw = await self._call(
            build_scene_skeleton_prompt(state),
            self.generation_config,
            "skeleton_raw",
            cancel_token=cancel_token,
        )
        parsed = await self._parse_with_json_repair(
            raw,
            parse_scene_skeleton_json,
            build_scene_skeleton_repair_prompt,
            "skeleton",
            cancel_token,
        )
        if parsed.parsed is None:
            raise MalformedOutputError(
                "Model output was not valid SceneSkeleton JSON after repair.",
                parsed.error,
            )
        self._check_safety(parsed.parsed.model_dump_json(), "outbound")
        logger.info("Scene skeleton generated.", protagonist=parsed.parsed.protagonist)
        return parsed.parsed

    # --- summary refresh ------------------------------------------------

    async def maybe_refresh_summary(
        self, state: StoryState, *, cancel_token: CancellationToken | None = None
    ) -> SummaryRefreshResult:
        if not should_refresh_summary(state):
            return SummaryRefreshResult()

        logger.info("Refreshing rolling summary.", story_beats=len(state.story_beats))
        raw = await self._call(
            build_summary_prompt(state),
            self.generation_config.capped(
                temperature=settings.SUMMARY_TEMPERATURE_CAP,
                num_predict=settings.SUMMARY_NUM_PREDICT,
            ),
            "summary_raw",
            cancel_token=cancel_token,
        )
        refresh = SummaryRefreshResult(summary=clean_model_response(raw).strip())

        skeleton = state.scene_skeleton
        if state.outline_mode_enabled and skeleton is not None:
            validation = self.analyzer.analyze(state.beats, skeleton)
            tracker: StateTrackerSnapshot = validation.tracker
            refresh.tracker_snapshot = tracker
            if tracker.protagonist_commitment is None or (
                not tracker.has_decision and not tracker.has_cost_or_consequence
            ):
                refresh.guidance_note = SUMMARY_GUIDANCE_NOTE
        return refresh

    # --- narrative pass -------------------------------------------------

    async def generate_narrative_pass(
        self,
        state: StoryState,
        *,
        revision_instruction: str | None = None,
        cancel_token: CancellationToken | None = None,
        on_token: TokenCallback | None = None,
    ) -> NarrativePassResult:
        """Render the transcript as prose, finishing a cut-off ending if needed."""
        prompt = build_narrative_prompt(
            state,
            self.app_settings.style_pacing,
            self.app_settings.style_atmosphere,
            revision_instruction,
        )
        raw = await self._call(
            prompt,
            self.generation_config,
            "narrative_raw",
            cancel_token=cancel_token,
            stream=True,
            on_token=on_token,
        )
        prose = clean_model_response(raw).strip()

        attempts = 0
        continuation_config = self.generation_config.capped(
            temperature=settings.CONTINUATION_TEMPERATURE_CAP,
            num_predict=settings.CONTINUATION_NUM_PREDICT,
        )
        while attempts < settings.MAX_CONTINUATION_ATTEMPTS:
            if ends_like_complete_sentence(prose):
                break
            attempts += 1
            logger.info("Narrative ends mid-sentence. Requesting continuation.", attempt=attempts)
            addition = (
                await self._call(
                    build_narrative_continuation_prompt(state, prose),
                    continuation_config,
                    "narrative_continuation_raw",
                    cancel_token=cancel_token,
                )
            ).strip()
            if not addition:
                break
            prose = f"{prose} {addition}"
            if on_token is not None:
                on_token(f" {addition}")

        self._check_safety(prose, "outbound")
        self.raw_log.append("narrative_output", prose)
        return NarrativePassResult(prose=prose, continuation_attempts=attempts)

    # --- misc -----------------------------------------------------------

    async def suggest_premise(
        self,
        setting: str,
        tone: str,
        cast: list[Character],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        raw = await self._call(
            build_premise_suggestion_prompt(setting, tone, cast),
            self.generation_config,
            "premise_raw",
            cancel_token=cancel_token,
        )
        return clean_model_response(raw).strip()

    # --- state-level operations -----------------------------------------

    async def ensure_scene_skeleton(
        self,
        state: StoryState,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> StoryState:
        """Generate and install a skeleton when outline mode is on without one."""
        if not state.outline_mode_enabled or state.scene_skeleton is not None:
            return state
        logger.info("Outline mode has no scene skeleton. Generating one first.")
        skeleton = await self.generate_scene_skeleton(state, cancel_token=cancel_token)
        return apply_scene_skeleton(state, skeleton)

    async def advance_story(
        self,
        state: StoryState,
        beats_to_generate: int = 1,
        *,
        cancel_token: CancellationToken | None = None,
        on_raw_stream: TokenCallback | None = None,
    ) -> StoryAdvance:
        """Generate beats, then consult the summary refresh policy.

        In outline mode without a skeleton, one is generated first. The
        returned state replaces the caller's state as a whole.
        """
        state = await self.ensure_scene_skeleton(state, cancel_token=cancel_token)
        beats = await self.generate_script_beats(
            state,
            beats_to_generate,
            cancel_token=cancel_token,
            on_raw_stream=on_raw_stream,
        )
        next_state = apply_beat_result(state, beats)
        summary = await self.maybe_refresh_summary(next_state, cancel_token=cancel_token)
        next_state = apply_summary_refresh(next_state, summary)
        return StoryAdvance(state=next_state, beats=beats, summary=summary)

    async def run_scene(
        self,
        state: StoryState,
        beat_count: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> StoryState:
        """Generate ``beat_count`` beats one at a time."""
        current = await self.ensure_scene_skeleton(state, cancel_token=cancel_token)
        for _ in range(beat_count):
            advance = await self.advance_story(current, 1, cancel_token=cancel_token)
            current = advance.state
        return current

    async def regenerate_beat(
        self,
        state: StoryState,
        index: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> StoryAdvance:
        """Replace the beat at ``index`` with a freshly generated one.

        The model sees the story with the target beat removed; the new beat is
        inserted back at the same position.
        """
        position = next(
            (pos for pos, beat in enumerate(state.beats) if beat.index == index), None
        )
        if position is None:
            raise IndexError(f"No beat at index {index}.")

        base_state = state.delete_beat(index)
        beats = await self.generate_script_beats(base_state, 1, cancel_token=cancel_token)
        if not beats.new_beats:
            raise GenerationError("No beat returned by model.")

        regenerated = beats.new_beats[0]
        inserted = [
            *base_state.beats[:position],
            regenerated,
            *base_state.beats[position:],
        ]
        next_state = _record_outcome(base_state.with_beats(inserted), beats)
        # The beat count is unchanged, so the refresh boundary has not moved.
        return StoryAdvance(state=next_state, beats=beats, summary=SummaryRefreshResult())

    def record_prose(self, state: StoryState, narrative: NarrativePassResult) -> StoryState:
        """Store a narrative pass as a new prose version."""
        return state.with_prose_version(
            narrative.prose, self.generation_config, version_id=f"prose_{uuid.uuid4().hex[:12]}"
        )

