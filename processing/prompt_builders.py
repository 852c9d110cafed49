# processing/prompt_builders.py
"""Assemble backend prompts from story state."""

from __future__ import annotations

from config import settings
from prompt_renderer import render_prompt

from models import Character, StoryState
from processing.context_window import build_context_window

LENGTH_GUIDANCE: dict[str, str] = {
    "short": "Target ~800-1500 words in final narrative.",
    "medium": "Target ~1500-3000 words in final narrative.",
    "long": "Target ~3000-6000 words in final narrative.",
}


def _script_context(state: StoryState, beats_to_generate: int) -> dict:
    window = build_context_window(state, settings.CONTEXT_RECENT_BEATS)
    skeleton = (
        state.scene_skeleton
        if state.outline_mode_enabled and state.scene_skeleton
        else None
    )
    return {
        "state": state,
        "window": window,
        "transcript": window.recent_beats,
        "length_guidance": LENGTH_GUIDANCE[state.length_target],
        "persona_chars": settings.PERSONA_SNIPPET_CHARS,
        "skeleton": skeleton,
        "tracker": state.latest_snapshot,
        "guidance": state.pending_guidance_note,
        "beats_to_generate": beats_to_generate,
    }


def build_script_prompt(state: StoryState, beats_to_generate: int) -> str:
    """Prompt for the next batch of beats.

    Includes the skeleton only in outline mode, and the latest tracker
    snapshot and pending guidance note whenever they exist.
    """
    return render_prompt(
        "script_engine/script_beats.j2", _script_context(state, beats_to_generate)
    )


def build_beat_repair_prompt(
    state: StoryState, beats_to_generate: int, repair_instruction: str
) -> str:
    context = _script_context(state, beats_to_generate)
    context["repair_instruction"] = repair_instruction
    return render_prompt("script_engine/beat_repair.j2", context)


def build_json_repair_prompt(raw_output: str) -> str:
    return render_prompt("script_engine/json_repair.j2", {"raw_output": raw_output})


def build_scene_skeleton_prompt(state: StoryState) -> str:
    return render_prompt("skeleton_engine/scene_skeleton.j2", {"state": state})


def build_scene_skeleton_repair_prompt(raw_output: str) -> str:
    return render_prompt(
        "skeleton_engine/scene_skeleton_repair.j2", {"raw_output": raw_output}
    )


def build_summary_prompt(state: StoryState) -> str:
    beats = state.story_beats[-settings.SUMMARY_TRANSCRIPT_BEATS :]
    return render_prompt(
        "script_engine/summary.j2", {"state": state, "transcript": beats}
    )


def build_narrative_prompt(
    state: StoryState,
    pacing: int,
    atmosphere: int,
    revision_instruction: str | None = None,
) -> str:
    return render_prompt(
        "narrative_engine/narrative.j2",
        {
            "state": state,
            "transcript": state.story_beats,
            "length_guidance": LENGTH_GUIDANCE[state.length_target],
            "pacing": pacing,
            "atmosphere": atmosphere,
            "revision_instruction": revision_instruction,
        },
    )


def build_narrative_continuation_prompt(state: StoryState, partial_prose: str) -> str:
    tail = partial_prose[-settings.CONTINUATION_TAIL_CHARS :]
    return render_prompt(
        "narrative_engine/narrative_continuation.j2", {"state": state, "tail": tail}
    )


def build_premise_suggestion_prompt(
    setting: str, tone: str, cast: list[Character]
) -> str:
    return render_prompt(
        "script_engine/premise_suggestion.j2",
        {"setting": setting, "tone": tone, "cast": cast},
    )
