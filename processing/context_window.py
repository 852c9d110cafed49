# processing/context_window.py
"""Rolling context window and summary refresh policy."""

from __future__ import annotations

from config import settings
from models import STAGE_SPEAKER, SUMMARY_PREFIX, Beat, ContextWindow, StoryState

NO_SUMMARY_PLACEHOLDER = "No summary yet."


def build_context_window(
    state: StoryState, max_recent_beats: int = settings.CONTEXT_RECENT_BEATS
) -> ContextWindow:
    """Return the summary and most recent story beats the model should see."""
    story_beats = state.story_beats
    recent = story_beats[-max_recent_beats:] if max_recent_beats > 0 else []
    summary = state.scene_summary.strip() if state.scene_summary else ""
    return ContextWindow(
        summary=summary or NO_SUMMARY_PLACEHOLDER,
        recent_beats=recent,
    )


def should_refresh_summary(
    state: StoryState, interval: int = settings.SUMMARY_REFRESH_INTERVAL
) -> bool:
    """True exactly when the story beat count lands on a refresh boundary.

    Edge-triggered: a boundary that was skipped does not fire later.
    """
    count = len(state.story_beats)
    if count < interval:
        return False
    return count % interval == 0


def summary_to_beat(summary: str, index: int) -> Beat:
    """Wrap a summary in a synthetic marker beat."""
    return Beat(
        index=index,
        speaker=STAGE_SPEAKER,
        content=f"{SUMMARY_PREFIX} {summary}",
        is_summary=True,
    )
