# processing/passive_scene.py
"""Lexical tripwire for scenes that fail to advance the protagonist.

All checks are keyword and word-overlap matches on lowercased text. The
result is deterministic and intentionally coarse.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

import structlog
from config import settings

from models import (
    Beat,
    SceneSkeleton,
    StateTrackerSnapshot,
    ValidationResult,
    now_iso,
)

logger = structlog.get_logger(__name__)

DECISION_PATTERNS = [
    "i will",
    "i won't",
    "i choose",
    "decide",
    "must",
    "refuse",
    "swear",
]
ACTION_PATTERNS = [
    "steps",
    "grabs",
    "draws",
    "opens",
    "runs",
    "strikes",
    "kneels",
    "moves",
]
CONSEQUENCE_PATTERNS = [
    "cost",
    "lost",
    "wounded",
    "blood",
    "burned",
    "ruined",
    "consequence",
    "price",
]

MISSING_DECISION = "protagonist decision aligned to skeleton.choice"
MISSING_CONSEQUENCE = "consequence aligned to skeleton.cost or skeleton.outcome"
MISSING_COMMITMENT = "spoken refusal/commitment or physical action by protagonist"

_WORD_SPLIT = re.compile(r"[^a-z0-9]+")


def _words(text: str) -> list[str]:
    return [w for w in _WORD_SPLIT.split(text.lower()) if w]


def _includes_any(text: str, patterns: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(p in lowered for p in patterns)


def _count_hits(text: str, words: Iterable[str]) -> int:
    lowered = text.lower()
    return sum(1 for word in words if word in lowered)


class PassiveSceneAnalyzer:
    """Check beats against a skeleton's decision and consequence shape."""

    def __init__(
        self,
        min_hits: int = settings.LEXICAL_OVERLAP_MIN_HITS,
        min_word_length: int = settings.LEXICAL_OVERLAP_MIN_WORD_LENGTH,
        max_candidates: int = settings.LEXICAL_OVERLAP_MAX_CANDIDATES,
        choice_keyword_min_length: int = settings.CHOICE_KEYWORD_MIN_LENGTH,
    ) -> None:
        self.min_hits = min_hits
        self.min_word_length = min_word_length
        self.max_candidates = max_candidates
        self.choice_keyword_min_length = choice_keyword_min_length

    def lexical_overlap(self, text: str, anchor: str) -> bool:
        """True when ``text`` contains enough of ``anchor``'s longer words."""
        candidates = [w for w in _words(anchor) if len(w) > self.min_word_length][
            : self.max_candidates
        ]
        if not candidates:
            return False
        return _count_hits(text, candidates) >= self.min_hits

    def choice_keyword_hits(self, text: str, choice: str) -> int:
        keywords = [w for w in _words(choice) if len(w) > self.choice_keyword_min_length]
        return _count_hits(text, keywords)

    @staticmethod
    def protagonist_beats(beats: list[Beat], protagonist: str) -> list[Beat]:
        # Speaker labels can be compound ("HOLMES & WATSON"), so match loosely.
        key = protagonist.lower()
        return [b for b in beats if key in b.speaker.lower()]

    def analyze(
        self,
        beats: list[Beat],
        skeleton: SceneSkeleton,
        guidance_override: str | None = None,
    ) -> ValidationResult:
        protagonist_text = "\n".join(
            b.content for b in self.protagonist_beats(beats, skeleton.protagonist)
        )
        text_all = "\n".join(b.content for b in beats)

        has_decision = (
            self.lexical_overlap(protagonist_text, skeleton.choice)
            or _includes_any(protagonist_text, DECISION_PATTERNS)
            or self.choice_keyword_hits(text_all, skeleton.choice) >= self.min_hits
        )
        has_cost_or_consequence = (
            self.lexical_overlap(text_all, skeleton.cost)
            or self.lexical_overlap(text_all, skeleton.outcome)
            or _includes_any(text_all, CONSEQUENCE_PATTERNS)
        )
        has_commitment_or_action = _includes_any(
            protagonist_text, DECISION_PATTERNS
        ) or _includes_any(protagonist_text, ACTION_PATTERNS)

        missing: list[str] = []
        if not has_decision:
            missing.append(MISSING_DECISION)
        if not has_cost_or_consequence:
            missing.append(MISSING_CONSEQUENCE)
        if not has_commitment_or_action:
            missing.append(MISSING_COMMITMENT)

        if guidance_override is not None:
            guidance_note: str | None = guidance_override
        elif missing:
            guidance_note = (
                "Next beats must include protagonist decision + cost. "
                f"Missing: {', '.join(missing)}."
            )
        else:
            guidance_note = None

        repair_instruction = (
            f"Regenerate to satisfy: {', '.join(missing)}. "
            "Preserve established facts and character voice."
            if missing
            else None
        )

        tracker = StateTrackerSnapshot(
            timestamp=now_iso(),
            beat_index=beats[-1].index if beats else 0,
            protagonist_intent=skeleton.goal,
            protagonist_commitment=skeleton.choice if has_decision else None,
            has_decision=has_decision,
            has_cost_or_consequence=has_cost_or_consequence,
            guidance_note=guidance_note,
        )

        logger.debug(
            "Passive scene analysis complete.",
            beats=len(beats),
            has_decision=has_decision,
            has_cost_or_consequence=has_cost_or_consequence,
            has_commitment_or_action=has_commitment_or_action,
            missing=missing,
        )

        return ValidationResult(
            valid=not missing,
            missing=missing,
            repair_instruction=repair_instruction,
            tracker=tracker,
        )


def analyze_passive_scene(
    beats: list[Beat],
    skeleton: SceneSkeleton,
    guidance_override: str | None = None,
    *,
    min_hits: int = settings.LEXICAL_OVERLAP_MIN_HITS,
    min_word_length: int = settings.LEXICAL_OVERLAP_MIN_WORD_LENGTH,
    max_candidates: int = settings.LEXICAL_OVERLAP_MAX_CANDIDATES,
    choice_keyword_min_length: int = settings.CHOICE_KEYWORD_MIN_LENGTH,
) -> ValidationResult:
    """Run :class:`PassiveSceneAnalyzer` with the given thresholds."""
    analyzer = PassiveSceneAnalyzer(
        min_hits=min_hits,
        min_word_length=min_word_length,
        max_candidates=max_candidates,
        choice_keyword_min_length=choice_keyword_min_length,
    )
    return analyzer.analyze(beats, skeleton, guidance_override)
