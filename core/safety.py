# core/safety.py
"""Local lexical safety gate consulted before and after backend calls."""

from __future__ import annotations

from typing import Protocol

import structlog

from models.generation_models import SafetyResult

logger = structlog.get_logger(__name__)

MINOR_TERMS = [
    "minor",
    "child",
    "underage",
    "preteen",
    "teen",
    "schoolgirl",
    "schoolboy",
]

EXPLICIT_SEXUAL_TERMS = [
    "explicit sex",
    "sexual act",
    "rape",
    "molest",
    "pornographic",
    "incest",
]

WRONGDOING_TERMS = [
    "how to make a bomb",
    "build a bomb",
    "bypass a lock",
    "steal a car",
    "credit card fraud",
    "poison someone",
    "evade police",
]


class SafetyGate(Protocol):
    def scan(self, text: str) -> SafetyResult: ...


def _includes_any(text: str, terms: list[str]) -> bool:
    normalized = text.lower()
    return any(term in normalized for term in terms)


class LexicalSafetyGate:
    """Blocks text containing disallowed term combinations.

    Pure and synchronous: substring matching on the lowercased text, no
    network access.
    """

    def scan(self, text: str) -> SafetyResult:
        categories: list[str] = []
        reasons: list[str] = []

        if _includes_any(text, MINOR_TERMS) and _includes_any(
            text, EXPLICIT_SEXUAL_TERMS
        ):
            categories.append("minor_sexual_content")
            reasons.append("Detected potential explicit sexual content involving minors.")

        if _includes_any(text, WRONGDOING_TERMS):
            categories.append("wrongdoing_instructions")
            reasons.append("Detected instructions for wrongdoing.")

        if categories:
            logger.warning("Safety gate blocked text.", categories=categories)

        return SafetyResult(
            blocked=bool(categories), categories=categories, reasons=reasons
        )
