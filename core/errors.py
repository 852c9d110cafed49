# core/errors.py
"""Exception hierarchy for scene generation calls."""

from __future__ import annotations


class GenerationError(Exception):
    """Terminal failure of a single generation call."""


class ContentBlockedError(GenerationError):
    """The safety gate rejected the prompt or the model output."""

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = list(reasons)
        super().__init__(
            f"Blocked by local safety filter: {' '.join(self.reasons)}".strip()
        )


class MalformedOutputError(GenerationError):
    """Structured output could not be parsed, even after the repair call."""

    def __init__(self, message: str, diagnostic: str | None = None) -> None:
        self.diagnostic = diagnostic
        full = f"{message} {diagnostic or ''}".strip()
        super().__init__(full)


class BackendUnavailableError(GenerationError):
    """The text generation backend could not be reached or answered with an error."""


class SkeletonLockedError(GenerationError):
    """A locked scene skeleton cannot be replaced."""


class GenerationCancelled(Exception):
    """A generation call was stopped through its cancellation token.

    Not a :class:`GenerationError`: callers report it as "stopped", not failed.
    """
