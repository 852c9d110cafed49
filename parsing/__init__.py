# parsing/__init__.py
"""Structured output parsing for backend responses.

Both parsers are total: they never raise, returning a :class:`ParseResult`
whose ``parsed`` is ``None`` and whose ``error`` carries the most specific
diagnostic available.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import ValidationError

from models import ParseResult, SceneSkeleton, StructuredGenerationOutput

logger = structlog.get_logger(__name__)


def _extract_brace_span(raw: str) -> str | None:
    """Return the text from the first ``{`` to the last ``}``, if any.

    Not a balanced-brace scan: stray braces around a corrupted interior can
    still produce a span that happens to parse.
    """
    first = raw.find("{")
    last = raw.rfind("}")
    if first == -1 or last == -1 or last <= first:
        return None
    return raw[first : last + 1]


def _safe_parse(
    text: str,
    validate: Callable[[Any], Any],
    normalize: Callable[[Any], Any] | None = None,
) -> ParseResult:
    try:
        candidate = json.loads(text)
    except json.JSONDecodeError as e:
        return ParseResult(parsed=None, error=str(e))
    except (TypeError, ValueError, RecursionError) as e:
        return ParseResult(parsed=None, error=f"Unknown JSON parse error: {e}")

    if normalize is not None:
        candidate = normalize(candidate)
    try:
        return ParseResult(parsed=validate(candidate))
    except ValidationError as e:
        return ParseResult(parsed=None, error=str(e))


def _parse_with_recovery(
    raw: str,
    validate: Callable[[Any], Any],
    fallback_error: str,
    normalize: Callable[[Any], Any] | None = None,
) -> ParseResult:
    if not isinstance(raw, str):
        return ParseResult(parsed=None, error=fallback_error)

    direct = _safe_parse(raw, validate, normalize)
    if direct.ok:
        return direct

    span = _extract_brace_span(raw)
    if span is not None:
        recovered = _safe_parse(span, validate, normalize)
        if recovered.ok:
            logger.info(
                "Recovered structured output from surrounding text.",
                raw_length=len(raw),
                span_length=len(span),
            )
            recovered.recovered_from_substring = True
            return recovered

    return ParseResult(parsed=None, error=direct.error or fallback_error)


def parse_script_json(raw: str) -> ParseResult[StructuredGenerationOutput]:
    """Parse beat generation output into :class:`StructuredGenerationOutput`."""
    return _parse_with_recovery(
        raw,
        StructuredGenerationOutput.model_validate,
        "Could not parse JSON output.",
    )


def _normalize_skeleton(candidate: Any) -> Any:
    """Coerce ``constraints`` into two string lists before validation."""
    if not isinstance(candidate, dict):
        return candidate
    obj = dict(candidate)
    constraints = obj.get("constraints")
    if not isinstance(constraints, dict):
        obj["constraints"] = {"must_include": [], "must_avoid": []}
        return obj

    def _strings(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, str)]

    obj["constraints"] = {
        "must_include": _strings(constraints.get("must_include")),
        "must_avoid": _strings(constraints.get("must_avoid")),
    }
    return obj


def parse_scene_skeleton_json(raw: str) -> ParseResult[SceneSkeleton]:
    """Parse a scene skeleton proposal, tolerating sloppy ``constraints``."""
    return _parse_with_recovery(
        raw,
        SceneSkeleton.model_validate,
        "Could not parse scene skeleton JSON.",
        normalize=_normalize_skeleton,
    )


__all__ = ["parse_script_json", "parse_scene_skeleton_json"]
