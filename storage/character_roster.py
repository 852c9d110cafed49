# storage/character_roster.py
"""Loads character cards from a directory of JSON files."""

from __future__ import annotations

import json
import os

import structlog
from config import settings
from pydantic import ValidationError

from models import Character

logger = structlog.get_logger(__name__)


def load_character_roster(directory: str = settings.CHARACTERS_DIR) -> list[Character]:
    """Return every valid card in ``directory`` sorted by name.

    Unreadable or invalid cards are skipped with a warning.
    """
    if not os.path.isdir(directory):
        logger.warning("Character directory not found.", directory=directory)
        return []

    roster: list[Character] = []
    for name in sorted(os.listdir(directory)):
        if not name.endswith(".json"):
            continue
        path = os.path.join(directory, name)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            roster.append(Character.model_validate(data))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Skipping invalid character card.", path=path, error=str(exc))
    roster.sort(key=lambda c: c.name)
    logger.debug(f"Loaded {len(roster)} character cards.", directory=directory)
    return roster


def find_characters(roster: list[Character], ids: list[str]) -> list[Character]:
    """Pick cards by id, keeping the order of ``ids``; unknown ids raise KeyError."""
    by_id = {c.id: c for c in roster}
    missing = [i for i in ids if i not in by_id]
    if missing:
        raise KeyError(f"Unknown character id(s): {', '.join(missing)}")
    return [by_id[i] for i in ids]
