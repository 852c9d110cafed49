# orchestration/raw_output_log.py
"""Bounded rolling log of raw backend outputs for post-hoc inspection."""

from __future__ import annotations

import json
import os
from collections import deque
from dataclasses import asdict, dataclass

import structlog
from config import settings

from models import now_iso

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RawOutputEntry:
    at: str
    label: str
    content: str


class RawOutputLog:
    """Keeps the most recent ``capacity`` raw outputs; oldest are evicted."""

    def __init__(self, capacity: int = settings.RAW_OUTPUT_LOG_CAPACITY) -> None:
        self.capacity = capacity
        self._entries: deque[RawOutputEntry] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, label: str, content: str) -> None:
        self._entries.append(RawOutputEntry(at=now_iso(), label=label, content=content))
        logger.debug(
            "Raw model output recorded.", label=label, content_length=len(content)
        )

    def entries(self) -> list[RawOutputEntry]:
        """Newest first."""
        return list(reversed(self._entries))

    def clear(self) -> None:
        self._entries.clear()

    def dump(self, path: str) -> None:
        """Write the log to ``path`` as JSON (newest first)."""
        log_dir = os.path.dirname(path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump([asdict(e) for e in self.entries()], f, indent=2)

    @classmethod
    def load(cls, path: str, capacity: int = settings.RAW_OUTPUT_LOG_CAPACITY) -> RawOutputLog:
        """Restore a log written by :meth:`dump`; a missing file gives an empty log."""
        log = cls(capacity)
        if not os.path.exists(path):
            return log
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError:
            logger.error("Error decoding raw output log. Starting empty.", path=path)
            return log
        if not isinstance(data, list):
            return log
        for item in reversed(data):
            if isinstance(item, dict) and {"at", "label", "content"} <= item.keys():
                log._entries.append(
                    RawOutputEntry(
                        at=str(item["at"]),
                        label=str(item["label"]),
                        content=str(item["content"]),
                    )
                )
        return log
