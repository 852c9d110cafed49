# storage/project_store.py
"""Asynchronous JSON persistence for story projects and user settings."""

from __future__ import annotations

import asyncio
import json
import os
import re
from typing import Any

import structlog
from config import settings
from pydantic import ValidationError

from models import AppSettings, StoryState

logger = structlog.get_logger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9_-]")


def normalize_settings(raw: Any) -> AppSettings:
    """Merge stored settings over the defaults; anything invalid gives defaults."""
    if not isinstance(raw, dict):
        return AppSettings()
    defaults = AppSettings().model_dump()
    merged = {**defaults, **raw}
    stored_generation = raw.get("generation")
    if isinstance(stored_generation, dict):
        merged["generation"] = {**defaults["generation"], **stored_generation}
    try:
        return AppSettings.model_validate(merged)
    except ValidationError as exc:
        logger.warning("Stored settings are invalid. Using defaults.", error=str(exc))
        return AppSettings()


class ProjectStore:
    """Stores one JSON document per project id under ``projects_dir``."""

    def __init__(
        self,
        base_dir: str = settings.BASE_OUTPUT_DIR,
        projects_dir: str = settings.PROJECTS_DIR,
        settings_file: str = settings.SETTINGS_FILE,
    ) -> None:
        self.base_dir = base_dir
        self.projects_dir = os.path.join(base_dir, projects_dir)
        self.settings_path = os.path.join(base_dir, settings_file)
        os.makedirs(self.projects_dir, exist_ok=True)

    def project_path(self, project_id: str) -> str:
        safe_id = _SAFE_ID.sub("_", project_id)
        return os.path.join(self.projects_dir, f"{safe_id}.json")

    # --- projects -------------------------------------------------------

    async def save_project(self, state: StoryState) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._save_project_sync, state)

    def _save_project_sync(self, state: StoryState) -> str:
        path = self.project_path(state.id)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(state.model_dump_json(indent=2))
        os.replace(tmp_path, path)
        logger.info(f"Saved project '{state.title}'.", project_id=state.id, path=path)
        return path

    async def load_project(self, project_id: str) -> StoryState | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._load_project_sync, self.project_path(project_id)
        )

    def _load_project_sync(self, path: str) -> StoryState | None:
        """Read and normalize one stored project.

        Missing, unreadable or invalid documents give ``None``. Outline
        fields absent from older documents take their defaults.
        """
        if not os.path.exists(path):
            return None
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Could not read stored project.", path=path, error=str(exc))
            return None
        try:
            return StoryState.model_validate(data)
        except ValidationError as exc:
            logger.error("Stored project is invalid.", path=path, error=str(exc))
            return None

    async def list_projects(self) -> list[StoryState]:
        """All readable projects, most recently updated first."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._list_projects_sync)

    def _list_projects_sync(self) -> list[StoryState]:
        projects: list[StoryState] = []
        for name in sorted(os.listdir(self.projects_dir)):
            if not name.endswith(".json"):
                continue
            project = self._load_project_sync(os.path.join(self.projects_dir, name))
            if project is not None:
                projects.append(project)
        projects.sort(key=lambda p: p.updated_at, reverse=True)
        return projects

    async def delete_project(self, project_id: str) -> bool:
        path = self.project_path(project_id)
        if not os.path.exists(path):
            return False
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, os.remove, path)
        logger.info("Deleted project.", project_id=project_id)
        return True

    async def export_text(self, path: str, contents: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_text_sync, path, contents)

    def _write_text_sync(self, path: str, contents: str) -> None:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(contents)

    # --- settings -------------------------------------------------------

    async def load_settings(self) -> AppSettings:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._load_settings_sync)

    def _load_settings_sync(self) -> AppSettings:
        if not os.path.exists(self.settings_path):
            return AppSettings()
        try:
            with open(self.settings_path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read settings. Using defaults.", error=str(exc))
            return AppSettings()
        return normalize_settings(raw)

    async def save_settings(self, app_settings: AppSettings) -> None:
        payload = normalize_settings(app_settings.model_dump()).model_dump_json(indent=2)
        await self.export_text(self.settings_path, payload)
        logger.info("Saved settings.", path=self.settings_path)