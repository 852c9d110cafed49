# orchestration/cli_runner.py
"""Command-line runner for the story engine."""

from __future__ import annotations

import argparse
import asyncio
import signal
import uuid

import structlog
from config import settings
from pydantic import ValidationError
from utils.logging import setup_logging

from core.cancellation import CancellationToken
from core.errors import GenerationCancelled, GenerationError
from core.llm_interface import OllamaService
from models import StoryState
from orchestration.story_engine import StoryEngine, apply_scene_skeleton
from storage.character_roster import find_characters, load_character_roster
from storage.project_store import ProjectStore
from ui.rich_display import SceneDisplay

logger = structlog.get_logger(__name__)


class CliSession:
    """Wires the store, backend and engine together for one CLI invocation."""

    def __init__(self, store: ProjectStore, display: SceneDisplay) -> None:
        self.store = store
        self.display = display
        self.cancel_token = CancellationToken()
        self.service: OllamaService | None = None
        self.engine: StoryEngine | None = None

    async def open(self) -> None:
        app_settings = await self.store.load_settings()
        self.service = OllamaService(base_url=app_settings.ollama_base_url)
        self.engine = StoryEngine(self.service, app_settings=app_settings)

    async def close(self) -> None:
        if self.engine is not None and settings.RAW_OUTPUT_LOG_FILE:
            self.engine.raw_log.dump(settings.RAW_OUTPUT_LOG_FILE)
        if self.service is not None:
            await self.service.aclose()

    async def _load(self, project_id: str) -> StoryState:
        state = await self.store.load_project(project_id)
        if state is None:
            raise GenerationError(f"Project '{project_id}' not found.")
        return state

    async def init(self, args: argparse.Namespace) -> None:
        cast = find_characters(load_character_roster(), args.cast)
        state = StoryState(
            id=f"story_{uuid.uuid4().hex[:12]}",
            title=args.title,
            cast=cast,
            setting=args.setting,
            premise=args.premise,
            tone=args.tone,
            length_target=args.length,
            outline_mode_enabled=args.outline or self.engine.app_settings.default_outline_mode,
        )
        await self.store.save_project(state)
        self.display.show_state(state)

    async def premise(self, args: argparse.Namespace) -> None:
        cast = find_characters(load_character_roster(), args.cast)
        text = await self.engine.suggest_premise(
            args.setting, args.tone, cast, cancel_token=self.cancel_token
        )
        self.display.console.print(text)

    async def skeleton(self, args: argparse.Namespace) -> None:
        state = await self._load(args.project_id)
        if state.scene_skeleton_locked and not args.force:
            raise GenerationError(
                "Scene skeleton is locked. Use --force to replace it."
            )
        if args.force:
            state = state.with_skeleton_lock(False)
        skeleton = await self.engine.generate_scene_skeleton(
            state, cancel_token=self.cancel_token
        )
        state = apply_scene_skeleton(state, skeleton)
        if args.lock:
            state = state.with_skeleton_lock(True)
        await self.store.save_project(state)
        self.display.show_state(state)

    async def beats(self, args: argparse.Namespace) -> None:
        state = await self._load(args.project_id)
        self.display.start_stream("Generating beats")
        try:
            if args.regenerate is not None:
                state = (
                    await self.engine.regenerate_beat(
                        state, args.regenerate, cancel_token=self.cancel_token
                    )
                ).state
            elif args.scene:
                state = await self.engine.run_scene(
                    state, args.count, cancel_token=self.cancel_token
                )
            else:
                state = (
                    await self.engine.advance_story(
                        state,
                        args.count,
                        cancel_token=self.cancel_token,
                        on_raw_stream=self.display.on_token,
                    )
                ).state
        finally:
            self.display.stop_stream()
        await self.store.save_project(state)
        self.display.show_state(state)

    async def narrate(self, args: argparse.Namespace) -> None:
        state = await self._load(args.project_id)
        if not state.story_beats:
            raise GenerationError("Generate script beats before the narrative pass.")
        self.display.start_stream("Writing narrative")
        try:
            narrative = await self.engine.generate_narrative_pass(
                state,
                revision_instruction=args.revision,
                cancel_token=self.cancel_token,
                on_token=self.display.on_token,
            )
        finally:
            self.display.stop_stream()
        state = self.engine.record_prose(state, narrative)
        await self.store.save_project(state)
        self.display.show_prose(narrative.prose)
        if args.export:
            await self.store.export_text(args.export, narrative.prose)
            self.display.console.print(f"Exported to {args.export}")

    async def show(self, args: argparse.Namespace) -> None:
        if args.project_id:
            self.display.show_state(await self._load(args.project_id))
            return
        for project in await self.store.list_projects():
            self.display.console.print(
                f"{project.id}  {project.title}  ({len(project.story_beats)} beats)"
            )

    async def models(self, args: argparse.Namespace) -> None:
        for model in await self.service.list_models():
            self.display.console.print(model.get("name", "?"))


def _install_interrupt_handler(token: CancellationToken) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows
        logger.debug("SIGINT handler unavailable; Ctrl+C will abort instead.")


async def _run(session: CliSession, args: argparse.Namespace) -> None:
    await session.open()
    _install_interrupt_handler(session.cancel_token)
    try:
        await getattr(session, args.command)(args)
    finally:
        await session.close()


def run(args: argparse.Namespace) -> int:
    """Run one CLI command and return the process exit code."""
    setup_logging(args.log_level)
    display = SceneDisplay()
    session = CliSession(ProjectStore(), display)
    try:
        asyncio.run(_run(session, args))
    except GenerationCancelled as e:
        display.console.print(f"[yellow]Stopped:[/yellow] {e}")
        return 130
    except GenerationError as e:
        logger.error("Command failed.", command=args.command, error=str(e))
        display.error(str(e))
        return 1
    except KeyError as e:
        display.error(str(e.args[0]) if e.args else str(e))
        return 2
    except IndexError as e:
        display.error(str(e))
        return 2
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
            for err in e.errors()
        )
        display.error(f"Invalid input: {problems}")
        return 2
    except KeyboardInterrupt:
        logger.info("Shutting down due to KeyboardInterrupt.")
        return 130
    return 0
