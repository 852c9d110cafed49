from __future__ import annotations

from typing import Optional

from config import settings
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from models import Beat, SceneSkeleton, StateTrackerSnapshot, StoryState


class SceneDisplay:
    """Renders story state and live generation output with Rich."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()
        self.live: Optional[Live] = None
        self.stream_text: Text = Text()
        self.status_text: Text = Text("Idle")

    # --- live streaming -------------------------------------------------

    def start_stream(self, title: str) -> None:
        self.stream_text = Text()
        self.status_text = Text(f"Step: {title}")
        if not settings.ENABLE_RICH_PROGRESS:
            return
        self.live = Live(
            Panel(
                Group(self.status_text, self.stream_text),
                title="Scenecraft",
                border_style="blue",
                expand=True,
            ),
            console=self.console,
            refresh_per_second=8,
            transient=True,
        )
        self.live.start()

    def on_token(self, token: str) -> None:
        self.stream_text.append(token)
        if self.live:
            self.live.refresh()

    def stop_stream(self) -> None:
        if self.live and self.live.is_started:
            self.live.stop()
        self.live = None

    # --- static rendering -----------------------------------------------

    def beats_table(self, beats: list[Beat]) -> Table:
        table = Table(title="Script", show_lines=False, expand=True)
        table.add_column("#", justify="right", style="dim", no_wrap=True)
        table.add_column("Speaker", style="bold cyan", no_wrap=True)
        table.add_column("Content")
        for beat in beats:
            speaker = beat.speaker + (" *" if beat.pinned else "")
            style = "italic dim" if beat.is_summary else None
            table.add_row(str(beat.index), speaker, beat.content, style=style)
        return table

    def skeleton_panel(self, skeleton: SceneSkeleton, locked: bool = False) -> Panel:
        body = Text()
        for field_name in (
            "protagonist",
            "goal",
            "opposition",
            "plan",
            "turn",
            "choice",
            "cost",
            "outcome",
        ):
            body.append(f"{field_name.title()}: ", style="bold")
            body.append(f"{getattr(skeleton, field_name)}\n")
        if skeleton.constraints.must_include:
            body.append("Must include: ", style="bold green")
            body.append(", ".join(skeleton.constraints.must_include) + "\n")
        if skeleton.constraints.must_avoid:
            body.append("Must avoid: ", style="bold red")
            body.append(", ".join(skeleton.constraints.must_avoid) + "\n")
        title = "Scene Skeleton (locked)" if locked else "Scene Skeleton"
        return Panel(body, title=title, border_style="magenta")

    def tracker_panel(self, snapshot: StateTrackerSnapshot) -> Panel:
        def _flag(value: bool) -> str:
            return "[green]yes[/green]" if value else "[red]no[/red]"

        lines = [
            f"Beat: {snapshot.beat_index}",
            f"Intent: {snapshot.protagonist_intent}",
            f"Commitment: {snapshot.protagonist_commitment or '-'}",
            f"Decision: {_flag(snapshot.has_decision)}",
            f"Cost/consequence: {_flag(snapshot.has_cost_or_consequence)}",
        ]
        if snapshot.guidance_note:
            lines.append(f"Guidance: {snapshot.guidance_note}")
        return Panel("\n".join(lines), title="Tracker", border_style="yellow")

    def show_state(self, state: StoryState) -> None:
        self.console.rule(f"[bold]{state.title}[/bold] ({state.id})")
        self.console.print(
            f"Setting: {state.setting}\nTone: {state.tone}\nPremise: {state.premise}"
        )
        self.console.print(
            "Cast: " + ", ".join(character.name for character in state.cast)
        )
        if state.scene_skeleton is not None:
            self.console.print(
                self.skeleton_panel(state.scene_skeleton, state.scene_skeleton_locked)
            )
        if state.beats:
            self.console.print(self.beats_table(state.beats))
        if state.latest_snapshot is not None:
            self.console.print(self.tracker_panel(state.latest_snapshot))
        self.show_notices(state)

    def show_notices(self, state: StoryState) -> None:
        if state.passive_warning:
            self.console.print(f"[bold yellow]Warning:[/bold yellow] {state.passive_warning}")
        if state.pending_guidance_note:
            self.console.print(f"[cyan]Guidance:[/cyan] {state.pending_guidance_note}")

    def show_prose(self, prose: str) -> None:
        self.console.print(Panel(prose, title="Narrative", border_style="green"))

    def error(self, message: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {message}")
