"""Rich console output and plain-text transcript export."""

import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from roundtable.models import Message, Participant, ParticipantRole, SessionState
from roundtable.transcript import UNKNOWN_AUTHOR

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

EXPORT_FILENAME = "AI-Debate-Transcript.txt"


def format_time(seconds: int) -> str:
    """Render seconds as MM:SS."""
    minutes, secs = divmod(max(0, seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


def print_header(topic: str, participants: list[Participant], time_limit_sec: int) -> None:
    console.print(Rule("[bold cyan]AI Round Table[/bold cyan]"))
    console.print(f"Topic: [italic]{escape(topic)}[/italic]")
    members = [p.name for p in participants if p.role == ParticipantRole.MEMBER]
    console.print(f"Members: {', '.join(members)}")
    console.print(f"Time limit: {format_time(time_limit_sec)}  [dim](Ctrl+C to pause / resume)[/dim]\n")


def print_message(message: Message, participants: list[Participant]) -> None:
    """Print one transcript message as a panel titled with its author."""
    author = next((p for p in participants if p.id == message.author_id), None)
    is_moderator = author is not None and author.role == ParticipantRole.MODERATOR
    title = f"[bold]{escape(author.avatar)}[/bold] {escape(author.name)}" if author else UNKNOWN_AUTHOR
    console.print(
        Panel(
            Text(message.text),
            title=title,
            title_align="left",
            border_style="cyan" if is_moderator else "dim",
        )
    )


def print_status(status: str) -> None:
    console.print(Text(status, style="dim italic"))


def print_outcome(state: SessionState, reason: str | None) -> None:
    if state is SessionState.FAILED:
        console.print(f"\n[bold red]Debate failed:[/bold red] {escape(reason or '')}")
    elif state is SessionState.FINISHED:
        console.print(f"\n[bold green]Debate concluded:[/bold green] {escape(reason or '')}")


def print_participants(participants: list[Participant]) -> None:
    table = Table(title="Participants")
    table.add_column("ID", style="dim")
    table.add_column("Avatar")
    table.add_column("Name", style="bold")
    table.add_column("Role")
    table.add_column("Persona", overflow="fold")
    for p in participants:
        persona = p.persona if len(p.persona) <= 80 else p.persona[:77] + "..."
        table.add_row(p.id, p.avatar, p.name, p.role.value, persona)
    console.print(table)


def save_export(text: str, output_dir: Path) -> Path:
    """Write an exported transcript as UTF-8 text and return its path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{EXPORT_FILENAME}"
    filepath.write_text(text, encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath
