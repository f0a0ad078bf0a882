"""
Rich-based terminal user interface.

Renders enhancement results, errors with recovery hints, session state,
AWS profiles and validation outcomes.
"""

from contextlib import contextmanager
from typing import Iterator, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..config import AIConfiguration
from ..enhancement.service import EnhancementResult
from ..enhancement.session import SessionState, SessionStatus

_STATUS_STYLES = {
    SessionStatus.IDLE: "dim",
    SessionStatus.SWITCHING: "yellow",
    SessionStatus.READY: "green",
    SessionStatus.ENHANCING: "cyan",
    SessionStatus.ERROR: "red",
}


class TerminalUI:
    """Rich-based terminal output for the enhancement CLI."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    @contextmanager
    def show_progress(self, message: str) -> Iterator[None]:
        """Spinner shown while a request is in flight."""
        with self.console.status(f"🤖 {message}", spinner="dots"):
            yield

    def show_result(self, result: EnhancementResult) -> None:
        """
        Display an enhancement result.

        Args:
            result: Text, elapsed time and prompt name from ``enhance``
        """
        subtitle = f"{result.duration:.2f}s"
        if result.prompt_name:
            subtitle = f"{result.prompt_name} • {subtitle}"

        panel = Panel(
            Text(result.text or "(empty)", style="white"),
            title="✨ Enhanced Text",
            title_align="center",
            subtitle=subtitle,
            border_style="cyan",
            padding=(1, 2),
        )
        self.console.print(panel)

    def show_error(self, error: Exception) -> None:
        """
        Display an error with its recovery suggestion, if it has one.

        Args:
            error: Exception to display
        """
        message = Text(f"❌ {error}", style="red")
        suggestion = getattr(error, "recovery_suggestion", None)
        if suggestion:
            message.append(f"\n\n💡 {suggestion}", style="yellow")

        panel = Panel(
            message,
            title="Error",
            title_align="center",
            border_style="red",
            padding=(1, 2),
        )
        self.console.print(panel)

    def show_success(self, message: str) -> None:
        # If it looks like clipboard content, show a preview
        if len(message) > 100:
            preview = message[:100] + "..."
            content = f"📋 Copied to clipboard!\n\n[dim]{preview}[/dim]"
        else:
            content = f"✅ {message}"

        panel = Panel(
            content,
            title="Success",
            title_align="center",
            border_style="green",
            padding=(1, 2),
        )
        self.console.print(panel)

    def show_session_state(self, state: SessionState) -> None:
        style = _STATUS_STYLES.get(state.status, "white")
        line = Text(f"Session: {state.status.value}", style=style)
        if state.session is not None:
            line.append(f" ({state.session.provider.value} • {state.session.model})", style="dim")
        if state.message:
            line.append(f" - {state.message}", style=style)
        self.console.print(line)

    def show_profiles(self, profiles: List[str]) -> None:
        if not profiles:
            self.console.print("[yellow]No AWS profiles found.[/yellow]")
            return

        table = Table(
            title="AWS Profiles",
            title_style="bold cyan",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold white",
        )
        table.add_column("#", style="cyan", width=3)
        table.add_column("Profile", style="magenta")
        for i, name in enumerate(profiles):
            table.add_row(str(i + 1), name)
        self.console.print(table)

    def show_configuration(self, config: AIConfiguration) -> None:
        table = Table(box=box.SIMPLE, show_header=False)
        table.add_column("Field", style="bold white")
        table.add_column("Value", style="white")
        table.add_row("Name", config.name)
        table.add_row("Provider", config.summary)
        table.add_row("Auth", config.auth_method)
        if config.auth_method == "api_key":
            table.add_row("API key", config.masked_api_key)
        self.console.print(table)
