import logging
from datetime import datetime
from typing import Any, Optional

from rich.box import HEAVY, ROUNDED, SIMPLE, Box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from quotaflow.domain.interfaces.user_interface import UserInterface
from quotaflow.domain.models.common import UsageStats

logger = logging.getLogger(__name__)


class ConsoleDisplay(UserInterface):
    """UserInterface that renders results, notices and pool health with rich."""

    def __init__(self, console: Optional[Console] = None):
        """Uses ``console`` when given (tests pass a recording one), else a fresh Console."""
        self._console = console or Console()

    @property
    def console(self) -> Console:
        return self._console

    def display_output(self, output: str, **kwargs: Any) -> None:
        """Displays output text, rendering Markdown inside a panel.

        Args:
            output: The text to display.
            **kwargs: Additional arguments including:
                - title: Panel title (default: "Result")
                - markdown: Render as Markdown (default: True)
        """
        title = kwargs.get("title", "Result")
        timestamp = datetime.now().strftime("%H:%M:%S")
        body = Markdown(str(output)) if kwargs.get("markdown", True) else Text(str(output))
        logger.debug(f"display_output called: title={title}, content_length={len(str(output))}")
        self.console.print(Panel(
            body,
            title=f"[bold white]{title}[/bold white] [dim]·[/dim] [dim white]{timestamp}[/dim white]",
            title_align="left",
            border_style="blue",
            box=ROUNDED,
            padding=(0, 1),
        ))

    def _notice(self, message: str, label: str, color: str, box: Box = HEAVY) -> None:
        """Prints a one-message panel titled ``label`` in ``color``."""
        self.console.print(Panel(
            Text(message, style="white"),
            title=f"[bold {color}]{label}[/bold {color}]",
            title_align="left",
            border_style=color,
            box=box,
            padding=(0, 1),
        ))

    def display_error(self, error_message: str, **kwargs: Any) -> None:
        self._notice(error_message, kwargs.get("title", "Error"), "red")

    def display_info(self, info_message: str, **kwargs: Any) -> None:
        self._notice(info_message, kwargs.get("title", "Info"), "blue", box=SIMPLE)

    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        logger.warning(f"Shown to operator: {warning_message}")
        self._notice(warning_message, kwargs.get("title", "Warning"), "yellow")

    def display_usage_stats(self, stats: UsageStats) -> None:
        """Renders one table per service with a row per credential.

        Args:
            stats: The structure returned by ``GenerationService.usage_stats``.
        """
        services = stats.get("services", {})
        if not services:
            self.display_info("No services configured.")
            return

        for name, service_stats in services.items():
            pool = service_stats["pool"]
            admission = service_stats.get("admission")

            table = Table(
                title=f"[bold cyan]{name}[/bold cyan] · {pool['available_keys']}/{pool['total_keys']} available "
                      f"· {pool['total_requests']} requests",
                show_header=True,
                box=ROUNDED,
                border_style="cyan",
                padding=(0, 1),
            )
            table.add_column("#", style="cyan", justify="right")
            table.add_column("OK", justify="right")
            table.add_column("Errors", justify="right")
            table.add_column("Error rate", justify="right")
            table.add_column("Status")
            table.add_column("Last used", style="dim")

            for key in pool["keys"]:
                if key["blocked"]:
                    status = f"[red]blocked ({key['block_remaining_s']:.0f}s)[/red]"
                else:
                    status = "[green]available[/green]"
                table.add_row(
                    str(key["index"]),
                    str(key["success_count"]),
                    str(key["error_count"]),
                    f"{key['error_rate']:.1%}",
                    status,
                    key["last_used_at"] or "never",
                )
            self.console.print(table)

            if admission:
                self.console.print(
                    f"  [dim]admission: {admission['window_count']}/{admission['burst_max']} in burst window, "
                    f"{admission['last_second']}/{admission['max_per_second']} in last second, "
                    f"{admission['waiting']} waiting[/dim]"
                )

        if stats.get("timestamp"):
            self.console.print(f"[dim]Snapshot taken at {stats['timestamp']}[/dim]")
