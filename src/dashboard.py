"""
Live dashboard for monitoring crawl progress using Rich.
One row per category plus a scrollback of the error log.
"""

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config import DASHBOARD_REFRESH, ERROR_SCROLLBACK
from tracker import CategoryStatus, TrackerSnapshot

if TYPE_CHECKING:
    from crawler import CatalogCrawler


STATUS_STYLES = {
    CategoryStatus.PENDING: "dim",
    CategoryStatus.RUNNING: "yellow",
    CategoryStatus.COMPLETED: "green",
    CategoryStatus.PARTIAL: "dark_orange",
    CategoryStatus.ERROR: "bold red",
}


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    return str(timedelta(seconds=int(seconds)))


def make_category_table(snapshot: TrackerSnapshot, title: str = "📊 Categories", expand: bool = True) -> Table:
    """Status table: label, status, pages, items."""
    table = Table(title=title, expand=expand, title_style="bold magenta")

    table.add_column("Category", style="cyan", justify="left")
    table.add_column("Status", justify="left")
    table.add_column("Pages", style="green", justify="right")
    table.add_column("Items", style="yellow", justify="right")

    for row in snapshot.rows:
        table.add_row(
            row.label,
            Text(row.status.display, style=STATUS_STYLES[row.status]),
            f"{row.pages:,}",
            f"{row.items:,}",
        )

    # Total row
    table.add_section()
    table.add_row(
        "[bold]TOTAL[/bold]",
        "",
        f"[bold]{snapshot.total_pages:,}[/bold]",
        f"[bold]{snapshot.total_items:,}[/bold]",
    )
    return table


class LiveDashboard:
    """
    Real-time terminal dashboard for monitoring the crawl.

    Redraws on a timer and, when registered as a crawler observer, right
    after every category transition.
    """

    def __init__(self, crawler: "CatalogCrawler", console: Optional[Console] = None):
        self.crawler = crawler
        self.console = console or Console()
        self._running = False
        self._live: Optional[Live] = None

    def _make_header(self) -> Panel:
        """Create the header panel."""
        header_text = Text()
        header_text.append("🛒 ", style="bold")
        header_text.append("Catalog Crawler", style="bold cyan")
        header_text.append(f"  {self.crawler.base_url}", style="dim")
        return Panel(header_text, style="bold white on dark_blue")

    def _make_status_panel(self, snapshot: TrackerSnapshot) -> Panel:
        """Create the status panel with run-wide counters."""
        transport = self.crawler.transport

        status_table = Table.grid(padding=(0, 2))
        status_table.add_column(justify="right", style="bold")
        status_table.add_column(justify="left")

        done = sum(1 for row in snapshot.rows if row.status.is_terminal)
        status_table.add_row("📊 Categories:", f"{done}/{len(snapshot.rows)} done")
        status_table.add_row("⏱️  Elapsed:", format_duration(snapshot.elapsed_time))
        status_table.add_row("🌕 Running:", f"{snapshot.count(CategoryStatus.RUNNING)}")
        status_table.add_row("✅ Completed:", f"{snapshot.count(CategoryStatus.COMPLETED)}")
        status_table.add_row("🔴 Errors:", f"{snapshot.count(CategoryStatus.ERROR)}")
        status_table.add_row("🟠 Partial:", f"{snapshot.count(CategoryStatus.PARTIAL)}")
        status_table.add_row("🌐 In flight:", f"{getattr(transport, 'in_flight', 0)}")
        status_table.add_row("🔁 Retries:", f"{getattr(transport, 'total_retries', 0):,}")

        return Panel(status_table, title="🔧 Status", border_style="blue")

    def _make_config_panel(self) -> Panel:
        """Create the configuration panel."""
        config_table = Table.grid(padding=(0, 2))
        config_table.add_column(justify="right", style="dim")
        config_table.add_column(justify="left")

        config_table.add_row("Page Limit:", f"{self.crawler.page_limit}")
        config_table.add_row("Batch Length:", f"{self.crawler.batch_length}")
        config_table.add_row("Admission:", self.crawler.admission.value)

        return Panel(config_table, title="⚙️  Config", border_style="dim")

    def _make_error_panel(self, snapshot: TrackerSnapshot) -> Panel:
        """Create the error scrollback panel (most recent last)."""
        if snapshot.errors:
            error_text = Text()
            for i, entry in enumerate(snapshot.errors[-ERROR_SCROLLBACK:]):
                if i > 0:
                    error_text.append("\n")
                error_text.append("✗ ", style="red")
                error_text.append(entry.message)
        else:
            error_text = Text("No errors so far", style="dim italic")

        title = f"⚠️  Errors ({len(snapshot.errors)})"
        return Panel(error_text, title=title, border_style="red")

    def generate_layout(self, snapshot: Optional[TrackerSnapshot] = None) -> Layout:
        """Generate the full dashboard layout."""
        snapshot = snapshot or self.crawler.tracker.snapshot()
        layout = Layout()

        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="body"),
            Layout(name="footer", size=ERROR_SCROLLBACK + 2),
        )

        layout["body"].split_row(
            Layout(name="main", ratio=2),
            Layout(name="sidebar", ratio=1),
        )

        layout["sidebar"].split_column(
            Layout(name="status"),
            Layout(name="config", size=5),
        )

        # Populate layout
        layout["header"].update(self._make_header())
        layout["main"].update(make_category_table(snapshot))
        layout["status"].update(self._make_status_panel(snapshot))
        layout["config"].update(self._make_config_panel())
        layout["footer"].update(self._make_error_panel(snapshot))

        return layout

    def refresh(self, snapshot: TrackerSnapshot):
        """Crawler observer: redraw immediately with the new snapshot."""
        if self._live is not None:
            self._live.update(self.generate_layout(snapshot))

    async def run(self, refresh_rate: float = DASHBOARD_REFRESH):
        """Run the live dashboard."""
        self._running = True

        with Live(self.generate_layout(), console=self.console,
                  refresh_per_second=max(1, int(1 / refresh_rate)), screen=True) as live:
            self._live = live
            try:
                while self._running:
                    live.update(self.generate_layout())
                    await asyncio.sleep(refresh_rate)
            finally:
                self._live = None

    def stop(self):
        """Stop the dashboard."""
        self._running = False


def print_final_summary(crawler: "CatalogCrawler", written: Dict[str, Path], console: Console = None):
    """Print final summary after crawling completes."""
    if console is None:
        console = Console()

    snapshot = crawler.tracker.snapshot()

    console.print("\n")
    if crawler.finished:
        console.print(Panel.fit("[bold green]✅ Crawling Complete![/bold green]", border_style="green"))
    else:
        console.print(Panel.fit("[bold yellow]⚠️  Crawl stopped early[/bold yellow]", border_style="yellow"))

    console.print(make_category_table(snapshot, title="📊 Final Results", expand=False))

    if snapshot.errors:
        console.print(f"\n[red]❌ Errors ({len(snapshot.errors)}):[/red]")
        for entry in snapshot.errors:
            console.print(f"   {entry.message}")

    console.print(f"\n⏱️  Runtime: {format_duration(snapshot.elapsed_time)}")
    console.print(f"🔁 Retries: {getattr(crawler.transport, 'total_retries', 0):,}")
    if written:
        console.print(f"\n📁 Output ({len(written)} files):")
        for label, path in written.items():
            console.print(f"   {label}: [cyan]{path}[/cyan]")
    else:
        console.print("\n📁 Output: [dim]nothing written[/dim]")
