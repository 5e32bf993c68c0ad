#!/usr/bin/env python3
"""
Catalog Crawler
===============
Main entry point for the async catalog crawler with live dashboard.

Output: one CSV per category under data/<run date>/, e.g.
- data/2024-03-01/freshfood.csv
- data/2024-03-01/grocery.csv
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import List

import aiofiles
from rich.console import Console

from config import (
    BASE_URL,
    BATCH_LENGTH,
    CATEGORIES_FILE,
    DEFAULT_CATEGORIES,
    FILE_ENCODING,
    MAX_RETRIES,
    OUTPUT_DIR,
    PAGE_LIMIT,
    REQUEST_TIMEOUT,
)
from crawler import AdmissionPolicy, CatalogCrawler, Category, build_categories
from dashboard import LiveDashboard, print_final_summary
from storage import CsvSink
from tracker import CategoryStatus
from transport import FetchTransport


console = Console()


async def load_categories(path: Path) -> List[Category]:
    """Load `[{"label", "tag"}, ...]` from JSON, falling back to the built-in list."""
    try:
        async with aiofiles.open(path, mode='r', encoding=FILE_ENCODING) as f:
            content = await f.read()
    except FileNotFoundError:
        console.print(f"[yellow]⚠️  {path} not found, using the built-in category list[/yellow]")
        return build_categories(DEFAULT_CATEGORIES)

    entries = json.loads(content)
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a JSON list of {{label, tag}} objects")
    return build_categories(entries)


def install_signal_handlers(crawler: CatalogCrawler, on_stop=None):
    """Stop fetching on SIGINT/SIGTERM; collected records are still written."""
    def shutdown_handler():
        console.print("\n[yellow]⚠️  Shutting down...[/yellow]")
        crawler.transport.stop()
        if on_stop is not None:
            on_stop()

    if sys.platform != 'win32':
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_handler)


async def run_with_dashboard(crawler: CatalogCrawler):
    """Run crawler with live dashboard."""
    dashboard = LiveDashboard(crawler, console=console)
    crawler.add_observer(dashboard.refresh)

    dashboard_task = asyncio.create_task(dashboard.run())
    install_signal_handlers(crawler, on_stop=dashboard.stop)

    try:
        await crawler.run()
    finally:
        dashboard.stop()
        try:
            await asyncio.wait_for(dashboard_task, timeout=1.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            pass


async def run_without_dashboard(crawler: CatalogCrawler):
    """Run crawler with simple progress output."""
    from tqdm import tqdm

    console.print("[bold cyan]🚀 Starting crawler...[/bold cyan]")
    console.print(f"   Categories: {len(crawler.categories)}")
    console.print(f"   Batch length: {crawler.batch_length}\n")

    with tqdm(desc="Crawling", unit=" pages") as pbar:
        def progress(snapshot):
            pbar.update(snapshot.total_pages - pbar.n)
            pbar.set_postfix({
                'items': snapshot.total_items,
                'running': snapshot.count(CategoryStatus.RUNNING),
                'errors': len(snapshot.errors),
            })

        crawler.add_observer(progress)
        install_signal_handlers(crawler)
        await crawler.run()


async def main(args) -> int:
    """Main entry point."""
    console.print("""
[bold blue]╔══════════════════════════════════════════════════════════════╗
║     [cyan]Catalog Crawler[/cyan]                                          ║
║     [dim]Paginated category crawl → CSV[/dim]                           ║
╚══════════════════════════════════════════════════════════════╝[/bold blue]
    """)

    categories = await load_categories(args.categories)

    console.print(f"📋 Loaded [green]{len(categories)}[/green] categories")
    console.print(f"🌐 Catalog: [cyan]{args.base_url}[/cyan]")
    console.print(f"📏 Page limit: {args.page_limit}   👷 Batch length: {args.batch_length}   "
                  f"🚪 Admission: {args.admission}")
    console.print()

    transport = FetchTransport(
        max_connections=args.batch_length,
        retries=args.retries,
        timeout=args.timeout,
    )
    sink = CsvSink(output_dir=args.output_dir)
    crawler = CatalogCrawler(
        categories,
        transport,
        sink=sink,
        base_url=args.base_url,
        page_limit=args.page_limit,
        batch_length=args.batch_length,
        admission=AdmissionPolicy(args.admission),
    )

    console.print(f"[dim]Output directory:[/dim] {sink.run_dir}\n")

    await transport.initialize()
    try:
        if args.no_dashboard:
            await run_without_dashboard(crawler)
        else:
            await run_with_dashboard(crawler)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  Interrupted by user[/yellow]")
    finally:
        await transport.close()
        print_final_summary(crawler, crawler.written, console)

    snapshot = crawler.tracker.snapshot()
    if snapshot.rows and snapshot.count(CategoryStatus.ERROR) == len(snapshot.rows):
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Catalog Crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_pipeline.py                          # Crawl every category in configs/categories.json
  python run_pipeline.py --batch-length 5         # At most 5 categories at a time
  python run_pipeline.py --admission batch        # Admit new categories only when everything drained
  python run_pipeline.py --no-dashboard           # Progress bar instead of the live dashboard
        """
    )

    parser.add_argument('--categories', type=Path, default=CATEGORIES_FILE,
                        help='JSON list of {"label", "tag"} objects (default: configs/categories.json)')
    parser.add_argument('--base-url', default=BASE_URL,
                        help=f'Catalog base URL (default: {BASE_URL})')
    parser.add_argument('--page-limit', type=int, default=PAGE_LIMIT,
                        help=f'Items per catalog page (default: {PAGE_LIMIT}, fixed by the catalog)')
    parser.add_argument('--batch-length', type=int, default=BATCH_LENGTH,
                        help=f'Categories crawled concurrently (default: {BATCH_LENGTH})')
    parser.add_argument('--admission', choices=[p.value for p in AdmissionPolicy],
                        default=AdmissionPolicy.SLOT.value,
                        help='slot: refill a slot as soon as a category ends; '
                             'batch: wait until all fetches drained (default: slot)')
    parser.add_argument('--retries', type=int, default=MAX_RETRIES,
                        help=f'Retries per page after the first attempt (default: {MAX_RETRIES})')
    parser.add_argument('--timeout', type=float, default=REQUEST_TIMEOUT,
                        help=f'Per-fetch timeout in seconds (default: {REQUEST_TIMEOUT})')
    parser.add_argument('--output-dir', type=Path, default=OUTPUT_DIR,
                        help='Where the dated CSV folders go (default: data/)')
    parser.add_argument('--no-dashboard', action='store_true',
                        help='Run without the live dashboard')
    return parser


def cli():
    """Command-line interface."""
    args = build_parser().parse_args()

    if args.page_limit < 1 or args.batch_length < 1:
        console.print("[red]--page-limit and --batch-length must be at least 1[/red]")
        sys.exit(2)

    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    cli()
