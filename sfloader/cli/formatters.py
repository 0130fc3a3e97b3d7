"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from sfloader.models.config import LoaderConfig
from sfloader.models.descriptor import Payload
from sfloader.models.stats import CoordinatorStats
from sfloader.utils.formatting import format_duration, format_size


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your configuration file.",
            "• Run `sfloader validate` to see the effective settings.",
            "• Run `sfloader init --force` to start from the defaults.",
        ],
        "AllSourcesExhausted": [
            "• Every mirror failed for this resource.",
            "• Check your internet connection or the local bundle URL.",
            "• Add another mirror to the configuration.",
        ],
        "RetriesExhausted": [
            "• The mirrors kept failing over several retry rounds.",
            "• The mirrors may be temporarily unavailable, try again later.",
        ],
        "DecodeError": [
            "• A mirror served a file that is not a valid preset.",
            "• The broken copy was removed from the cache; retrying may help.",
        ],
        "ControlChannelError": [
            "• Make sure the cache proxy is running (`sfloader proxy serve`).",
            "• Check `proxy_url` or pass `--url` explicitly.",
        ],
        "QuotaExceeded": [
            "• The cache proxy budget is too small for this resource.",
            "• Raise `budget_total_limit` or unpin some favorites.",
        ],
        "TimeoutError": [
            "• A request timed out, which may indicate network throttling.",
            "• Try increasing `remote_timeout`.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the raw configuration file contents."""
    console = Console()
    content = ""
    for key, value in config_data.items():
        if key == "budget":
            for budget_key, budget_value in value.items():
                content += f"budget_{budget_key} = {budget_value}\n"
            continue
        if isinstance(value, list):
            value = ", ".join(value)
        content += f"{key} = {value}\n"

    console.print(
        Panel(
            content.strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_validation_table(config: LoaderConfig):
    """Displays a summary of the effective settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Concurrency:", str(config.concurrency_limit))
    table.add_row(
        "Retries:", f"{config.chain_retries} (every {config.retry_delay:.1f}s)"
    )
    table.add_row(
        "Timeouts:",
        f"local {config.local_timeout:.0f}s, remote {config.remote_timeout:.0f}s",
    )
    table.add_row("Sources:", "\n".join(config.source_bases()))
    table.add_row("Cache Directory:", f"[dim]{config.cache_path}[/dim]")
    table.add_row("Legacy Store Limit:", format_size(config.legacy_max_bytes))
    table.add_row("Proxy Upstream:", config.upstream_url or "[dim]not set[/dim]")
    table.add_row(
        "Proxy Budget:",
        f"{format_size(config.budget.total_limit)} total, "
        f"{config.budget.max_soundfonts} soundfonts",
    )

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def print_tier_stats(tier_stats: dict[str, dict], index_entries: int):
    """Displays per-tier cache occupancy."""
    console = Console()
    table = Table(title="Cache Tiers", box=box.ROUNDED)
    table.add_column("Tier", style="cyan")
    table.add_column("Entries", justify="right", style="green")
    table.add_column("Size", justify="right")
    table.add_column("Status")

    for name, stats in tier_stats.items():
        if stats.get("error"):
            status = f"[red]{stats['error']}[/red]"
        elif stats.get("available", True):
            status = "[green]available[/green]"
        else:
            status = "[yellow]unavailable[/yellow]"
        table.add_row(
            name, str(stats.get("count", 0)), format_size(stats.get("size", 0)), status
        )

    console.print(table)
    console.print(f"[dim]Metadata index: {index_entries} entries[/dim]")


def print_fetch_results(outcome: dict[str, Payload | BaseException]):
    """Displays one line per requested resource."""
    console = Console()
    table = Table(box=None, padding=(0, 2))
    table.add_column("Resource", style="cyan")
    table.add_column("Result")
    table.add_column("Size", justify="right")
    table.add_column("Source", style="dim")

    for key, result in outcome.items():
        if isinstance(result, BaseException):
            table.add_row(key, f"[red]✗ {type(result).__name__}[/red]", "", str(result))
        else:
            table.add_row(
                key,
                f"[green]✓ {len(result.preset.zones)} zones[/green]",
                format_size(result.size),
                result.source_host,
            )
    console.print(table)


def print_summary_panel(stats: CoordinatorStats, duration_s: float, peak: int):
    """Displays the loader statistics of a session."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row("✓ Downloaded:", f"[bold green]{stats.downloads}[/bold green]")
    stats_table.add_row(
        "○ Cache Hits:",
        f"[green]{stats.memory_hits}[/green] memory + "
        f"[green]{stats.persistent_hits}[/green] persistent",
    )
    if stats.dedup_joins:
        stats_table.add_row("⇄ Shared Fetches:", f"[cyan]{stats.dedup_joins}[/cyan]")
    if stats.fallbacks:
        stats_table.add_row("⚠ Fallbacks:", f"[yellow]{stats.fallbacks}[/yellow]")
    if stats.failures:
        stats_table.add_row("✗ Failed:", f"[bold red]{stats.failures}[/bold red]")

    stats_table.add_row("", "")
    stats_table.add_row(
        "Total Size:", f"[cyan]{format_size(stats.bytes_downloaded)}[/cyan]"
    )
    if stats.downloads:
        stats_table.add_row(
            "Avg. Latency:", f"[magenta]{stats.average_latency_ms:.0f}ms[/magenta]"
        )
    stats_table.add_row("Peak Concurrent:", f"[green]{peak}[/green]")
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    if stats.source_successes:
        stats_table.add_row("", "")
        for source, count in stats.source_successes.most_common():
            stats_table.add_row("Source:", f"{count} × [dim]{source}[/dim]")

    console.print()
    console.print(
        Panel(
            stats_table,
            title="🎹 [bold]Loader Summary[/bold]",
            border_style="red" if stats.failures else "green",
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )


def print_proxy_stats(body: dict[str, Any]):
    """Displays the answer to a GET_CACHE_STATS control message."""
    console = Console()
    stats = body.get("stats", {})
    quota = body.get("quota", {})

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    total_limit = quota.get("totalLimit") or 0
    table.add_row(
        "Total Size:",
        f"{format_size(stats.get('totalSize', 0))} / {format_size(total_limit)}",
    )
    table.add_row(
        "Soundfonts:",
        f"{stats.get('soundfontCount', 0)} / {quota.get('maxSoundfonts', '?')}",
    )
    table.add_row("Critical Size:", format_size(stats.get("criticalSize", 0)))
    if pins := body.get("pins"):
        table.add_row("Pinned:", ", ".join(pins))

    console.print(
        Panel(table, title="[bold]Cache Proxy[/bold]", border_style="cyan", expand=False)
    )
