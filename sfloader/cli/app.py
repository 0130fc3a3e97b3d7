"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from sfloader import __version__
from sfloader.catalog import Catalog
from sfloader.core.system import CacheSystem
from sfloader.exceptions import SfLoaderError
from sfloader.models.config import LoaderConfig
from sfloader.models.descriptor import ResourceDescriptor
from sfloader.proxy.channel import ControlChannel
from sfloader.proxy.server import run_proxy
from sfloader.proxy.service import CacheProxy
from sfloader.storage.config_manager import ConfigManager
from sfloader.utils.formatting import format_size

from .formatters import (
    print_config,
    print_fetch_results,
    print_proxy_stats,
    print_summary_panel,
    print_tier_stats,
    print_validation_table,
)

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("sfloader")

app = typer.Typer(
    name="sfloader",
    help=(
        "Lazy soundfont loader with tiered caching and a budgeted cache proxy. Use"
        " 'sfloader <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)
proxy_app = typer.Typer(
    help="Run and control the caching proxy.",
    rich_markup_mode="rich",
    add_completion=False,
)
app.add_typer(proxy_app, name="proxy")


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "sfloader"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _load_config(cli_options: dict | None = None) -> LoaderConfig:
    try:
        return ConfigManager(CONFIG_FILE).load_config(cli_options)
    except SfLoaderError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e


def _without_none(options: dict) -> dict:
    return {key: value for key, value in options.items() if value is not None}


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv also shows HTTP client logs).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """Soundfont Loader CLI"""
    if version:
        console.print(f"[bold]sfloader[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    logging.getLogger("sfloader").setLevel("DEBUG" if verbose >= 1 else "INFO")
    if verbose >= 2:
        logging.getLogger("aiohttp").setLevel("DEBUG")

    if show_config:
        config = _load_config()
        print_config(CONFIG_FILE, config.model_dump(exclude={"config_path"}))
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    mirrors: list[str] | None = typer.Option(  # noqa: B008
        None, "--mirror", "-m", help="Mirror base URL (repeat for several mirrors)."
    ),
    local_base_url: str | None = typer.Option(
        None, "--local", help="Base URL of a local soundfont bundle."
    ),
    upstream_url: str | None = typer.Option(
        None, "--upstream", help="Origin the cache proxy forwards requests to."
    ),
    proxy_url: str | None = typer.Option(
        None, "--proxy-url", help="Route loader requests through this cache proxy."
    ),
    cache_dir: str | None = typer.Option(
        None, "--cache-dir", help="Directory of the persistent cache tiers."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration file."
    ),
):
    """Create a configuration file with the default settings."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = _without_none(
        {
            "mirrors": mirrors or None,
            "local_base_url": local_base_url,
            "upstream_url": upstream_url,
            "proxy_url": proxy_url,
            "cache_dir": cache_dir,
        }
    )
    try:
        ConfigManager(CONFIG_FILE).save_new_config(settings)
    except SfLoaderError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e
    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready to load! Try: [cyan]sfloader fetch <IDENTIFIER>[/cyan]")


@app.command()
def validate():
    """Validate the current configuration."""
    config = _load_config()
    print_validation_table(config)


def _resolve(
    system: CacheSystem, catalog: Catalog | None, identifier: str
) -> ResourceDescriptor:
    """Looks an identifier up in the catalog, or treats it as a relative path."""
    if catalog is not None and identifier in catalog:
        return catalog.get(identifier)
    relative_path = identifier if identifier.endswith(".json") else f"{identifier}.json"
    return system.descriptor(Path(relative_path).stem, relative_path)


def _load_catalog(path: Path | None, config: LoaderConfig) -> Catalog | None:
    if path is None:
        return None
    try:
        return Catalog.from_file(path, config.source_bases())
    except SfLoaderError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e


@app.command()
def fetch(
    identifiers: list[str] = typer.Argument(  # noqa: B008
        ..., help="Catalog identifiers or relative payload paths."
    ),
    catalog_path: Path | None = typer.Option(  # noqa: B008
        None, "--catalog", help="Resource manifest to resolve identifiers with."
    ),
    fallback: str | None = typer.Option(
        None, "--fallback", help="Resource to load instead of any that fails."
    ),
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Number of simultaneous downloads."
    ),
    retries: int | None = typer.Option(
        None, "--retries", help="Extra rounds over all mirrors after a full failure."
    ),
):
    """Load resources into the cache tiers."""
    config = _load_config(
        _without_none({"concurrency_limit": workers, "chain_retries": retries})
    )
    catalog = _load_catalog(catalog_path, config)

    async def _fetch_async():
        start_time = time.monotonic()
        async with CacheSystem.from_config(config) as system:
            descriptors = [_resolve(system, catalog, i) for i in identifiers]
            coordinator = system.coordinator
            if fallback:
                fallback_descriptor = _resolve(system, catalog, fallback)
                results = await asyncio.gather(
                    *(
                        coordinator.acquire_with_fallback(d, fallback_descriptor)
                        for d in descriptors
                    ),
                    return_exceptions=True,
                )
                outcome = {d.key: r for d, r in zip(descriptors, results)}
            else:
                outcome = await coordinator.preload(descriptors)
            print_fetch_results(outcome)
            print_summary_panel(
                coordinator.stats, time.monotonic() - start_time, coordinator.peak_fetches
            )
            return outcome

    outcome = asyncio.run(_fetch_async())
    if any(isinstance(result, BaseException) for result in outcome.values()):
        raise typer.Exit(code=1)


@app.command()
def preload(
    catalog_path: Path = typer.Option(  # noqa: B008
        ..., "--catalog", help="Resource manifest listing the resources."
    ),
    essential_only: bool = typer.Option(
        False, "--essential", help="Only load the default instruments."
    ),
):
    """Load every catalog resource (or just the essential ones) ahead of time."""
    config = _load_config()
    catalog = _load_catalog(catalog_path, config)
    descriptors = catalog.essential() if essential_only else catalog.descriptors()
    if not descriptors:
        console.print("[yellow]Nothing to preload.[/yellow]")
        raise typer.Exit()

    async def _preload_async():
        start_time = time.monotonic()
        async with CacheSystem.from_config(config) as system:
            outcome = await system.coordinator.preload(descriptors)
            print_summary_panel(
                system.coordinator.stats,
                time.monotonic() - start_time,
                system.coordinator.peak_fetches,
            )
            return outcome

    outcome = asyncio.run(_preload_async())
    failed = [key for key, result in outcome.items() if isinstance(result, BaseException)]
    if failed:
        console.print(f"[red]✗ Failed: {', '.join(failed)}[/red]")
        raise typer.Exit(code=1)


@app.command()
def stats():
    """Show occupancy of the loader cache tiers."""
    config = _load_config()

    async def _get_stats():
        async with CacheSystem.from_config(config) as system:
            print_tier_stats(await system.cache.stats(), len(system.index))

    asyncio.run(_get_stats())


@app.command(name="clear-cache")
def clear_cache(
    force: bool = typer.Option(
        False, "--force", "-f", help="Bypass the confirmation prompt."
    ),
):
    """Remove every cached payload from all loader tiers."""
    if not force and not typer.confirm(
        "Are you sure you want to clear every cached soundfont? "
        "They will be downloaded again on next use."
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    config = _load_config()

    async def _clear_async():
        console.print("[cyan]Clearing cache tiers...[/cyan]")
        async with CacheSystem.from_config(config) as system:
            await system.cache.clear()
        console.print("[green]✓ Cache cleared successfully.[/green]")

    asyncio.run(_clear_async())


# --- Cache proxy --------------------------------------------------------------


@proxy_app.command("serve")
def proxy_serve(
    host: str | None = typer.Option(None, "--host", help="Interface to bind."),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on."),
    upstream_url: str | None = typer.Option(
        None, "--upstream", help="Origin to forward requests to."
    ),
    wait: bool = typer.Option(
        False, "--wait", help="Stay in the waiting state until SKIP_WAITING."
    ),
):
    """Run the caching proxy in the foreground."""
    config = _load_config(
        _without_none(
            {"proxy_host": host, "proxy_port": port, "upstream_url": upstream_url}
        )
    )
    try:
        proxy = CacheProxy.from_config(config)
    except SfLoaderError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e
    run_proxy(proxy, config.proxy_host, config.proxy_port, auto_activate=not wait)


def _control(url: str | None, action):
    """Runs one control-channel exchange and returns the response body."""
    if url is None:
        config = _load_config()
        url = config.proxy_url or f"http://{config.proxy_host}:{config.proxy_port}"

    async def _send():
        async with ControlChannel(url) as channel:
            return await action(channel)

    try:
        return asyncio.run(_send())
    except SfLoaderError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e


URL_OPTION_HELP = "Base URL of the running proxy (defaults to the configuration)."


@proxy_app.command("version")
def proxy_version(url: str | None = typer.Option(None, "--url", help=URL_OPTION_HELP)):
    """Show the proxy's version and store names."""
    body = _control(url, lambda channel: channel.get_version())
    console.print(
        f"[bold]cache proxy[/bold] version [cyan]{body['version']}[/cyan] "
        f"([dim]{body.get('state', 'unknown')}[/dim])"
    )
    for category, name in body.get("cacheNames", {}).items():
        console.print(f"  {category}: [dim]{name}[/dim]")


@proxy_app.command("stats")
def proxy_stats(url: str | None = typer.Option(None, "--url", help=URL_OPTION_HELP)):
    """Show the proxy's cache usage against its budget."""
    print_proxy_stats(_control(url, lambda channel: channel.get_cache_stats()))


@proxy_app.command("cleanup")
def proxy_cleanup(
    required_space: int | None = typer.Option(
        None, "--required", help="Bytes to free (defaults to the minimum free space)."
    ),
    url: str | None = typer.Option(None, "--url", help=URL_OPTION_HELP),
):
    """Evict low-value soundfonts from the proxy."""
    body = _control(url, lambda channel: channel.cleanup_cache(required_space))
    console.print(
        f"[green]✓ Removed {body['removed']} soundfonts, "
        f"{format_size(body['freedSpace'])} freed.[/green]"
    )
    if body.get("overshoot"):
        console.print(
            f"[yellow]⚠ Still {format_size(body['overshoot'])} above the target: "
            "the rest is protected.[/yellow]"
        )


@proxy_app.command("protect")
def proxy_protect(
    identifier: str = typer.Argument(..., help="Text contained in the entry URLs."),
    url: str | None = typer.Option(None, "--url", help=URL_OPTION_HELP),
):
    """Pin soundfonts so that they are never evicted."""
    body = _control(url, lambda channel: channel.protect(identifier))
    console.print(
        f"[green]✓ Protected '{identifier}' ({body.get('protected', 0)} entries).[/green]"
    )


@proxy_app.command("unprotect")
def proxy_unprotect(
    identifier: str = typer.Argument(..., help="A previously pinned identifier."),
    url: str | None = typer.Option(None, "--url", help=URL_OPTION_HELP),
):
    """Remove a pin."""
    _control(url, lambda channel: channel.unprotect(identifier))
    console.print(f"[green]✓ '{identifier}' is no longer protected.[/green]")


@proxy_app.command("skip-waiting")
def proxy_skip_waiting(
    url: str | None = typer.Option(None, "--url", help=URL_OPTION_HELP),
):
    """Activate a proxy that is waiting after install."""
    body = _control(url, lambda channel: channel.skip_waiting())
    console.print(f"[green]✓ Proxy is {body.get('state', 'active')}.[/green]")
