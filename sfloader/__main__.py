"""
Console entry point: runs the Typer app and turns escaped errors into panels.
"""

import asyncio
import logging
import sys

from rich.console import Console

from sfloader.cli.app import app
from sfloader.cli.formatters import format_error_with_suggestions
from sfloader.exceptions import SfLoaderError

log = logging.getLogger("sfloader")


def main() -> None:
    console = Console()
    try:
        app()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]⚠️  Interrupted, pending loads were cancelled.[/yellow]")
        sys.exit(130)
    except SfLoaderError as e:
        console.print(format_error_with_suggestions(e))
        sys.exit(1)
    except Exception as e:
        console.print(format_error_with_suggestions(e, {"type": "Unexpected"}))
        log.debug("Unhandled error", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
