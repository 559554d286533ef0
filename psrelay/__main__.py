"""Entry point: python -m psrelay."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from psrelay import __version__
from psrelay.config import RelayConfig, load_config
from psrelay.errors import ConfigError
from psrelay.logging_config import setup_logging, shutdown_logging

logger = logging.getLogger(__name__)

_console = Console()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="psrelay",
        description="Relay GitHub webhook events into Pokémon Showdown chatrooms",
    )
    parser.add_argument("command", nargs="?", default="run", choices=("run", "check"))
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-dir", type=Path, default=None, help="Also log to DIR/psrelay.log")
    parser.add_argument("--version", action="version", version=f"psrelay {__version__}")
    return parser


def _print_rooms(config: RelayConfig) -> None:
    """Show where each repository is relayed."""
    table = Table(title="psrelay routing", show_header=True)
    table.add_column("Repository", style="bold green")
    table.add_column("Rooms")
    table.add_column("Simple rooms")
    table.add_column("Secret")
    for name, project in sorted(config.projects.items()):
        table.add_row(
            name,
            ", ".join(project.rooms) or "-",
            ", ".join(project.simple_rooms) or "-",
            "own" if project.secret else "global",
        )
    if config.default_room:
        table.add_row("(default)", config.default_room, "-", "global")
    _console.print(table)


async def _run(config: RelayConfig) -> None:
    from psrelay.app import RelayApp

    await RelayApp(config).run()


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    try:
        config = load_config()
    except ConfigError as exc:
        _console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        sys.exit(1)

    setup_logging(config.log_level, verbose=args.verbose, log_dir=args.log_dir)
    logger.info(
        "psrelay %s: server=%s user=%s rooms=%d projects=%d",
        __version__,
        config.chat.server_url,
        config.chat.username,
        len(config.all_rooms()),
        len(config.projects),
    )

    if args.command == "check":
        _print_rooms(config)
        return

    try:
        asyncio.run(_run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        shutdown_logging()


if __name__ == "__main__":
    main()
