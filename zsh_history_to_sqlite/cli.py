"CLI for zsh-history-to-sqlite."
import logging
import socket
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import click
import sqlite_utils

from zsh_history_to_sqlite import utils


DEFAULT_HISTORY_FILE = Path.home() / ".zsh_history"


def _default_host():
    try:
        return socket.gethostname()
    except OSError:
        return "UNKNOWN"


@click.group()
@click.version_option()
def cli():
    "Save zsh history to a zsh-histdb compatible SQLite database"


@cli.command(name="import")
@click.argument(
    "db_path",
    type=click.Path(file_okay=True, dir_okay=False, allow_dash=False),
)
@click.argument(
    "history_file",
    type=click.Path(dir_okay=False, allow_dash=True),
    required=False,
)
@click.option(
    "--ignore",
    default=utils.DEFAULT_IGNORE,
    show_default=True,
    help="Comma-separated commands to skip (exact match)",
)
@click.option("--host", default=_default_host, help="Value for the host column")
@click.option(
    "--dir",
    "directory",
    default=lambda: str(Path.home()),
    help="Value for the dir column",
)
@click.option("--session", type=int, default=0, help="Value for the session column")
@click.option(
    "--exit-status", type=int, default=0, help="Value for the exit_status column"
)
@click.option(
    "--preserve-order/--no-preserve-order",
    default=True,
    show_default=True,
    help="Give commands without timestamps one second apart, ending now",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Parse history but don't write to database",
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    help="Log every inserted and skipped command",
)
@click.option(
    "--silent",
    is_flag=True,
    help="Suppress summary output",
)
def import_(
    db_path,
    history_file,
    ignore,
    host,
    directory,
    session,
    exit_status,
    preserve_order,
    dry_run,
    verbose,
    silent,
):
    "Import a zsh history file, or - for stdin"
    logging.basicConfig(format="%(asctime)s [%(levelname)s] %(message)s")
    logging.getLogger("zsh_history_to_sqlite").setLevel(
        logging.INFO if verbose else logging.WARNING
    )
    if history_file is None:
        history_file = DEFAULT_HISTORY_FILE
        if not history_file.exists():
            raise click.ClickException(
                f"Default history file not found: {history_file}\n"
                "Please provide a path to your history file."
            )

    context = utils.ImportContext(
        host=host,
        dir=directory,
        session=session,
        exit_status=exit_status,
        ignore=utils.parse_ignore(ignore),
        preserve_order=preserve_order,
    )

    if not dry_run:
        db_dir = Path(db_path).parent
        try:
            db_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise click.ClickException(f"Unable to create {db_dir}: {e}")

    try:
        with click.open_file(str(history_file), "rb") as fp:
            if dry_run:
                count = utils.import_history(
                    fp,
                    lambda record: None,
                    ignore=context.ignore,
                    preserve_order=context.preserve_order,
                )
            else:
                db = sqlite_utils.Database(db_path)
                count = utils.save_history(db, fp, context)
                utils.ensure_db_shape(db)
    except OSError as e:
        raise click.ClickException(f"Unable to read {history_file}: {e}")
    except utils.HistoryImportError as e:
        raise click.ClickException(str(e))
    except sqlite3.Error as e:
        raise click.ClickException(f"Unable to write {db_path}: {e}")

    if not silent:
        if dry_run:
            click.echo(f"{count:,} commands would be imported")
        else:
            click.echo(f"{count:,} commands imported")
            db_size = Path(db_path).stat().st_size / (1024 * 1024)
            click.echo(f"Database: {db_path} ({db_size:.1f} MB)")


@cli.command()
@click.argument(
    "db_path",
    type=click.Path(exists=True, file_okay=True, dir_okay=False, allow_dash=False),
)
def stats(db_path):
    "Show statistics about a history database"
    db = sqlite_utils.Database(db_path)

    table_names = db.table_names()
    if "history" not in table_names:
        raise click.ClickException("No history table found in database")

    stats = utils.history_stats(db)

    click.echo(f"History:   {stats['history']:,}")
    click.echo(f"Commands:  {stats['commands']:,}")
    click.echo(f"Places:    {stats['places']:,}")

    if stats["top_commands"]:
        click.echo("\nTop commands:")
        for argv, count in stats["top_commands"]:
            click.echo(f"  {count:>5}  {argv}")

    if stats["first"] is not None:
        start = _format_timestamp(stats["first"])
        end = _format_timestamp(stats["last"])
        click.echo(f"\nDate range: {start} to {end}")


def _format_timestamp(value):
    "Render an epoch-seconds column value as a UTC date."
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).date().isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return "?"
