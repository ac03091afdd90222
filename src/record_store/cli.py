"""Command line interface for Record Store administration."""

import json
import logging
import sys
from pathlib import Path
from typing import NoReturn, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ConfigManager
from .search import SearchOptions
from .service import RecordStorage
from .storage.errors import StorageError

console = Console()


def _open_storage(ctx: click.Context) -> RecordStorage:
    """Build the storage from the context's configuration (once per invocation)."""
    if "storage" not in ctx.obj:
        config_manager: ConfigManager = ctx.obj["config_manager"]
        try:
            config = config_manager.load()
        except ValueError as e:
            raise click.ClickException(str(e))
        if ctx.obj.get("root"):
            config.storage_root = Path(ctx.obj["root"])
        try:
            ctx.obj["storage"] = RecordStorage(config)
        except (StorageError, ValueError) as e:
            raise click.ClickException(f"Failed to open storage: {e}")
        ctx.call_on_close(ctx.obj["storage"].close)
    storage: RecordStorage = ctx.obj["storage"]
    return storage


def _fail(message: str) -> NoReturn:
    console.print(f"❌ {message}", style="red", markup=False)
    sys.exit(1)


@click.group()
@click.option("--config", "-c", type=click.Path(exists=False), help="Config file path")
@click.option(
    "--root",
    "-r",
    type=click.Path(file_okay=False),
    help="Storage root (overrides config and RECORD_STORE_ROOT)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__, prog_name="record-store")
@click.pass_context
def cli(ctx, config: Optional[str], root: Optional[str], verbose: bool):
    """Filesystem record store administration.

    \b
    EXAMPLES:
      record-store --root ./storage stats
      record-store get clients 1A001
      record-store search "acme" --category clients
      record-store reindex --category clients
      record-store snapshot create
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["root"] = root
    ctx.obj["config_manager"] = ConfigManager(Path(config)) if config else ConfigManager()

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )


@cli.command()
@click.pass_context
def stats(ctx):
    """Show record counts, size and lock/transaction state."""
    storage = _open_storage(ctx)
    info = storage.get_storage_stats()

    table = Table(title="Record Store")
    table.add_column("Category", style="cyan")
    table.add_column("Records", justify="right", style="green")
    for category, count in info["categories"].items():
        table.add_row(category, str(count))
    console.print(table)

    console.print(f"Storage path: {info['storage_path']}")
    console.print(f"Total records: {info['total_files']}")
    console.print(f"Total size: {info['total_size']} bytes")
    console.print(f"Last snapshot: {info['last_snapshot'] or 'none'}")
    partitions = ", ".join(
        f"{code}: {count}" for code, count in info["partitions"].items() if count
    )
    if partitions:
        console.print(f"Partitions: {partitions}")


@cli.command()
@click.argument("category")
@click.argument("record_id")
@click.option("--scope", "-s", help="Owning parent id for scoped categories")
@click.pass_context
def get(ctx, category: str, record_id: str, scope: Optional[str]):
    """Print one record as JSON."""
    storage = _open_storage(ctx)
    try:
        record = storage.read(category, record_id, scope)
    except (StorageError, ValueError) as e:
        _fail(f"Failed to read {category}/{record_id}: {e}")
    if record is None:
        _fail(f"Record not found: {category}/{record_id}")
    console.print_json(json.dumps(record, ensure_ascii=False))


@cli.command()
@click.argument("query")
@click.option("--category", "categories", multiple=True, help="Category to search (repeatable)")
@click.option("--partition", type=int, help="Only results in this partition")
@click.option("--limit", type=int, help="Page size")
@click.option("--offset", type=int, default=0, show_default=True, help="Page offset")
@click.option(
    "--sort-by",
    type=click.Choice(["score", "date", "name"]),
    default="score",
    show_default=True,
)
@click.option(
    "--order", type=click.Choice(["asc", "desc"]), default="desc", show_default=True
)
@click.option("--no-fuzzy", is_flag=True, help="Disable fuzzy term matching")
@click.option("--exact", is_flag=True, help="Match the whole query as one term")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON results")
@click.pass_context
def search(
    ctx,
    query: str,
    categories: Tuple[str, ...],
    partition: Optional[int],
    limit: Optional[int],
    offset: int,
    sort_by: str,
    order: str,
    no_fuzzy: bool,
    exact: bool,
    as_json: bool,
):
    """Search indexed records."""
    storage = _open_storage(ctx)
    options = SearchOptions(
        categories=list(categories) or None,
        partition=partition,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=order,
        fuzzy=not no_fuzzy,
        exact_match=exact,
    )
    page = storage.search(query, options)

    if as_json:
        console.print_json(json.dumps(page.to_dict(), ensure_ascii=False, default=str))
        return

    if not page.results:
        console.print("No results found", style="yellow")
        return

    table = Table(title=f"Results {page.offset + 1}-{page.offset + len(page.results)} of {page.total}")
    table.add_column("Category", style="cyan")
    table.add_column("Id", style="green")
    table.add_column("Name", style="white")
    table.add_column("Score", justify="right", style="magenta")
    table.add_column("Fields", style="yellow")
    for result in page.results:
        data = result.data or {}
        name = data.get("name") or data.get("title") or ""
        table.add_row(
            result.category,
            result.id,
            str(name),
            f"{result.score:.2f}",
            ", ".join(result.matched_fields),
        )
    console.print(table)
    if page.has_more:
        console.print(f"More results: --offset {page.offset + page.limit}", style="dim")


@cli.command()
@click.option("--category", "categories", multiple=True, help="Category to rebuild (repeatable)")
@click.pass_context
def reindex(ctx, categories: Tuple[str, ...]):
    """Rebuild metadata and search indexes from the records on disk."""
    storage = _open_storage(ctx)
    try:
        summary = storage.rebuild_indexes(list(categories) or None)
    except (StorageError, OSError, ValueError) as e:
        _fail(f"Reindex failed: {e}")
    for category, counts in summary.items():
        details = ", ".join(f"{name}={count}" for name, count in counts.items())
        console.print(f"✅ {category}: {details}", markup=False)


@cli.command()
@click.pass_context
def health(ctx):
    """Report search index health per category."""
    storage = _open_storage(ctx)
    report = storage.get_index_health()

    styles = {"healthy": "green", "needs_rebuild": "yellow", "corrupted": "red"}
    table = Table(title="Search Index Health")
    table.add_column("Category", style="cyan")
    table.add_column("Status")
    table.add_column("Issues", style="white")
    for category, entry in report.items():
        status = entry["status"]
        table.add_row(
            category,
            f"[{styles.get(status, 'white')}]{status}[/]",
            "; ".join(entry["issues"]),
        )
    console.print(table)

    if any(entry["status"] != "healthy" for entry in report.values()):
        sys.exit(1)


@cli.group()
def snapshot():
    """Create, list, restore and prune snapshots."""


@snapshot.command("create")
@click.pass_context
def snapshot_create(ctx):
    """Snapshot the whole store."""
    storage = _open_storage(ctx)
    try:
        snapshot_id = storage.create_snapshot()
    except StorageError as e:
        _fail(str(e))
    console.print(f"✅ Snapshot created: {snapshot_id}", markup=False)


@snapshot.command("list")
@click.pass_context
def snapshot_list(ctx):
    """List snapshots, oldest first."""
    storage = _open_storage(ctx)
    snapshots = storage.list_snapshots()
    if not snapshots:
        console.print("No snapshots", style="yellow")
        return
    for snapshot_id in snapshots:
        console.print(snapshot_id, markup=False)


@snapshot.command("restore")
@click.argument("snapshot_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def snapshot_restore(ctx, snapshot_id: str, yes: bool):
    """Replace the live store with SNAPSHOT_ID (a safety snapshot is taken first)."""
    storage = _open_storage(ctx)
    if not yes:
        click.confirm(f"Restore store from {snapshot_id}?", abort=True)
    try:
        safety_id = storage.restore_from_snapshot(snapshot_id)
    except StorageError as e:
        _fail(str(e))
    console.print(f"✅ Restored from {snapshot_id} (previous state in {safety_id})", markup=False)


@snapshot.command("prune")
@click.option("--keep", type=int, help="Snapshots to keep (default: configured retention)")
@click.pass_context
def snapshot_prune(ctx, keep: Optional[int]):
    """Delete all but the newest snapshots."""
    storage = _open_storage(ctx)
    removed = storage.cleanup_old_snapshots(keep)
    console.print(f"Removed {removed} snapshots")


@cli.group()
def backups():
    """Manage per-write backups."""


@backups.command("prune")
@click.option("--days", type=int, help="Keep backups newer than this (default: configured retention)")
@click.pass_context
def backups_prune(ctx, days: Optional[int]):
    """Delete backups older than the retention window."""
    storage = _open_storage(ctx)
    removed = storage.cleanup_old_backups(days)
    console.print(f"Removed {removed} backups")


def main():
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n❌ Interrupted by user", style="red")
        sys.exit(1)
    except Exception as e:
        console.print(f"❌ Unexpected error: {str(e)}", style="red", markup=False)
        sys.exit(1)


if __name__ == "__main__":
    main()
