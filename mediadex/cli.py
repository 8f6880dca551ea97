"""
CLI interface for the media library.

Usage:
    mediadex init --root ~/Pictures
    mediadex sync
    mediadex search "beach sunset" --type photo --date this_year
    mediadex collections
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import MediaLibrary
from .config import LibraryConfig, ProviderConfig, get_library_directory, save_config
from .errors import QueryMalformed
from .logging_config import configure_quiet_mode, enable_debug_mode
from .query import build_filters
from .types import DATE_PRESETS, MediaItem, parse_utc_timestamp
from .work_queue import Priority


# Configure quiet mode by default (suppress verbose library output)
# Set MEDIADEX_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MEDIADEX_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"mediadex {version('mediadex')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_library_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _library_callback(value: Optional[Path]):
    global _library_override
    if value is not None:
        _library_override = value


app = typer.Typer(
    name="mediadex",
    help="Searchable media library with background analysis.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    library: Annotated[Optional[Path], typer.Option(
        "--library", "-L",
        envvar="MEDIADEX_LIBRARY_PATH",
        help="Path to the library directory",
        callback=_library_callback,
        is_eager=True,
    )] = None,
):
    """Searchable media library with background analysis."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to show"
    )
]

WaitOption = Annotated[
    bool,
    typer.Option(
        "--wait/--no-wait",
        help="Wait for queued analysis to finish"
    )
]


def _get_library(reconcile: bool = True) -> MediaLibrary:
    """Open the library, handling errors gracefully."""
    import atexit

    try:
        lib = MediaLibrary(_library_override, reconcile=reconcile)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    # Save the snapshot and stop workers before interpreter shutdown
    atexit.register(lib.close)
    return lib


def _parse_date(value: Optional[str], option: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return parse_utc_timestamp(value)
    except ValueError:
        typer.echo(f"Error: Invalid date for {option}: '{value}' (use ISO format, e.g. 2026-01-15)", err=True)
        raise typer.Exit(1)


def _item_line(item: MediaItem) -> str:
    tags = ", ".join(sorted(item.attributes.tags))
    star = " *" if item.is_favorite else ""
    date = item.created_at.strftime("%Y-%m-%d")
    line = f"{item.id}  {date}  {item.kind.value}  [{item.state.value}]{star}"
    return f"{line}  {tags}" if tags else line


def _echo_items(lib: MediaLibrary, ids: list[str]) -> None:
    items = [lib.get(i) for i in ids]
    items = [i for i in items if i is not None]
    if _get_json_output():
        typer.echo(json.dumps([i.to_dict() for i in items], indent=2))
        return
    if not items:
        typer.echo("No results.")
        return
    for item in items:
        typer.echo(_item_line(item))


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def init(
    root: Annotated[Path, typer.Option(
        "--root", "-r",
        help="Directory containing the photos and videos",
    )] = Path("."),
    analyzer: Annotated[str, typer.Option(
        "--analyzer", "-a",
        help="Analyzer provider name",
    )] = "null",
):
    """Create a library configuration for a media directory."""
    path = get_library_directory(_library_override)
    config = LibraryConfig(
        path=path,
        source=ProviderConfig("directory", {"root": str(root.expanduser().resolve())}),
        analyzer=ProviderConfig(analyzer),
    )
    if config.exists():
        typer.echo(f"Error: Library already initialized at {path}", err=True)
        raise typer.Exit(1)
    save_config(config)
    typer.echo(f"Initialized library at {path}")


@app.command()
def sync(wait: WaitOption = True):
    """Scan the media source for new, changed and removed items."""
    # The explicit sync below reports what changed since the last save
    lib = _get_library(reconcile=False)
    result = lib.sync()
    if wait:
        lib.wait_idle()
    summary = result.to_dict()
    if _get_json_output():
        typer.echo(json.dumps(summary))
        return
    typer.echo(
        f"{summary['added']} added, {summary['changed']} changed, "
        f"{summary['removed']} removed, {summary['queued']} queued for analysis"
    )
    failed = lib.list_failed()
    if wait and failed:
        typer.echo(f"{len(failed)} items failed analysis (see: mediadex failed)")


@app.command()
def status():
    """Show library statistics and analysis progress."""
    lib = _get_library()
    stats = lib.stats()
    if _get_json_output():
        typer.echo(json.dumps(stats, indent=2))
        return
    typer.echo(f"Library: {lib.library_path}")
    typer.echo(f"Items: {stats['items']} (index version {stats['version']})")
    for state, count in stats["states"].items():
        if count:
            typer.echo(f"  {state}: {count}")
    for kind, count in stats["kinds"].items():
        typer.echo(f"  {kind}s: {count}")
    typer.echo(f"Favorites: {stats['favorites']}")
    typer.echo(f"Face clusters: {stats['face_clusters']}")
    progress = stats["progress"]
    if progress["total"]:
        typer.echo(f"Batch {progress['batch']}: {progress['done']}/{progress['total']} "
                   f"({progress['progress']:.0%})")


@app.command()
def search(
    query: Annotated[list[str], typer.Argument(help="Search text")],
    date: Annotated[Optional[str], typer.Option(
        "--date", "-d",
        help=f"Date preset: {', '.join(DATE_PRESETS)}",
    )] = None,
    since: Annotated[Optional[str], typer.Option(
        "--since",
        help="Only items created on or after (ISO date)",
    )] = None,
    until: Annotated[Optional[str], typer.Option(
        "--until",
        help="Only items created on or before (ISO date)",
    )] = None,
    media_type: Annotated[Optional[str], typer.Option(
        "--type", "-T",
        help="Media type: photo, video or any",
    )] = None,
    location: Annotated[Optional[str], typer.Option(
        "--location", "-l",
        help="Location substring",
    )] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Require tag (repeatable, all must match)",
    )] = None,
    limit: LimitOption = 20,
):
    """Search by tags, recognized text and location."""
    try:
        filters = build_filters(
            date_preset=date,
            start=_parse_date(since, "--since"),
            end=_parse_date(until, "--until"),
            media_type=media_type,
            location=location,
            tags=tag or (),
        )
    except QueryMalformed as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    lib = _get_library()
    ids = lib.search(" ".join(query), filters)
    _echo_items(lib, ids[:limit])


@app.command()
def suggestions():
    """Show quick-search suggestions."""
    lib = _get_library()
    pairs = lib.suggestions()
    if _get_json_output():
        typer.echo(json.dumps([{"title": t, "query": q} for t, q in pairs]))
        return
    for title, query in pairs:
        typer.echo(f"{title}: {query}")


@app.command()
def collections(
    name: Annotated[Optional[str], typer.Argument(help="Show members of one collection")] = None,
):
    """List smart collections."""
    lib = _get_library()
    lib.refresh_collections()
    if name is not None:
        try:
            members = lib.collection(name).members
        except KeyError:
            typer.echo(f"Error: Unknown collection '{name}'", err=True)
            raise typer.Exit(1)
        _echo_items(lib, list(members))
        return
    rows = lib.collections()
    if _get_json_output():
        typer.echo(json.dumps(
            [{"name": n, "count": c, "members": list(m)} for n, c, m in rows], indent=2,
        ))
        return
    for collection_name, count, _ in rows:
        typer.echo(f"{collection_name}: {count}")


@app.command()
def recent(limit: LimitOption = 5):
    """Show recently added items."""
    lib = _get_library()
    _echo_items(lib, lib.recently_added(limit))


@app.command()
def favorite(
    item_id: Annotated[str, typer.Argument(help="Item ID")],
):
    """Toggle an item's favorite flag."""
    lib = _get_library()
    try:
        is_favorite = lib.toggle_favorite(item_id)
    except KeyError:
        typer.echo(f"Error: Unknown item '{item_id}'", err=True)
        raise typer.Exit(1)
    lib.save()
    typer.echo(f"{item_id}: {'favorite' if is_favorite else 'not favorite'}")


@app.command()
def reanalyze(
    ids: Annotated[Optional[list[str]], typer.Argument(help="Item IDs (default: all analysed items)")] = None,
    high: Annotated[bool, typer.Option("--high", help="Queue ahead of other work")] = False,
    wait: WaitOption = True,
):
    """Queue analysed items for analysis again."""
    lib = _get_library()
    if ids and high:
        queued = lib.enqueue(ids, Priority.HIGH)
    else:
        queued = lib.reanalyze(ids or None)
    typer.echo(f"{len(queued)} items queued")
    if wait:
        lib.wait_idle()


@app.command()
def failed():
    """List items whose analysis failed."""
    lib = _get_library()
    _echo_items(lib, lib.list_failed())


@app.command()
def faces():
    """List face clusters."""
    lib = _get_library()
    clusters = lib.faces.clusters()
    if _get_json_output():
        typer.echo(json.dumps([
            {"id": c.id, "label": c.label, "members": sorted(c.members)} for c in clusters
        ], indent=2))
        return
    for c in clusters:
        label = f" ({c.label})" if c.label else ""
        typer.echo(f"{c.id}{label}: {len(c.members)} items")


@app.command("face-label")
def face_label(
    cluster_id: Annotated[str, typer.Argument(help="Face cluster ID")],
    name: Annotated[Optional[str], typer.Argument(help="Label (omit to clear)")] = None,
):
    """Name a face cluster."""
    lib = _get_library()
    try:
        cluster = lib.label_face(cluster_id, name)
    except KeyError:
        typer.echo(f"Error: Unknown face cluster '{cluster_id}'", err=True)
        raise typer.Exit(1)
    lib.save()
    typer.echo(f"{cluster.id}: {cluster.label or '(unlabelled)'}")


@app.command("face-merge")
def face_merge(
    keep_id: Annotated[str, typer.Argument(help="Cluster to keep")],
    absorb_id: Annotated[str, typer.Argument(help="Cluster to fold into it")],
):
    """Merge two face clusters judged to be the same person."""
    lib = _get_library()
    try:
        cluster = lib.merge_faces(keep_id, absorb_id)
    except KeyError as e:
        typer.echo(f"Error: Unknown face cluster {e}", err=True)
        raise typer.Exit(1)
    lib.save()
    typer.echo(f"{cluster.id}: {len(cluster.members)} items")


@app.command()
def export(
    path: Annotated[Path, typer.Argument(help="Output JSON file")],
):
    """Export all item records, face clusters and collections as JSON."""
    lib = _get_library()
    written = lib.export_json(path)
    typer.echo(f"Exported to {written}")


@app.command()
def verify():
    """Check index consistency; rebuilds the index if it is corrupt."""
    lib = _get_library()
    if lib.verify():
        typer.echo("Index is consistent")
    else:
        typer.echo("Index was inconsistent and has been rebuilt", err=True)
        raise typer.Exit(1)


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="mediadex CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
