"""
CLI interface for the archive.

Usage:
    mnemosyne add "a thought worth keeping"
    mnemosyne add https://example.com/article --tag reading
    mnemosyne add --image photo.jpg "the harbour at dusk"
    mnemosyne list --search photos
"""

import asyncio
import json
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import typer
from typing_extensions import Annotated

from .cache import ItemCache
from .config import get_default_store_path, get_token, load_or_create_config
from .errors import (
    ArchiveError,
    ConflictError,
    NotFoundError,
    RemoteUnavailableError,
)
from .github import GitHubObjectStore
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode
from .query import FILTERS, SORTS, view
from .storage import StorageService
from .types import Item, detect_kind

# Configure quiet mode by default (suppress verbose library output)
# Set MNEMOSYNE_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MNEMOSYNE_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)

# Shortest id prefix shown in listings
SHORT_ID_LENGTH = 8


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"mnemosyne {version('mnemosyne-archive')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="mnemosyne",
    help="Personal archive of notes, links and images, kept in a GitHub repository.",
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
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="MNEMOSYNE_STORE_PATH",
        help="Path to the store directory (default: ~/.mnemosyne/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Personal archive of notes, links and images."""


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _flags(item: Item) -> str:
    return "".join(c if on else "-" for c, on in (
        ("P", item.pinned), ("S", item.starred), ("A", item.archived),
    ))


def _display_date(item: Item) -> str:
    return item.created.astimezone().strftime("%Y-%m-%d")


def _format_line(item: Item) -> str:
    """One listing line: short-id date flags kind label"""
    text = item.title or item.content
    text = " ".join(text.split())
    if len(text) > 72:
        text = text[:69] + "..."
    tags = f"  #{' #'.join(item.tags)}" if item.tags else ""
    return f"{item.id[:SHORT_ID_LENGTH]} {_display_date(item)} {_flags(item)} {item.kind:<5} {text}{tags}"


def _format_item(item: Item) -> str:
    """Full rendering of one item."""
    if _json_output:
        return json.dumps(item.to_dict(), indent=2, ensure_ascii=False)
    lines = [
        f"id:      {item.id}",
        f"kind:    {item.kind}",
        f"created: {item.created_at}",
    ]
    if item.updated_at:
        lines.append(f"updated: {item.updated_at}")
    if item.title:
        lines.append(f"title:   {item.title}")
    if item.tags:
        lines.append(f"tags:    {', '.join(item.tags)}")
    if item.asset_path:
        lines.append(f"asset:   {item.asset_path}")
    flags = [f for f in ("pinned", "starred", "archived") if getattr(item, f)]
    if flags:
        lines.append(f"flags:   {', '.join(flags)}")
    lines.append("")
    lines.append(item.content)
    if item.note:
        lines.append("")
        lines.append(item.note)
    return "\n".join(lines)


def _format_items(items: list[Item]) -> str:
    if _json_output:
        return json.dumps([i.to_dict() for i in items], indent=2, ensure_ascii=False)
    if not items:
        return "No items."
    return "\n".join(_format_line(i) for i in items)


# -----------------------------------------------------------------------------
# Storage session
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="MNEMOSYNE_STORE_PATH",
        help="Path to the store directory (default: ~/.mnemosyne/)"
    )
]


def _build_service(store: Optional[Path]) -> StorageService:
    """Assemble remote client, cache and coordinator from config."""
    store_path = store or _store_override or get_default_store_path()
    try:
        config = load_or_create_config(store_path)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: invalid configuration in {store_path}: {e}", err=True)
        raise typer.Exit(1)
    configure_ops_log(store_path)

    token = get_token()
    if not token:
        typer.echo(
            "Error: no GitHub token. Set MNEMOSYNE_GITHUB_TOKEN (or GITHUB_TOKEN) "
            "to a token with repository access.",
            err=True,
        )
        raise typer.Exit(1)

    try:
        remote = GitHubObjectStore(
            token, api_url=config.remote.api_url, owner=config.remote.owner,
        )
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    cache = ItemCache(config.cache_path, ttl=config.cache_ttl)
    return StorageService(remote, cache, repo_name=config.remote.repo)


@asynccontextmanager
async def _session(store: Optional[Path], *, connect: bool = True) -> AsyncIterator[StorageService]:
    """An initialized StorageService, closed on exit.

    Initialization failure ends the command: nothing is safe before it.
    """
    service = _build_service(store)
    try:
        if connect:
            try:
                await service.initialize()
            except ArchiveError as e:
                typer.echo(f"Error: could not initialize storage: {e}", err=True)
                typer.echo(
                    "Check your GitHub token (MNEMOSYNE_GITHUB_TOKEN) and network, then retry.",
                    err=True,
                )
                raise typer.Exit(1)
        yield service
    finally:
        await service.close()


def _run(coro) -> None:
    """Run a command coroutine, turning expected storage errors into messages."""
    try:
        asyncio.run(coro)
    except (ConflictError, NotFoundError) as e:
        typer.echo(f"Error: {e}", err=True)
        typer.echo("The archive changed remotely. Run 'mnemosyne list --refresh' and retry.", err=True)
        raise typer.Exit(1)
    except RemoteUnavailableError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


async def _resolve(service: StorageService, id: str, *, refresh: bool = False) -> Item:
    """Find an item by id or unique id prefix."""
    items = await service.fetch_all(force_refresh=refresh)
    exact = [i for i in items if i.id == id]
    if exact:
        return exact[0]
    matches = [i for i in items if i.id.startswith(id)]
    if not matches:
        typer.echo(f"Error: no item matches {id!r}", err=True)
        raise typer.Exit(1)
    if len(matches) > 1:
        typer.echo(f"Error: {id!r} is ambiguous ({len(matches)} items match)", err=True)
        raise typer.Exit(1)
    return matches[0]


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def init(store: StoreOption = None):
    """Create the archive repository if needed and check access."""
    async def run():
        async with _session(store) as service:
            typer.echo(f"Archive ready: {service.repo_name}")

    _run(run())


@app.command()
def add(
    text: Annotated[Optional[str], typer.Argument(
        help="Note text, a URL, or an image caption"
    )] = None,
    image: Annotated[Optional[Path], typer.Option(
        "--image", "-i",
        exists=True, dir_okay=False, readable=True,
        help="Image file to upload"
    )] = None,
    title: Annotated[Optional[str], typer.Option(
        "--title",
        help="Title (links default to their URL)"
    )] = None,
    note: Annotated[Optional[str], typer.Option(
        "--note", "-n",
        help="Secondary description"
    )] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Tag (repeatable)"
    )] = None,
    store: StoreOption = None,
):
    """
    Capture a note, link or image.

    \b
    Examples:
        mnemosyne add "call the plumber"
        mnemosyne add https://example.com -t reading
        mnemosyne add -i scan.png "receipt"
    """
    if not (text and text.strip()) and image is None:
        typer.echo("Error: give some text, a URL, or --image", err=True)
        raise typer.Exit(1)
    content = (text or "").strip()
    kind = detect_kind(content, has_file=image is not None)

    async def run():
        async with _session(store) as service:
            asset_path = None
            if image is not None:
                asset_path = await service.upload_asset(image.read_bytes(), image.name)
            item = Item.create(
                kind,
                content or image.name,
                title=title or (content if kind == "link" else None),
                note=note,
                tags=tag,
                asset_path=asset_path,
            )
            service.stage_optimistic(item)
            try:
                await service.save(item)
            except ArchiveError:
                service.stage_optimistic_delete(item.id)
                raise
            typer.echo(_format_item(item) if _json_output else f"Saved {item.kind}: {item.id}")

    _run(run())


@app.command("list")
def list_items(
    filter_by: Annotated[str, typer.Option(
        "--filter", "-f",
        help=f"One of: {', '.join(FILTERS)} ('all' hides archived)"
    )] = "all",
    sort_by: Annotated[str, typer.Option(
        "--sort",
        help=f"One of: {', '.join(SORTS)}"
    )] = "date",
    search: Annotated[str, typer.Option(
        "--search", "-q",
        help="Text, a kind (photos, links, notes) or a date (2024-01, P7D)"
    )] = "",
    refresh: Annotated[bool, typer.Option(
        "--refresh", "-r",
        help="Ignore the cache and fetch everything"
    )] = False,
    cached: Annotated[bool, typer.Option(
        "--cached", "-c",
        help="Show the local cache only (no network)"
    )] = False,
    limit: Annotated[int, typer.Option(
        "--limit", "-n",
        help="Maximum items to show (0 for all)"
    )] = 0,
    store: StoreOption = None,
):
    """
    List archive items.

    \b
    Examples:
        mnemosyne list                     # Pinned first, newest first
        mnemosyne list -f starred          # Starred items
        mnemosyne list -q photos           # Images only
        mnemosyne list -q 2024-06          # Created in June 2024
        mnemosyne list --cached            # Offline
    """
    if filter_by not in FILTERS or sort_by not in SORTS:
        typer.echo(f"Error: filter must be one of {', '.join(FILTERS)}; "
                   f"sort one of {', '.join(SORTS)}", err=True)
        raise typer.Exit(1)
    if refresh and cached:
        typer.echo("Error: --refresh and --cached are exclusive", err=True)
        raise typer.Exit(1)

    async def run():
        async with _session(store, connect=not cached) as service:
            if cached:
                items = service.read_cached()
            else:
                items = await service.fetch_all(force_refresh=refresh)
        shown = view(items, filter_by=filter_by, sort_by=sort_by, query=search)
        if limit > 0:
            shown = shown[:limit]
        typer.echo(_format_items(shown))

    _run(run())


@app.command()
def show(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    store: StoreOption = None,
):
    """Show one item in full."""
    async def run():
        async with _session(store) as service:
            item = await _resolve(service, id)
        typer.echo(_format_item(item))

    _run(run())


def _toggle(id: str, flag: str, store: Optional[Path]) -> None:
    async def run():
        async with _session(store) as service:
            item = await _resolve(service, id)
            updated = await service.toggle_flag(item, flag)
        state = "on" if getattr(updated, flag) else "off"
        typer.echo(_format_item(updated) if _json_output else f"{flag} {state}: {updated.id}")

    _run(run())


@app.command()
def pin(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    store: StoreOption = None,
):
    """Toggle pinned (pinned items list first)."""
    _toggle(id, "pinned", store)


@app.command()
def star(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    store: StoreOption = None,
):
    """Toggle starred."""
    _toggle(id, "starred", store)


@app.command()
def archive(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    store: StoreOption = None,
):
    """Toggle archived (archived items are hidden from the default list)."""
    _toggle(id, "archived", store)


@app.command()
def edit(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    content: Annotated[Optional[str], typer.Option(
        "--content",
        help="Replace the primary text"
    )] = None,
    title: Annotated[Optional[str], typer.Option(
        "--title",
        help="Replace the title ('' to clear)"
    )] = None,
    note: Annotated[Optional[str], typer.Option(
        "--note", "-n",
        help="Replace the description ('' to clear)"
    )] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Replace the tags (repeatable)"
    )] = None,
    store: StoreOption = None,
):
    """Edit an item's text, title, description or tags."""
    changes: dict = {}
    if content is not None:
        changes["content"] = content
    if title is not None:
        changes["title"] = title or None
    if note is not None:
        changes["note"] = note or None
    if tag is not None:
        changes["tags"] = tag
    if not changes:
        typer.echo("Error: nothing to change", err=True)
        raise typer.Exit(1)

    async def run():
        async with _session(store) as service:
            item = await _resolve(service, id)
            updated = await service.edit(item, **changes)
        typer.echo(_format_item(updated) if _json_output else f"Updated: {updated.id}")

    _run(run())


@app.command()
def delete(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    store: StoreOption = None,
):
    """Delete an item (and its image asset, if any)."""
    async def run():
        async with _session(store) as service:
            # Refresh so the remote location of the item is known
            item = await _resolve(service, id, refresh=True)
            service.stage_optimistic_delete(item.id)
            try:
                await service.remove(item)
            except ArchiveError:
                service.stage_optimistic(item)
                raise
        typer.echo(f"Deleted: {item.id}")

    _run(run())


@app.command()
def asset(
    path: Annotated[str, typer.Argument(help="Asset path, e.g. assets/abc123.png")],
    output: Annotated[Optional[Path], typer.Option(
        "--output", "-o",
        help="Write the asset to this file"
    )] = None,
    data_uri: Annotated[bool, typer.Option(
        "--data-uri",
        help="Print a data: URI instead of raw bytes"
    )] = False,
    store: StoreOption = None,
):
    """Fetch an uploaded image asset."""
    async def run():
        async with _session(store) as service:
            if data_uri:
                uri = await service.get_asset_as_data_uri(path)
                if uri is None:
                    typer.echo(f"Error: asset not found: {path}", err=True)
                    raise typer.Exit(1)
                typer.echo(uri)
                return
            data = await service.get_asset(path)
        if data is None:
            typer.echo(f"Error: asset not found: {path}", err=True)
            raise typer.Exit(1)
        if output is not None:
            output.write_bytes(data)
            typer.echo(f"Wrote {len(data)} bytes to {output}")
        else:
            sys.stdout.buffer.write(data)

    _run(run())


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
        log_path = log_exception(e, context="mnemosyne CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
