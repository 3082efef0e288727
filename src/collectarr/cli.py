"""Command-line interface for Collectarr."""

import asyncio
import sys
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from collectarr.core.config import get_settings, log_settings
from collectarr.core.exceptions import CollectarrError
from collectarr.core.logger import setup_logging
from collectarr.core.scheduler import Scheduler
from collectarr.models.collection import SourceType
from collectarr.models.dispatch import DispatchOutcome, DispatchResult
from collectarr.models.media import MediaType, SourceEntry
from collectarr.models.server import ServerType
from collectarr.models.sync import JobProgress, SyncLog, SyncStatus
from collectarr.services.collections import CollectionService

app = typer.Typer(
    name="collectarr",
    help="Collectarr - Trakt/MDBList collections mirrored to Emby",
    add_completion=False,
)

# Force UTF-8 output on Windows
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")

console = Console(force_terminal=True)

T = TypeVar("T")

STATUS_STYLES = {
    SyncStatus.SUCCESS: "green",
    SyncStatus.PARTIAL: "yellow",
    SyncStatus.FAILED: "red",
}


def run_with_service(func: Callable[[CollectionService], Awaitable[T]], log_level: Optional[str] = None) -> T:
    """Run a coroutine against a fully wired service, then close every client."""
    settings = get_settings()
    setup_logging(level=log_level or settings.log_level, log_dir=settings.get_log_path())

    from collectarr.services.runner import Runner

    async def _main() -> T:
        runner = await Runner.create(settings)
        try:
            return await func(runner.service)
        finally:
            await runner.close()

    try:
        return asyncio.run(_main())
    except CollectarrError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def print_sync_logs(logs: list[SyncLog], title: str = "Emby Sync") -> None:
    table = Table(title=title)
    table.add_column("Collection", style="cyan")
    table.add_column("Server")
    table.add_column("Status")
    table.add_column("Matched", justify="right")
    table.add_column("Error", style="dim")
    table.add_column("When", style="dim")

    for log in logs:
        style = STATUS_STYLES[log.status]
        table.add_row(
            log.collection_name or log.collection_id,
            log.emby_server_name or log.emby_server_id,
            f"[{style}]{log.status.value}[/{style}]",
            f"{log.items_matched}/{log.items_total}",
            log.error_message or "",
            log.completed_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


def print_dispatch_result(result: DispatchResult) -> None:
    if result.outcome == DispatchOutcome.SUCCESS:
        console.print(f"[green]✓[/green] Requested {result.title or result.external_id}")
    elif result.outcome == DispatchOutcome.ALREADY_EXISTS:
        console.print(f"[green]✓[/green] {result.title or result.external_id} is already on the server")
    else:
        console.print(f"[red]✗[/red] {result.title or result.external_id}: {result.message}")


def print_progress(progress: JobProgress) -> None:
    console.print(
        f"  [dim]{progress.state.value}[/dim] items={progress.items_total} "
        f"added={progress.items_added} removed={progress.items_removed}"
        + (f" [red]{progress.error}[/red]" if progress.error else "")
    )


# =========================================================================
# Collections
# =========================================================================


@app.command()
def collections() -> None:
    """List all collections with their library coverage."""

    async def _list(service: CollectionService) -> None:
        table = Table(title="Collections")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Source", style="yellow")
        table.add_column("Items", justify="right")
        table.add_column("In Emby", justify="right")
        table.add_column("Refreshed", style="dim")

        for collection in await service.get_collections():
            stats = await service.get_collection_stats(collection.id)
            source = collection.source_type.value
            if collection.source_id:
                source += f" ({collection.source_id})"
            table.add_row(
                collection.id,
                collection.name + ("" if collection.is_enabled else " [dim](disabled)[/dim]"),
                source,
                str(stats.total),
                f"{stats.in_emby} ({stats.percent_in_library}%)",
                collection.last_refreshed_at.strftime("%Y-%m-%d %H:%M") if collection.last_refreshed_at else "never",
            )

        console.print(table)

    run_with_service(_list, log_level="WARNING")


@app.command()
def show(
    collection_id: str = typer.Argument(..., help="Collection ID"),
    missing: bool = typer.Option(False, "--missing", help="Only list items not in Emby"),
) -> None:
    """Show the items of a collection."""

    async def _show(service: CollectionService) -> None:
        collection = await service.get_collection(collection_id)
        stats = await service.get_collection_stats(collection_id)

        table = Table(title=f"{collection.name} - {stats.in_emby}/{stats.total} in Emby ({stats.percent_in_library}%)")
        table.add_column("ID", style="dim")
        table.add_column("Title", style="cyan")
        table.add_column("Type")
        table.add_column("IDs", style="dim")
        table.add_column("Emby")

        for item in collection.items:
            if missing and item.in_emby:
                continue
            ids = [f"{name}:{value}" for name, value in
                   (("imdb", item.imdb_id), ("tmdb", item.tmdb_id), ("tvdb", item.tvdb_id)) if value]
            if item.unmatched:
                emby = "[dim]unmatched[/dim]"
            else:
                emby = "[green]✓[/green]" if item.in_emby else "[red]✗[/red]"
            table.add_row(item.id, item.display_title, item.media_type.value, " ".join(ids), emby)

        console.print(table)

    run_with_service(_show, log_level="WARNING")


@app.command()
def stats(collection_id: str = typer.Argument(..., help="Collection ID")) -> None:
    """Show library coverage of a collection."""

    async def _stats(service: CollectionService) -> None:
        result = await service.get_collection_stats(collection_id)
        console.print(f"Total:   {result.total}")
        console.print(f"In Emby: [green]{result.in_emby}[/green]")
        console.print(f"Missing: [yellow]{result.missing}[/yellow]")
        console.print(f"Coverage: {result.percent_in_library}%")

    run_with_service(_stats, log_level="WARNING")


@app.command()
def create(
    name: str = typer.Argument(..., help="Collection name"),
    source: SourceType = typer.Option(SourceType.MANUAL, "--source", case_sensitive=False, help="Source type"),
    source_id: Optional[str] = typer.Option(None, "--source-id", help="List ID, slug or Trakt username"),
    description: Optional[str] = typer.Option(None, "--description"),
    interval: int = typer.Option(24, "--interval", help="Refresh interval in hours"),
    refresh_time: str = typer.Option("00:00", "--time", help="Preferred refresh time (HH:MM)"),
    sync: bool = typer.Option(False, "--sync/--no-sync", help="Sync to Emby after each refresh"),
    remove: bool = typer.Option(False, "--remove/--keep", help="Delete items dropped from the source"),
    delete_from_emby: bool = typer.Option(False, "--delete-from-emby", help="Delete the Emby collection with it"),
    servers: Optional[list[str]] = typer.Option(None, "--server", help="Target Emby server ID (repeatable)"),
) -> None:
    """Create a collection (non-manual collections are refreshed right away)."""

    async def _create(service: CollectionService) -> None:
        collection = await service.create_collection(
            {
                "name": name,
                "description": description,
                "source_type": source,
                "source_id": source_id,
                "refresh_interval_hours": interval,
                "refresh_time": refresh_time,
                "sync_to_emby_on_refresh": sync,
                "remove_from_emby": remove,
                "delete_from_emby_on_delete": delete_from_emby,
                "emby_server_ids": set(servers or []),
            }
        )
        console.print(f"[green]✓[/green] Created collection [cyan]{collection.name}[/cyan] ({collection.id})")

        if not collection.is_manual:
            console.print("[dim]Refreshing from source...[/dim]")
            async for progress in service.watch_refresh(collection.id):
                print_progress(progress)

    run_with_service(_create)


@app.command()
def update(
    collection_id: str = typer.Argument(..., help="Collection ID"),
    name: Optional[str] = typer.Option(None, "--name"),
    interval: Optional[int] = typer.Option(None, "--interval", help="Refresh interval in hours"),
    refresh_time: Optional[str] = typer.Option(None, "--time", help="Preferred refresh time (HH:MM)"),
    enabled: Optional[bool] = typer.Option(None, "--enable/--disable"),
    sync: Optional[bool] = typer.Option(None, "--sync/--no-sync"),
    remove: Optional[bool] = typer.Option(None, "--remove/--keep"),
) -> None:
    """Update collection settings."""
    changes: dict[str, Any] = {
        "name": name,
        "refresh_interval_hours": interval,
        "refresh_time": refresh_time,
        "is_enabled": enabled,
        "sync_to_emby_on_refresh": sync,
        "remove_from_emby": remove,
    }
    changes = {k: v for k, v in changes.items() if v is not None}

    async def _update(service: CollectionService) -> None:
        collection = await service.update_collection(collection_id, changes)
        console.print(f"[green]✓[/green] Updated [cyan]{collection.name}[/cyan]")

    run_with_service(_update, log_level="WARNING")


@app.command()
def delete(
    collection_id: str = typer.Argument(..., help="Collection ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete a collection."""
    if not yes and not typer.confirm(f"Delete collection {collection_id}?"):
        raise typer.Exit(0)

    async def _delete(service: CollectionService) -> None:
        await service.delete_collection(collection_id)
        console.print("[green]✓[/green] Collection deleted")

    run_with_service(_delete)


@app.command("add-item")
def add_item(
    collection_id: str = typer.Argument(..., help="Collection ID"),
    title: str = typer.Argument(..., help="Title"),
    year: Optional[int] = typer.Option(None, "--year"),
    show_type: bool = typer.Option(False, "--show", help="Item is a TV show"),
    imdb_id: Optional[str] = typer.Option(None, "--imdb"),
    tmdb_id: Optional[int] = typer.Option(None, "--tmdb"),
    tvdb_id: Optional[int] = typer.Option(None, "--tvdb"),
) -> None:
    """Add an item to a collection."""
    entry = SourceEntry(
        title=title,
        year=year,
        media_type=MediaType.SHOW if show_type else MediaType.MOVIE,
        imdb_id=imdb_id,
        tmdb_id=tmdb_id,
        tvdb_id=tvdb_id,
    )

    async def _add(service: CollectionService) -> None:
        item = await service.add_collection_item(collection_id, entry)
        state = "in Emby" if item.in_emby else ("unmatched" if item.unmatched else "missing from Emby")
        console.print(f"[green]✓[/green] Added [cyan]{item.display_title}[/cyan] ({state})")

    run_with_service(_add, log_level="WARNING")


@app.command("remove-item")
def remove_item(
    collection_id: str = typer.Argument(..., help="Collection ID"),
    item_id: str = typer.Argument(..., help="Item ID"),
) -> None:
    """Remove an item from a collection."""

    async def _remove(service: CollectionService) -> None:
        await service.remove_collection_item(collection_id, item_id)
        console.print("[green]✓[/green] Item removed")

    run_with_service(_remove, log_level="WARNING")


@app.command()
def refresh(
    collection_id: Optional[str] = typer.Argument(None, help="Collection ID (default: all)"),
    poll: bool = typer.Option(False, "--poll", help="Watch by polling the item count instead of progress events"),
) -> None:
    """Refresh collections from their source and watch progress."""

    async def _refresh(service: CollectionService) -> None:
        if collection_id:
            targets = [await service.get_collection(collection_id)]
        else:
            targets = [c for c in await service.get_collections() if not c.is_manual and c.is_enabled]

        for collection in targets:
            console.print(f"[cyan]Refreshing {collection.name}...[/cyan]")
            await service.refresh_collection(collection.id)

            if poll:
                count = await service.poll_item_count(
                    collection.id,
                    on_change=lambda n: console.print(f"  [dim]items={n}[/dim]"),
                )
                console.print(f"  [dim]settled at {count} items[/dim]")
            else:
                async for progress in service.watch_refresh(collection.id):
                    print_progress(progress)

    run_with_service(_refresh)


# =========================================================================
# Emby sync
# =========================================================================


@app.command()
def sync(
    collection_id: Optional[str] = typer.Argument(None, help="Collection ID (default: all)"),
    server_id: Optional[str] = typer.Option(None, "--server", help="Only sync to this Emby server"),
) -> None:
    """Sync collections to Emby."""

    async def _sync(service: CollectionService) -> list[SyncLog]:
        if collection_id:
            return await service.sync_collection_to_emby(collection_id)
        if server_id:
            return await service.sync_to_emby_server(server_id)
        return await service.sync_to_emby()

    logs = run_with_service(_sync)
    if logs:
        print_sync_logs(logs)
    else:
        console.print("[yellow]Nothing to sync[/yellow]")


@app.command()
def logs(
    collection_id: Optional[str] = typer.Option(None, "--collection", help="Filter by collection ID"),
    limit: int = typer.Option(20, "--limit", help="Number of entries"),
) -> None:
    """Show recent Emby sync logs."""
    entries = run_with_service(
        lambda service: service.get_sync_logs(limit=limit, collection_id=collection_id),
        log_level="WARNING",
    )
    print_sync_logs(entries, title="Sync Logs")


# =========================================================================
# Servers
# =========================================================================


@app.command()
def servers() -> None:
    """List configured Emby, Radarr and Sonarr servers."""

    async def _list(service: CollectionService) -> None:
        table = Table(title="Servers")
        table.add_column("ID", style="dim")
        table.add_column("Type", style="yellow")
        table.add_column("Name", style="cyan")
        table.add_column("URL")
        table.add_column("API Key", style="dim")
        table.add_column("Default")
        table.add_column("Profile / Root folder", style="dim")

        for server in await service.store.get_servers():
            view = server.public_view()
            extra = ""
            if server.server_type != ServerType.EMBY:
                extra = f"{view.get('quality_profile_id') or '-'} / {view.get('root_folder_path') or '-'}"
            table.add_row(
                view["id"],
                view["server_type"],
                view["name"],
                view["url"],
                view["api_key"],
                "✓" if view["is_default"] else "",
                extra,
            )

        console.print(table)

    run_with_service(_list, log_level="WARNING")


@app.command("add-server")
def add_server(
    server_type: ServerType = typer.Argument(..., case_sensitive=False, help="emby, radarr or sonarr"),
    name: str = typer.Argument(..., help="Display name"),
    url: str = typer.Argument(..., help="Server URL"),
    api_key: str = typer.Option(..., "--api-key", prompt=True, hide_input=True),
) -> None:
    """Connect a server, then pick its download defaults (Radarr/Sonarr)."""

    async def _add(service: CollectionService) -> None:
        server = await service.connect_server(server_type, name, url, api_key)
        console.print(f"[green]✓[/green] Connected [cyan]{server.name}[/cyan] ({server.id})")

        if server_type == ServerType.EMBY:
            return

        options = await service.get_server_options(server.id)
        for profile in options.quality_profiles:
            console.print(f"  [dim]{profile['id']}[/dim] {profile['name']}")
        default_profile = options.quality_profiles[0]["id"] if options.quality_profiles else None
        profile_id = typer.prompt("Quality profile ID", type=int, default=default_profile)

        for folder in options.root_folders:
            console.print(f"  [dim]-[/dim] {folder['path']}")
        default_root = options.root_folders[0]["path"] if options.root_folders else None
        root = typer.prompt("Root folder", default=default_root)

        await service.configure_server(server.id, quality_profile_id=profile_id, root_folder_path=root)
        console.print("[green]✓[/green] Download defaults saved")

    run_with_service(_add, log_level="WARNING")


@app.command("configure-server")
def configure_server(
    server_id: str = typer.Argument(..., help="Server ID"),
    profile: Optional[int] = typer.Option(None, "--profile", help="Quality profile ID"),
    root: Optional[str] = typer.Option(None, "--root", help="Root folder path"),
    default: Optional[bool] = typer.Option(None, "--default/--no-default", help="Default server of its type"),
) -> None:
    """Change a server's download defaults."""

    async def _configure(service: CollectionService) -> None:
        server = await service.configure_server(server_id, quality_profile_id=profile, root_folder_path=root, is_default=default)
        console.print(f"[green]✓[/green] Updated [cyan]{server.name}[/cyan]")

    run_with_service(_configure, log_level="WARNING")


@app.command("remove-server")
def remove_server(server_id: str = typer.Argument(..., help="Server ID")) -> None:
    """Delete a server."""

    async def _remove(service: CollectionService) -> None:
        await service.delete_server(server_id)
        console.print("[green]✓[/green] Server removed")

    run_with_service(_remove, log_level="WARNING")


@app.command("test-connections")
def test_connections() -> None:
    """Test connections to every configured server."""

    async def _test(service: CollectionService) -> None:
        results = await service.test_all_servers()

        table = Table(title="Connection Tests")
        table.add_column("Server", style="cyan")
        table.add_column("Status")
        table.add_column("Details", style="dim")

        for name, result in results.items():
            status = "[green]OK[/green]" if result["ok"] else "[red]FAIL[/red]"
            table.add_row(name, status, result["message"])

        console.print(table)

    run_with_service(_test, log_level="WARNING")


# =========================================================================
# Download requests
# =========================================================================


@app.command()
def request(
    server_id: str = typer.Argument(..., help="Radarr or Sonarr server ID"),
    tmdb_id: Optional[int] = typer.Option(None, "--tmdb", help="TMDb ID (Radarr, or Sonarr lookup)"),
    tvdb_id: Optional[int] = typer.Option(None, "--tvdb", help="TVDb ID (Sonarr)"),
    title: str = typer.Option("", "--title"),
) -> None:
    """Request one movie (Radarr) or series (Sonarr)."""

    async def _request(service: CollectionService) -> DispatchResult:
        server = await service.get_server(server_id)
        if server.server_type == ServerType.SONARR:
            return await service.add_to_sonarr(server_id, tvdb_id, title=title, tmdb_id=tmdb_id)
        return await service.add_to_radarr(server_id, tmdb_id, title=title)

    result = run_with_service(_request, log_level="WARNING")
    print_dispatch_result(result)
    if not result.ok:
        raise typer.Exit(1)


@app.command("request-missing")
def request_missing(collection_id: str = typer.Argument(..., help="Collection ID")) -> None:
    """Request every item of a collection that is not in Emby."""
    result = run_with_service(lambda service: service.request_missing(collection_id))

    for item in result.results:
        if item.outcome != DispatchOutcome.ALREADY_EXISTS:
            print_dispatch_result(item)

    console.print(
        f"\nAdded: [green]{result.added}[/green]  Already present: {result.already_exists}  "
        f"Failed: [red]{result.failed}[/red]  Missing IDs: {result.missing_ids}  Skipped: {result.skipped}"
    )


# =========================================================================
# Daemon & auth
# =========================================================================


@app.command()
def schedule(
    sync_cron: Optional[str] = typer.Option(None, "--sync-cron", help="Cron for syncing everything to Emby"),
) -> None:
    """Run with scheduler for periodic refreshes (daemon mode)."""
    settings = get_settings()
    setup_logging(level=settings.log_level, log_dir=settings.get_log_path())
    log_settings(settings)

    if sync_cron is not None:
        settings.scheduler_sync_cron = sync_cron

    from collectarr.services.runner import Runner

    scheduler = Scheduler(timezone=settings.scheduler.timezone)

    async def _run_scheduler() -> None:
        runner = await Runner.create(settings)
        try:
            scheduled = await runner.schedule_all(scheduler)
            for name, cron in scheduled.items():
                console.print(f"[green]✓[/green] {name}: [cyan]{cron}[/cyan]")
            console.print(f"[dim]Timezone: {settings.scheduler.timezone}[/dim]")

            console.print("\n[green]Scheduler running.[/green] Press Ctrl+C to stop")
            for job in scheduler.list_jobs():
                console.print(f"  [dim]- {job['name']}: {job['next_run'] or 'N/A'}[/dim]")

            # Pick up collections created or edited by other commands
            while True:
                await asyncio.sleep(300)
                await runner.schedule_all(scheduler)
        finally:
            scheduler.stop()
            await runner.close()

    try:
        asyncio.run(_run_scheduler())
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler stopped[/yellow]")


@app.command("trakt-auth")
def trakt_auth() -> None:
    """Authenticate with Trakt using OAuth Device Code flow."""
    settings = get_settings()
    setup_logging(level="WARNING")

    if not settings.trakt.client_id or not settings.trakt.client_secret:
        console.print("[red]Error:[/red] TRAKT_CLIENT_ID and TRAKT_CLIENT_SECRET must be set")
        console.print("\nGet your credentials at: https://trakt.tv/oauth/applications")
        raise typer.Exit(1)

    from collectarr.services.trakt_auth import TraktAuth

    auth = TraktAuth(
        client_id=settings.trakt.client_id,
        client_secret=settings.trakt.client_secret,
        data_dir=settings.get_data_path(),
    )

    tokens = auth.load_tokens()
    if tokens and not tokens.is_expired():
        console.print("[green]Already authenticated with Trakt![/green]")
        console.print(f"Token expires: {tokens.expires_at.strftime('%Y-%m-%d %H:%M')}")
        if not typer.confirm("Do you want to re-authenticate?", default=False):
            raise typer.Exit(0)

    def on_code_received(user_code: str, verification_url: str, expires_in: int) -> None:
        console.print()
        console.print(f"  1. Go to: [link={verification_url}]{verification_url}[/link]")
        console.print(f"  2. Enter code: [bold yellow]{user_code}[/bold yellow]")
        console.print(f"  [dim]Code expires in {expires_in // 60} minutes[/dim]")
        console.print()
        console.print("[dim]Waiting for authorization...[/dim]")

    try:
        tokens = asyncio.run(auth.device_code_flow(on_code_received=on_code_received))
    except CollectarrError as e:
        console.print(f"[red]✗ Authentication failed:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]✓ Successfully authenticated with Trakt![/green]")
    console.print(f"  Token saved to: {auth.token_path}")
    console.print(f"  Expires: {tokens.expires_at.strftime('%Y-%m-%d %H:%M')}")


@app.command()
def version() -> None:
    """Show version information."""
    from collectarr import __version__

    console.print(f"Collectarr v{__version__}")


if __name__ == "__main__":
    app()
