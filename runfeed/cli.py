"""runfeed developer CLI.

Prints an assembled feed or relay liveness against live relays, exercising
the same assembler code path as library callers.
"""

import asyncio
import datetime as dt

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from runfeed.config.settings import settings
from runfeed.core.logger import setup_logger
from runfeed.feed.assembler import FeedAssembler
from runfeed.feed.cache import FeedCache
from runfeed.feed.leaderboard import rollup_by_author
from runfeed.feed.models import FeedPage, FeedPhase
from runfeed.feed.scope import FeedScope
from runfeed.feed.supplementary import SupplementaryJoiner
from runfeed.integrations.nostr.pool import RelayPool
from runfeed.storage.kv import RedisKeyValueStore

console = Console()

app = typer.Typer(
    name="runfeed",
    help="runfeed CLI - fitness feed aggregation over Nostr relays",
    add_completion=False,
)


def _format_duration(seconds: int) -> str:
    if seconds <= 0:
        return "-"
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}" if hours else f"{minutes}:{secs:02d}"


def _render_page(page: FeedPage) -> None:
    if page.phase is FeedPhase.ERROR:
        console.print(Panel(Text(page.error or "Feed failed", style="bold red"), border_style="red"))
        return

    table = Table(title=f"Feed ({len(page.records)} shown, more={page.has_more})")
    table.add_column("When", style="dim")
    table.add_column("Runner")
    table.add_column("Type")
    table.add_column("Distance", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Pace", justify="right")
    table.add_column("Likes", justify="right")
    table.add_column("Zaps", justify="right")
    table.add_column("Comments", justify="right")

    for record in page.records:
        metrics = record.metrics
        when = dt.datetime.fromtimestamp(record.created_at, tz=dt.UTC).strftime("%Y-%m-%d %H:%M")
        pace = f"{metrics.pace_min_per_km:.2f}/km" if metrics.pace_min_per_km else "-"
        table.add_row(
            when,
            record.display_name or record.author_id[:8],
            metrics.activity_type,
            f"{metrics.distance_km:.2f} km" if metrics.has_valid_distance else "-",
            _format_duration(metrics.duration_seconds),
            pace,
            str(record.likes),
            f"{record.tip_count} ({record.tip_amount:.0f} sats)",
            str(len(record.comments)),
        )

    console.print(table)
    for line in page.diagnostics:
        console.print(f"[yellow]![/yellow] {line}")


async def _run_feed(scope: FeedScope, relays: list[str] | None, pages: int, use_redis: bool, leaderboard: bool) -> None:
    pool = RelayPool(relays)
    store = RedisKeyValueStore(url=settings.redis_url) if use_redis else None
    assembler = FeedAssembler(pool, cache=FeedCache(store=store), joiner=SupplementaryJoiner(pool), scope=scope)
    try:
        page = await assembler.get_feed()
        for _ in range(1, pages):
            if not page.has_more:
                break
            page = await assembler.load_more()
        _render_page(page)

        if leaderboard and page.records:
            table = Table(title="Leaderboard")
            table.add_column("#", justify="right")
            table.add_column("Runner")
            table.add_column("Distance", justify="right")
            table.add_column("Activities", justify="right")
            names = {record.author_id: record.display_name for record in page.records}
            for position, totals in enumerate(rollup_by_author(page.records, scope.activity_type), start=1):
                table.add_row(
                    str(position),
                    names.get(totals.author_id) or totals.author_id[:8],
                    f"{totals.total_distance_km:.2f} km",
                    str(totals.activity_count),
                )
            console.print(table)
    finally:
        await assembler.close()
        await pool.close()


@app.command()
def feed(
    relay: list[str] = typer.Option(None, "--relay", "-r", help="Relay URL (repeatable; defaults to configured relays)"),
    author: list[str] = typer.Option(None, "--author", "-a", help="Limit to these author ids (repeatable)"),
    activity: str = typer.Option(None, "--activity", help="Activity type: run, walk or cycle"),
    hashtag: list[str] = typer.Option(None, "--hashtag", "-t", help="Required t tag (repeatable)"),
    season: str = typer.Option(None, "--season", help="Required season tag value"),
    event_date: str = typer.Option(None, "--event-date", help="Team event day (YYYY-MM-DD, UTC); requires --author"),
    pages: int = typer.Option(1, "--pages", "-p", min=1, help="Number of pages to load"),
    use_redis: bool = typer.Option(False, "--redis", help="Persist the feed cache in Redis"),
    leaderboard: bool = typer.Option(False, "--leaderboard", help="Print per-runner totals after the feed"),
    log_level: str = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
) -> None:
    """Assemble a feed and print it as a table."""
    setup_logger(level=log_level)

    if event_date:
        if not author:
            console.print("[red]Error:[/red] --event-date requires at least one --author", style="bold red")
            raise typer.Exit(1)
        try:
            scope = FeedScope.for_event_day(list(author), event_date, activity_type=activity or "run")
        except ValueError as e:
            console.print(f"[red]Error:[/red] invalid --event-date: {e!s}", style="bold red")
            raise typer.Exit(1) from e
    else:
        scope = FeedScope(
            participants=tuple(author) if author else None,
            activity_type=activity,
            hashtags=tuple(hashtag or ()),
            season_tag=season,
        )

    logger.info(f"[CLI] Loading feed with {pages} page(s)")
    asyncio.run(_run_feed(scope, list(relay) if relay else None, pages, use_redis, leaderboard))


@app.command()
def probe(
    relay: list[str] = typer.Option(None, "--relay", "-r", help="Relay URL (repeatable; defaults to configured relays)"),
) -> None:
    """Check which relays answer a NIP-11 information request."""
    setup_logger()

    async def _probe() -> dict[str, bool]:
        pool = RelayPool(list(relay) if relay else None)
        try:
            return await pool.probe_all()
        finally:
            await pool.close()

    results = asyncio.run(_probe())
    all_ok = all(results.values())
    details = "\n".join(f"  {'✓' if ok else '✗'} {url}" for url, ok in results.items())
    console.print(
        Panel(
            Text(f"{sum(results.values())}/{len(results)} relays reachable", style="bold green" if all_ok else "bold yellow"),
            subtitle=details,
            border_style="green" if all_ok else "yellow",
        )
    )
    if not any(results.values()):
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
