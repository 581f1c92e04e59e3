"""CLI entry-point for pixsync."""

from __future__ import annotations

import logging
import sys
from dataclasses import asdict

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import AppConfig, DatabaseConfig, GitHubConfig, PixivConfig, S3Config
from .errors import PixsyncError
from .services import Services
from .sync import CATEGORIES
from .transfer import TransferResult

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )
    # Suppress noisy libraries
    for name in ("httpx", "httpcore", "boto3", "botocore", "urllib3", "s3transfer", "PIL"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _print_result(title: str, result: TransferResult) -> None:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in asdict(result.progress).items():
        table.add_row(key.capitalize(), str(val))
    console.print(table)
    if result.success:
        console.print("[green]✓[/green] Done")
    else:
        console.print(f"[red]✗[/red] {result.error or 'Finished with errors'}")


def _fail(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")
    sys.exit(1)


@click.group()
@click.option("--database-url", envvar="DATABASE_URL", default="", help="PostgreSQL DSN (overrides --db-*)")
@click.option("--db-host", envvar="DB_HOST", default="localhost", help="PostgreSQL host")
@click.option("--db-port", envvar="DB_PORT", default=5432, type=int, help="PostgreSQL port")
@click.option("--db-name", envvar="DB_NAME", default="pixsync", help="PostgreSQL database name")
@click.option("--db-user", envvar="DB_USER", default="pixsync", help="PostgreSQL user")
@click.option("--db-password", envvar="DB_PASSWORD", default="pixsync", help="PostgreSQL password")
@click.option("--s3-endpoint", envvar="S3_ENDPOINT", default="http://localhost:9000", help="S3/R2 endpoint URL")
@click.option("--s3-access-key", envvar="S3_ACCESS_KEY", default="minioadmin", help="S3 access key")
@click.option("--s3-secret-key", envvar="S3_SECRET_KEY", default="minioadmin", help="S3 secret key")
@click.option("--s3-bucket", envvar="S3_BUCKET", default="pixsync", help="S3 bucket name")
@click.option("--s3-public-url", envvar="S3_PUBLIC_URL", default="", help="Public base URL of the bucket")
@click.option("--phpsessid", envvar="PIXIV_PHPSESSID", default="", help="pixiv PHPSESSID cookie")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, **kwargs: object) -> None:
    """pixsync – Mirror pixiv illustrations into object storage and GitHub.

    Crawls rankings, tag searches and related works, stores originals in
    S3-compatible storage with metadata in Postgres, and batch-commits
    WebP copies into a GitHub repository.
    """
    _setup_logging(bool(kwargs.pop("verbose")))
    ctx.ensure_object(dict)
    ctx.obj["cfg"] = AppConfig(
        db=DatabaseConfig(
            host=kwargs["db_host"],  # type: ignore[arg-type]
            port=kwargs["db_port"],  # type: ignore[arg-type]
            dbname=kwargs["db_name"],  # type: ignore[arg-type]
            user=kwargs["db_user"],  # type: ignore[arg-type]
            password=kwargs["db_password"],  # type: ignore[arg-type]
            url=kwargs["database_url"],  # type: ignore[arg-type]
        ),
        s3=S3Config(
            endpoint=kwargs["s3_endpoint"],  # type: ignore[arg-type]
            access_key=kwargs["s3_access_key"],  # type: ignore[arg-type]
            secret_key=kwargs["s3_secret_key"],  # type: ignore[arg-type]
            bucket=kwargs["s3_bucket"],  # type: ignore[arg-type]
            public_url=kwargs["s3_public_url"],  # type: ignore[arg-type]
        ),
        pixiv=PixivConfig(phpsessid=kwargs["phpsessid"]),  # type: ignore[arg-type]
        github=GitHubConfig.from_env(),
    )


def _services(ctx: click.Context) -> Services:
    return Services.from_config(ctx.obj["cfg"], show_progress=True)


# ─── Commands ────────────────────────────────────────────────────


@cli.command(name="init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create or upgrade the database schema."""
    with _services(ctx) as svc:
        svc.db.ensure_schema()
        console.print("[green]✓[/green] Schema is up to date")


@cli.command()
@click.option("--mode", default="daily", help="Ranking mode (daily, weekly, daily_r18, ...)")
@click.option("--limit", default=5, type=int, help="Number of illustrations to transfer")
@click.option("--no-balance", is_flag=True, help="Do not balance landscape/portrait picks")
@click.pass_context
def ranking(ctx: click.Context, mode: str, limit: int, no_balance: bool) -> None:
    """Crawl a ranking.

    Example: pixsync ranking --mode daily --limit 10
    """
    with _services(ctx) as svc:
        console.print(f"[bold]Crawling [cyan]{mode}[/cyan] ranking...[/bold]")
        _print_result(f"{mode} ranking", svc.transfer.crawl_ranking(mode, limit, balance=not no_balance))


@cli.command()
@click.argument("tag")
@click.option("--limit", default=5, type=int, help="Number of illustrations to transfer")
@click.option("--no-balance", is_flag=True, help="Do not balance landscape/portrait picks")
@click.pass_context
def tag(ctx: click.Context, tag: str, limit: int, no_balance: bool) -> None:
    """Crawl popular works for a tag.

    Example: pixsync tag 風景 --limit 5
    """
    with _services(ctx) as svc:
        console.print(f"[bold]Searching tag [cyan]{tag}[/cyan]...[/bold]")
        _print_result(f"Tag {tag}", svc.transfer.crawl_by_tag(tag, limit, balance=not no_balance))


@cli.command()
@click.argument("pid", type=int)
@click.option("--related/--no-related", default=True, help="Also fetch related works")
@click.option("--limit", default=5, type=int, help="Max related works")
@click.pass_context
def pid(ctx: click.Context, pid: int, related: bool, limit: int) -> None:
    """Fetch one illustration by PID, optionally with related works.

    Example: pixsync pid 12345678 --limit 3
    """
    with _services(ctx) as svc:
        _print_result(f"PID {pid}", svc.transfer.crawl_pid(pid, related=related, limit=limit))


@cli.command()
@click.option("--limit", default=5, type=int, help="Number of illustrations to transfer")
@click.pass_context
def favorites(ctx: click.Context, limit: int) -> None:
    """Crawl a favorite tag picked by weight."""
    with _services(ctx) as svc:
        _print_result("Favorite tag crawl", svc.transfer.crawl_favorites(limit))


@cli.command()
@click.pass_context
def cron(ctx: click.Context) -> None:
    """Run one scheduled crawl (ranking, R-18, tag search, favorites)."""
    with _services(ctx) as svc:
        report = svc.transfer.run_scheduled()
        table = Table(title="Scheduled Run", show_header=True, header_style="bold cyan")
        table.add_column("Job", style="bold")
        table.add_column("Success", justify="right")
        table.add_column("Skipped", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Error")
        for job, part in report.items():
            if not isinstance(part, dict):
                continue
            progress = part.get("progress", {})
            table.add_row(
                job,
                str(progress.get("success", 0)),
                str(progress.get("skipped", 0)),
                str(progress.get("failed", 0)),
                part.get("error") or "",
            )
        console.print(table)
        if not report.get("success"):
            sys.exit(1)


# ─── GitHub mirror ───────────────────────────────────────────────


@cli.command()
@click.argument("category", type=click.Choice(list(CATEGORIES)))
@click.option("--limit", default=10, type=int, help="Images per commit (max 50)")
@click.pass_context
def sync(ctx: click.Context, category: str, limit: int) -> None:
    """Commit pending images of a category to the GitHub mirror.

    Example: pixsync sync h --limit 20
    """
    with _services(ctx) as svc:
        try:
            result = svc.sync.sync_category(category, limit)
        except PixsyncError as exc:
            _fail(str(exc))
            return
        if result.commit:
            console.print(f"[green]✓[/green] {result.synced} images in commit {result.commit[:7]}")
        else:
            console.print("[yellow]Nothing to sync[/yellow]")
        for err in result.errors:
            console.print(f"  [red]✗[/red] {err}")


@cli.command(name="sync-status")
@click.pass_context
def sync_status(ctx: click.Context) -> None:
    """Show stored, synced and mirrored counts per category."""
    with _services(ctx) as svc:
        table = Table(title="Mirror Status", show_header=True, header_style="bold cyan")
        table.add_column("Category", style="bold")
        table.add_column("Label")
        table.add_column("Stored", justify="right")
        table.add_column("Synced", justify="right")
        table.add_column("GitHub", justify="right")
        for key, row in svc.sync.status().items():
            github = "-" if row["github"] is None else str(row["github"])
            table.add_row(key, row["label"], str(row["total"]), str(row["synced"]), github)
        console.print(table)


@cli.command(name="sync-fix")
@click.pass_context
def sync_fix(ctx: click.Context) -> None:
    """Mark images synced to match the files already in the mirror."""
    with _services(ctx) as svc:
        for key, count in svc.sync.fix_sync_state().items():
            console.print(f"  {key}: {count} marked synced")


@cli.command(name="cleanup-storage")
@click.option("--apply", is_flag=True, help="Delete orphans (default is a dry run)")
@click.pass_context
def cleanup_storage(ctx: click.Context, apply: bool) -> None:
    """Find (and optionally delete) objects with no metadata row."""
    with _services(ctx) as svc:
        report = svc.sync.clean_storage(dry_run=not apply)
        console.print(
            f"{report['total']} objects, {report['referenced']} referenced, "
            f"[bold]{len(report['orphans'])}[/bold] orphaned"
        )
        for key in report["orphans"][:20]:
            console.print(f"  {key}")
        if apply:
            console.print(f"[green]✓[/green] Deleted {report['deleted']} objects")
            for err in report.get("errors", []):
                console.print(f"  [red]✗[/red] {err}")


@cli.command(name="cleanup-github")
@click.argument("category", type=click.Choice(list(CATEGORIES)))
@click.option("--apply", is_flag=True, help="Delete files (default is a dry run)")
@click.pass_context
def cleanup_github(ctx: click.Context, category: str, apply: bool) -> None:
    """Remove every WebP file of a category from the mirror and reset its sync state."""
    with _services(ctx) as svc:
        report = svc.sync.clean_mirror(category, dry_run=not apply)
        if report["dry_run"]:
            console.print(f"{report['files']} files would be removed from {category}")
        else:
            console.print(f"[green]✓[/green] Removed {report['deleted']} files from {category}")


# ─── Skip tags / logs ────────────────────────────────────────────


@cli.group(name="skip-tags")
def skip_tags() -> None:
    """Manage the skip-tag deny-list."""


@skip_tags.command(name="list")
@click.pass_context
def skip_tags_list(ctx: click.Context) -> None:
    with _services(ctx) as svc:
        table = Table(title="Skip Tags", show_header=True, header_style="bold cyan")
        table.add_column("Tag", style="bold")
        table.add_column("Translation")
        table.add_column("Category")
        table.add_column("ID", style="dim")
        for row in svc.db.list_skip_tags():
            table.add_row(row["tag"], row.get("translation") or "", row.get("category") or "", str(row["id"]))
        console.print(table)


@skip_tags.command(name="add")
@click.argument("tag")
@click.option("--translation", default=None)
@click.option("--category", default="other")
@click.pass_context
def skip_tags_add(ctx: click.Context, tag: str, translation: str | None, category: str) -> None:
    with _services(ctx) as svc:
        if svc.db.add_skip_tag(tag, translation, category) is None:
            _fail(f"{tag} is already a skip tag")
        console.print(f"[green]✓[/green] Added {tag}")


@skip_tags.command(name="remove")
@click.argument("tag_id")
@click.pass_context
def skip_tags_remove(ctx: click.Context, tag_id: str) -> None:
    with _services(ctx) as svc:
        if not svc.db.delete_skip_tag(tag_id):
            _fail(f"No skip tag with id {tag_id}")
        console.print("[green]✓[/green] Removed")


_LEVEL_STYLE = {"info": "blue", "success": "green", "warning": "yellow", "error": "red"}


@cli.command()
@click.option("--limit", default=20, type=int)
@click.option("--level", type=click.Choice(["all", "info", "success", "warning", "error"]), default="all")
@click.option("--clear", is_flag=True, help="Delete all activity log entries")
@click.pass_context
def logs(ctx: click.Context, limit: int, level: str, clear: bool) -> None:
    """Show (or clear) the dashboard activity log."""
    with _services(ctx) as svc:
        if clear:
            console.print(f"[green]✓[/green] Deleted {svc.db.clear_logs()} entries")
            return
        table = Table(title="Activity Log", show_header=True, header_style="bold cyan")
        table.add_column("Time", style="dim")
        table.add_column("Level")
        table.add_column("Message")
        table.add_column("Details", max_width=50)
        for row in svc.db.list_logs(level=level, limit=limit):
            style = _LEVEL_STYLE.get(row["level"], "white")
            table.add_row(
                row["created_at"].strftime("%Y-%m-%d %H:%M:%S") if row.get("created_at") else "",
                f"[{style}]{row['level']}[/{style}]",
                row["message"],
                row.get("details") or "",
            )
        console.print(table)


@cli.command()
@click.option("--host", envvar="HOST", default="0.0.0.0")
@click.option("--port", envvar="PORT", default=8000, type=int)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the dashboard API under uvicorn."""
    import uvicorn

    from .web import create_app

    app = create_app(Services.from_config(ctx.obj["cfg"]))
    uvicorn.run(app, host=host, port=port, log_config=None)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
