"""
Command Line Interface for Content Desk.
"""

from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, Optional

import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.audit_service import AuditService
from ..db.base import get_session_local, init_database
from ..enums import Role
from ..errors import ContentDeskError
from ..notifications.delivery import DeliveryDispatcher
from ..notifications.digest import DigestBuilder
from ..notifications.fanout import FanoutEngine
from ..observability import configure_logging
from ..primitives import Actor, utc_now
from ..scheduling.scheduler import Scheduler

app = typer.Typer(help="Content Desk - editorial workflow and subscriber notifications")
console = Console()


@contextmanager
def _session() -> Iterator[Session]:
    db = get_session_local()()
    try:
        yield db
    except ContentDeskError as e:
        db.rollback()
        console.print(f"❌ {e.code}: {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()


def _summary_table(title: str, summary: dict) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green", justify="right")
    for key, value in summary.items():
        table.add_row(key, str(value))
    return table


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override LOG_LEVEL"),
    log_format: str = typer.Option("console", help="json or console"),
):
    """Configure logging before every command."""
    configure_logging(level=log_level, fmt=log_format)


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    dev: bool = typer.Option(False, help="Run in development mode with reload"),
):
    """Start the Content Desk API."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    rprint(Panel.fit(f"📰 Content Desk on http://{host}:{port}", style="bold blue"))
    uvicorn.run(
        "content_desk.main:app",
        host=host,
        port=port,
        reload=dev,
        workers=1 if dev else settings.api_workers,
    )


@app.command("init-db")
def init_db():
    """Create all database tables."""
    init_database()
    console.print("✅ Database initialized")


@app.command()
def sweep():
    """Recover stuck schedules and execute due publications once."""
    with _session() as db:
        scheduler = Scheduler(db)
        recovered = scheduler.recover_stuck()
        summary = scheduler.process_due()
    if recovered:
        console.print(f"♻️  Recovered {recovered} stuck schedule(s)")
    console.print(_summary_table("Scheduled publications", summary))


@app.command()
def fanout(
    limit: int = typer.Option(50, help="Max publish events to process"),
):
    """Recover stuck publish events, then process pending ones."""
    with _session() as db:
        engine = FanoutEngine(db)
        recovered = engine.recover_stuck()
        summary = engine.process_pending(limit=limit)
    if recovered:
        console.print(f"♻️  Recovered {recovered} stuck publish event(s)")
    console.print(_summary_table("Fan-out", summary))


@app.command()
def digests(
    digest_type: str = typer.Argument("daily", help="daily or weekly"),
    force: bool = typer.Option(False, help="Build every non-empty bucket now"),
):
    """Build due digests."""
    with _session() as db:
        summary = DigestBuilder(db).build_due(digest_type, force=force)
    console.print(_summary_table(f"{digest_type.title()} digests", summary))


@app.command()
def deliver(
    limit: int = typer.Option(100, help="Max notifications to deliver"),
):
    """Deliver due notifications."""
    with _session() as db:
        summary = DeliveryDispatcher(db).deliver_pending(limit=limit)
    console.print(_summary_table("Delivery", summary))


@app.command()
def overdue():
    """List scheduled publications past the overdue grace window."""
    with _session() as db:
        rows = Scheduler(db).get_overdue()
        if not rows:
            console.print("🟢 No overdue publications")
            return

        table = Table(title="Overdue publications", show_header=True, header_style="bold red")
        table.add_column("Schedule", style="yellow")
        table.add_column("Content")
        table.add_column("Due (UTC)", style="red")
        table.add_column("Attempts", justify="right")
        for row in rows:
            data = row.to_dict()
            table.add_row(
                data["id"],
                f"{data['content_type']}:{data['content_id']}",
                data["scheduled_for"],
                str(data["attempts"]),
            )
    console.print(table)


@app.command("failed-deliveries")
def failed_deliveries(
    limit: int = typer.Option(50, help="Max rows to show"),
    requeue: Optional[str] = typer.Option(None, help="Requeue the failed delivery with this id"),
):
    """Show the failed-delivery queue, or requeue one entry."""
    with _session() as db:
        dispatcher = DeliveryDispatcher(db)
        if requeue:
            notification = dispatcher.requeue_failed(requeue)
            console.print(f"✅ Requeued notification {notification.id}")
            return

        rows = dispatcher.list_failed(limit=limit)
        if not rows:
            console.print("🟢 No failed deliveries")
            return

        table = Table(title="Failed deliveries", show_header=True, header_style="bold red")
        table.add_column("ID", style="yellow")
        table.add_column("Notification")
        table.add_column("User")
        table.add_column("Channel", style="cyan")
        table.add_column("Attempts", justify="right")
        table.add_column("Error")
        for row in rows:
            table.add_row(
                row.id,
                row.notification_id,
                row.user_id,
                row.channel,
                str(row.attempts),
                (row.error or "")[:80],
            )
    console.print(table)


@app.command()
def audit(
    content_id: Optional[str] = typer.Argument(None, help="Content id; omit for recent entries"),
    limit: int = typer.Option(20, help="Max entries to show"),
    purge: bool = typer.Option(False, help="Purge entries past AUDIT_RETENTION_DAYS"),
    admin_id: str = typer.Option("cli-admin", help="Admin identity recorded for a purge"),
):
    """Show the audit history, or purge entries past retention."""
    with _session() as db:
        service = AuditService(db)
        if purge:
            days = get_settings().audit_retention_days
            removed = service.purge_older_than(
                utc_now() - timedelta(days=days), Actor(actor_id=admin_id, role=Role.ADMIN)
            )
            console.print(f"🧹 Removed {removed} audit entries older than {days} days")
            return

        entries = service.read(content_id, limit=limit) if content_id else service.query_recent(limit)
        table = Table(title="Audit log", show_header=True, header_style="bold cyan")
        table.add_column("When (UTC)", style="green")
        table.add_column("Content")
        table.add_column("Change", style="yellow")
        table.add_column("By")
        table.add_column("Notes")
        for entry in entries:
            data = entry.to_dict()
            table.add_row(
                data["created_at"],
                data["content_id"],
                data["change_type"],
                data["changed_by"],
                data["notes"] or "",
            )
    console.print(table)


if __name__ == "__main__":
    app()
