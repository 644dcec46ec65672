import asyncio
import logging
import os
import subprocess
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from smart_library import auth, circulation, dashboard, database
from smart_library.config import settings
from smart_library.errors import LibraryError, NotFoundError
from smart_library.library import Library
from smart_library.models import Role, utcnow
from smart_library.penalties import compute_overdue
from smart_library.services.google_books_service import (
    DEFAULT_SEED_CATEGORIES,
    GoogleBooksService,
    random_copy_count,
)
from smart_library.services.http_client import cleanup_http_client

APP_NAME = "Smart Library CLI"

console = Console()
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Global options for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if db:
        database.DATABASE_FILE = db


@app.command("list")
def cli_list(search: Optional[str] = typer.Option(None, "--search", "-s", help="Match title, author or category")):
    """List active books in the catalog."""
    books = Library().list_books(search=search)
    if not books:
        console.print("No books in library.")
        return

    table = Table(title="Catalog", show_lines=False, header_style="bold cyan")
    table.add_column("ID", style="magenta", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Author", style="white")
    table.add_column("Category", style="dim")
    table.add_column("Available", justify="right")

    for book in books:
        table.add_row(
            str(book.id), escape(book.title), escape(book.author), escape(book.category),
            f"{book.available_copies}/{book.total_copies}",
        )
    console.print(table)
    console.print(f"[dim]{len(books)} book(s)[/]")


@app.command("stats")
def cli_stats():
    """Show catalog and circulation statistics."""
    statistics = Library().get_statistics()
    counts = dashboard.count_by_status()
    console.print(Panel.fit(
        f"[bold]Books:[/] {statistics['total_books']}\n"
        f"[bold]Copies:[/] {statistics['available_copies']}/{statistics['total_copies']} available\n"
        f"[bold]Authors:[/] {statistics['unique_authors']}\n"
        f"[bold]Issued:[/] {counts['issued']}  [bold]Overdue:[/] {counts['overdue']}  "
        f"[bold]Returned:[/] {counts['returned']}",
        title="Statistics",
        border_style="blue",
    ))


@app.command("create-admin")
def cli_create_admin(
    name: str = typer.Argument(..., help="Display name"),
    email: str = typer.Argument(..., help="Login email"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Create an administrator account."""
    Library()
    try:
        user = auth.create_user(name, email, password, Role.ADMIN)
    except LibraryError as e:
        console.print(f"[bold red]Error:[/] {e.message}")
        raise typer.Exit(code=1)
    console.print(f"Created admin {user.email} (id {user.id})")


@app.command("deactivate-user")
def cli_deactivate_user(
    email: str = typer.Argument(..., help="Login email"),
    reactivate: bool = typer.Option(False, "--reactivate", help="Restore access instead"),
):
    """Block (or restore) an account; its tokens stop working immediately."""
    Library()
    try:
        user = auth.get_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found")
        user = auth.set_user_active(user.id, reactivate)
    except LibraryError as e:
        console.print(f"[bold red]Error:[/] {e.message}")
        raise typer.Exit(code=1)
    state = "Reactivated" if user.is_active else "Deactivated"
    console.print(f"{state} {user.email} (id {user.id})")


@app.command("overdue")
def cli_overdue():
    """Show open issues past their due date with accrued penalties."""
    Library()
    now = utcnow()
    issues = circulation.list_open_issues(due_before=now)
    if not issues:
        console.print("No overdue issues.")
        return

    table = Table(title="Overdue issues", header_style="bold red")
    table.add_column("Issue", no_wrap=True)
    table.add_column("Book")
    table.add_column("User")
    table.add_column("Due")
    table.add_column("Days", justify="right")
    table.add_column("Penalty", justify="right")

    for issue in issues:
        info = compute_overdue(issue, now)
        table.add_row(
            str(issue.id),
            escape((issue.book or {}).get("title", str(issue.book_id))),
            escape((issue.user or {}).get("email", str(issue.user_id))),
            f"{issue.due_date:%Y-%m-%d}",
            str(info.days_overdue),
            f"{info.penalty_amount:g}",
        )
    console.print(table)


@app.command("sweep-overdue")
def cli_sweep_overdue():
    """Persist status 'overdue' on issues a full day past due."""
    Library()
    changed = circulation.mark_overdue()
    console.print(f"Marked {changed} issue(s) overdue.")


async def _seed(categories: List[str], per_category: int) -> int:
    lib = Library()
    service = GoogleBooksService()
    added = 0
    try:
        for category in categories:
            with console.status(f"Fetching '{category}' from Google Books..."):
                volumes = await service.fetch_category(category, max_results=per_category)
            for volume in volumes:
                copies = random_copy_count()
                try:
                    lib.add_book(
                        title=volume.title,
                        author=volume.author,
                        category=volume.category,
                        total_copies=copies,
                        available_copies=copies,
                        description=volume.description,
                        cover_image=volume.thumbnail_url,
                    )
                except LibraryError as e:
                    console.print(f"[yellow]Skipped[/] {escape(volume.title)}: {e.message}")
                    continue
                added += 1
            console.print(f"[green]{category}[/]: {len(volumes)} volume(s)")
    finally:
        await cleanup_http_client()
    return added


@app.command("seed")
def cli_seed(
    category: Optional[List[str]] = typer.Option(None, "--category", "-c", help="Subject to fetch; repeatable"),
    per_category: int = typer.Option(10, "--per-category", min=1, max=40),
):
    """Populate the catalog from Google Books."""
    added = asyncio.run(_seed(category or DEFAULT_SEED_CATEGORIES, per_category))
    console.print(f"Seeded {added} book(s).")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    console.print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "smart_library.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        # The uvicorn process picks its database from LIBRARY_DB_FILE
        subprocess.run(args, env={**os.environ, "LIBRARY_DB_FILE": str(database.DATABASE_FILE)})
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Is it installed?")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
