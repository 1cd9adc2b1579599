import os
from typing import Optional

import typer
import uvicorn
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .catalog import Catalog
from .config import configure_logging, settings
from .database import initialize_database
from .errors import LendingError
from .lending import LendingEngine

APP_NAME = "Book Lending CLI"

app = typer.Typer(help=APP_NAME)
console = Console()

_state = {"db_file": None}


@app.callback()
def _global_options(
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
):
    """Global options shared by every command."""
    _state["db_file"] = db


def _database():
    return initialize_database(_state["db_file"] or settings.db_file)


def _fail(error: LendingError) -> None:
    console.print(f"[bold red]Error:[/] {escape(error.message)}")
    raise typer.Exit(code=1)


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    database = _database()
    console.print(f"[green]Database ready:[/] {escape(database.db_file)}")


@app.command("add-book")
def cli_add_book(
    title: str = typer.Option(..., "--title", "-t"),
    author: str = typer.Option(..., "--author", "-a"),
    isbn: str = typer.Option(..., "--isbn", "-i"),
    quantity: int = typer.Option(1, "--quantity", "-q", min=1),
    category: str = typer.Option("General", "--category", "-c"),
):
    """Add a book to the catalog."""
    catalog = Catalog(_database())
    try:
        book = catalog.create_book(title, author, isbn, quantity, category)
    except LendingError as e:
        _fail(e)
    console.print(f"Added book {book.id}: {escape(book.title)} by {escape(book.author)} ({book.quantity} copies)")


@app.command("books")
def cli_books(
    page: int = typer.Option(1, "--page", "-p", min=1),
    limit: int = typer.Option(settings.default_page_size, "--limit", "-l", min=1),
):
    """List books with their current availability."""
    try:
        result = Catalog(_database()).list_books(page, limit)
    except LendingError as e:
        _fail(e)
    if not result.items:
        console.print("No books in catalog.")
        return

    table = Table(title="Catalog", box=box.SIMPLE, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("ISBN", style="magenta", no_wrap=True)
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Available", justify="right")
    for book, available in result.items:
        table.add_row(str(book.id), book.isbn, escape(book.title), escape(book.author), f"{available}/{book.quantity}")
    console.print(table)
    console.print(f"[dim]Page {result.page} of {max(result.total_pages, 1)} ({result.total} books)[/]")


@app.command("active")
def cli_active(user_id: int = typer.Argument(..., help="Borrower id")):
    """Show a user's active loans."""
    records = LendingEngine(_database()).get_active_borrowings(user_id)
    if not records:
        console.print(f"User {user_id} has no active loans.")
        return
    table = Table(title=f"Active loans of user {user_id}", box=box.SIMPLE, header_style="bold cyan")
    table.add_column("Loan", justify="right")
    table.add_column("Book")
    table.add_column("Borrowed")
    for record in records:
        title = record.book.title if record.book else f"#{record.book_id}"
        table.add_row(str(record.id), escape(title), record.borrowed_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@app.command("history")
def cli_history(
    user_id: int = typer.Argument(..., help="Borrower id"),
    page: int = typer.Option(1, "--page", "-p", min=1),
    limit: int = typer.Option(settings.default_page_size, "--limit", "-l", min=1),
):
    """Show a user's borrowing history, newest first."""
    try:
        result = LendingEngine(_database()).get_user_borrowing_history(user_id, page, limit)
    except LendingError as e:
        _fail(e)
    if not result.items:
        console.print(f"User {user_id} has no borrowing history.")
        return
    table = Table(title=f"History of user {user_id}", box=box.SIMPLE, header_style="bold cyan")
    table.add_column("Loan", justify="right")
    table.add_column("Book")
    table.add_column("Borrowed")
    table.add_column("Status")
    for record in result.items:
        title = record.book.title if record.book else f"#{record.book_id}"
        table.add_row(
            str(record.id),
            escape(title),
            record.borrowed_at.strftime("%Y-%m-%d %H:%M"),
            record.status,
        )
    console.print(table)
    console.print(f"[dim]Page {result.page} of {max(result.total_pages, 1)} ({result.total} loans)[/]")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Run the HTTP API with uvicorn."""
    if _state["db_file"]:
        # the reloader imports the app in a fresh process, which only sees the environment
        os.environ["LIBRARY_DB_FILE"] = _state["db_file"]
        settings.db_file = _state["db_file"]
    configure_logging()
    host = host or settings.api_host
    port = port or int(settings.api_port)
    console.print(f"Starting API on http://{host}:{port}/")
    uvicorn.run(
        "lending_app.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    app()
