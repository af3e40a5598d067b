import logging
import subprocess
import sys
from datetime import date
from typing import Optional

import typer
from rich.console import Console

import database
from config import settings
from errors import LendingError
from library import Library
from models import UserRole
from utils.ui_helpers import (
    print_book_list,
    print_error,
    print_metrics,
    print_report,
    print_status_result,
    set_output_mode,
)

APP_NAME = "Library Ledger CLI"

console = Console()
logger = logging.getLogger(__name__)


class LibraryManager:
    """Keeps one Library per database file."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.default_database_file()
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library(current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid date '{value}', expected YYYY-MM-DD")


def _fail(error: LendingError) -> None:
    print_error(error.message)
    raise typer.Exit(code=1)


app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output format: plain | json | rich"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to stderr"),
):
    """Global options (output mode, logging)."""
    if output:
        set_output_mode(output)
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level, stream=sys.stderr)


@app.command("list")
def cli_list():
    """List books with their availability."""
    print_book_list(LibraryManager.get_instance().list_books())


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of copies"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    price: Optional[str] = typer.Option(None, "--price", help="Replacement price, e.g. 24.99"),
    reserve_on_request: bool = typer.Option(False, "--reserve-on-request", help="Hold a copy as soon as requested"),
):
    """Register a book with all copies available."""
    try:
        book = LibraryManager.get_instance().add_book(
            title, author, total_copies=copies, isbn=isbn, price=price, reserve_on_request=reserve_on_request
        )
    except LendingError as e:
        _fail(e)
    print(f"Added book {book.id}: {book.title} by {book.author} ({book.total_copies} copies)")


@app.command("add-user")
def cli_add_user(
    full_name: str,
    email: str,
    admin: bool = typer.Option(False, "--admin", help="Create an administrator"),
):
    """Register an approved user account."""
    try:
        user = LibraryManager.get_instance().add_user(
            full_name, email, role=UserRole.ADMIN if admin else UserRole.USER
        )
    except LendingError as e:
        _fail(e)
    print(f"Added user {user.id}: {user.full_name} <{user.email}> ({user.role.value})")


@app.command("sweep")
def cli_sweep(run_date: Optional[str] = typer.Option(None, "--date", help="Sweep as of this date (YYYY-MM-DD)")):
    """Calculate fines for every overdue loan."""
    report = LibraryManager.get_instance().run_penalty_sweep(_parse_date(run_date))
    print_report("Penalty sweep", report.to_dict())


@app.command("reminders")
def cli_reminders(run_date: Optional[str] = typer.Option(None, "--date", help="Run as of this date (YYYY-MM-DD)")):
    """Queue due-tomorrow and overdue reminders."""
    report = LibraryManager.get_instance().process_due_reminders(_parse_date(run_date))
    print_report("Reminders", report.to_dict())


@app.command("drain-outbox")
def cli_drain_outbox(limit: Optional[int] = typer.Option(None, "--limit", help="Maximum messages to deliver")):
    """Deliver queued notification emails."""
    report = LibraryManager.get_instance().drain_outbox(limit)
    print_report("Outbox", {"sent": report.sent, "retried": report.retried, "failed": report.failed})


@app.command("check-inventory")
def cli_check_inventory():
    """Verify copy counts against open loans."""
    report = LibraryManager.get_instance().check_inventory_invariants()
    print_report("Inventory check", report.to_dict())
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("nightly")
def cli_nightly(run_date: Optional[str] = typer.Option(None, "--date", help="Run as of this date (YYYY-MM-DD)")):
    """Run every scheduled job."""
    results = LibraryManager.get_instance().run_nightly_jobs(_parse_date(run_date))
    snapshot = results.pop("metrics", None)
    print_report("Nightly jobs", results)
    if snapshot is not None:
        print_metrics(snapshot)


@app.command("metrics")
def cli_metrics():
    """Show lending counters, current gauges and recent alerts."""
    print_metrics(LibraryManager.get_instance().get_metrics().to_dict())


@app.command("status")
def cli_status(user_id: str):
    """Show a user's borrowing eligibility and outstanding fines."""
    try:
        status = LibraryManager.get_instance().get_user_status(user_id)
    except LendingError as e:
        _fail(e)
    print_status_result(status.to_dict())


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    subprocess.run(args)


if __name__ == "__main__":
    app()
