import os
import json
from typing import Any, Dict, List

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable controlling CLI output: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_book_list(books: List[Any]) -> None:
    """Print books as 'id - Title by Author (available/total)' lines, JSON or a rich table."""
    mode = get_output_mode()
    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Author")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(b.id, b.title, b.author, f"{b.available_copies}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} ({b.available_copies}/{b.total_copies} available)")


def print_report(title: str, report: Dict[str, Any]) -> None:
    """Print a job report (sweep, reminders, outbox drain, nightly run)."""
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(report, ensure_ascii=False, default=str))
        return

    if report.get("skipped"):
        print(f"{title}: skipped (disabled)")
        return

    lines = [f"{key}: {_flatten(value)}" for key, value in report.items() if key != "skipped"]
    if mode == "rich":
        body = "\n".join(f"[bold]{line.split(':', 1)[0]}:[/]{line.split(':', 1)[1]}" for line in lines)
        _console.print(Panel.fit(body, title=title, border_style="blue"))
    else:
        print(title)
        for line in lines:
            print(f"  {line}")


def print_status_result(status: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(status, ensure_ascii=False))
        return

    summary = [
        f"Can borrow: {'yes' if status['can_borrow'] else 'no'}",
        f"Can return books: {'yes' if status['can_return_books'] else 'no'}",
        f"Restricted: {'yes' if status['is_restricted'] else 'no'}",
        f"Total fines owed: ${status['total_fines_owed']}",
        status["summary"],
    ]
    if mode == "rich":
        table = Table(title="Outstanding fines", header_style="bold cyan")
        table.add_column("Fine")
        table.add_column("Type")
        table.add_column("Amount", justify="right")
        table.add_column("Paid", justify="right")
        for fine in status["active_fines"]:
            table.add_row(fine["id"], fine["fine_type"], fine["amount"], fine["paid_amount"])
        _console.print(Panel.fit("\n".join(summary), title=f"User {status['user_id']}", border_style="blue"))
        if status["active_fines"]:
            _console.print(table)
    else:
        for line in summary:
            print(line)
        for fine in status["active_fines"]:
            print(f"  {fine['id']} {fine['fine_type']} ${fine['amount']} (paid ${fine['paid_amount']})")


def print_metrics(snapshot: Dict[str, Any]) -> None:
    """Print counters (total and today), gauges and recent alerts."""
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(snapshot, ensure_ascii=False, default=str))
        return

    if mode == "rich":
        table = Table(title=f"Metrics {snapshot['day']}", header_style="bold cyan")
        table.add_column("Counter")
        table.add_column("Total", justify="right")
        table.add_column("Today", justify="right")
        for name, total in snapshot["totals"].items():
            table.add_row(name, str(total), str(snapshot["today"].get(name, 0)))
        _console.print(table)
        gauges = "\n".join(f"[bold]{name}:[/] {value}" for name, value in snapshot["gauges"].items())
        _console.print(Panel.fit(gauges, title="Gauges", border_style="blue"))
        for alert in snapshot["alerts"]:
            _console.print(f"[bold red]{alert['severity']}[/] {alert['created_at']} {alert['message']}")
        return

    print(f"Metrics {snapshot['day']}")
    for name, total in snapshot["totals"].items():
        print(f"  {name}: {total} (today {snapshot['today'].get(name, 0)})")
    for name, value in snapshot["gauges"].items():
        print(f"  {name}: {value}")
    for alert in snapshot["alerts"]:
        print(f"  ALERT {alert['severity']} {alert['created_at']}: {alert['message']}")


def print_error(message: str) -> None:
    if get_output_mode() == "rich":
        _console.print(f"[bold red]Error:[/] {message}")
    else:
        print(f"Error: {message}")


def _flatten(value: Any) -> str:
    if isinstance(value, dict):
        return ", ".join(f"{k}={_flatten(v)}" for k, v in value.items())
    if isinstance(value, list):
        return str(len(value)) if value else "0"
    return str(value)
